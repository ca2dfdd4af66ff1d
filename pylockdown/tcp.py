import logging
import socket
from typing import Optional

from pylockdown.osu.os_utils import get_os_utils
from pylockdown.transport import ConnectionMedium, DeviceTransport, MuxDevice

DEFAULT_TIMEOUT = 1
OSUTIL = get_os_utils()

logger = logging.getLogger(__name__)


class TcpTransport(DeviceTransport):
    """ direct TCP connection to a device on the network (e.g. after enabling WiFi connections) """
    medium = ConnectionMedium.TCP

    def __init__(self, hostname: str, keep_alive: bool = True, create_connection_timeout: int = DEFAULT_TIMEOUT):
        """
        :param hostname: The device's hostname or IP address.
        :param keep_alive: Whether to enable TCP keep-alive on opened sockets.
        :param create_connection_timeout: Timeout for establishing each connection.
        """
        self.hostname = hostname
        self.keep_alive = keep_alive
        self.create_connection_timeout = create_connection_timeout

    def connect(self, identifier: Optional[str], port: int, device: Optional[MuxDevice] = None) -> socket.socket:
        logger.debug(f'connecting to {self.hostname}:{port}')
        sock = socket.create_connection((self.hostname, port), timeout=self.create_connection_timeout)
        sock.settimeout(None)
        if self.keep_alive:
            OSUTIL.set_keepalive(sock)
        return sock

    def get_device(self, identifier: Optional[str]) -> Optional[MuxDevice]:
        return None

    def get_pair_record(self, identifier: str) -> Optional[bytes]:
        return None

    def save_pair_record(self, identifier: str, device_id: int, data: bytes) -> None:
        logger.warning(f'TCP transport has no pair record store, not saving the record of {identifier}')

    def close(self) -> None:
        pass
