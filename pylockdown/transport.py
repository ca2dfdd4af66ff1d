import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ConnectionType(Enum):
    USB = 'USB'
    NETWORK = 'Network'


class ConnectionMedium(Enum):
    USBMUX = 'usbmux'
    TCP = 'tcp'


@dataclass(frozen=True)
class MuxDevice:
    """ device descriptor handed out by the multiplexing transport """
    devid: int
    serial: str
    connection_type: ConnectionType

    @property
    def is_usb(self) -> bool:
        return self.connection_type == ConnectionType.USB

    @property
    def is_network(self) -> bool:
        return self.connection_type == ConnectionType.NETWORK

    def matches_udid(self, udid: str) -> bool:
        return self.serial.replace('-', '') == udid.replace('-', '')


class DeviceTransport(ABC):
    """
    What the lockdown layer needs from whatever carries bytes to the device.

    Implementations: :class:`pylockdown.usbmux.UsbmuxTransport` and :class:`pylockdown.tcp.TcpTransport`.
    """
    medium: ConnectionMedium

    def __enter__(self) -> 'DeviceTransport':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @abstractmethod
    def connect(self, identifier: Optional[str], port: int, device: Optional[MuxDevice] = None) -> socket.socket:
        """
        Open a raw byte stream to the given device port.

        :param identifier: Device to connect to, None selects the first one the transport knows
        :param port: Device port
        :param device: Descriptor already returned by :meth:`get_device`, saves looking the device up again
        """
        pass

    @abstractmethod
    def get_device(self, identifier: Optional[str]) -> Optional[MuxDevice]:
        pass

    @abstractmethod
    def get_pair_record(self, identifier: str) -> Optional[bytes]:
        pass

    @abstractmethod
    def save_pair_record(self, identifier: str, device_id: int, data: bytes) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass
