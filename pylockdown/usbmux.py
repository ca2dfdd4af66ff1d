import logging
import socket
import struct
import sys
import time
from enum import Enum
from typing import List, Optional, Tuple, Union

from construct import CString, FixedSized, GreedyBytes, Int16ul, Int32ul, Padding, Prefixed, StreamError, Struct

from pylockdown.exceptions import BadCommandError, BadDevError, ConnectionFailedError, \
    ConnectionFailedToUsbmuxdError, DeviceNotFoundError, MuxException, MuxVersionError, NoDeviceConnectedError
from pylockdown.plist import PlistFormat, dumps_native, loads_native
from pylockdown.transport import ConnectionMedium, ConnectionType, DeviceTransport, MuxDevice

logger = logging.getLogger(__name__)

DEFAULT_LISTEN_TIMEOUT = 0.1
CLIENT_VERSION_STRING = 'pylockdown'
PROG_NAME = 'pylockdown'


class PacketType(Enum):
    Result = 1
    Connect = 2
    Listen = 3
    Attached = 4
    Detached = 5
    Plist = 8


class MuxResult(Enum):
    OK = 0
    BADCOMMAND = 1
    BADDEV = 2
    CONNREFUSED = 3
    BADVERSION = 6


_RESULT_ERRORS = {
    MuxResult.BADCOMMAND: BadCommandError,
    MuxResult.BADDEV: BadDevError,
    MuxResult.CONNREFUSED: ConnectionFailedError,
    MuxResult.BADVERSION: MuxVersionError,
}


class SafeStreamSocket:
    def __init__(self, address, family):
        self.sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            self.sock.connect(address)
        except OSError as e:
            self.sock.close()
            raise ConnectionFailedToUsbmuxdError(f'failed to connect to usbmuxd at {address}') from e

    def send(self, msg):
        self.sock.sendall(msg)
        return len(msg)

    def recv(self, size):
        msg = b''
        while len(msg) < size:
            chunk = self.sock.recv(size - len(msg))
            if not chunk:
                raise MuxException('socket connection broken')
            msg += chunk
        return msg

    def close(self):
        self.sock.close()

    read = recv
    write = send


packet_struct = Prefixed(Int32ul, Struct(
    'version' / Int32ul,
    'type_' / Int32ul,
    'tag' / Int32ul,
    'payload' / GreedyBytes,
), includelength=True)

device_struct = Struct(
    'devid' / Int32ul,
    'usbpid' / Int16ul,
    'serial' / FixedSized(256, CString('ascii')),
    Padding(2),
    'location' / Int32ul
)


def send_packet(sock: SafeStreamSocket, version: int, type_: int, tag: int, payload: bytes = b'') -> None:
    sock.send(packet_struct.build(dict(version=version, type_=type_, tag=tag, payload=payload)))


def recv_packet(sock: SafeStreamSocket):
    """ read one length-prefixed packet off the socket and parse it """
    header = sock.recv(Int32ul.sizeof())
    length = Int32ul.parse(header)
    # length, version, type and tag
    if length < 4 * Int32ul.sizeof():
        raise MuxException(f'invalid packet length: {length}')
    return packet_struct.parse(header + sock.recv(length - len(header)))


class BinaryProtocol:
    VERSION = 0

    def __init__(self, sock: SafeStreamSocket):
        self.socket = sock
        self.connected = False
        self.tag = 1

    @staticmethod
    def get_version(sock: SafeStreamSocket) -> int:
        send_packet(sock, BinaryProtocol.VERSION, PacketType.Listen.value, 1)
        return recv_packet(sock).version

    def parse_result(self, payload) -> int:
        return Int32ul.parse(payload)

    def connect(self, device_id: int, port: int) -> None:
        payload = struct.pack('IH', device_id, port) + b'\x00\x00'
        self.send_and_validate(PacketType.Connect, payload)

    def listen(self) -> None:
        self.send_and_validate(PacketType.Listen)

    def send(self, req, payload=None) -> None:
        if self.connected:
            raise MuxException('Mux is connected, cannot issue control packets')
        if payload is None:
            payload = b''
        send_packet(self.socket, self.VERSION, req.value, self.tag, payload)
        self.tag += 1

    def recv(self):
        if self.connected:
            raise MuxException('Mux is connected, cannot issue control packets')
        data = recv_packet(self.socket)
        if data.version != self.VERSION:
            raise MuxVersionError(f'Version mismatch: expected {self.VERSION}, got {data.version}')
        return PacketType(data.type_), data.tag, data.payload

    def send_and_validate(self, req: Union[PacketType, str], payload=None) -> None:
        self.send(req, payload)
        type_, tag, payload = self.recv()
        if type_ != PacketType.Result:
            raise MuxException('Invalid packet type received')
        if tag != self.tag - 1:
            raise MuxException(f'Reply tag mismatch: expected {self.tag - 1}, got {tag}')
        ret = self.parse_result(payload)
        if ret != MuxResult.OK.value:
            name = req.name if isinstance(req, PacketType) else req
            try:
                error_class = _RESULT_ERRORS.get(MuxResult(ret), MuxException)
            except ValueError:
                error_class = MuxException
            raise error_class(f'{name} failed: error {ret}')

    def recv_device_state(self) -> Tuple[PacketType, Union[MuxDevice, int, None]]:
        type_, tag, payload = self.recv()
        if type_ == PacketType.Attached:
            device = device_struct.parse(payload)
            if not device.usbpid:
                return type_, None
            return type_, MuxDevice(device.devid, device.serial, ConnectionType.USB)
        elif type_ == PacketType.Detached:
            return type_, Int32ul.parse(payload)
        else:
            raise MuxException(f'Invalid packet type received: {type_}')

    def close(self) -> None:
        self.socket.close()


class PlistProtocol(BinaryProtocol):
    VERSION = 1

    def connect(self, device_id: int, port: int) -> None:
        self.send_and_validate(PacketType.Connect, {'DeviceID': device_id, 'PortNumber': port})

    def send(self, request, payload=None) -> None:
        if isinstance(request, PacketType):
            request = request.name
        if payload is None:
            payload = {}
        payload.update({'ClientVersionString': CLIENT_VERSION_STRING, 'MessageType': request,
                        'ProgName': PROG_NAME})
        super().send(PacketType.Plist, dumps_native(payload, fmt=PlistFormat.XML))

    def recv(self):
        resp, tag, payload = super().recv()
        if resp != PacketType.Plist:
            raise MuxException(f'Received non-plist type {resp}')
        payload = loads_native(payload)
        type_ = payload.get('MessageType')
        if type_ is not None:
            type_ = PacketType[type_]
        return type_, tag, payload

    def parse_result(self, payload) -> int:
        return payload['Number']

    def recv_device_state(self) -> Tuple[PacketType, Union[MuxDevice, int, None]]:
        type_, tag, payload = self.recv()
        if type_ == PacketType.Attached:
            properties = payload['Properties']
            try:
                connection_type = ConnectionType(properties['ConnectionType'])
            except ValueError:
                raise MuxException(f'Unknown connection type: {properties["ConnectionType"]}')
            return type_, MuxDevice(payload['DeviceID'], properties['SerialNumber'], connection_type)
        elif type_ == PacketType.Detached:
            return type_, payload['DeviceID']
        else:
            raise MuxException(f'Invalid packet type received: {type_}')

    def _request(self, request: str, payload: dict) -> dict:
        self.send(request, payload)
        type_, tag, response = self.recv()
        if tag != self.tag - 1:
            raise MuxException(f'Reply tag mismatch: expected {self.tag - 1}, got {tag}')
        return response

    def get_pair_record(self, udid: str) -> Optional[bytes]:
        return self._request('ReadPairRecord', {'PairRecordID': udid}).get('PairRecordData')

    def save_pair_record(self, udid: str, device_id: int, data: bytes) -> None:
        self.send_and_validate('SavePairRecord', {'PairRecordID': udid, 'PairRecordData': data, 'DeviceID': device_id})

    def get_buid(self) -> str:
        return self._request('ReadBUID', {})['BUID']


class MuxConnection:
    ITUNES_HOST = ('127.0.0.1', 27015)
    USBMUXD_PIPE = '/var/run/usbmuxd'

    def __init__(self, protoclass, usbmux_address: Optional[str] = None):
        self.socket = self.create_socket(usbmux_address)
        self.proto = protoclass(self.socket)
        self.devices: List[MuxDevice] = []

    def __enter__(self) -> 'MuxConnection':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @staticmethod
    def create_socket(usbmux_address: Optional[str] = None) -> SafeStreamSocket:
        if usbmux_address is not None:
            if ':' in usbmux_address:
                host, port = usbmux_address.rsplit(':', 1)
                return SafeStreamSocket((host, int(port)), socket.AF_INET)
            return SafeStreamSocket(usbmux_address, socket.AF_UNIX)
        if sys.platform in ['win32', 'cygwin']:
            return SafeStreamSocket(MuxConnection.ITUNES_HOST, socket.AF_INET)
        return SafeStreamSocket(MuxConnection.USBMUXD_PIPE, socket.AF_UNIX)

    def listen_for_devices(self, timeout: float = DEFAULT_LISTEN_TIMEOUT) -> None:
        if self.proto.connected:
            raise MuxException('Socket is connected, cannot process listener events')
        end = time.time() + timeout
        self.proto.listen()
        while time.time() < end:
            self.socket.sock.settimeout(end - time.time())
            try:
                type_, data = self.proto.recv_device_state()
                if type_ == PacketType.Attached and data is not None:
                    self.devices.append(data)
                elif type_ == PacketType.Detached:
                    self.devices = [device for device in self.devices if device.devid != data]
            except (BlockingIOError, StreamError, socket.timeout):
                continue
            except IOError:
                self.socket.sock.setblocking(True)
                self.proto.close()
                raise MuxException('Exception in listener socket')

    def connect(self, device: MuxDevice, port: int) -> socket.socket:
        self.proto.connect(device.devid, ((port << 8) & 0xFF00) | (port >> 8))
        self.proto.connected = True
        return self.socket.sock

    def close(self) -> None:
        self.proto.close()


def create_mux(usbmux_address: Optional[str] = None) -> MuxConnection:
    safe_sock = MuxConnection.create_socket(usbmux_address)
    try:
        version = BinaryProtocol.get_version(safe_sock)
    finally:
        safe_sock.close()

    if version == BinaryProtocol.VERSION:
        return MuxConnection(BinaryProtocol, usbmux_address)
    elif version == PlistProtocol.VERSION:
        return MuxConnection(PlistProtocol, usbmux_address)
    raise MuxVersionError(f'unsupported usbmuxd protocol version: {version}')


def list_devices(usbmux_address: Optional[str] = None) -> List[MuxDevice]:
    with create_mux(usbmux_address) as mux:
        mux.listen_for_devices()
        return mux.devices


def select_device(udid: Optional[str] = None, connection_type: Optional[ConnectionType] = None,
                  usbmux_address: Optional[str] = None) -> Optional[MuxDevice]:
    """
    Pick a device by UDID (or the first one) out of the connected devices, preferring USB over network
    connections for the same device.
    """
    matching_devices = [
        device for device in list_devices(usbmux_address=usbmux_address)
        if (not udid or device.matches_udid(udid))
        and (connection_type is None or device.connection_type == connection_type)
    ]
    if not matching_devices:
        return None
    usb_devices = [device for device in matching_devices if device.is_usb]
    return usb_devices[0] if usb_devices else matching_devices[0]


class UsbmuxTransport(DeviceTransport):
    """ device transport over the usbmuxd daemon """
    medium = ConnectionMedium.USBMUX

    def __init__(self, connection_type: Optional[ConnectionType] = None, usbmux_address: Optional[str] = None):
        self.connection_type = connection_type
        self.usbmux_address = usbmux_address

    def get_device(self, identifier: Optional[str]) -> Optional[MuxDevice]:
        return select_device(identifier, connection_type=self.connection_type, usbmux_address=self.usbmux_address)

    def connect(self, identifier: Optional[str], port: int, device: Optional[MuxDevice] = None) -> socket.socket:
        if device is None:
            device = self.get_device(identifier)
        if device is None:
            if identifier:
                raise DeviceNotFoundError(identifier)
            raise NoDeviceConnectedError()

        mux = create_mux(self.usbmux_address)
        try:
            return mux.connect(device, port)
        except Exception:
            mux.close()
            raise

    def get_pair_record(self, identifier: str) -> Optional[bytes]:
        with create_mux(self.usbmux_address) as mux:
            if not isinstance(mux.proto, PlistProtocol):
                return None
            return mux.proto.get_pair_record(identifier)

    def save_pair_record(self, identifier: str, device_id: int, data: bytes) -> None:
        with create_mux(self.usbmux_address) as mux:
            if not isinstance(mux.proto, PlistProtocol):
                logger.warning('usbmuxd binary protocol has no pair record store, skipping')
                return
            mux.proto.save_pair_record(identifier, device_id, data)

    def get_buid(self) -> Optional[str]:
        """ usbmuxd's system BUID, only available over the plist protocol """
        with create_mux(self.usbmux_address) as mux:
            if not isinstance(mux.proto, PlistProtocol):
                return None
            return mux.proto.get_buid()

    def close(self) -> None:
        # every operation uses its own short-lived usbmuxd connection
        pass
