import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from pylockdown import pair_records
from pylockdown.exceptions import ConnectionTerminatedError
from pylockdown.plist import dumps_native, loads_native
from pylockdown.transport import ConnectionMedium, ConnectionType, DeviceTransport, MuxDevice

logging.getLogger('humanfriendly.prompts').disabled = True

TEST_UDID = '00008030-00AA11BB22CC33DD'
TEST_DEVID = 7


class FakeClock:
    """ monotonic clock that only moves when someone sleeps """

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeSocket:
    def __init__(self, incoming: bytes = b'', chunk_size: Optional[int] = None) -> None:
        self.incoming = bytearray(incoming)
        self.sent = bytearray()
        self.chunk_size = chunk_size
        self.closed = False

    def recv(self, size: int) -> bytes:
        if self.chunk_size is not None:
            size = min(size, self.chunk_size)
        chunk = bytes(self.incoming[:size])
        del self.incoming[:size]
        return chunk

    def sendall(self, data: bytes) -> None:
        self.sent += data

    def close(self) -> None:
        self.closed = True


class FakeDevice:
    """ minimal lockdownd: answers requests from in-memory state """

    def __init__(self, clock: FakeClock, public_key_pem: bytes, product_version: str = '16.4',
                 device_class: str = 'iPhone', session_ssl: bool = False, pending_for: float = 0) -> None:
        self.clock = clock
        self.public_key_pem = public_key_pem
        self.session_ssl = session_ssl
        self.pending_for = pending_for
        self.pair_started_at: Optional[float] = None
        self.trusted_host_ids = set()
        self.values = {
            'UniqueDeviceID': TEST_UDID,
            'ProductVersion': product_version,
            'DeviceClass': device_class,
            'DeviceName': 'Test iPhone',
            'ProductType': 'iPhone12,1',
            'SerialNumber': 'F00BA4',
            'WiFiAddress': 'aa:bb:cc:dd:ee:ff',
            'BuildVersion': '20E247',
        }
        self.requests: List[dict] = []
        self.handlers: Dict[str, Callable[[dict], dict]] = {
            'QueryType': lambda request: {'Type': 'com.apple.mobile.lockdown'},
            'GetValue': self._get_value,
            'SetValue': self._set_value,
            'Pair': self._pair,
            'ValidatePair': self._validate_pair,
            'StartSession': self._start_session,
            'StartService': lambda request: {'Service': request['Service'], 'Port': 49152},
        }

    def handle(self, request: dict) -> dict:
        self.requests.append(request)
        response = self.handlers[request['Request']](request)
        response.setdefault('Request', request['Request'])
        return response

    def requests_named(self, name: str) -> List[dict]:
        return [request for request in self.requests if request['Request'] == name]

    def _get_value(self, request: dict) -> dict:
        key = request.get('Key')
        if key is None:
            return {'Value': dict(self.values)}
        if key == 'DevicePublicKey':
            return {'Value': self.public_key_pem}
        if key not in self.values:
            return {'Error': 'MissingValue'}
        return {'Value': self.values[key]}

    def _set_value(self, request: dict) -> dict:
        self.values[request['Key']] = request['Value']
        return {}

    def _pair(self, request: dict) -> dict:
        if self.pair_started_at is None:
            self.pair_started_at = self.clock()
        if self.clock() - self.pair_started_at < self.pending_for:
            return {'Error': 'PairingDialogResponsePending'}
        self.trusted_host_ids.add(request['PairRecord']['HostID'])
        return {'EscrowBag': b'escrow-bag'}

    def _validate_pair(self, request: dict) -> dict:
        if request['PairRecord']['HostID'] not in self.trusted_host_ids:
            return {'Error': 'InvalidHostID'}
        return {}

    def _start_session(self, request: dict) -> dict:
        if request['HostID'] not in self.trusted_host_ids:
            return {'Error': 'InvalidHostID'}
        return {'SessionID': 'F00D-SESSION', 'EnableSessionSSL': self.session_ssl}


class FakeServiceConnection:
    """ stands in for ServiceConnection, encoding every message through the binary plist codec """

    def __init__(self, device: FakeDevice, mux_device: Optional[MuxDevice] = None) -> None:
        self.device = device
        self.mux_device = mux_device
        self.encrypted_with = None
        self.closed = False

    @property
    def requires_encryption(self) -> bool:
        return self.device.session_ssl and any(
            request['Request'] == 'StartSession' and request['HostID'] in self.device.trusted_host_ids
            for request in self.device.requests)

    def send_recv_plist(self, data: dict) -> dict:
        if self.closed:
            raise ConnectionTerminatedError()
        if self.requires_encryption and self.encrypted_with is None:
            raise ConnectionTerminatedError('plaintext request on an SSL session')
        request = loads_native(dumps_native(data))
        return loads_native(dumps_native(self.device.handle(request)))

    def start_encrypted(self, certificate: bytes, private_key: bytes) -> None:
        self.encrypted_with = (certificate, private_key)

    def close(self) -> None:
        self.closed = True


class FakeTransport(DeviceTransport):
    medium = ConnectionMedium.USBMUX

    def __init__(self, device: Optional[FakeDevice] = None) -> None:
        self.device = device
        self.mux_device = MuxDevice(TEST_DEVID, TEST_UDID, ConnectionType.USB)
        self.pair_records: Dict[str, bytes] = {}
        self.saved: List[tuple] = []
        self.connections: List[tuple] = []

    def connect(self, identifier, port, device=None):
        self.connections.append((identifier, port))
        return FakeSocket()

    def get_device(self, identifier):
        return self.mux_device

    def get_pair_record(self, identifier):
        return self.pair_records.get(identifier)

    def save_pair_record(self, identifier, device_id, data):
        self.saved.append((identifier, device_id))
        self.pair_records[identifier] = data

    def close(self):
        pass


@pytest.fixture(scope='session')
def device_public_key_pem() -> bytes:
    """
    RSA public key the fake device hands out as DevicePublicKey.
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.public_key().public_bytes(Encoding.PEM, PublicFormat.PKCS1)


@pytest.fixture(scope='function')
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope='function')
def device(clock, device_public_key_pem) -> FakeDevice:
    return FakeDevice(clock, device_public_key_pem)


@pytest.fixture(scope='function')
def transport(device) -> FakeTransport:
    return FakeTransport(device)


@pytest.fixture(scope='function')
def service(device, transport) -> FakeServiceConnection:
    """
    Creates a fake lockdownd connection for each test.
    """
    return FakeServiceConnection(device, mux_device=transport.mux_device)


class FakeOsUtils:
    def __init__(self, pair_record_path: Path) -> None:
        self.pair_record_path = pair_record_path

    def chown_to_non_sudo_if_needed(self, path: Path) -> None:
        pass


@pytest.fixture(scope='function', autouse=True)
def system_pair_records(tmp_path, monkeypatch) -> Path:
    """
    Points the system (iTunes) pair record directory at an empty temporary folder.
    """
    path = tmp_path / 'system_lockdown'
    path.mkdir()
    monkeypatch.setattr(pair_records, 'OSUTILS', FakeOsUtils(path))
    return path


@pytest.fixture(scope='function')
def cache_folder(tmp_path) -> Path:
    path = tmp_path / 'cache'
    path.mkdir()
    return path
