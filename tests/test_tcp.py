from pylockdown import tcp
from pylockdown.pair_records import get_usbmux_pairing_record
from pylockdown.tcp import TcpTransport
from pylockdown.transport import ConnectionMedium
from tests.conftest import TEST_UDID, FakeSocket


class TimeoutSocket(FakeSocket):
    def __init__(self) -> None:
        super().__init__()
        self.timeouts = []

    def settimeout(self, timeout) -> None:
        self.timeouts.append(timeout)


def test_connect(monkeypatch) -> None:
    calls = []
    sock = TimeoutSocket()

    def create_connection(address, timeout=None):
        calls.append((address, timeout))
        return sock

    monkeypatch.setattr(tcp.socket, 'create_connection', create_connection)
    transport = TcpTransport('10.0.0.5', keep_alive=False, create_connection_timeout=3)

    assert transport.connect(TEST_UDID, 62078) is sock
    assert calls == [(('10.0.0.5', 62078), 3)]
    # blocking once connected
    assert sock.timeouts == [None]


def test_no_device_descriptor_or_pair_store(caplog) -> None:
    transport = TcpTransport('10.0.0.5')
    assert transport.medium == ConnectionMedium.TCP
    assert transport.get_device(TEST_UDID) is None
    assert get_usbmux_pairing_record(transport, TEST_UDID) is None
    transport.save_pair_record(TEST_UDID, 1, b'record')
    assert 'no pair record store' in caplog.text
