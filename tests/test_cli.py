import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from pylockdown import cli_common, usbmux
from pylockdown.__main__ import cli
from pylockdown.exceptions import PlistFormatError
from pylockdown.lockdown import LockdownClient
from pylockdown.plist import PlistFormat, dumps_native, loads_native
from pylockdown.transport import ConnectionType, MuxDevice
from tests.conftest import TEST_UDID

RECORD = {'HostID': 'ABC', 'EscrowBag': b'\x00\x01', 'Paired': True}


@pytest.fixture(scope='function')
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(scope='function')
def usbmux_lockdown(monkeypatch, service, transport, clock, cache_folder) -> list:
    """
    Routes LockdownCommand's client creation to the fake device, recording the arguments it was created with.
    """
    calls = []

    def create_using_usbmux(**kwargs) -> LockdownClient:
        calls.append(kwargs)
        return LockdownClient.create(service, transport=transport, pairing_records_cache_folder=cache_folder,
                                     autopair=False, clock=clock, sleep=clock.sleep)

    monkeypatch.setattr(cli_common, 'create_using_usbmux', create_using_usbmux)
    return calls


@pytest.mark.parametrize('fmt, magic', [('xml', b'<?xml'), ('binary', b'bplist00')])
def test_plist_convert(runner: CliRunner, tmp_path: Path, fmt: str, magic: bytes) -> None:
    source = tmp_path / 'in.plist'
    target = tmp_path / 'out.plist'
    other = PlistFormat.BINARY if fmt == 'xml' else PlistFormat.XML
    source.write_bytes(dumps_native(RECORD, fmt=other))

    result = runner.invoke(cli, ['plist', 'convert', str(source), str(target), '-f', fmt])

    assert result.exit_code == 0, result.output
    assert target.read_bytes().startswith(magic)
    assert loads_native(target.read_bytes()) == RECORD


def test_plist_convert_invalid_input(runner: CliRunner, tmp_path: Path) -> None:
    source = tmp_path / 'in.plist'
    source.write_bytes(b'neither binary nor xml')
    result = runner.invoke(cli, ['plist', 'convert', str(source), str(tmp_path / 'out.plist')])
    assert isinstance(result.exception, PlistFormatError)


def test_list(runner: CliRunner, monkeypatch) -> None:
    devices = [MuxDevice(1, TEST_UDID, ConnectionType.USB), MuxDevice(2, TEST_UDID, ConnectionType.NETWORK)]
    monkeypatch.setattr(usbmux, 'list_devices', lambda usbmux_address=None: devices)

    result = runner.invoke(cli, ['list', '--no-color', '--network'])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == [{'Identifier': TEST_UDID, 'DeviceID': 2, 'ConnectionType': 'Network'}]


def test_get_value(runner: CliRunner, usbmux_lockdown: list) -> None:
    result = runner.invoke(cli, ['get', '--no-color', '-k', 'DeviceName', '--udid', TEST_UDID])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == 'Test iPhone'
    assert usbmux_lockdown == [{'serial': TEST_UDID, 'autopair': True, 'usbmux_address': None}]


def test_set_value(runner: CliRunner, usbmux_lockdown: list, device) -> None:
    result = runner.invoke(cli, ['set', '--no-color', '-k', 'DeviceName', '"Renamed"'])
    assert result.exit_code == 0, result.output
    assert device.values['DeviceName'] == 'Renamed'


def test_pair_does_not_autopair(runner: CliRunner, usbmux_lockdown: list, device) -> None:
    result = runner.invoke(cli, ['pair', '--no-color'])
    assert result.exit_code == 0, result.output
    assert usbmux_lockdown[0]['autopair'] is False
    assert len(device.requests_named('Pair')) == 1


def test_pair_starts_a_single_session(runner: CliRunner, usbmux_lockdown: list, device) -> None:
    result = runner.invoke(cli, ['pair', '--no-color'])
    assert result.exit_code == 0, result.output
    assert len(device.requests_named('StartSession')) == 1


def test_pair_when_already_paired(runner: CliRunner, usbmux_lockdown: list, device) -> None:
    assert runner.invoke(cli, ['pair', '--no-color']).exit_code == 0
    result = runner.invoke(cli, ['pair', '--no-color'])
    assert result.exit_code == 0, result.output
    assert len(device.requests_named('Pair')) == 1
    # one session per client
    assert len(device.requests_named('StartSession')) == 2
