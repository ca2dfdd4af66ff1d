import json
import logging
from pathlib import Path
from typing import Optional

import click
import coloredlogs

from pylockdown import usbmux
from pylockdown.cli_common import USBMUX_ENV_VAR, USBMUX_OPTION_HELP, BaseCommand, LockdownCommand, \
    NoAutoPairLockdownCommand, print_json
from pylockdown.exceptions import CannotStopSessionError, ConnectionFailedError, ConnectionFailedToUsbmuxdError, \
    ConnectionTerminatedError, DeviceNotFoundError, FatalPairingError, FeatureNotSupportedError, \
    IncorrectModeError, InvalidServiceError, MissingValueError, NoDeviceConnectedError, NotPairedError, \
    OSNotSupportedError, PairingDialogResponsePendingError, PasswordRequiredError, PlistFormatError, \
    SetProhibitedError, StartServiceError, UserDeniedPairingError
from pylockdown.lockdown import LockdownClient
from pylockdown.plist import PlistFormat, dumps, loads

coloredlogs.install(level=logging.INFO)

logging.getLogger('humanfriendly.prompts').disabled = True

logger = logging.getLogger(__name__)

CONTEXT_SETTINGS = dict(help_option_names=['-h', '--help'], max_content_width=400)


@click.group(context_settings=CONTEXT_SETTINGS)
def cli() -> None:
    """
    \b
    Talk to the lockdown service of a connected iDevice (iPhone, iPad, ...)
    """
    pass


@cli.command('list', cls=BaseCommand)
@click.option('usbmux_address', '--usbmux', envvar=USBMUX_ENV_VAR, help=USBMUX_OPTION_HELP)
@click.option('usb', '--usb', is_flag=True, help='show only usb devices')
@click.option('network', '--network', is_flag=True, help='show only network devices')
def list_devices(usbmux_address: Optional[str], usb: bool, network: bool) -> None:
    """ list devices known to usbmuxd """
    connected_devices = []
    for device in usbmux.list_devices(usbmux_address=usbmux_address):
        if usb and not device.is_usb:
            continue
        if network and not device.is_network:
            continue
        connected_devices.append({
            'Identifier': device.serial,
            'DeviceID': device.devid,
            'ConnectionType': device.connection_type.value,
        })
    print_json(connected_devices)


@cli.command(cls=LockdownCommand)
def info(lockdown: LockdownClient) -> None:
    """ query all lockdown values """
    print_json(lockdown.all_values)


@cli.command(cls=LockdownCommand)
@click.option('-d', '--domain')
@click.option('-k', '--key')
def get(lockdown: LockdownClient, domain: Optional[str], key: Optional[str]) -> None:
    """ query a lockdown value (all values when no key is given) """
    print_json(lockdown.get_value(domain=domain, key=key))


@cli.command('set', cls=LockdownCommand)
@click.argument('value')
@click.option('-d', '--domain')
@click.option('-k', '--key')
def set_value(lockdown: LockdownClient, value: str, domain: Optional[str], key: Optional[str]) -> None:
    """ set a lockdown value, VALUE is parsed as JSON """
    print_json(lockdown.set_value(json.loads(value), domain=domain, key=key))


@cli.command(cls=NoAutoPairLockdownCommand)
@click.option('--timeout', type=float, default=None, help='seconds to wait for the trust dialog (default: forever)')
def pair(lockdown: LockdownClient, timeout: Optional[float]) -> None:
    """ pair with the device, the user must accept the trust dialog """
    if lockdown.paired:
        logger.info(f'{lockdown.identifier} is already paired')
        return
    lockdown.pair(timeout=timeout)
    if not lockdown.validate_pairing():
        raise FatalPairingError()
    logger.info(f'paired with {lockdown.identifier}')


@cli.command(cls=NoAutoPairLockdownCommand)
@click.option('--host-id', help='host id to unpair (defaults to the current pair record)')
def unpair(lockdown: LockdownClient, host_id: Optional[str]) -> None:
    """ unpair from the device """
    lockdown.unpair(host_id=host_id)


@cli.command('start-service', cls=LockdownCommand)
@click.argument('service_name')
@click.option('--request', help='JSON dictionary to send to the service once it is started')
def start_service(lockdown: LockdownClient, service_name: str, request: Optional[str]) -> None:
    """ start a lockdown service, optionally sending it a single request """
    with lockdown.start_lockdown_service(service_name) as service:
        logger.info(f'{service_name} started')
        if request is not None:
            print_json(service.send_recv_plist(json.loads(request)))


@cli.group('plist')
def plist_group() -> None:
    """ plist file utilities """
    pass


@plist_group.command('convert', cls=BaseCommand)
@click.argument('input_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument('output_file', type=click.Path(dir_okay=False, path_type=Path))
@click.option('fmt', '-f', '--format', type=click.Choice([fmt.value for fmt in PlistFormat]),
              default=PlistFormat.XML.value, show_default=True)
def plist_convert(input_file: Path, output_file: Path, fmt: str) -> None:
    """ convert a plist file between binary and XML form """
    output_file.write_bytes(dumps(loads(input_file.read_bytes()), fmt=PlistFormat(fmt)))


def main() -> None:
    try:
        cli()
    except NoDeviceConnectedError:
        logger.error('Device is not connected')
    except DeviceNotFoundError as e:
        logger.error(f'Device not found: {e.udid}')
    except ConnectionFailedToUsbmuxdError:
        logger.error('Failed to connect to usbmuxd socket. Make sure it\'s running.')
    except ConnectionFailedError:
        logger.error('Failed to connect to service port.')
    except ConnectionTerminatedError:
        logger.error('Device was disconnected')
    except NotPairedError:
        logger.error('Device is not paired')
    except UserDeniedPairingError:
        logger.error('User refused to trust this computer')
    except PairingDialogResponsePendingError:
        logger.error('Waiting for user dialog approval')
    except FatalPairingError:
        logger.error('Pairing failed')
    except IncorrectModeError:
        logger.error('Device is not in lockdown mode (recovery?)')
    except SetProhibitedError:
        logger.error('lockdownd denied the access')
    except MissingValueError:
        logger.error('No such value')
    except PasswordRequiredError:
        logger.error('Device is password protected. Please unlock and retry')
    except (InvalidServiceError, StartServiceError) as e:
        logger.error(f'Failed to start service: {e}')
    except CannotStopSessionError:
        logger.error('Failed to stop the lockdown session')
    except PlistFormatError as e:
        logger.error(f'Invalid plist: {e}')
    except OSNotSupportedError as e:
        logger.error(f'Unsupported OS - {e.os_name}')
    except FeatureNotSupportedError as e:
        logger.error(f'Missing implementation of `{e.feature}` on `{e.os_name}`')


if __name__ == '__main__':
    main()
