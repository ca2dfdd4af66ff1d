import logging
import platform
import uuid
from pathlib import Path
from typing import Optional

from pylockdown.common import get_home_folder
from pylockdown.exceptions import MuxException, PlistFormatError
from pylockdown.osu.os_utils import get_os_utils
from pylockdown.plist import PlistFormat, dumps_native, loads_native
from pylockdown.transport import ConnectionMedium, DeviceTransport

logger = logging.getLogger(__name__)
OSUTILS = get_os_utils()
PAIRING_RECORD_EXT = 'plist'


def generate_host_id(hostname: Optional[str] = None) -> str:
    """
    Generate a unique host ID based on the hostname.

    :param hostname: The hostname to use for generating the host ID.
                     If None, the current hostname is used.
    :return: The generated host ID.
    """
    hostname = platform.node() if hostname is None else hostname
    host_id = uuid.uuid3(uuid.NAMESPACE_DNS, hostname)
    return str(host_id).upper()


def _parse_pair_record(data: bytes, source: str) -> Optional[dict]:
    try:
        record = loads_native(data)
    except PlistFormatError as e:
        logger.warning(f'ignoring malformed pair record from {source}: {e}')
        return None
    if not isinstance(record, dict):
        logger.warning(f'ignoring pair record from {source}: not a dictionary')
        return None
    return record


def get_itunes_pairing_record(identifier: str) -> Optional[dict]:
    """
    Retrieve the pairing record from the system (iTunes / usbmuxd) lockdown directory.

    :param identifier: The identifier of the device.
    :return: The pairing record if found, otherwise None.
    """
    filename = OSUTILS.pair_record_path / f'{identifier}.{PAIRING_RECORD_EXT}'
    try:
        data = filename.read_bytes()
    except (PermissionError, FileNotFoundError):
        return None
    return _parse_pair_record(data, str(filename))


def get_usbmux_pairing_record(transport: DeviceTransport, identifier: str) -> Optional[dict]:
    """
    Retrieve the pairing record from the transport's store. Only usbmuxd has one.

    :param transport: The transport the device is reached through.
    :param identifier: The identifier of the device.
    :return: The pairing record if found, otherwise None.
    """
    if transport.medium != ConnectionMedium.USBMUX:
        return None
    try:
        data = transport.get_pair_record(identifier)
    except MuxException as e:
        logger.debug(f'usbmuxd pair record lookup failed: {e}')
        return None
    if data is None:
        return None
    return _parse_pair_record(data, 'usbmuxd')


def get_local_pairing_record(identifier: str, pairing_records_cache_folder: Path) -> Optional[dict]:
    """
    Retrieve the pairing record from local storage.

    :param identifier: The identifier of the device.
    :param pairing_records_cache_folder: The path to the local pairing records cache folder.
    :return: The pairing record if found, otherwise None.
    """
    logger.debug('Looking for pylockdown pairing record')
    path = pairing_records_cache_folder / f'{identifier}.{PAIRING_RECORD_EXT}'
    if not path.exists():
        logger.debug(f'No pylockdown pairing record found for device {identifier}')
        return None
    return _parse_pair_record(path.read_bytes(), str(path))


def save_local_pairing_record(identifier: str, pairing_records_cache_folder: Path, pair_record: dict) -> Path:
    path = pairing_records_cache_folder / f'{identifier}.{PAIRING_RECORD_EXT}'
    path.write_bytes(dumps_native(pair_record, fmt=PlistFormat.BINARY))
    OSUTILS.chown_to_non_sudo_if_needed(path)
    return path


def remove_local_pairing_record(identifier: str, pairing_records_cache_folder: Path) -> None:
    path = pairing_records_cache_folder / f'{identifier}.{PAIRING_RECORD_EXT}'
    if path.exists():
        path.unlink()


def get_preferred_pair_record(identifier: str, pairing_records_cache_folder: Path,
                              transport: Optional[DeviceTransport] = None) -> Optional[dict]:
    """
    Look for an existing pair record for the connected device in the following order:
    - iTunes
    - usbmuxd
    - local storage

    :param identifier: The identifier of the device.
    :param pairing_records_cache_folder: The path to the local pairing records cache folder.
    :param transport: The transport the device is reached through.
    :return: The preferred pairing record, or None if there is none.
    """
    # iTunes
    pair_record = get_itunes_pairing_record(identifier)
    if pair_record is not None:
        logger.debug(f'Using iTunes pair record for {identifier}')
        return pair_record

    # usbmuxd
    if transport is not None:
        pair_record = get_usbmux_pairing_record(transport, identifier)
        if pair_record is not None:
            logger.debug(f'Using usbmuxd pair record for {identifier}')
            return pair_record

    # local storage
    return get_local_pairing_record(identifier, pairing_records_cache_folder)


def create_pairing_records_cache_folder(pairing_records_cache_folder: Optional[Path] = None) -> Path:
    """
    Create the pairing records cache folder if it does not exist.

    :param pairing_records_cache_folder: The path to the local pairing records cache folder.
                                         If None, the home folder is used.
    :return: The path to the pairing records cache folder.
    """
    if pairing_records_cache_folder is None:
        pairing_records_cache_folder = get_home_folder()
    else:
        pairing_records_cache_folder.mkdir(parents=True, exist_ok=True)
    OSUTILS.chown_to_non_sudo_if_needed(pairing_records_cache_folder)
    return pairing_records_cache_folder
