import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from packaging.version import Version

from pylockdown.ca import generate_pairing_cert_chain
from pylockdown.exceptions import CannotStopSessionError, FatalPairingError, GetProhibitedError, \
    IncorrectModeError, InvalidConnectionError, InvalidHostIDError, InvalidServiceError, LockdownError, \
    MissingValueError, NotPairedError, PairingDialogResponsePendingError, PasswordRequiredError, \
    ProtocolIntegrityError, SetProhibitedError, StartServiceError, UserDeniedPairingError
from pylockdown.pair_records import create_pairing_records_cache_folder, generate_host_id, \
    get_preferred_pair_record, save_local_pairing_record
from pylockdown.plist import PlistFormat, dumps_native
from pylockdown.service_connection import ServiceConnection
from pylockdown.tcp import TcpTransport
from pylockdown.transport import ConnectionMedium, ConnectionType, DeviceTransport
from pylockdown.usbmux import UsbmuxTransport

SYSTEM_BUID = '30142955-444094379208051516'
LOCKDOWN_SERVICE_TYPE = 'com.apple.mobile.lockdown'

DEFAULT_LABEL = 'pylockdown'
SERVICE_PORT = 62078
PAIRING_PROTOCOL_VERSION = '2'
PAIRING_POLL_INTERVAL = 1
VALIDATE_PAIR_BEFORE = Version('7.0')

_ERRORS = {
    'PasswordProtected': PasswordRequiredError,
    'PairingDialogResponsePending': PairingDialogResponsePendingError,
    'UserDeniedPairing': UserDeniedPairingError,
    'InvalidHostID': InvalidHostIDError,
    'GetProhibited': GetProhibitedError,
    'SetProhibited': SetProhibitedError,
    'MissingValue': MissingValueError,
    'InvalidService': InvalidServiceError,
    'InvalidConnection': InvalidConnectionError,
}


class DeviceClass(Enum):
    IPHONE = 'iPhone'
    IPAD = 'iPad'
    IPOD = 'iPod'
    WATCH = 'Watch'
    APPLE_TV = 'AppleTV'
    UNKNOWN = 'Unknown'


class NotPairedReason(Enum):
    NO_PAIR_RECORD = 'no pair record'
    VALIDATE_PAIR_FAILED = 'ValidatePair failed'
    INVALID_HOST_ID = 'invalid host id'


@dataclass(frozen=True)
class PairingStatus:
    """
    Outcome of session validation. Not being paired is an expected outcome, so it is reported here rather than
    raised; actual errors still propagate as exceptions.
    """
    paired: bool
    reason: Optional[NotPairedReason] = None

    def __bool__(self) -> bool:
        return self.paired


PAIRED = PairingStatus(True)


class LockdownClient:
    def __init__(self, service: ServiceConnection, host_id: str, transport: Optional[DeviceTransport] = None,
                 identifier: Optional[str] = None, label: str = DEFAULT_LABEL, system_buid: str = SYSTEM_BUID,
                 pair_record: Optional[dict] = None, pairing_records_cache_folder: Optional[Path] = None,
                 port: int = SERVICE_PORT, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Create a LockdownClient instance

        :param service: lockdownd connection handler
        :param host_id: Used as the host identifier for the handshake
        :param transport: Transport used to open service connections and to reach its pair record store
        :param identifier: Used as an identifier to look for the device pair record
        :param label: lockdownd user-agent
        :param system_buid: System's unique identifier
        :param pair_record: Use this pair record instead of the default behavior (search in host/create our own)
        :param pairing_records_cache_folder: Use the following location to search and save pair records
        :param port: lockdownd service port
        :param clock: Monotonic time source for the pairing dialog poll
        :param sleep: Sleep function for the pairing dialog poll
        """
        self.logger = logging.getLogger(__name__)
        self.service = service
        self.transport = transport
        self.identifier = identifier
        self.label = label
        self.host_id = host_id
        self.system_buid = system_buid
        self.pair_record = pair_record
        self.paired = False
        self.session_id = None
        self.pairing_records_cache_folder = pairing_records_cache_folder
        self.port = port
        self._clock = clock
        self._sleep = sleep

        if self.query_type() != LOCKDOWN_SERVICE_TYPE:
            raise IncorrectModeError()

        self.all_values = self.get_value()
        self.udid = self.all_values.get('UniqueDeviceID')
        self.device_public_key = self.all_values.get('DevicePublicKey')
        self.product_type = self.all_values.get('ProductType')

        if self.identifier is None and self.service.mux_device is not None:
            self.identifier = self.service.mux_device.serial
        if self.identifier is None:
            self.identifier = self.udid

    @classmethod
    def create(cls, service: ServiceConnection, transport: Optional[DeviceTransport] = None,
               identifier: Optional[str] = None, system_buid: str = SYSTEM_BUID, label: str = DEFAULT_LABEL,
               autopair: bool = True, pair_timeout: Optional[float] = None, local_hostname: Optional[str] = None,
               pair_record: Optional[dict] = None, pairing_records_cache_folder: Optional[Path] = None,
               port: int = SERVICE_PORT, private_key: Optional[RSAPrivateKey] = None,
               **kwargs) -> 'LockdownClient':
        """
        Create a LockdownClient instance over an already open lockdownd connection

        :param service: lockdownd connection handler
        :param transport: Transport the service connection was opened with
        :param identifier: Used as an identifier to look for the device pair record
        :param system_buid: System's unique identifier
        :param label: lockdownd user-agent
        :param autopair: Attempt to pair with device (blocking) if not already paired
        :param pair_timeout: Timeout for autopair. None or negative waits forever
        :param local_hostname: Used as a seed to generate the HostID
        :param pair_record: Use this pair record instead of the default behavior (search in host/create our own)
        :param pairing_records_cache_folder: Use the following location to search and save pair records
        :param port: lockdownd service port
        :param private_key: Used to pass custom RSA key for pairing purposes, if None it will be autogenerated
        :param kwargs: Passed as-is to the constructor (clock, sleep)
        :return: LockdownClient instance
        """
        host_id = generate_host_id(local_hostname)
        pairing_records_cache_folder = create_pairing_records_cache_folder(pairing_records_cache_folder)

        lockdown_client = cls(
            service, host_id=host_id, transport=transport, identifier=identifier, label=label,
            system_buid=system_buid, pair_record=pair_record,
            pairing_records_cache_folder=pairing_records_cache_folder, port=port, **kwargs)
        lockdown_client._handle_autopair(autopair, pair_timeout, private_key=private_key)
        return lockdown_client

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} ID:{self.identifier} VERSION:{self.product_version} ' \
               f'TYPE:{self.product_type} PAIRED:{self.paired}>'

    def __enter__(self) -> 'LockdownClient':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def product_version(self) -> str:
        return self.all_values.get('ProductVersion')

    @property
    def device_class(self) -> DeviceClass:
        try:
            return DeviceClass(self.all_values.get('DeviceClass'))
        except ValueError:
            return DeviceClass.UNKNOWN

    @property
    def wifi_mac_address(self) -> str:
        return self.all_values.get('WiFiAddress')

    @property
    def device_name(self) -> str:
        return self.all_values.get('DeviceName')

    @property
    def serial_number(self) -> str:
        return self.all_values.get('SerialNumber')

    @property
    def short_info(self) -> dict:
        keys_to_copy = ['DeviceClass', 'DeviceName', 'BuildVersion', 'ProductVersion', 'ProductType', 'UniqueDeviceID']
        result = {
            'Identifier': self.identifier,
        }
        for key in keys_to_copy:
            result[key] = self.all_values.get(key)
        if self.service.mux_device is not None:
            result['ConnectionType'] = self.service.mux_device.connection_type.value
        return result

    @property
    def enable_wifi_connections(self) -> bool:
        return self.get_value('com.apple.mobile.wireless_lockdown').get('EnableWifiConnections', False)

    @enable_wifi_connections.setter
    def enable_wifi_connections(self, value: bool) -> None:
        self.set_value(value, 'com.apple.mobile.wireless_lockdown', 'EnableWifiConnections')

    def query_type(self) -> str:
        return self._request('QueryType').get('Type')

    def enter_recovery(self) -> dict:
        return self._request('EnterRecovery')

    def stop_session(self) -> Optional[dict]:
        if self.session_id and self.service:
            response = self._request('StopSession', {'SessionID': self.session_id})
            self.session_id = None
            if not response or response.get('Result') != 'Success':
                raise CannotStopSessionError()
            return response
        return None

    def validate_pairing(self) -> bool:
        return bool(self.check_pairing())

    def check_pairing(self) -> PairingStatus:
        """
        Try to establish a session using the current (or preferred) pair record.

        Upgrades the lockdown connection to TLS when the device requests it.

        :return: PAIRED, or the reason the host is not paired
        """
        if self.paired and self.session_id:
            # a session is already established (and possibly TLS-wrapped)
            return PAIRED

        if self.pair_record is None:
            self.fetch_pair_record()

        if self.pair_record is None:
            return PairingStatus(False, NotPairedReason.NO_PAIR_RECORD)

        if self.product_version is not None and Version(self.product_version) < VALIDATE_PAIR_BEFORE \
                and self.device_class != DeviceClass.WATCH:
            try:
                self._request('ValidatePair', {'PairRecord': self.pair_record})
            except LockdownError as e:
                self.logger.debug(f'ValidatePair failed: {e.message}')
                return PairingStatus(False, NotPairedReason.VALIDATE_PAIR_FAILED)

        self.host_id = self.pair_record.get('HostID', self.host_id)
        self.system_buid = self.pair_record.get('SystemBUID', self.system_buid)

        try:
            start_session = self._request('StartSession', {'HostID': self.host_id, 'SystemBUID': self.system_buid})
        except InvalidHostIDError:
            # the device doesn't know this host id, so the record is stale
            return PairingStatus(False, NotPairedReason.INVALID_HOST_ID)

        self.session_id = start_session.get('SessionID')
        if start_session.get('EnableSessionSSL'):
            self.service.start_encrypted(self.pair_record['HostCertificate'], self.pair_record['HostPrivateKey'])

        self.paired = True

        # reload data after pairing
        self.all_values = self.get_value()
        self.udid = self.all_values.get('UniqueDeviceID')

        return PAIRED

    def fetch_pair_record(self) -> None:
        if self.identifier is not None:
            self.pair_record = get_preferred_pair_record(self.identifier, self.pairing_records_cache_folder,
                                                         transport=self.transport)

    def save_pair_record(self) -> None:
        path = save_local_pairing_record(self.identifier, self.pairing_records_cache_folder, self.pair_record)
        self.logger.debug(f'pair record saved to {path}')
        if self.transport is None or self.transport.medium != ConnectionMedium.USBMUX:
            return
        if self.service.mux_device is None:
            return
        self.transport.save_pair_record(self.identifier, self.service.mux_device.devid,
                                        dumps_native(self.pair_record, fmt=PlistFormat.XML))

    def pair(self, timeout: Optional[float] = None, private_key: Optional[RSAPrivateKey] = None) -> None:
        """
        Perform the pairing handshake. The user has to accept the trust dialog on the device.

        :param timeout: Seconds to wait for the trust dialog. None or negative waits forever, 0 doesn't wait
        :param private_key: Host key to use, generated when omitted
        """
        self.device_public_key = self.get_value('', 'DevicePublicKey')
        if not self.device_public_key:
            self.logger.error('Unable to retrieve DevicePublicKey')
            self.service.close()
            raise FatalPairingError()

        self.logger.info('Creating host key & certificate')
        certificates = generate_pairing_cert_chain(self.device_public_key, private_key=private_key,
                                                   device_version=self.product_version)

        pair_record = {'DevicePublicKey': self.device_public_key,
                       'DeviceCertificate': certificates.device_certificate,
                       'HostCertificate': certificates.host_certificate,
                       'HostID': self.host_id,
                       'RootCertificate': certificates.root_certificate,
                       'RootPrivateKey': certificates.root_private_key,
                       'WiFiMACAddress': self.wifi_mac_address,
                       'SystemBUID': self.system_buid}

        pair_options = {'PairRecord': pair_record, 'ProtocolVersion': PAIRING_PROTOCOL_VERSION,
                        'PairingOptions': {'ExtendedPairingErrors': True}}

        pair = self._request_pair(pair_options, timeout=timeout)

        pair_record['HostPrivateKey'] = certificates.host_private_key
        escrow_bag = pair.get('EscrowBag')

        if escrow_bag is not None:
            pair_record['EscrowBag'] = escrow_bag

        self.pair_record = pair_record
        self.save_pair_record()
        self.paired = True

    def unpair(self, host_id: Optional[str] = None) -> None:
        pair_record = self.pair_record if host_id is None else {'HostID': host_id}
        self._request('Unpair', {'PairRecord': pair_record, 'ProtocolVersion': PAIRING_PROTOCOL_VERSION},
                      verify_request=False)

    def get_value(self, domain: Optional[str] = None, key: Optional[str] = None) -> Any:
        options = {}

        if domain:
            options['Domain'] = domain
        if key:
            options['Key'] = key

        response = self._request('GetValue', options)
        # some values come back under Data rather than Value
        if 'Data' in response:
            return response['Data']
        return response.get('Value')

    def remove_value(self, domain: Optional[str] = None, key: Optional[str] = None) -> dict:
        options = {}

        if domain:
            options['Domain'] = domain
        if key:
            options['Key'] = key

        return self._request('RemoveValue', options)

    def set_value(self, value: Any, domain: Optional[str] = None, key: Optional[str] = None) -> dict:
        options = {}

        if domain:
            options['Domain'] = domain
        if key:
            options['Key'] = key

        options['Value'] = value
        return self._request('SetValue', options)

    def get_service_connection_attributes(self, name: str, include_escrow_bag: bool = False) -> dict:
        if not self.paired:
            raise NotPairedError()

        options = {'Service': name}
        if include_escrow_bag:
            options['EscrowBag'] = self.pair_record['EscrowBag']

        try:
            return self._request('StartService', options)
        except (PasswordRequiredError, ProtocolIntegrityError):
            raise
        except LockdownError as e:
            raise StartServiceError(e.message) from e

    def start_lockdown_service(self, name: str, include_escrow_bag: bool = False) -> ServiceConnection:
        """
        Ask lockdownd to start a service and connect to it.

        :param name: Service name, e.g. com.apple.afc
        :param include_escrow_bag: Send the pair record's escrow bag along (needed by some services while locked)
        :return: Connection to the started service, TLS-wrapped if the device asked for it
        """
        attr = self.get_service_connection_attributes(name, include_escrow_bag=include_escrow_bag)
        service_connection = self._create_service_connection(attr['Port'])

        if attr.get('EnableServiceSSL', False):
            if self.pair_record is None:
                service_connection.close()
                raise FatalPairingError('service requires SSL but there is no pair record')
            service_connection.start_encrypted(self.pair_record['HostCertificate'],
                                               self.pair_record['HostPrivateKey'])
        return service_connection

    def close(self) -> None:
        self.service.close()

    def _handle_autopair(self, autopair: bool, timeout: Optional[float],
                         private_key: Optional[RSAPrivateKey] = None) -> None:
        if self.validate_pairing():
            return

        # device is not paired yet
        if not autopair:
            # but pairing by default was not requested
            return
        self.pair(timeout=timeout, private_key=private_key)
        # get session_id
        if not self.validate_pairing():
            self.logger.error('Pairing succeeded but the device refused the new pair record')
            raise FatalPairingError()

    def _create_service_connection(self, port: int) -> ServiceConnection:
        if self.transport is None:
            raise LockdownError('no transport to open service connections with', self.identifier)
        return ServiceConnection.create_using_transport(self.transport, self.identifier, port)

    def _request(self, request: str, options: Optional[dict] = None, verify_request: bool = True) -> dict:
        message = {'Label': self.label, 'Request': request}
        if options:
            message.update(options)
        response = self.service.send_recv_plist(message)

        if verify_request and response.get('Request') != request:
            raise ProtocolIntegrityError(f'Incorrect response returned. Got: {response}', self.identifier)

        error = response.get('Error')
        if error is not None:
            raise _ERRORS.get(error, LockdownError)(error, self.identifier)

        # iOS < 5: 'Error' is not present, so we need to check the 'Result' instead
        if response.get('Result') == 'Failure':
            raise LockdownError('', self.identifier)

        return response

    def _request_pair(self, pair_options: dict, timeout: Optional[float] = None) -> dict:
        try:
            return self._request('Pair', pair_options)
        except PairingDialogResponsePendingError:
            if timeout == 0:
                raise

        self.logger.info('waiting user pairing dialog...')
        deadline = None if timeout is None or timeout < 0 else self._clock() + timeout
        while True:
            self._sleep(PAIRING_POLL_INTERVAL)
            try:
                return self._request('Pair', pair_options)
            except PairingDialogResponsePendingError:
                if deadline is not None and self._clock() >= deadline:
                    raise


def create_using_transport(transport: DeviceTransport, serial: Optional[str] = None, port: int = SERVICE_PORT,
                           **kwargs) -> LockdownClient:
    """
    Connect to lockdownd through the given transport and create a LockdownClient

    :param transport: Transport to reach the device with
    :param serial: Device to connect to, None selects the first one the transport knows
    :param port: lockdownd service port
    :param kwargs: See :meth:`LockdownClient.create`
    :return: LockdownClient instance
    """
    service = ServiceConnection.create_using_transport(transport, serial, port)
    try:
        return LockdownClient.create(service, transport=transport, port=port, **kwargs)
    except Exception:
        service.close()
        raise


def create_using_usbmux(serial: Optional[str] = None, identifier: Optional[str] = None, label: str = DEFAULT_LABEL,
                        autopair: bool = True, connection_type: Optional[ConnectionType] = None,
                        pair_timeout: Optional[float] = None, local_hostname: Optional[str] = None,
                        pair_record: Optional[dict] = None, pairing_records_cache_folder: Optional[Path] = None,
                        port: int = SERVICE_PORT, usbmux_address: Optional[str] = None) -> LockdownClient:
    """
    Create a LockdownClient over usbmuxd

    :param serial: Usbmux serial identifier
    :param identifier: Used as an identifier to look for the device pair record
    :param label: lockdownd user-agent
    :param autopair: Attempt to pair with device (blocking) if not already paired
    :param connection_type: Force a specific type of usbmux connection (USB/Network)
    :param pair_timeout: Timeout for autopair
    :param local_hostname: Used as a seed to generate the HostID
    :param pair_record: Use this pair record instead of the default behavior (search in host/create our own)
    :param pairing_records_cache_folder: Use the following location to search and save pair records
    :param port: lockdownd service port
    :param usbmux_address: usbmuxd address
    :return: LockdownClient instance
    """
    transport = UsbmuxTransport(connection_type=connection_type, usbmux_address=usbmux_address)
    # Only the Plist version of usbmuxd supports this message type
    system_buid = transport.get_buid() or SYSTEM_BUID
    return create_using_transport(
        transport, serial=serial, port=port, identifier=identifier, label=label, system_buid=system_buid,
        local_hostname=local_hostname, pair_record=pair_record,
        pairing_records_cache_folder=pairing_records_cache_folder, pair_timeout=pair_timeout, autopair=autopair)


def create_using_tcp(hostname: str, identifier: Optional[str] = None, label: str = DEFAULT_LABEL,
                     autopair: bool = True, pair_timeout: Optional[float] = None,
                     local_hostname: Optional[str] = None, pair_record: Optional[dict] = None,
                     pairing_records_cache_folder: Optional[Path] = None, port: int = SERVICE_PORT,
                     keep_alive: bool = False) -> LockdownClient:
    """
    Create a LockdownClient over a direct TCP connection

    :param hostname: The target device hostname
    :param identifier: Used as an identifier to look for the device pair record
    :param label: lockdownd user-agent
    :param autopair: Attempt to pair with device (blocking) if not already paired
    :param pair_timeout: Timeout for autopair
    :param local_hostname: Used as a seed to generate the HostID
    :param pair_record: Use this pair record instead of the default behavior (search in host/create our own)
    :param pairing_records_cache_folder: Use the following location to search and save pair records
    :param port: lockdownd service port
    :param keep_alive: use keep-alive to get notified when the connection is lost
    :return: LockdownClient instance
    """
    transport = TcpTransport(hostname, keep_alive=keep_alive)
    return create_using_transport(
        transport, serial=identifier, port=port, identifier=identifier, label=label, local_hostname=local_hostname,
        pair_record=pair_record, pairing_records_cache_folder=pairing_records_cache_folder,
        pair_timeout=pair_timeout, autopair=autopair)
