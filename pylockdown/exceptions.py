__all__ = [
    'PyLockdownException', 'PlistFormatError', 'UnknownTagError', 'PropertyNodeTypeError', 'IncorrectModeError',
    'PairingError', 'NotPairedError', 'CannotStopSessionError', 'PasswordRequiredError', 'StartServiceError',
    'FatalPairingError', 'NoDeviceConnectedError', 'DeviceNotFoundError', 'MuxException', 'MuxVersionError',
    'BadCommandError', 'BadDevError', 'ConnectionFailedError', 'ConnectionFailedToUsbmuxdError',
    'ConnectionTerminatedError', 'LockdownError', 'ProtocolIntegrityError', 'GetProhibitedError',
    'SetProhibitedError', 'PairingDialogResponsePendingError', 'UserDeniedPairingError', 'InvalidHostIDError',
    'MissingValueError', 'InvalidConnectionError', 'InvalidServiceError', 'OSNotSupportedError',
    'FeatureNotSupportedError',
]

from typing import Optional


class PyLockdownException(Exception):
    pass


class PlistFormatError(PyLockdownException):
    """ malformed plist data """
    pass


class UnknownTagError(PlistFormatError):
    """ no node variant is registered for the given binary or XML tag """
    pass


class PropertyNodeTypeError(PyLockdownException, TypeError):
    """ a property node was accessed as a different variant """
    pass


class IncorrectModeError(PyLockdownException):
    pass


class NotPairedError(PyLockdownException):
    pass


class CannotStopSessionError(PyLockdownException):
    pass


class StartServiceError(PyLockdownException):
    pass


class FatalPairingError(PyLockdownException):
    pass


class NoDeviceConnectedError(PyLockdownException):
    pass


class DeviceNotFoundError(PyLockdownException):
    def __init__(self, udid: str):
        super().__init__(udid)
        self.udid = udid


class MuxException(PyLockdownException):
    pass


class MuxVersionError(MuxException):
    pass


class BadCommandError(MuxException):
    pass


class BadDevError(MuxException):
    pass


class ConnectionFailedError(MuxException):
    pass


class ConnectionFailedToUsbmuxdError(ConnectionFailedError):
    pass


class ConnectionTerminatedError(PyLockdownException):
    """ Raise when a connection is terminated abruptly. """
    pass


class LockdownError(PyLockdownException):
    """ lockdown general error """

    def __init__(self, message: str = '', identifier: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.identifier = identifier


class PairingError(LockdownError):
    pass


class PasswordRequiredError(PairingError):
    pass


class ProtocolIntegrityError(LockdownError):
    """ the device echoed a different request name than the one sent """
    pass


class GetProhibitedError(LockdownError):
    pass


class SetProhibitedError(LockdownError):
    pass


class PairingDialogResponsePendingError(PairingError):
    """ User hasn't yet confirmed the device is trusted """
    pass


class UserDeniedPairingError(PairingError):
    pass


class InvalidHostIDError(PairingError):
    pass


class MissingValueError(LockdownError):
    """ raised when attempting to query non-existent domain/key """
    pass


class InvalidConnectionError(LockdownError):
    pass


class InvalidServiceError(LockdownError):
    pass


class SupportError(PyLockdownException):
    def __init__(self, os_name):
        self.os_name = os_name
        super().__init__()


class OSNotSupportedError(SupportError):
    """ Operating system is not supported. """
    pass


class FeatureNotSupportedError(SupportError):
    """ Feature has not been implemented for OS. """

    def __init__(self, os_name, feature):
        super().__init__(os_name)
        self.feature = feature
