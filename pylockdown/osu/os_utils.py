import inspect
import socket
import sys
from pathlib import Path

from pylockdown.exceptions import FeatureNotSupportedError, OSNotSupportedError

DEFAULT_AFTER_IDLE_SEC = 3
DEFAULT_INTERVAL_SEC = 3
DEFAULT_MAX_FAILS = 3


class OsUtils:
    _instance = None
    _os_name = None

    @classmethod
    def create(cls) -> 'OsUtils':
        if cls._instance is None:
            cls._os_name = sys.platform
            if cls._os_name == 'win32':
                from pylockdown.osu.win_util import Win32
                cls._instance = Win32()
            elif cls._os_name == 'darwin':
                from pylockdown.osu.posix_util import Darwin
                cls._instance = Darwin()
            elif cls._os_name == 'linux':
                from pylockdown.osu.posix_util import Linux
                cls._instance = Linux()
            elif cls._os_name == 'cygwin':
                from pylockdown.osu.posix_util import Cygwin
                cls._instance = Cygwin()
            else:
                raise OSNotSupportedError(cls._os_name)
        return cls._instance

    @property
    def pair_record_path(self) -> Path:
        """ directory where the system (iTunes/usbmuxd) keeps its pair records """
        raise FeatureNotSupportedError(self._os_name, inspect.currentframe().f_code.co_name)

    def set_keepalive(self, sock: socket.socket, after_idle_sec: int = DEFAULT_AFTER_IDLE_SEC,
                      interval_sec: int = DEFAULT_INTERVAL_SEC, max_fails: int = DEFAULT_MAX_FAILS) -> None:
        raise FeatureNotSupportedError(self._os_name, inspect.currentframe().f_code.co_name)

    def chown_to_non_sudo_if_needed(self, path: Path) -> None:
        raise FeatureNotSupportedError(self._os_name, inspect.currentframe().f_code.co_name)

    def get_homedir(self) -> Path:
        return Path.home()


def get_os_utils() -> OsUtils:
    return OsUtils.create()
