import datetime
import json
import logging
import os
import sys
from typing import Optional

import click
import coloredlogs
from pygments import formatters, highlight, lexers

from pylockdown.lockdown import LockdownClient, create_using_usbmux
from pylockdown.plist import Uid

UDID_ENV_VAR = 'PYLOCKDOWN_UDID'
USBMUX_ENV_VAR = 'PYLOCKDOWN_USBMUX'
USBMUX_OPTION_HELP = 'Address of the usbmuxd daemon (unix socket path or HOST:PORT). ' \
                     'Defaults to the platform usbmuxd if omitted.'

# Global options
COLORED_OUTPUT: bool = True


def default_json_encoder(obj):
    if isinstance(obj, bytes):
        return f'<{obj.hex()}>'
    if isinstance(obj, datetime.datetime):
        return str(obj)
    if isinstance(obj, Uid):
        return {'CF$UID': obj.value}
    raise TypeError()


def print_json(buf, colored: Optional[bool] = None, default=default_json_encoder) -> str:
    if colored is None:
        colored = user_requested_colored_output()
    formatted_json = json.dumps(buf, sort_keys=True, indent=4, default=default)
    if colored:
        colorful_json = highlight(formatted_json, lexers.JsonLexer(),
                                  formatters.Terminal256Formatter(style='stata-dark'))
        print(colorful_json)
        return colorful_json
    print(formatted_json)
    return formatted_json


def set_verbosity(ctx, param, value) -> None:
    coloredlogs.set_level(logging.INFO - (value * 10))


def set_color_flag(ctx, param, value) -> None:
    global COLORED_OUTPUT
    COLORED_OUTPUT = value


def isatty() -> bool:
    return os.isatty(sys.stdout.fileno())


def user_requested_colored_output() -> bool:
    return COLORED_OUTPUT and isatty()


class BaseCommand(click.Command):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.params[:0] = [
            click.Option(('verbosity', '-v', '--verbose'), count=True, callback=set_verbosity, expose_value=False),
            click.Option(('color', '--color/--no-color'), default=True, callback=set_color_flag, is_flag=True,
                         expose_value=False, help='colorize output'),
        ]


class LockdownCommand(BaseCommand):
    """ command receiving a ``lockdown`` argument, connected over usbmuxd """
    autopair = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.usbmux_address = None
        self.params[:0] = [
            click.Option(('usbmux', '--usbmux'), callback=self.usbmux_address_callback, expose_value=False,
                         envvar=USBMUX_ENV_VAR, is_eager=True, help=USBMUX_OPTION_HELP),
            click.Option(('lockdown', '--udid'), envvar=UDID_ENV_VAR, callback=self.udid,
                         help=f'Device unique identifier. You may pass {UDID_ENV_VAR} environment variable to pass '
                              f'this option as well'),
        ]

    def usbmux_address_callback(self, ctx, param, value: Optional[str]) -> None:
        self.usbmux_address = value

    def udid(self, ctx, param, value: Optional[str]) -> Optional[LockdownClient]:
        if ctx.resilient_parsing:
            # shell completion
            return None
        return create_using_usbmux(serial=value, autopair=self.autopair, usbmux_address=self.usbmux_address)


class NoAutoPairLockdownCommand(LockdownCommand):
    autopair = False
