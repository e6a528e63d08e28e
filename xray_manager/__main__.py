"""
Entry point

    python -m xray_manager [settings-file | --config settings-file]

Exit codes: 0 normal stop, 1 startup failure, 2 fatal runtime error.
"""

import argparse
import logging
import signal
import sys

from . import __version__
from .errors import ConfigInvalid, XrayManagerError
from .log import setup_logging
from .settings import DEFAULT_SETTINGS_PATH, load_settings

logger = logging.getLogger('xray_manager')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='xray-manager',
                                     description='Telegram bot for switching xray subscription servers')
    parser.add_argument('config', nargs='?', default=None,
                        help=f'settings file (default: {DEFAULT_SETTINGS_PATH})')
    parser.add_argument('-c', '--config', dest='config_option', metavar='PATH',
                        help='settings file, same as the positional argument')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    args = parser.parse_args(argv)
    if args.config and args.config_option and args.config != args.config_option:
        parser.error('settings file given twice')
    args.config = args.config_option or args.config or DEFAULT_SETTINGS_PATH
    return args


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging('info')

    try:
        settings = load_settings(args.config)
    except ConfigInvalid as e:
        logger.error("Invalid settings: %s", e)
        return 1

    setup_logging(settings.log_level, settings.log_file)

    from .service import Service

    try:
        service = Service(settings, args.config)
        service.start()
    except (XrayManagerError, OSError) as e:
        logger.critical("Startup failed: %s", e)
        return 1

    def handle_stop(signum, frame):
        logger.info("Received %s", signal.Signals(signum).name)
        service.cancel.set()

    def handle_reload(signum, frame):
        try:
            service.reload()
        except XrayManagerError as e:
            logger.error("Reload failed: %s", e)

    signal.signal(signal.SIGINT, handle_stop)
    signal.signal(signal.SIGTERM, handle_stop)
    if hasattr(signal, 'SIGHUP'):
        signal.signal(signal.SIGHUP, handle_reload)

    service.wait()
    service.stop()
    return service.exit_code


if __name__ == '__main__':
    sys.exit(main())
