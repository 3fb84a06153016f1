# GNOME Desktop Air Monitor - Command Line Interface
# Read-only queries against the local store; no subcommand runs the backend

import sys
import json
import logging
import argparse
from contextlib import contextmanager
from typing import List, Optional, TextIO

from dotenv import load_dotenv

from air_monitor.core.version import APP_NAME, FULL_VERSION
from air_monitor.database.db_manager import DatabaseManager, StoreError
from air_monitor.database.migration import MigrationError
from air_monitor.database.models import iso_utc
from air_monitor.utils import paths

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class CommandError(Exception):
    """Reported on stderr with exit code 1."""


@contextmanager
def open_store(db_path: Optional[str] = None):
    """Connected store for the duration of one command."""
    db = DatabaseManager(db_path or paths.db_path())
    logger.debug(f"[CLI] Opening database {db.db_path}")
    try:
        db.connect()
    except (StoreError, MigrationError) as e:
        raise CommandError(f"failed to open database: {e}") from e
    try:
        yield db
    finally:
        db.disconnect()


# ==================== COMMANDS ====================
def device_list(args, out: Optional[TextIO] = None) -> int:
    """Print every known device as an aligned table."""
    with open_store(args.db_path) as db:
        devices = db.list_devices()

    if not devices:
        print("No devices found.", file=out)
        return 0

    rows = [('ID', 'NAME', 'SERIAL', 'IP ADDRESS', 'LAST SEEN')]
    for device in devices:
        rows.append((
            str(device.id),
            device.name,
            device.serial_number,
            device.ip_address or '',
            iso_utc(device.last_seen) if device.last_seen else 'never',
        ))

    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    for row in rows:
        line = '\t'.join(cell.ljust(width) for cell, width in zip(row, widths))
        print(line.rstrip(), file=out)
    return 0


def measurement_get(args, out: Optional[TextIO] = None) -> int:
    """Print the latest reading of one device as JSON."""
    with open_store(args.db_path) as db:
        device = db.resolve_device(args.device)
        if device is None:
            raise CommandError(f"device not found: {args.device}")
        reading = db.latest_reading(device.id)

    if reading is None:
        raise CommandError(f"no measurements for device {device.name} ({device.serial_number})")

    print(json.dumps({
        'device': device.to_dict(),
        'measurement': reading.to_dict(),
    }, indent=2), file=out)
    return 0


def version(args, out: Optional[TextIO] = None) -> int:
    print(FULL_VERSION, file=out)
    return 0


def run_backend(args, out: Optional[TextIO] = None) -> int:
    from air_monitor.main import run
    return run(db_path=args.db_path)


# ==================== PARSER ====================
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description='Monitor Awair air quality sensors on the local network.',
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='enable debug logging')
    parser.add_argument('--db-path', default=None,
                        help=f'database file (default: ${paths.DB_PATH_ENV} or the data directory)')
    parser.set_defaults(handler=run_backend)

    commands = parser.add_subparsers(dest='command', metavar='COMMAND')

    device = commands.add_parser('device', aliases=['d', 'devices'], help='manage devices')
    device_commands = device.add_subparsers(dest='action', metavar='ACTION', required=True)
    listing = device_commands.add_parser('list', aliases=['ls'], help='list known devices')
    listing.set_defaults(handler=device_list)

    measurement = commands.add_parser('measurement', aliases=['m', 'measurements'], help='query measurements')
    measurement_commands = measurement.add_subparsers(dest='action', metavar='ACTION', required=True)
    get = measurement_commands.add_parser('get', help='latest measurement of a device')
    get.add_argument('device', help='device id or serial number')
    get.set_defaults(handler=measurement_get)

    show_version = commands.add_parser('version', help='print version and exit')
    show_version.set_defaults(handler=version)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    if args.handler is not run_backend and not args.verbose:
        # Queries print results only
        logging.getLogger('air_monitor').setLevel(logging.WARNING)

    try:
        return args.handler(args)
    except CommandError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 1


if __name__ == '__main__':
    sys.exit(main())
