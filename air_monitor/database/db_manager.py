# GNOME Desktop Air Monitor - Database Manager
# Single-file SQLite store for devices and their readings

import os
import time
import itertools
import sqlite3
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Tuple, TypeVar

from .migration import MIGRATIONS_DIR, MigrationError, Migrator
from .models import DEVICE_KINDS, KIND_UNKNOWN, Device, Reading

logger = logging.getLogger(__name__)

T = TypeVar('T')


class StoreError(Exception):
    """Base class for store failures."""


class DeviceNotFound(StoreError):
    pass


class DeviceNameTaken(StoreError):
    pass


def _is_locked(error: sqlite3.Error) -> bool:
    return isinstance(error, sqlite3.OperationalError) and 'locked' in str(error).lower()


def _candidate_names(name: str, serial_number: str) -> Iterator[str]:
    """Hostname first, then the serial, then serial-2, serial-3, ..."""
    if name:
        yield name
    yield serial_number
    for n in itertools.count(2):
        yield f"{serial_number}-{n}"


def format_file_size(size: int) -> str:
    """Human readable byte count, base 1024 (e.g. '512 B', '1.5 KB')."""
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}B"


class DatabaseManager:
    """
    Owns the SQLite connection shared by every thread.

    The connection runs in autocommit mode; writes are grouped into short
    explicit transactions. Access is serialised internally so callers never
    lock around it.
    """

    def __init__(self, db_path: str, migrations_dir: str = MIGRATIONS_DIR):
        self.db_path = db_path
        self.migrations_dir = migrations_dir
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def _ensure_data_directory(self):
        """Create data directory if it doesn't exist."""
        if self.db_path == ':memory:':
            return
        data_dir = os.path.dirname(self.db_path)
        if data_dir and not os.path.exists(data_dir):
            os.makedirs(data_dir, mode=0o755, exist_ok=True)
            logger.info(f"[DB] Created data directory: {data_dir}")

    def connect(self) -> int:
        """
        Open the database and apply pending migrations.

        Returns:
            Schema version after migrating

        Raises:
            StoreError: If the file cannot be opened
            MigrationError: If a migration fails (startup must abort)
        """
        self._ensure_data_directory()
        try:
            conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,  # Shared across poller threads
                timeout=10.0,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ':memory:':
                conn.execute("PRAGMA journal_mode = WAL")
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open database {self.db_path}: {e}") from e

        try:
            with self._lock:
                version = Migrator(conn, self.migrations_dir).migrate()
        except MigrationError:
            conn.close()
            raise

        self.conn = conn
        logger.info(f"[DB] Connected to database: {self.db_path} (schema v{version})")
        return version

    def disconnect(self):
        """Close database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.info("[DB] Disconnected from database")

    def _require_conn(self) -> sqlite3.Connection:
        if not self.conn:
            raise StoreError("Database is not connected")
        return self.conn

    @contextmanager
    def transaction(self):
        """Run the block in one IMMEDIATE transaction."""
        with self._lock:
            conn = self._require_conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def _write(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run *operation* in a transaction, retrying once if the file is locked."""
        try:
            with self.transaction() as conn:
                return operation(conn)
        except sqlite3.Error as e:
            if not _is_locked(e):
                raise
            logger.warning(f"[DB] Write conflict ({e}), retrying once")
        with self.transaction() as conn:
            return operation(conn)

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._require_conn().execute(sql, params).fetchall()

    def current_version(self) -> int:
        with self._lock:
            return Migrator(self._require_conn(), self.migrations_dir).current_version()

    def get_size(self) -> int:
        """On-disk size of the database file in bytes."""
        if self.db_path == ':memory:':
            return 0
        try:
            return os.path.getsize(self.db_path)
        except OSError:
            return 0

    # ==================== DEVICES ====================
    def upsert_device(self, serial_number: str, name: str, ip_address: str,
                      device_type: str = KIND_UNKNOWN, firmware_version: Optional[str] = None,
                      seen_at: Optional[float] = None) -> Tuple[Device, bool]:
        """
        Insert a device keyed by serial, or refresh its address and last-seen.

        The stored name is never overwritten here; renames are explicit.

        Returns:
            (device, created)
        """
        if not serial_number:
            raise ValueError("serial_number must not be empty")
        if device_type not in DEVICE_KINDS:
            device_type = KIND_UNKNOWN
        seen_at = time.time() if seen_at is None else seen_at

        def operation(conn: sqlite3.Connection) -> Tuple[Device, bool]:
            row = conn.execute(
                "SELECT * FROM devices WHERE serial_number = ?", (serial_number,)
            ).fetchone()

            if row:
                conn.execute("""
                    UPDATE devices
                    SET ip_address = ?, last_seen = ?,
                        firmware_version = COALESCE(?, firmware_version),
                        updated_at = ?
                    WHERE id = ?
                """, (ip_address, seen_at, firmware_version, time.time(), row['id']))
                created = False
                device_id = row['id']
            else:
                for display_name in _candidate_names(name, serial_number):
                    try:
                        cursor = conn.execute("""
                            INSERT INTO devices (name, ip_address, device_type, serial_number, last_seen, firmware_version)
                            VALUES (?, ?, ?, ?, ?, ?)
                        """, (display_name, ip_address, device_type, serial_number, seen_at, firmware_version))
                        break
                    except sqlite3.IntegrityError:
                        # Another device already carries this name
                        logger.warning(f"[DB] Name '{display_name}' taken for device {serial_number}, trying another")
                created = True
                device_id = cursor.lastrowid

            device_row = conn.execute("SELECT * FROM devices WHERE id = ?", (device_id,)).fetchone()
            return Device.from_row(device_row), created

        device, created = self._write(operation)
        if created:
            logger.info(f"[DB] Added device {device.name} ({device.serial_number}) at {device.ip_address}")
        else:
            logger.debug(f"[DB] Refreshed device {device.serial_number} at {device.ip_address}")
        return device, created

    def rename_device(self, device_id: int, name: str) -> Device:
        """
        Rename a device.

        Raises:
            ValueError: If the name is empty
            DeviceNameTaken: If another device already uses the name
            DeviceNotFound: If there is no such device
        """
        name = (name or '').strip()
        if not name:
            raise ValueError("Device name must not be empty")

        def operation(conn: sqlite3.Connection):
            try:
                cursor = conn.execute(
                    "UPDATE devices SET name = ?, updated_at = ? WHERE id = ?",
                    (name, time.time(), device_id)
                )
            except sqlite3.IntegrityError as e:
                raise DeviceNameTaken(f"Device name already in use: {name}") from e
            if cursor.rowcount == 0:
                raise DeviceNotFound(f"Device not found: {device_id}")
            return Device.from_row(
                conn.execute("SELECT * FROM devices WHERE id = ?", (device_id,)).fetchone()
            )

        device = self._write(operation)
        logger.info(f"[DB] Renamed device {device.serial_number} to '{name}'")
        return device

    def delete_device(self, device_id: int) -> bool:
        """Delete a device and (by cascade) its readings."""
        deleted = self._write(lambda conn: conn.execute(
            "DELETE FROM devices WHERE id = ?", (device_id,)
        ).rowcount)
        if deleted:
            logger.info(f"[DB] Deleted device {device_id}")
        return bool(deleted)

    def get_device(self, device_id: int) -> Optional[Device]:
        rows = self._query("SELECT * FROM devices WHERE id = ?", (device_id,))
        return Device.from_row(rows[0]) if rows else None

    def get_device_by_serial(self, serial_number: str) -> Optional[Device]:
        rows = self._query("SELECT * FROM devices WHERE serial_number = ?", (serial_number,))
        return Device.from_row(rows[0]) if rows else None

    def resolve_device(self, identifier: str) -> Optional[Device]:
        """Find a device by numeric id, falling back to an exact serial match."""
        identifier = identifier.strip()
        if identifier.isdigit():
            device = self.get_device(int(identifier))
            if device:
                return device
        return self.get_device_by_serial(identifier)

    def list_devices(self) -> List[Device]:
        return [Device.from_row(row) for row in self._query("SELECT * FROM devices ORDER BY id")]

    def first_device(self) -> Optional[Device]:
        rows = self._query("SELECT * FROM devices ORDER BY id LIMIT 1")
        return Device.from_row(rows[0]) if rows else None

    # ==================== READINGS ====================
    def insert_reading(self, device_id: int, reading: Reading) -> int:
        return self._write(lambda conn: self._insert_reading(conn, device_id, reading))

    @staticmethod
    def _insert_reading(conn: sqlite3.Connection, device_id: int, reading: Reading) -> int:
        cursor = conn.execute("""
            INSERT INTO readings (device_id, timestamp, temperature, humidity, co2, voc, pm25, score)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (device_id, reading.timestamp, reading.temperature, reading.humidity,
              reading.co2, reading.voc, reading.pm25, reading.score))
        return cursor.lastrowid

    def record_reading(self, device_id: int, reading: Reading, seen_at: Optional[float] = None) -> int:
        """Mark the device as seen and store the reading in one transaction."""
        seen_at = time.time() if seen_at is None else seen_at

        def operation(conn: sqlite3.Connection) -> int:
            conn.execute("UPDATE devices SET last_seen = ? WHERE id = ?", (seen_at, device_id))
            return self._insert_reading(conn, device_id, reading)

        row_id = self._write(operation)
        logger.debug(f"[DB] Stored reading for device {device_id}: score={reading.score}")
        return row_id

    def latest_reading(self, device_id: int) -> Optional[Reading]:
        rows = self._query("""
            SELECT * FROM readings
            WHERE device_id = ?
            ORDER BY timestamp DESC
            LIMIT 1
        """, (device_id,))
        return Reading.from_row(rows[0]) if rows else None

    def readings_between(self, device_id: int, start: float, end: float) -> List[Reading]:
        """Readings of one device with start <= timestamp <= end, oldest first."""
        rows = self._query("""
            SELECT * FROM readings
            WHERE device_id = ? AND timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp ASC
        """, (device_id, start, end))
        return [Reading.from_row(row) for row in rows]

    def devices_with_latest_reading(self) -> List[Tuple[Device, Optional[Reading]]]:
        return [(device, self.latest_reading(device.id)) for device in self.list_devices()]

    def count_readings(self, device_id: Optional[int] = None) -> int:
        if device_id is None:
            rows = self._query("SELECT COUNT(*) FROM readings")
        else:
            rows = self._query("SELECT COUNT(*) FROM readings WHERE device_id = ?", (device_id,))
        return rows[0][0]

    def delete_readings_older_than(self, cutoff: float) -> int:
        """Delete readings with timestamp < cutoff. Returns the number removed."""
        return self._write(lambda conn: conn.execute(
            "DELETE FROM readings WHERE timestamp < ?", (cutoff,)
        ).rowcount)

    # ==================== CONTEXT MANAGER ====================
    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

