# GNOME Desktop Air Monitor - Main Coordinator
# Wires discovery, pollers, store, retention and the session bus together

import os
import signal
import sqlite3
import logging
import threading
import time
from dataclasses import dataclass
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from air_monitor.awair.client import AwairClient, DeviceIdentity, Resolved
from air_monitor.awair.discovery import DeviceDiscovery, DiscoveredDevice
from air_monitor.bus.dbus_service import BusCommand, DBusService
from air_monitor.core.poller import POLL_INTERVAL, DevicePoller
from air_monitor.core.retention import RetentionWorker
from air_monitor.database.db_manager import DatabaseManager, DeviceNotFound, StoreError
from air_monitor.database.migration import MigrationError
from air_monitor.database.models import KIND_UNKNOWN, Device, Reading
from air_monitor.utils import paths
from air_monitor.utils.locks import CancelToken, RWLock
from air_monitor.utils.settings import SettingsManager

logger = logging.getLogger(__name__)

INGEST_QUEUE_SIZE = 256
SHUTDOWN_TIMEOUT = 2 * 5  # twice the HTTP timeout


@dataclass
class DeviceHandle:
    """In-memory state for one discovered device. Persistent fields live in the store."""
    serial: str
    device_id: int
    address: str
    identity: DeviceIdentity
    poller: DevicePoller


class Coordinator:
    """
    Main coordinator for the air monitor backend.
    Manages:
    - Device discovery and one poller per device
    - Reading ingest into the store
    - Retention pruning
    - Session bus publishing and commands
    """

    def __init__(self, db: DatabaseManager, settings: SettingsManager,
                 client: Optional[AwairClient] = None,
                 bus: Optional[DBusService] = None,
                 discovery: Optional[DeviceDiscovery] = None,
                 retention: Optional[RetentionWorker] = None,
                 poll_interval: float = POLL_INTERVAL):
        self.db = db
        self.settings = settings
        self.client = client or AwairClient()
        self.poll_interval = poll_interval

        self.bus = bus or DBusService(
            payload_provider=self.selected_device_payload,
            visibility_provider=self.get_visibility,
        )
        self.discovery = discovery or DeviceDiscovery(
            self.client,
            on_discovered=self.on_device_discovered,
            on_refreshed=self.on_device_refreshed,
        )
        self.retention = retention or RetentionWorker(
            db, retention_days=lambda: self.settings.current.data_retention_period
        )

        # Device registry, keyed by serial
        self._devices: Dict[str, DeviceHandle] = {}
        self._devices_lock = RWLock()

        # Readings from every poller funnel through one ingest thread
        self._ingest_queue: Queue = Queue(maxsize=INGEST_QUEUE_SIZE)
        self._ingest_thread: Optional[threading.Thread] = None

        # UI collaboration (the GUI itself lives outside the core)
        self.ui_commands: Optional[Queue] = None
        self.ui_refresh_needed = threading.Event()
        self.editing_device_name = threading.Event()

        self._root = CancelToken()
        self._is_running = False
        self._stopped = threading.Event()
        self._shutdown_lock = threading.Lock()

    # ==================== LIFECYCLE ====================
    def start(self):
        """Start every background activity. The store must already be connected."""
        self.settings.ensure_saved()

        self._is_running = True
        self._stopped.clear()

        self._ingest_thread = threading.Thread(
            target=self._ingest_loop, args=(self._root.child(),), name='ingest', daemon=True
        )
        self._ingest_thread.start()

        if not self.bus.start():
            logger.warning("[BUS] Shell indicator will not receive updates")
        self.bus.start_heartbeat(self._root)

        self.discovery.start(self._root)
        self.retention.start(self._root)
        logger.info("[MAIN] Air monitor started")

    def shutdown(self):
        """
        Cancel everything and release resources.

        Order: pollers, discovery, retention, ingest, bus, store.
        """
        with self._shutdown_lock:
            if not self._is_running:
                return
            self._is_running = False

        logger.info("[MAIN] Shutting down air monitor...")
        self._root.cancel()

        with self._devices_lock.write():
            handles = list(self._devices.values())
        for handle in handles:
            handle.poller.stop()

        self.discovery.stop(timeout=SHUTDOWN_TIMEOUT)
        self.retention.stop(timeout=SHUTDOWN_TIMEOUT)

        if self._ingest_thread:
            self._ingest_thread.join(SHUTDOWN_TIMEOUT)
            self._ingest_thread = None

        self.bus.close(timeout=SHUTDOWN_TIMEOUT)
        self.client.close()
        self.db.disconnect()

        self._stopped.set()
        logger.info("[MAIN] Goodbye!")

    @property
    def is_running(self) -> bool:
        return self._is_running

    def run_forever(self):
        """Serve bus commands until Quit (or shutdown from elsewhere)."""
        while not self._stopped.is_set():
            try:
                command = self.bus.commands.get(timeout=0.5)
            except Empty:
                continue
            self.handle_command(command)

    def handle_command(self, command: BusCommand):
        if command is BusCommand.QUIT:
            self.shutdown()
            return

        if self.ui_commands is None:
            logger.debug(f"[MAIN] No UI attached, ignoring {command.name}")
            return
        try:
            self.ui_commands.put_nowait(command)
        except Full:
            logger.warning(f"[MAIN] UI command queue full, dropping {command.name}")

    def attach_ui(self, ui_commands: Queue):
        """Route OpenApp/OpenSettings to a GUI draining *ui_commands* on its own thread."""
        self.ui_commands = ui_commands

    # ==================== DISCOVERY ====================
    def on_device_discovered(self, discovered: DiscoveredDevice):
        """Persist a newly identified device and start polling it."""
        identity = discovered.identity
        kind = identity.kind if isinstance(identity, Resolved) else KIND_UNKNOWN
        firmware = identity.firmware if isinstance(identity, Resolved) else None

        device, created = self.db.upsert_device(
            serial_number=discovered.serial,
            name=discovered.hostname,
            ip_address=discovered.address,
            device_type=kind,
            firmware_version=firmware,
            seen_at=discovered.last_seen,
        )

        stored = False
        if discovered.reading is not None:
            stored = self._store_reading(device, discovered.reading)

        self._register(device, discovered)

        if stored and self.is_selected(device.serial_number):
            self.bus.emit_device_updated()
        self._mark_ui_dirty()

    def on_device_refreshed(self, discovered: DiscoveredDevice):
        """Known serial seen again: refresh address and last-seen only."""
        device, _ = self.db.upsert_device(
            serial_number=discovered.serial,
            name=discovered.hostname,
            ip_address=discovered.address,
            seen_at=discovered.last_seen,
        )

        with self._devices_lock.read():
            handle = self._devices.get(device.serial_number)
        if handle is None:
            self._register(device, discovered)
        else:
            handle.address = discovered.address
            handle.poller.address = discovered.address
        self._mark_ui_dirty()

    def _register(self, device: Device, discovered: DiscoveredDevice):
        with self._devices_lock.write():
            handle = self._devices.get(device.serial_number)
            if handle is None:
                poller = DevicePoller(
                    self.client, device.serial_number, discovered.address,
                    on_reading=self._enqueue_reading, interval=self.poll_interval,
                )
                handle = DeviceHandle(
                    serial=device.serial_number,
                    device_id=device.id,
                    address=discovered.address,
                    identity=discovered.identity,
                    poller=poller,
                )
                self._devices[device.serial_number] = handle
            else:
                handle.address = discovered.address
                handle.identity = discovered.identity
                handle.poller.address = discovered.address

        if not self._root.cancelled and not handle.poller.is_running:
            handle.poller.start(self._root)

    def forget_device(self, serial: str):
        """Stop polling a device and delete it with its readings."""
        with self._devices_lock.write():
            handle = self._devices.pop(serial, None)
        if handle:
            handle.poller.stop()
        self.discovery.forget(serial)

        device = self.db.get_device_by_serial(serial)
        if device is None:
            raise DeviceNotFound(f"Device not found: {serial}")
        self.db.delete_device(device.id)
        self._mark_ui_dirty()

    def devices(self) -> List[DeviceHandle]:
        with self._devices_lock.read():
            return list(self._devices.values())

    # ==================== INGEST ====================
    def _enqueue_reading(self, serial: str, reading: Reading):
        try:
            self._ingest_queue.put((serial, reading), timeout=self.poll_interval)
        except Full:
            logger.warning(f"[MAIN] Ingest queue full, dropping reading from {serial}")

    def _ingest_loop(self, token: CancelToken):
        while True:
            try:
                serial, reading = self._ingest_queue.get(timeout=0.5)
            except Empty:
                if token.cancelled:
                    break
                continue
            try:
                self.on_reading(serial, reading)
            except Exception as e:
                logger.error(f"[MAIN] Failed to ingest reading from {serial}: {e}", exc_info=True)
        logger.debug("[MAIN] Ingest loop stopped")

    def on_reading(self, serial: str, reading: Reading) -> bool:
        """
        Store a polled reading and notify the bus when it is the selected device.

        Returns:
            True if the reading was stored
        """
        device = self.db.get_device_by_serial(serial)
        if device is None:
            logger.warning(f"[MAIN] Reading for unknown device {serial}, dropping")
            return False

        if not self._store_reading(device, reading):
            return False

        if self.is_selected(serial):
            self.bus.emit_device_updated()
        self._mark_ui_dirty()
        return True

    def _store_reading(self, device: Device, reading: Reading) -> bool:
        now = time.time()
        if not reading.timestamp:
            reading.timestamp = now

        latest = self.db.latest_reading(device.id)
        if latest is not None and reading.timestamp < latest.timestamp:
            logger.debug(f"[MAIN] Stale reading from {device.serial_number} ({reading.timestamp} < {latest.timestamp}), dropping")
            return False

        try:
            self.db.record_reading(device.id, reading, seen_at=now)
        except sqlite3.Error as e:
            logger.error(f"[DB] Failed to store reading for {device.serial_number}: {e}")
            return False
        return True

    def _mark_ui_dirty(self):
        if not self.editing_device_name.is_set():
            self.ui_refresh_needed.set()

    # ==================== SELECTION & SETTINGS ====================
    def selected_device(self) -> Optional[Device]:
        """Status bar device from settings, else the first known device."""
        serial = self.settings.current.status_bar_device_serial_number
        device = self.db.get_device_by_serial(serial) if serial else None
        return device or self.db.first_device()

    def is_selected(self, serial: str) -> bool:
        device = self.selected_device()
        return device is not None and device.serial_number == serial

    def selected_device_payload(self) -> Dict[str, Any]:
        """Plain payload for GetSelectedDevice/DeviceUpdated; empty when nothing to show."""
        device = self.selected_device()
        if device is None:
            return {}
        reading = self.db.latest_reading(device.id)
        if reading is None:
            return {}
        return {
            'name': device.name,
            'score': reading.score,
            'temperature': reading.temperature,
            'humidity': reading.humidity,
            'co2': reading.co2,
            'voc': reading.voc,
            'pm25': reading.pm25,
            'timestamp': int(reading.timestamp),
        }

    def get_visibility(self) -> bool:
        return self.settings.current.show_shell_extension

    def rename_device(self, serial: str, name: str) -> Device:
        """
        Persist a user rename. Clears the editing flag either way.

        Raises:
            DeviceNotFound, DeviceNameTaken, ValueError
        """
        try:
            device = self.db.get_device_by_serial(serial)
            if device is None:
                raise DeviceNotFound(f"Device not found: {serial}")
            device = self.db.rename_device(device.id, name)
        finally:
            self.editing_device_name.clear()

        if self.is_selected(serial):
            self.bus.emit_device_updated()
        self._mark_ui_dirty()
        return device

    def select_status_bar_device(self, serial: Optional[str]):
        if serial and self.db.get_device_by_serial(serial) is None:
            raise DeviceNotFound(f"Device not found: {serial}")
        self.settings.set_status_bar_device(serial)
        self.bus.emit_device_updated()

    def set_show_shell_extension(self, visible: bool):
        if self.settings.set_show_shell_extension(visible):
            self.bus.emit_visibility_changed(visible)

    def set_retention_days(self, days: int) -> int:
        """Store a new horizon and prune right away. Returns rows deleted."""
        self.settings.set_data_retention_period(days)
        return self.retention.prune()

    def database_size(self) -> int:
        return self.db.get_size()


# ==================== CONVENIENCE FUNCTIONS ====================
def create_coordinator(db_path: Optional[str] = None, settings_path: Optional[str] = None) -> Coordinator:
    """
    Build a coordinator with a connected store.

    Raises:
        StoreError, MigrationError: Startup must abort
    """
    db = DatabaseManager(db_path or paths.db_path())
    db.connect()
    settings = SettingsManager(settings_path or paths.settings_path())
    return Coordinator(db, settings)


def run(db_path: Optional[str] = None) -> int:
    """Run the backend until Quit over the bus, SIGINT or SIGTERM."""
    load_dotenv()
    load_dotenv(os.path.join(paths.config_dir(), '.env'))

    try:
        coordinator = create_coordinator(db_path)
    except (StoreError, MigrationError) as e:
        logger.error(f"[MAIN] Failed to open database: {e}")
        return 1

    def request_quit(signum, frame):
        logger.info(f"[MAIN] Received signal {signum}")
        coordinator.handle_command(BusCommand.QUIT)

    signal.signal(signal.SIGINT, request_quit)
    signal.signal(signal.SIGTERM, request_quit)

    coordinator.start()
    try:
        coordinator.run_forever()
    finally:
        coordinator.shutdown()
    return 0
