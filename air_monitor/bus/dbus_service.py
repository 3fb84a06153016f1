# GNOME Desktop Air Monitor - Session Bus Service
# Publishes the selected device to the shell indicator and accepts its commands

import asyncio
import logging
import threading
from enum import Enum
from queue import Full, Queue
from typing import Any, Callable, Dict, Optional

from dbus_fast import BusType, NameFlag, RequestNameReply, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.service import ServiceInterface, method, signal

from air_monitor.utils.locks import CancelToken

logger = logging.getLogger(__name__)

BUS_NAME = 'io.stanko.AirMonitor'
OBJECT_PATH = '/io/stanko/AirMonitor'
INTERFACE_NAME = 'io.stanko.AirMonitor'

HEARTBEAT_INTERVAL = 30  # seconds
CONNECT_TIMEOUT = 5      # seconds

# Keys of the a{sv} device payload and their variant types
PAYLOAD_SIGNATURES = {
    'name': 's',
    'score': 'd',
    'temperature': 'd',
    'humidity': 'd',
    'co2': 'd',
    'voc': 'd',
    'pm25': 'd',
    'timestamp': 'x',
}


class BusCommand(Enum):
    OPEN_INDEX = 'open_index'
    OPEN_SETTINGS = 'open_settings'
    QUIT = 'quit'


class BusUnavailable(Exception):
    """Session bus missing or well-known name already owned."""


def to_variants(payload: Optional[Dict[str, Any]]) -> Dict[str, Variant]:
    """
    Convert a plain device payload to a{sv}.

    Any missing field yields an empty map.
    """
    if not payload:
        return {}

    variants = {}
    for key, signature in PAYLOAD_SIGNATURES.items():
        value = payload.get(key)
        if value is None:
            return {}
        if signature == 'd':
            value = float(value)
        elif signature == 'x':
            value = int(value)
        else:
            value = str(value)
        variants[key] = Variant(signature, value)
    return variants


class AirMonitorInterface(ServiceInterface):
    """
    io.stanko.AirMonitor

    Methods only read state through the providers or post a BusCommand;
    the interface never touches UI objects.
    """

    def __init__(self, payload_provider: Callable[[], Optional[Dict[str, Any]]],
                 visibility_provider: Callable[[], bool], commands: Queue):
        super().__init__(INTERFACE_NAME)
        self._payload_provider = payload_provider
        self._visibility_provider = visibility_provider
        self._commands = commands

    def selected_device(self) -> Dict[str, Variant]:
        try:
            return to_variants(self._payload_provider())
        except Exception as e:
            logger.error(f"[BUS] Failed to get selected device: {e}")
            return {}

    async def load_selected_device(self) -> Dict[str, Variant]:
        """selected_device() on a worker thread so store access never blocks the bus loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.selected_device)

    def _post(self, command: BusCommand):
        try:
            self._commands.put_nowait(command)
            logger.debug(f"[BUS] Queued command {command.name}")
        except Full:
            logger.warning(f"[BUS] Command queue full, dropping {command.name}")

    @method()
    async def GetSelectedDevice(self) -> 'a{sv}':
        return await self.load_selected_device()

    @method()
    def OpenApp(self):
        self._post(BusCommand.OPEN_INDEX)

    @method()
    def OpenSettings(self):
        self._post(BusCommand.OPEN_SETTINGS)

    @method()
    def Quit(self):
        logger.info("[BUS] Quit requested over the bus")
        self._post(BusCommand.QUIT)

    @method()
    def GetVisibility(self) -> 'b':
        return bool(self._visibility_provider())

    @signal()
    def DeviceUpdated(self, device) -> 'a{sv}':
        return device

    @signal()
    def VisibilityChanged(self, visible) -> 'b':
        return visible


class DBusService:
    """
    Runs the bus connection on its own asyncio loop thread.

    When the session bus is unavailable the service keeps working
    in-process: commands still queue up and get_visibility() still answers,
    signals are simply not sent.
    """

    def __init__(self, payload_provider: Callable[[], Optional[Dict[str, Any]]],
                 visibility_provider: Callable[[], bool],
                 heartbeat_interval: float = HEARTBEAT_INTERVAL):
        self.commands: Queue = Queue(maxsize=64)
        self.interface = AirMonitorInterface(payload_provider, visibility_provider, self.commands)
        self.heartbeat_interval = heartbeat_interval
        self.is_connected = False

        self._visibility_provider = visibility_provider
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._bus: Optional[MessageBus] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._heartbeat_token: Optional[CancelToken] = None
        self._heartbeat_thread: Optional[threading.Thread] = None

    # ==================== CONNECTION ====================
    def start(self, timeout: float = CONNECT_TIMEOUT) -> bool:
        """
        Connect to the session bus and claim io.stanko.AirMonitor.

        Returns:
            True if the name was acquired
        """
        self._ready.clear()
        self._thread = threading.Thread(target=self._run_loop, name='dbus', daemon=True)
        self._thread.start()
        self._ready.wait(timeout)

        if not self.is_connected:
            logger.warning("[BUS] Running without session bus")
        return self.is_connected

    def _run_loop(self):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            try:
                loop.run_until_complete(self._connect())
                self.is_connected = True
                logger.info(f"[BUS] Exported {OBJECT_PATH} as {BUS_NAME}")
            except Exception as e:
                logger.error(f"[BUS] Failed to acquire session bus: {e}")
                return
            finally:
                self._ready.set()
            loop.run_forever()
        finally:
            self.is_connected = False
            self._loop = None
            loop.close()

    async def _connect(self):
        bus = await MessageBus(bus_type=BusType.SESSION).connect()
        bus.export(OBJECT_PATH, self.interface)
        reply = await bus.request_name(BUS_NAME, NameFlag.DO_NOT_QUEUE)
        if reply != RequestNameReply.PRIMARY_OWNER:
            bus.disconnect()
            raise BusUnavailable(f"{BUS_NAME} is already owned by another process")
        self._bus = bus

    def close(self, timeout: Optional[float] = None):
        """Stop the heartbeat, release the name and stop the loop thread."""
        self.stop_heartbeat()

        loop = self._loop
        if loop is not None:
            loop.call_soon_threadsafe(self._shutdown_on_loop)
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
        logger.info("[BUS] Session bus connection closed")

    def _shutdown_on_loop(self):
        if self._bus is not None:
            self._bus.disconnect()
            self._bus = None
        asyncio.get_event_loop().stop()

    # ==================== SIGNALS ====================
    def _call_on_loop(self, fn, *args) -> bool:
        loop = self._loop
        if not self.is_connected or loop is None:
            return False
        loop.call_soon_threadsafe(fn, *args)
        return True

    def emit_device_updated(self) -> bool:
        """Emit DeviceUpdated with the current selection. False if nothing was sent."""
        payload = self.interface.selected_device()
        if not payload:
            return False
        return self._call_on_loop(self.interface.DeviceUpdated, payload)

    def emit_visibility_changed(self, visible: Optional[bool] = None) -> bool:
        visible = self._visibility_provider() if visible is None else visible
        logger.debug(f"[BUS] Emitting VisibilityChanged({visible})")
        return self._call_on_loop(self.interface.VisibilityChanged, bool(visible))

    def get_visibility(self) -> bool:
        return bool(self._visibility_provider())

    # ==================== HEARTBEAT ====================
    def start_heartbeat(self, parent: Optional[CancelToken] = None):
        """Re-send DeviceUpdated every heartbeat_interval seconds."""
        self.stop_heartbeat()
        self._heartbeat_token = parent.child() if parent else CancelToken()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop, args=(self._heartbeat_token,), name='dbus-heartbeat', daemon=True
        )
        self._heartbeat_thread.start()

    def stop_heartbeat(self):
        if self._heartbeat_token:
            self._heartbeat_token.cancel()
        if self._heartbeat_thread and self._heartbeat_thread is not threading.current_thread():
            self._heartbeat_thread.join()
        self._heartbeat_token = None
        self._heartbeat_thread = None

    def _heartbeat_loop(self, token: CancelToken):
        while not token.wait(self.heartbeat_interval):
            try:
                self.emit_device_updated()
            except Exception as e:
                logger.error(f"[BUS] Failed to emit device update: {e}")
