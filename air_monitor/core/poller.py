# GNOME Desktop Air Monitor - Measurement Poller
# One background thread per device fetching /air-data/latest on a fixed tick

import time
import logging
import threading
from typing import Callable, Optional

from air_monitor.awair.client import AwairClient, AwairError
from air_monitor.database.models import Reading
from air_monitor.utils.locks import CancelToken

logger = logging.getLogger(__name__)

POLL_INTERVAL = 10  # seconds


class DevicePoller:
    """
    Polls a single device and hands every reading to a callback.

    Fetches never overlap, so callbacks for one device arrive in tick order.
    Errors are logged and the loop keeps going; only stop() ends it.

    Args:
        client: Shared AwairClient
        serial: Device serial passed back with each reading
        address: Current network address (updated on rediscovery)
        on_reading: Called as on_reading(serial, reading) from the poll thread
    """

    def __init__(self, client: AwairClient, serial: str, address: str,
                 on_reading: Callable[[str, Reading], None], interval: float = POLL_INTERVAL):
        self.client = client
        self.serial = serial
        self.on_reading = on_reading
        self.interval = interval
        self._address = address
        self._address_lock = threading.Lock()
        self._token: Optional[CancelToken] = None
        self._thread: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()

    @property
    def address(self) -> str:
        with self._address_lock:
            return self._address

    @address.setter
    def address(self, value: str):
        with self._address_lock:
            if value != self._address:
                logger.info(f"[POLL] {self.serial} moved from {self._address} to {value}")
            self._address = value

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, parent: Optional[CancelToken] = None):
        """Start polling; a running loop is stopped first."""
        with self._lifecycle_lock:
            self._stop_locked()
            self._token = parent.child() if parent else CancelToken()
            self._thread = threading.Thread(
                target=self._poll_loop, args=(self._token,),
                name=f"poller-{self.serial}", daemon=True
            )
            self._thread.start()
        logger.info(f"[POLL] Started polling {self.serial} at {self.address}")

    def stop(self):
        """Stop polling. Returns once the poll thread has exited."""
        with self._lifecycle_lock:
            self._stop_locked()

    def _stop_locked(self):
        if self._token is None:
            return
        logger.debug(f"[POLL] Stopping polling for {self.serial}")
        self._token.cancel()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join()
        self._token = None
        self._thread = None
        logger.info(f"[POLL] Stopped polling {self.serial}")

    def poll_once(self) -> Optional[Reading]:
        """Fetch one reading; None on any device error."""
        address = self.address
        try:
            return self.client.fetch_latest(address)
        except AwairError as e:
            logger.error(f"[POLL] Failed to fetch reading from {self.serial} at {address}: {e}")
            return None

    def _poll_loop(self, token: CancelToken):
        next_tick = time.monotonic() + self.interval
        while not token.wait(max(0.0, next_tick - time.monotonic())):
            next_tick += self.interval
            if next_tick < time.monotonic():
                # Fell behind (slow device); skip missed ticks
                next_tick = time.monotonic() + self.interval

            reading = self.poll_once()
            if reading is None or token.cancelled:
                continue

            try:
                self.on_reading(self.serial, reading)
            except Exception as e:
                logger.error(f"[POLL] Reading callback failed for {self.serial}: {e}", exc_info=True)
