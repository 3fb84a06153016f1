"""
mDNS Device Discovery for Awair sensors

Browses _http._tcp.local. with zeroconf, keeps hosts whose name starts with
"awair-", asks each one for its identity over HTTP and reports every newly
identified serial once. Known serials only get their address refreshed.

Requirements:
    - Python zeroconf library
    - Multicast traffic allowed on the local network
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from queue import Empty, Queue
from typing import Callable, Dict, List, Optional

from zeroconf import IPVersion, ServiceBrowser, ServiceListener, Zeroconf

from air_monitor.awair.client import AwairClient, AwairError, DeviceIdentity, Resolved, Unresolved
from air_monitor.database.models import Reading
from air_monitor.utils.locks import CancelToken

logger = logging.getLogger(__name__)

SERVICE_TYPE = '_http._tcp.local.'
HOSTNAME_PREFIX = 'awair-'
DISCOVERY_INTERVAL = 20  # seconds between pass starts
DISCOVERY_TIMEOUT = 10   # seconds per browse
RESOLVE_TIMEOUT = 2      # seconds per service info lookup
MAX_IDENTIFY_WORKERS = 8


class DiscoveryState(Enum):
    IDLE = 'idle'
    BROWSING = 'browsing'
    RESOLVING = 'resolving'
    EMITTING = 'emitting'
    CANCELLED = 'cancelled'


def is_awair_hostname(hostname: str) -> bool:
    return hostname[:len(HOSTNAME_PREFIX)].lower() == HOSTNAME_PREFIX


def short_hostname(server: str) -> str:
    """'awair-elem-1a2b.local.' -> 'awair-elem-1a2b'"""
    name = server.rstrip('.')
    if name.lower().endswith('.local'):
        name = name[:-len('.local')]
    return name


@dataclass(frozen=True)
class Candidate:
    hostname: str
    address: str


@dataclass
class DiscoveredDevice:
    hostname: str
    address: str
    identity: DeviceIdentity = field(default_factory=Unresolved)
    reading: Optional[Reading] = None
    last_seen: float = field(default_factory=time.time)

    @property
    def serial(self) -> str:
        if isinstance(self.identity, Resolved):
            return self.identity.serial
        return self.hostname


class _BrowseListener(ServiceListener):
    """Collects service names; lookups happen on the browsing thread."""

    def __init__(self):
        self.names: Queue = Queue()

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self.names.put(name)

    def update_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self.names.put(name)

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        pass


class DeviceDiscovery:
    """
    Periodic Awair discovery.

    Args:
        client: AwairClient used to identify candidates
        on_discovered: Called once per newly identified serial
        on_refreshed: Called when a known serial is seen again
    """

    def __init__(self, client: AwairClient,
                 on_discovered: Callable[[DiscoveredDevice], None],
                 on_refreshed: Optional[Callable[[DiscoveredDevice], None]] = None,
                 interval: float = DISCOVERY_INTERVAL,
                 browse_timeout: float = DISCOVERY_TIMEOUT,
                 zeroconf_factory: Callable[[], Zeroconf] = None):
        self.client = client
        self.on_discovered = on_discovered
        self.on_refreshed = on_refreshed
        self.interval = interval
        self.browse_timeout = browse_timeout
        self.zeroconf_factory = zeroconf_factory or (lambda: Zeroconf(ip_version=IPVersion.V4Only))

        self.state = DiscoveryState.IDLE
        self._known: Dict[str, DiscoveredDevice] = {}
        self._known_lock = threading.Lock()
        self._token: Optional[CancelToken] = None
        self._thread: Optional[threading.Thread] = None

    # ==================== LIFECYCLE ====================
    def start(self, parent: Optional[CancelToken] = None):
        """Start the discovery loop (restarts it if already running)."""
        self.stop()
        self._token = parent.child() if parent else CancelToken()
        self.state = DiscoveryState.IDLE
        self._thread = threading.Thread(
            target=self._discovery_loop, args=(self._token,), name='awair-discovery', daemon=True
        )
        self._thread.start()
        logger.info("[mDNS] Started device discovery")

    def stop(self, timeout: Optional[float] = None):
        if self._token:
            logger.debug("[mDNS] Stopping device discovery")
            self._token.cancel()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
        self._token = None

    def devices(self) -> List[DiscoveredDevice]:
        with self._known_lock:
            return list(self._known.values())

    def _discovery_loop(self, token: CancelToken):
        logger.info("[mDNS] Discovery loop started")
        while not token.cancelled:
            started = time.monotonic()
            try:
                found = self.run_pass(token)
                logger.debug(f"[mDNS] Discovery pass completed, {len(found)} device(s) answered")
            except Exception as e:
                logger.error(f"[mDNS] Discovery pass failed: {e}")
            if token.cancelled:
                break
            self.state = DiscoveryState.IDLE
            elapsed = time.monotonic() - started
            if token.wait(max(0.0, self.interval - elapsed)):
                break
        self.state = DiscoveryState.CANCELLED
        logger.info("[mDNS] Discovery loop stopped")

    # ==================== ONE PASS ====================
    def run_pass(self, token: Optional[CancelToken] = None) -> List[DiscoveredDevice]:
        """
        Browse, identify and report once.

        Returns:
            Every device identified during this pass
        """
        token = token or CancelToken()

        self.state = DiscoveryState.BROWSING
        candidates = self.browse(token)
        if token.cancelled:
            return []

        self.state = DiscoveryState.RESOLVING
        identified = self.identify(candidates, token)
        if token.cancelled:
            return []

        self.state = DiscoveryState.EMITTING
        for device in identified:
            if token.cancelled:
                break
            self._report(device)
        return identified

    def browse(self, token: CancelToken) -> List[Candidate]:
        """Collect Awair hosts answering on _http._tcp for up to browse_timeout seconds."""
        zc = self.zeroconf_factory()
        listener = _BrowseListener()
        browser = ServiceBrowser(zc, SERVICE_TYPE, listener)
        candidates: Dict[str, Candidate] = {}
        deadline = time.monotonic() + self.browse_timeout

        try:
            while not token.cancelled:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    name = listener.names.get(timeout=min(remaining, 0.25))
                except Empty:
                    continue

                info = zc.get_service_info(SERVICE_TYPE, name, timeout=int(min(remaining, RESOLVE_TIMEOUT) * 1000))
                if info is None or not info.server:
                    continue

                hostname = short_hostname(info.server)
                if not is_awair_hostname(hostname):
                    continue

                addresses = info.parsed_addresses(IPVersion.V4Only)
                if not addresses:
                    logger.debug(f"[mDNS] {hostname} has no IPv4 address, skipping")
                    continue

                if hostname not in candidates:
                    logger.debug(f"[mDNS] Found {hostname} at {addresses[0]}")
                candidates[hostname] = Candidate(hostname=hostname, address=addresses[0])
        finally:
            browser.cancel()
            zc.close()

        return list(candidates.values())

    def identify(self, candidates: List[Candidate], token: CancelToken) -> List[DiscoveredDevice]:
        """Fetch identity for every candidate in parallel, plus a first reading for new serials."""
        if not candidates:
            return []

        workers = min(MAX_IDENTIFY_WORKERS, len(candidates))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='awair-identify') as pool:
            results = list(pool.map(lambda c: self._identify_one(c, token), candidates))

        return [device for device in results if device is not None]

    def _identify_one(self, candidate: Candidate, token: CancelToken) -> Optional[DiscoveredDevice]:
        if token.cancelled:
            return None

        try:
            identity = self.client.fetch_info(candidate.address)
        except AwairError as e:
            logger.error(f"[mDNS] Failed to identify {candidate.hostname} at {candidate.address}: {e}")
            return None

        if not identity.serial:
            logger.error(f"[mDNS] {candidate.hostname} reported an empty serial, dropping")
            return None

        with self._known_lock:
            known = identity.serial in self._known

        # Pollers already fetch readings for known serials
        reading = None
        if not known and not token.cancelled:
            try:
                reading = self.client.fetch_latest(candidate.address)
            except AwairError as e:
                logger.warning(f"[mDNS] No initial reading from {identity.serial}: {e}")

        return DiscoveredDevice(
            hostname=candidate.hostname,
            address=candidate.address,
            identity=identity,
            reading=reading,
        )

    def _report(self, device: DiscoveredDevice):
        with self._known_lock:
            known = self._known.get(device.serial)
            if known:
                known.address = device.address
                known.last_seen = device.last_seen
                known.identity = device.identity
            else:
                self._known[device.serial] = device

        try:
            if known is None:
                logger.info(f"[mDNS] Discovered {device.serial} at {device.address}")
                self.on_discovered(device)
            elif self.on_refreshed:
                self.on_refreshed(device)
        except Exception as e:
            logger.error(f"[mDNS] Device callback failed for {device.serial}: {e}", exc_info=True)
            if known is None:
                # Report it as new again on the next pass
                self.forget(device.serial)

    def forget(self, serial: str):
        """Drop a serial so the next pass reports it as new again."""
        with self._known_lock:
            self._known.pop(serial, None)
