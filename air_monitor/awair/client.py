# GNOME Desktop Air Monitor - Awair Local API Client
# Talks to one sensor over its LAN HTTP endpoints

import time
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import requests

from air_monitor.core.version import USER_AGENT
from air_monitor.database.models import KIND_ELEMENT, KIND_OMNI, KIND_UNKNOWN, Reading

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5  # seconds
INFO_PATH = '/settings/config/data'
LATEST_PATH = '/air-data/latest'

# Device clocks ahead of ours by more than this are clamped to now
MAX_CLOCK_SKEW = 60  # seconds


class AwairError(Exception):
    """Base class for device client failures."""


class BadResponse(AwairError):
    """Transport failure or non-200 status."""


class ParseError(AwairError):
    """Body is not JSON or lacks required fields."""


# ==================== DEVICE IDENTITY ====================
@dataclass(frozen=True)
class Unresolved:
    """Identity not fetched yet (or the fetch failed)."""


@dataclass(frozen=True)
class Resolved:
    serial: str
    kind: str
    firmware: str


DeviceIdentity = Union[Unresolved, Resolved]


def kind_from_uuid(device_uuid: str) -> str:
    """Map a device_uuid such as 'awair-element_1234' to a device kind."""
    lowered = device_uuid.lower()
    if lowered.startswith('awair-element_'):
        return KIND_ELEMENT
    if lowered.startswith('awair-omni_'):
        return KIND_OMNI
    return KIND_UNKNOWN


def parse_timestamp(value: Any) -> float:
    """RFC 3339 string to Unix seconds; 0.0 when absent or unparsable."""
    if not isinstance(value, str) or not value:
        return 0.0
    text = value.strip()
    if text.endswith(('Z', 'z')):
        text = text[:-1] + '+00:00'
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"[AWAIR] Unparsable timestamp: {value!r}")
        return 0.0
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def _number(data: Dict[str, Any], key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def parse_reading(data: Dict[str, Any], now: Optional[float] = None) -> Reading:
    """
    Map an /air-data/latest body to a Reading.

    Unknown fields are ignored; missing numeric fields become 0.
    """
    now = time.time() if now is None else now
    timestamp = parse_timestamp(data.get('timestamp'))
    if timestamp > now + MAX_CLOCK_SKEW:
        logger.debug(f"[AWAIR] Reading timestamp {timestamp} ahead of local clock, clamping")
        timestamp = now

    reading = Reading(
        timestamp=timestamp,
        score=_number(data, 'score'),
        temperature=_number(data, 'temp'),
        humidity=_number(data, 'humid'),
        co2=_number(data, 'co2'),
        voc=_number(data, 'voc'),
        pm25=_number(data, 'pm25'),
        dew_point=_number(data, 'dew_point'),
    )
    return reading


class AwairClient:
    """
    Stateless client for the Awair Local API.

    Every call takes the device address, so one client serves all devices.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': USER_AGENT,
            'Accept': 'application/json',
        })

    def _get_json(self, address: str, path: str) -> Dict[str, Any]:
        url = f"http://{address}{path}"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise BadResponse(f"Request to {url} failed: {e}") from e

        if response.status_code != 200:
            raise BadResponse(f"{url} returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ParseError(f"{url} returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ParseError(f"{url} did not return a JSON object")
        return data

    def fetch_info(self, address: str) -> Resolved:
        """
        GET /settings/config/data and resolve the device identity.

        Raises:
            BadResponse: On transport errors or non-200 status
            ParseError: If device_uuid or fw_version is missing or not a string
        """
        data = self._get_json(address, INFO_PATH)

        device_uuid = data.get('device_uuid')
        if not isinstance(device_uuid, str) or not device_uuid:
            raise ParseError(f"Missing device_uuid in response from {address}")

        firmware = data.get('fw_version')
        if not isinstance(firmware, str):
            raise ParseError(f"Missing fw_version in response from {address}")

        identity = Resolved(serial=device_uuid, kind=kind_from_uuid(device_uuid), firmware=firmware)
        logger.debug(f"[AWAIR] {address} is {identity.serial} ({identity.kind}, fw {identity.firmware})")
        return identity

    def fetch_latest(self, address: str) -> Reading:
        """
        GET /air-data/latest.

        Raises:
            BadResponse: On transport errors or non-200 status
            ParseError: If the body is not a JSON object
        """
        data = self._get_json(address, LATEST_PATH)
        reading = parse_reading(data)
        logger.debug(f"[AWAIR] {address} reading: score={reading.score} temp={reading.temperature}")
        return reading

    def close(self):
        self.session.close()
