"""Shared fixtures: temporary store and settings, fake HTTP session, fake device client."""

import os
import threading
from queue import Queue

import pytest

from air_monitor.awair.client import BadResponse, Resolved
from air_monitor.database.db_manager import DatabaseManager
from air_monitor.database.models import Reading
from air_monitor.utils.settings import SettingsManager

ELEMENT_SERIAL = 'awair-element_1234'
BASE_TS = 1704067210.0  # 2024-01-01T00:00:10Z


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self._text = text

    def json(self):
        if self._text is not None:
            raise ValueError("Expecting value")
        return self._payload


class FakeSession:
    """Stands in for requests.Session; routes by URL."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.headers = {}
        self.calls = []
        self.closed = False

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        response = self.routes.get(url)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return FakeResponse(status_code=404)
        return response

    def close(self):
        self.closed = True


class FakeClient:
    """AwairClient double keyed by address."""

    def __init__(self):
        self.identities = {}
        self.readings = {}
        self.fetches = []
        self._lock = threading.Lock()

    def fetch_info(self, address):
        identity = self.identities.get(address)
        if identity is None:
            raise BadResponse(f"no device at {address}")
        return identity

    def fetch_latest(self, address):
        with self._lock:
            self.fetches.append(address)
        reading = self.readings.get(address)
        if reading is None:
            raise BadResponse(f"no reading at {address}")
        if callable(reading):
            return reading()
        return reading

    def close(self):
        pass


class FakeBus:
    """Records what the coordinator would send on the session bus."""

    def __init__(self, payload_provider=None, visibility_provider=None):
        self.commands = Queue()
        self.payload_provider = payload_provider
        self.device_updates = 0
        self.visibility_changes = []
        self.started = False
        self.closed = False

    def start(self, timeout=None):
        self.started = True
        return False

    def close(self, timeout=None):
        self.closed = True

    def start_heartbeat(self, parent=None):
        pass

    def stop_heartbeat(self):
        pass

    def emit_device_updated(self):
        self.device_updates += 1
        return True

    def emit_visibility_changed(self, visible=None):
        self.visibility_changes.append(visible)
        return True


def make_reading(timestamp=BASE_TS, **values):
    defaults = dict(score=87, temperature=22.5, humidity=41.0, co2=612, voc=120, pm25=4)
    defaults.update(values)
    return Reading(timestamp=timestamp, **defaults)


@pytest.fixture
def db_path(tmp_path):
    return os.path.join(str(tmp_path), 'data', 'database.sqlite')


@pytest.fixture
def db(db_path):
    manager = DatabaseManager(db_path)
    manager.connect()
    yield manager
    manager.disconnect()


@pytest.fixture
def settings(tmp_path):
    return SettingsManager(os.path.join(str(tmp_path), 'config', 'settings.json'))


@pytest.fixture
def fake_client():
    client = FakeClient()
    client.identities['192.168.1.50'] = Resolved(serial=ELEMENT_SERIAL, kind='element', firmware='1.4.0')
    client.readings['192.168.1.50'] = make_reading()
    return client
