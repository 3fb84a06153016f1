import threading

from air_monitor.core.retention import SECONDS_PER_DAY, RetentionWorker
from air_monitor.utils.locks import CancelToken
from conftest import make_reading

NOW = 1_700_000_000.0


def _device_with_hourly_readings(db, hours=48):
    device, _ = db.upsert_device(serial_number='awair-element_1234', name='Office', ip_address='10.0.0.2')
    for hour in range(hours):
        db.insert_reading(device.id, make_reading(NOW - hour * 3600 - 1800))
    return device


def test_prune_deletes_older_than_horizon(db):
    device = _device_with_hourly_readings(db)
    worker = RetentionWorker(db, retention_days=lambda: 1, clock=lambda: NOW)

    assert worker.prune() == 24
    assert db.count_readings(device.id) == 24
    assert worker.prune() == 0


def test_prune_disabled_when_non_positive(db):
    _device_with_hourly_readings(db)
    worker = RetentionWorker(db, retention_days=lambda: 0, clock=lambda: NOW)
    assert worker.prune() == 0
    assert db.count_readings() == 48


def test_horizon_read_on_every_pass(db):
    _device_with_hourly_readings(db, hours=24 * 3)
    days = [3]
    worker = RetentionWorker(db, retention_days=lambda: days[0], clock=lambda: NOW)

    assert worker.prune() == 0
    days[0] = 2
    assert worker.prune() == 24
    assert db.count_readings() == 48
    assert NOW - db.latest_reading(1).timestamp < SECONDS_PER_DAY


def test_start_prunes_immediately(db):
    _device_with_hourly_readings(db)
    pruned = threading.Event()

    class RecordingWorker(RetentionWorker):
        def prune(self):
            deleted = super().prune()
            pruned.set()
            return deleted

    worker = RecordingWorker(db, retention_days=lambda: 1, interval=3600, clock=lambda: NOW)
    root = CancelToken()
    worker.start(root)
    try:
        assert pruned.wait(5)
    finally:
        root.cancel()
        worker.stop(timeout=5)
    assert db.count_readings() == 24
