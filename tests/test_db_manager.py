import pytest

from air_monitor.database.db_manager import (
    DatabaseManager, DeviceNameTaken, DeviceNotFound, StoreError, format_file_size,
)
from conftest import BASE_TS, ELEMENT_SERIAL, make_reading


def _add(db, serial=ELEMENT_SERIAL, name='awair-elem-1a2b', ip='192.168.1.50', kind='element'):
    device, _ = db.upsert_device(serial_number=serial, name=name, ip_address=ip, device_type=kind,
                                 firmware_version='1.4.0', seen_at=BASE_TS)
    return device


def test_connect_reports_schema_version(db):
    assert db.current_version() == 3


def test_operations_require_connection(db_path):
    manager = DatabaseManager(db_path)
    with pytest.raises(StoreError):
        manager.list_devices()


def test_upsert_creates_then_refreshes(db):
    device, created = db.upsert_device(serial_number=ELEMENT_SERIAL, name='awair-elem-1a2b',
                                       ip_address='192.168.1.50', device_type='element',
                                       firmware_version='1.4.0', seen_at=BASE_TS)
    assert created
    assert device.device_type == 'element'
    assert device.firmware_version == '1.4.0'

    again, created = db.upsert_device(serial_number=ELEMENT_SERIAL, name='ignored',
                                      ip_address='192.168.1.77', seen_at=BASE_TS + 20)
    assert not created
    assert again.id == device.id
    assert again.name == 'awair-elem-1a2b'
    assert again.ip_address == '192.168.1.77'
    assert again.last_seen == BASE_TS + 20
    assert again.firmware_version == '1.4.0'
    assert len(db.list_devices()) == 1


def test_upsert_rejects_empty_serial(db):
    with pytest.raises(ValueError):
        db.upsert_device(serial_number='', name='x', ip_address='10.0.0.1')


def test_unknown_kind_is_stored_as_unknown(db):
    device = _add(db, kind='purifier')
    assert device.device_type == 'unknown'


def test_taken_name_falls_back_to_serial(db):
    _add(db)
    other = _add(db, serial='awair-omni_99', ip='192.168.1.51', kind='omni')
    assert other.name == 'awair-omni_99'


def test_rename_device(db):
    device = _add(db)
    other = _add(db, serial='awair-omni_99', name='Bedroom', ip='192.168.1.51', kind='omni')

    renamed = db.rename_device(device.id, '  Living room ')
    assert renamed.name == 'Living room'
    assert renamed.serial_number == ELEMENT_SERIAL

    with pytest.raises(DeviceNameTaken):
        db.rename_device(device.id, other.name)
    with pytest.raises(ValueError):
        db.rename_device(device.id, '   ')
    with pytest.raises(DeviceNotFound):
        db.rename_device(999, 'Nowhere')

    assert db.get_device(device.id).name == 'Living room'


def test_resolve_device_by_id_or_serial(db):
    device = _add(db)
    assert db.resolve_device(str(device.id)).id == device.id
    assert db.resolve_device(ELEMENT_SERIAL).id == device.id
    assert db.resolve_device('awair-element_12') is None
    assert db.resolve_device('42') is None


def test_latest_reading_orders_by_timestamp(db):
    device = _add(db)
    db.insert_reading(device.id, make_reading(BASE_TS + 20, score=90))
    db.insert_reading(device.id, make_reading(BASE_TS, score=80))
    db.insert_reading(device.id, make_reading(BASE_TS + 10, score=85))

    latest = db.latest_reading(device.id)
    assert latest.timestamp == BASE_TS + 20
    assert latest.score == 90
    assert [r.score for r in db.readings_between(device.id, BASE_TS, BASE_TS + 10)] == [80, 85]


def test_record_reading_updates_last_seen(db):
    device = _add(db)
    db.record_reading(device.id, make_reading(), seen_at=BASE_TS + 5)
    assert db.get_device(device.id).last_seen == BASE_TS + 5
    assert db.count_readings(device.id) == 1


def test_reading_requires_existing_device(db):
    import sqlite3
    with pytest.raises(sqlite3.IntegrityError):
        db.insert_reading(12345, make_reading())
    assert db.count_readings() == 0


def test_delete_device_cascades_to_readings(db):
    device = _add(db)
    for i in range(3):
        db.insert_reading(device.id, make_reading(BASE_TS + i))
    assert db.delete_device(device.id)
    assert db.count_readings() == 0
    assert db.get_device(device.id) is None


def test_delete_readings_older_than(db):
    now = 1_700_000_000.0
    device = _add(db)
    # One reading per hour over the last 48 hours
    for hour in range(48):
        db.insert_reading(device.id, make_reading(now - hour * 3600 - 1800))

    deleted = db.delete_readings_older_than(now - 24 * 3600)
    assert deleted == 24
    assert db.count_readings(device.id) == 24


def test_devices_with_latest_reading(db):
    first = _add(db)
    _add(db, serial='awair-omni_99', name='Bedroom', ip='192.168.1.51', kind='omni')
    db.insert_reading(first.id, make_reading())

    pairs = db.devices_with_latest_reading()
    assert [device.serial_number for device, _ in pairs] == [ELEMENT_SERIAL, 'awair-omni_99']
    assert pairs[0][1].score == 87
    assert pairs[1][1] is None


def test_get_size(db, db_path):
    db.disconnect()  # checkpoints the WAL into the main file
    assert DatabaseManager(db_path).get_size() > 0
    assert DatabaseManager(':memory:').get_size() == 0


@pytest.mark.parametrize('size, expected', [
    (0, '0 B'),
    (512, '512 B'),
    (1536, '1.5 KB'),
    (5 * 1024 * 1024, '5.0 MB'),
])
def test_format_file_size(size, expected):
    assert format_file_size(size) == expected


def test_fallback_name_gets_suffix_when_serial_taken(db):
    _add(db)
    _add(db, serial='awair-omni_7', name='awair-omni_99', ip='192.168.1.52', kind='omni')
    _add(db, serial='awair-omni_8', name='awair-omni_99-2', ip='192.168.1.53', kind='omni')

    # Hostname, serial and serial-2 are all in use
    device, created = db.upsert_device(serial_number='awair-omni_99', name='awair-elem-1a2b',
                                       ip_address='192.168.1.51', device_type='omni')
    assert created
    assert device.name == 'awair-omni_99-3'
    assert len(db.list_devices()) == 4
