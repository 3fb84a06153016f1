import pytest
import requests

from air_monitor.awair.client import (
    AwairClient, BadResponse, ParseError, Resolved, kind_from_uuid, parse_reading, parse_timestamp,
)
from air_monitor.core.version import USER_AGENT
from conftest import FakeResponse, FakeSession

ADDRESS = '192.168.1.50'
INFO_URL = f'http://{ADDRESS}/settings/config/data'
LATEST_URL = f'http://{ADDRESS}/air-data/latest'

LATEST_BODY = {
    'timestamp': '2024-01-01T00:00:10Z',
    'score': 87,
    'dew_point': 8.9,
    'temp': 22.5,
    'humid': 41.0,
    'co2': 612,
    'voc': 120,
    'pm25': 4,
    'abs_humid': 8.2,
}


def test_fetch_info_resolves_identity():
    session = FakeSession({INFO_URL: FakeResponse(payload={
        'device_uuid': 'awair-element_1234', 'fw_version': '1.4.0', 'wifi_mac': '70:88:6B:00:00:00',
    })})
    identity = AwairClient(session=session).fetch_info(ADDRESS)

    assert identity == Resolved(serial='awair-element_1234', kind='element', firmware='1.4.0')
    assert session.calls == [(INFO_URL, 5)]
    assert session.headers['User-Agent'] == USER_AGENT


@pytest.mark.parametrize('payload', [
    {'fw_version': '1.4.0'},
    {'device_uuid': 'awair-element_1234'},
    {'device_uuid': 1234, 'fw_version': '1.4.0'},
    {'device_uuid': '', 'fw_version': '1.4.0'},
])
def test_fetch_info_missing_fields(payload):
    session = FakeSession({INFO_URL: FakeResponse(payload=payload)})
    with pytest.raises(ParseError):
        AwairClient(session=session).fetch_info(ADDRESS)


def test_non_200_is_bad_response():
    session = FakeSession({INFO_URL: FakeResponse(status_code=503)})
    with pytest.raises(BadResponse):
        AwairClient(session=session).fetch_info(ADDRESS)


def test_transport_error_is_bad_response():
    session = FakeSession({LATEST_URL: requests.exceptions.ConnectTimeout('timed out')})
    with pytest.raises(BadResponse):
        AwairClient(session=session).fetch_latest(ADDRESS)


def test_invalid_json_is_parse_error():
    session = FakeSession({LATEST_URL: FakeResponse(text='<html>')})
    with pytest.raises(ParseError):
        AwairClient(session=session).fetch_latest(ADDRESS)


def test_fetch_latest_maps_fields():
    session = FakeSession({LATEST_URL: FakeResponse(payload=LATEST_BODY)})
    reading = AwairClient(session=session).fetch_latest(ADDRESS)

    assert reading.timestamp == 1704067210.0
    assert reading.score == 87
    assert reading.temperature == 22.5
    assert reading.humidity == 41.0
    assert reading.co2 == 612
    assert reading.voc == 120
    assert reading.pm25 == 4
    assert reading.dew_point == 8.9


def test_missing_numbers_default_to_zero():
    reading = parse_reading({'timestamp': '2024-01-01T00:00:10Z', 'temp': 'warm'}, now=1704067210.0)
    assert reading.temperature == 0
    assert reading.co2 == 0
    assert reading.score == 0


def test_future_timestamp_clamped():
    now = 1704067210.0
    reading = parse_reading({'timestamp': '2024-01-01T01:00:00Z'}, now=now)
    assert reading.timestamp == now

    small_skew = parse_reading({'timestamp': '2024-01-01T00:00:40Z'}, now=now)
    assert small_skew.timestamp == now + 30


@pytest.mark.parametrize('value, expected', [
    ('2024-01-01T00:00:10Z', 1704067210.0),
    ('2024-01-01T02:00:10+02:00', 1704067210.0),
    ('2024-01-01T00:00:10.500Z', 1704067210.5),
    ('yesterday', 0.0),
    (None, 0.0),
])
def test_parse_timestamp(value, expected):
    assert parse_timestamp(value) == expected


@pytest.mark.parametrize('uuid, kind', [
    ('awair-element_1234', 'element'),
    ('AWAIR-OMNI_55', 'omni'),
    ('awair-mint_7', 'unknown'),
])
def test_kind_from_uuid(uuid, kind):
    assert kind_from_uuid(uuid) == kind
