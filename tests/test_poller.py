import threading
import time

from air_monitor.core.poller import DevicePoller
from air_monitor.utils.locks import CancelToken
from conftest import ELEMENT_SERIAL, make_reading


def test_poll_once_returns_none_on_error(fake_client):
    poller = DevicePoller(fake_client, ELEMENT_SERIAL, '10.9.9.9', on_reading=lambda s, r: None)
    assert poller.poll_once() is None


def test_readings_delivered_with_serial(fake_client):
    received = []
    got_two = threading.Event()

    def on_reading(serial, reading):
        received.append((serial, reading))
        if len(received) >= 2:
            got_two.set()

    poller = DevicePoller(fake_client, ELEMENT_SERIAL, '192.168.1.50', on_reading=on_reading, interval=0.02)
    poller.start()
    try:
        assert got_two.wait(5)
    finally:
        poller.stop()

    assert all(serial == ELEMENT_SERIAL for serial, _ in received)
    assert received[0][1].score == 87


def test_no_callbacks_after_stop(fake_client):
    received = []
    poller = DevicePoller(fake_client, ELEMENT_SERIAL, '192.168.1.50',
                          on_reading=lambda s, r: received.append(r), interval=0.01)
    poller.start()
    time.sleep(0.1)
    poller.stop()

    count = len(received)
    time.sleep(0.1)
    assert len(received) == count
    assert not poller.is_running


def test_parent_cancel_stops_poller(fake_client):
    root = CancelToken()
    poller = DevicePoller(fake_client, ELEMENT_SERIAL, '192.168.1.50', on_reading=lambda s, r: None,
                          interval=0.01)
    poller.start(root)
    root.cancel()
    poller.stop()
    assert not poller.is_running


def test_address_change_used_by_next_fetch(fake_client):
    fake_client.readings['192.168.1.77'] = make_reading(score=55)
    poller = DevicePoller(fake_client, ELEMENT_SERIAL, '192.168.1.50', on_reading=lambda s, r: None)

    poller.address = '192.168.1.77'
    reading = poller.poll_once()
    assert reading.score == 55
    assert fake_client.fetches == ['192.168.1.77']


def test_callback_errors_do_not_stop_loop(fake_client):
    calls = []
    done = threading.Event()

    def failing(serial, reading):
        calls.append(reading)
        if len(calls) >= 3:
            done.set()
        raise RuntimeError("boom")

    poller = DevicePoller(fake_client, ELEMENT_SERIAL, '192.168.1.50', on_reading=failing, interval=0.01)
    poller.start()
    try:
        assert done.wait(5)
    finally:
        poller.stop()
