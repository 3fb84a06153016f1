import threading

from air_monitor.utils.locks import CancelToken, RWLock


def test_cancel_propagates_to_children():
    root = CancelToken()
    child = root.child()
    grandchild = child.child()

    root.cancel()
    assert child.cancelled
    assert grandchild.cancelled


def test_child_cancel_leaves_parent_running():
    root = CancelToken()
    child = root.child()
    child.cancel()
    assert not root.cancelled


def test_child_of_cancelled_parent_starts_cancelled():
    root = CancelToken()
    root.cancel()
    assert root.child().cancelled


def test_wait_returns_early_on_cancel():
    token = CancelToken()
    threading.Timer(0.05, token.cancel).start()
    assert token.wait(5) is True
    assert CancelToken().wait(0.01) is False


def test_readers_share_writer_excludes():
    lock = RWLock()
    readers_inside = threading.Barrier(2, timeout=5)
    writer_done = threading.Event()

    def reader():
        with lock.read():
            readers_inside.wait()

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    lock.acquire_read()

    def writer():
        with lock.write():
            writer_done.set()

    w = threading.Thread(target=writer)
    w.start()
    assert not writer_done.wait(0.1)

    lock.release_read()
    assert writer_done.wait(5)
    w.join(5)
