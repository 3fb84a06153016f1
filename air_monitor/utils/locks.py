# GNOME Desktop Air Monitor - Synchronization Helpers
# Read/write lock and hierarchical cancellation for background threads

import threading
from contextlib import contextmanager
from typing import List, Optional


class RWLock:
    """
    Reader-preferring read/write lock.

    Any number of readers may hold the lock together; a writer waits until
    no reader is active. New readers are admitted even while a writer waits.
    """

    def __init__(self):
        self._readers = 0
        self._readers_lock = threading.Lock()
        self._write_lock = threading.Lock()

    def acquire_read(self):
        with self._readers_lock:
            self._readers += 1
            if self._readers == 1:
                self._write_lock.acquire()

    def release_read(self):
        with self._readers_lock:
            self._readers -= 1
            if self._readers == 0:
                self._write_lock.release()

    def acquire_write(self):
        self._write_lock.acquire()

    def release_write(self):
        self._write_lock.release()

    @contextmanager
    def read(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class CancelToken:
    """
    Hierarchical cancellation flag.

    Cancelling a token cancels all of its children (recursively). A child
    created from an already cancelled parent starts cancelled.
    """

    def __init__(self, parent: Optional['CancelToken'] = None):
        self._event = threading.Event()
        self._children: List['CancelToken'] = []
        self._lock = threading.Lock()
        self.parent = parent

    def child(self) -> 'CancelToken':
        token = CancelToken(parent=self)
        with self._lock:
            self._children.append(token)
            cancelled = self._event.is_set()
        if cancelled:
            token.cancel()
        return token

    def cancel(self):
        with self._lock:
            self._event.set()
            children = list(self._children)
        for token in children:
            token.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to *timeout* seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)
