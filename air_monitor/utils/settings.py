"""
Settings Manager for GNOME Desktop Air Monitor

Keeps the single process-wide settings record in <config>/settings.json.
Missing or unreadable files fall back to defaults; every mutation is
persisted before the write lock is released.
"""

import os
import json
import logging
import tempfile
from dataclasses import dataclass, asdict, replace
from typing import Optional

from air_monitor.utils.locks import RWLock
from air_monitor.utils.paths import settings_path

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 7
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 365


@dataclass(frozen=True)
class Settings:
    status_bar_device_serial_number: Optional[str] = None
    show_shell_extension: bool = True
    data_retention_period: int = DEFAULT_RETENTION_DAYS

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'Settings':
        """Build settings from parsed JSON, ignoring unknown keys and bad values."""
        serial = data.get('status_bar_device_serial_number')
        if not isinstance(serial, str) or not serial:
            serial = None

        visible = data.get('show_shell_extension', True)
        if not isinstance(visible, bool):
            visible = True

        retention = data.get('data_retention_period', DEFAULT_RETENTION_DAYS)
        if isinstance(retention, bool) or not isinstance(retention, int) \
                or not MIN_RETENTION_DAYS <= retention <= MAX_RETENTION_DAYS:
            retention = DEFAULT_RETENTION_DAYS

        return cls(
            status_bar_device_serial_number=serial,
            show_shell_extension=visible,
            data_retention_period=retention,
        )


def load_settings(path: str) -> Settings:
    """
    Load settings from *path*.

    Returns defaults when the file is absent or cannot be parsed.
    """
    if not os.path.exists(path):
        logger.info(f"[SETTINGS] No settings file at {path}, using defaults")
        return Settings()

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"[SETTINGS] Failed to load {path}: {e}, using defaults")
        return Settings()

    if not isinstance(data, dict):
        logger.error(f"[SETTINGS] {path} does not hold a JSON object, using defaults")
        return Settings()

    return Settings.from_dict(data)


def save_settings(settings: Settings, path: str):
    """
    Write settings atomically (temp file + rename).

    Raises:
        OSError: If the directory or file cannot be written
    """
    directory = os.path.dirname(path) or '.'
    os.makedirs(directory, mode=0o755, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(prefix='.settings-', suffix='.json', dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(settings.to_dict(), f, indent=2)
            f.write('\n')
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class SettingsManager:
    """
    Guards the settings record with a read/write lock.

    Readers get an immutable snapshot; writers replace the record and
    persist it. Save failures are logged, the in-memory value still changes.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or settings_path()
        self._lock = RWLock()
        self._settings = load_settings(self.path)

    @property
    def current(self) -> Settings:
        with self._lock.read():
            return self._settings

    def ensure_saved(self):
        """Create the settings file with defaults on first start."""
        if not os.path.exists(self.path):
            with self._lock.write():
                self._persist(self._settings)

    def _persist(self, settings: Settings) -> bool:
        try:
            save_settings(settings, self.path)
            logger.debug(f"[SETTINGS] Saved to {self.path}")
            return True
        except OSError as e:
            logger.error(f"[SETTINGS] Failed to save {self.path}: {e}")
            return False

    def _update(self, **changes) -> Settings:
        with self._lock.write():
            updated = replace(self._settings, **changes)
            self._settings = updated
            self._persist(updated)
            return updated

    def set_status_bar_device(self, serial: Optional[str]) -> Settings:
        logger.info(f"[SETTINGS] Status bar device: {serial or 'first known device'}")
        return self._update(status_bar_device_serial_number=serial or None)

    def set_show_shell_extension(self, visible: bool) -> bool:
        """Update visibility. Returns True if the value changed."""
        with self._lock.write():
            if self._settings.show_shell_extension == visible:
                return False
            self._settings = replace(self._settings, show_shell_extension=visible)
            self._persist(self._settings)
        logger.info(f"[SETTINGS] Shell extension visible: {visible}")
        return True

    def set_data_retention_period(self, days: int) -> Settings:
        if isinstance(days, bool) or not isinstance(days, int) \
                or not MIN_RETENTION_DAYS <= days <= MAX_RETENTION_DAYS:
            raise ValueError(
                f"data_retention_period must be between {MIN_RETENTION_DAYS} and {MAX_RETENTION_DAYS} days"
            )
        logger.info(f"[SETTINGS] Data retention period: {days} days")
        return self._update(data_retention_period=days)
