# GNOME Desktop Air Monitor - Storage Locations
# Resolves per-user data/config directories (XDG with fallbacks)

import os
import logging
from typing import Mapping, Optional

from air_monitor.core.version import APP_NAME

logger = logging.getLogger(__name__)

DB_NAME = 'database.sqlite'
SETTINGS_NAME = 'settings.json'
DB_PATH_ENV = 'GNOME_DESKTOP_AIR_MONITOR_DB_PATH'


def _home_dir(env: Mapping[str, str]) -> Optional[str]:
    home = env.get('HOME')
    if home:
        return home
    try:
        home = os.path.expanduser('~')
    except Exception:
        return None
    return home if home and home != '~' else None


def _resolve_dir(env: Mapping[str, str], xdg_var: str, fallback: str) -> str:
    """
    Resolve one application directory.

    Order: $XDG_*/<app>, $HOME/<fallback>/<app> (when that base exists),
    $HOME/.<app>, and finally the current working directory.
    """
    xdg_home = env.get(xdg_var)
    if xdg_home:
        return os.path.join(xdg_home, APP_NAME)

    home = _home_dir(env)
    if not home:
        try:
            return os.getcwd()
        except OSError:
            return '.'

    base = os.path.join(home, fallback)
    if os.path.isdir(base):
        return os.path.join(base, APP_NAME)

    return os.path.join(home, f".{APP_NAME}")


def data_dir(env: Optional[Mapping[str, str]] = None) -> str:
    """Directory holding the database."""
    return _resolve_dir(os.environ if env is None else env, 'XDG_DATA_HOME', os.path.join('.local', 'share'))


def config_dir(env: Optional[Mapping[str, str]] = None) -> str:
    """Directory holding settings.json."""
    return _resolve_dir(os.environ if env is None else env, 'XDG_CONFIG_HOME', '.config')


def db_path(env: Optional[Mapping[str, str]] = None) -> str:
    """Database file, overridable with GNOME_DESKTOP_AIR_MONITOR_DB_PATH."""
    env = os.environ if env is None else env
    override = env.get(DB_PATH_ENV)
    if override:
        return override
    return os.path.join(data_dir(env), DB_NAME)


def settings_path(env: Optional[Mapping[str, str]] = None) -> str:
    return os.path.join(config_dir(env), SETTINGS_NAME)
