"""
GNOME Desktop Air Monitor - Version Constants

Semantic Versioning: MAJOR.MINOR.PATCH
- MAJOR: Breaking changes (bus interface, database schema without migration)
- MINOR: New features (backward compatible)
- PATCH: Bug fixes, small improvements
"""

# Version Components
MAJOR = 1
MINOR = 0
PATCH = 0

# Formatted Versions
VERSION = f"{MAJOR}.{MINOR}.{PATCH}"
FULL_VERSION = f"v{VERSION}"

APP_NAME = "gnome-desktop-air-monitor"

# Sent with every request to a sensor
USER_AGENT = f"{APP_NAME}/{VERSION}"

