# GNOME Desktop Air Monitor - Database Models
# Row types for devices and readings (schema lives in migrations/)

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

# Device kinds
KIND_ELEMENT = 'element'
KIND_OMNI = 'omni'
KIND_UNKNOWN = 'unknown'
DEVICE_KINDS = (KIND_ELEMENT, KIND_OMNI, KIND_UNKNOWN)


def iso_utc(timestamp: Optional[float]) -> Optional[str]:
    """Format a Unix timestamp as ISO-8601 UTC (e.g. 2024-01-01T00:00:10Z)."""
    if timestamp is None:
        return None
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.isoformat(timespec='seconds').replace('+00:00', 'Z')


@dataclass
class Device:
    id: int
    name: str
    ip_address: str
    device_type: str
    serial_number: str
    last_seen: Optional[float] = None
    firmware_version: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> 'Device':
        return cls(
            id=row['id'],
            name=row['name'],
            ip_address=row['ip_address'],
            device_type=row['device_type'],
            serial_number=row['serial_number'],
            last_seen=row['last_seen'],
            firmware_version=row['firmware_version'],
        )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'serial_number': self.serial_number,
            'ip_address': self.ip_address,
            'device_type': self.device_type,
            'last_seen': iso_utc(self.last_seen),
        }


@dataclass
class Reading:
    """One air-quality sample. Timestamp is Unix seconds, UTC."""
    timestamp: float
    score: float = 0.0
    temperature: float = 0.0
    humidity: float = 0.0
    co2: float = 0.0
    voc: float = 0.0
    pm25: float = 0.0
    device_id: Optional[int] = None
    id: Optional[int] = None
    # Reported by the device, not persisted
    dew_point: float = 0.0

    @classmethod
    def from_row(cls, row) -> 'Reading':
        return cls(
            id=row['id'],
            device_id=row['device_id'],
            timestamp=row['timestamp'],
            score=row['score'],
            temperature=row['temperature'],
            humidity=row['humidity'],
            co2=row['co2'],
            voc=row['voc'],
            pm25=row['pm25'],
        )

    def to_dict(self):
        return {
            'timestamp': iso_utc(self.timestamp),
            'temperature': self.temperature,
            'humidity': self.humidity,
            'co2': self.co2,
            'voc': self.voc,
            'pm25': self.pm25,
            'score': self.score,
        }
