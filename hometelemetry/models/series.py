# hometelemetry/models/series.py

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from hometelemetry.core.errors import SourceError

TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
HALF_HOUR = timedelta(minutes=30)
SLOTS_PER_DAY = 48


def format_ts(dt: datetime) -> str:
    """Canonical timestamp string used as (part of) every natural key."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(TS_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


def start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def floor_half_hour(dt: datetime) -> datetime:
    return dt.replace(minute=0 if dt.minute < 30 else 30, second=0, microsecond=0)


class Granularity(str, Enum):
    HALF_HOUR = "PT30M"
    DAY = "P1D"


class UtilityType(str, Enum):
    ELECTRICITY = "electricity"
    GAS = "gas"

    @property
    def cost_type(self) -> str:
        return f"{self.value}_cost"


class WaterReadingType(str, Enum):
    SMART = "smart"
    MANUAL = "manual"
    BILLING = "billing"
    METER = "meter"


class Token(BaseModel):
    value: str
    expires_at: Optional[datetime] = None  # None: never expires

    def expires_within(self, margin: timedelta, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - margin <= now


class SeriesPoint(BaseModel):
    timestamp: str
    value: float
    is_estimated: bool = False
    # calendar day in the provider's own offset, for daily series
    local_date: Optional[date] = None


class FetchResult(BaseModel):
    """Outcome of a source fetch. Failures travel as values, not exceptions."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    points: List[SeriesPoint] = []
    error: Optional[SourceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, error: SourceError) -> "FetchResult":
        return cls(points=[], error=error)

    def unwrap(self) -> List[SeriesPoint]:
        if self.error is not None:
            raise self.error
        return self.points


class MergedPoint(BaseModel):
    timestamp: str
    value: float
    cost: Optional[float] = None
    is_estimated: bool = False


class SensorSample(BaseModel):
    channel: str
    room_name: str
    temperature_c: float
    humidity: Optional[float] = None
    battery: Optional[int] = None


class WaterSample(BaseModel):
    timestamp: str
    reading_date: date
    consumption_m3: float
    reading_type: WaterReadingType = WaterReadingType.SMART
    meter_serial: Optional[str] = None


class SnapshotResult(BaseModel):
    """Outcome of a point-in-time sensor fetch."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    samples: List[SensorSample] = []
    error: Optional[SourceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class EnergyRecord(BaseModel):
    timestamp: str
    type: str
    quantity: float
    cost_pence: Optional[float] = None
    is_estimated: bool = False


class MeterPoint(BaseModel):
    reading_date: date
    reading_time: str  # HH:MM
    value_m3: float

    @property
    def reading_datetime(self) -> datetime:
        hour, minute = (int(part) for part in self.reading_time.split(":")[:2])
        return datetime(self.reading_date.year, self.reading_date.month, self.reading_date.day, hour, minute)
