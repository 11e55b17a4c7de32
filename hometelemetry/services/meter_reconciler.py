# hometelemetry/services/meter_reconciler.py
"""
Cumulative meter readings -> daily water consumption.

Two absolute register values only tell us how much was used between them,
not how the usage was spread. The difference is divided evenly over the
elapsed time and every calendar day after the earlier reading, up to and
including the day of the new one, gets the same daily rate. Real day-to-day
variation inside the interval is not observable and is not modelled.

A register that goes backwards (meter swap, reset, typo) produces no
consumption at all; the point is still kept and the anomaly is returned.

A point entered between two existing ones also re-derives the days up to the
following point, so the derived rows keep adding up to the register difference.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from hometelemetry.core.errors import DataQualityAnomaly
from hometelemetry.models.series import MeterPoint, WaterReadingType, WaterSample, format_ts
from hometelemetry.services.mirror import MirrorSink
from hometelemetry.services.store import TelemetryStore, is_finite_number

logger = logging.getLogger("telemetry.meter")

TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
RATE_DECIMALS = 6


class ReconcileResult(BaseModel):
    point: MeterPoint
    previous: Optional[MeterPoint] = None
    delta_m3: Optional[float] = None
    elapsed_hours: Optional[float] = None
    daily_rate_m3: Optional[float] = None
    derived: List[WaterSample] = Field(default_factory=list)
    anomaly: Optional[Dict[str, str]] = None
    following: Optional[MeterPoint] = None
    rederived: List[WaterSample] = Field(default_factory=list)
    mirror_ok: Optional[bool] = None


def derive_daily_consumption(
    previous: MeterPoint, current: MeterPoint, meter_serial: Optional[str] = None
) -> Tuple[List[WaterSample], Optional[DataQualityAnomaly], float, float, Optional[float]]:
    """Return (rows, anomaly, delta, elapsed_hours, daily_rate) for a pair of points."""
    delta = current.value_m3 - previous.value_m3
    elapsed_hours = (current.reading_datetime - previous.reading_datetime).total_seconds() / 3600

    if elapsed_hours <= 0:
        return [], DataQualityAnomaly(
            "non_positive_elapsed",
            f"{current.reading_datetime.isoformat()} is not after {previous.reading_datetime.isoformat()}",
        ), delta, elapsed_hours, None
    if delta < 0:
        return [], DataQualityAnomaly(
            "meter_value_decreased",
            f"{current.value_m3} m3 is below the previous reading {previous.value_m3} m3 "
            f"({previous.reading_datetime.isoformat()}); possible meter reset or entry error",
        ), delta, elapsed_hours, None

    daily_rate = round(delta / (elapsed_hours / 24), RATE_DECIMALS)

    rows: List[WaterSample] = []
    day = previous.reading_date + timedelta(days=1)
    while day <= current.reading_date:
        rows.append(
            WaterSample(
                timestamp=format_ts(datetime.combine(day, time.min, tzinfo=timezone.utc)),
                reading_date=day,
                consumption_m3=daily_rate,
                reading_type=WaterReadingType.METER,
                meter_serial=meter_serial,
            )
        )
        day += timedelta(days=1)
    return rows, None, delta, elapsed_hours, daily_rate


class MeterReconciler:
    def __init__(
        self, store: TelemetryStore, meter_serial: Optional[str] = None, mirror: Optional[MirrorSink] = None
    ) -> None:
        self.store = store
        self.meter_serial = meter_serial
        self.mirror = mirror

    async def record(self, reading_date: date, reading_time: str, value_m3: float) -> ReconcileResult:
        if not TIME_RE.match(reading_time or ""):
            raise ValueError(f"reading_time must be HH:MM, got {reading_time!r}")
        if not is_finite_number(value_m3):
            raise ValueError(f"value_m3 must be a finite number, got {value_m3!r}")

        point = MeterPoint(reading_date=reading_date, reading_time=reading_time, value_m3=value_m3)
        previous = await self.store.previous_meter_point(point.reading_datetime)
        result = ReconcileResult(point=point, previous=previous)

        if previous is not None:
            rows, anomaly, delta, elapsed, rate = derive_daily_consumption(previous, point, self.meter_serial)
            result.delta_m3 = round(delta, RATE_DECIMALS)
            result.elapsed_hours = round(elapsed, 4)
            result.daily_rate_m3 = rate
            result.derived = rows
            if anomaly is not None:
                result.anomaly = anomaly.as_dict()
                logger.warning(f"[meter] {anomaly}; point stored, no consumption derived")

        clear = None
        following = await self.store.next_meter_point(point.reading_datetime)
        if following is not None:
            result.following = following
            rows, anomaly, _, _, _ = derive_daily_consumption(point, following, self.meter_serial)
            result.rederived = rows
            if anomaly is not None:
                logger.warning(f"[meter] {anomaly}; days up to {following.reading_date} left without consumption")
            first = previous.reading_date if previous is not None else point.reading_date
            clear = (first, following.reading_date)

        await self.store.record_meter_point(point, result.derived + result.rederived, clear_meter_days=clear)
        logger.info(
            f"[meter] stored {value_m3} m3 at {point.reading_datetime.isoformat()} "
            f"(+{len(result.derived)} daily rows, {len(result.rederived)} re-derived)"
        )

        if self.mirror is not None and self.mirror.enabled:
            result.mirror_ok = await self._mirror(point, result.derived + result.rederived)
        return result

    async def _mirror(self, point: MeterPoint, rows: List[WaterSample]) -> bool:
        point_row = {
            "reading_date": point.reading_date.isoformat(),
            "reading_time": point.reading_time,
            "reading_datetime": point.reading_datetime.isoformat(),
            "value_m3": point.value_m3,
        }
        ok = await self.mirror.push("meter_point_readings", [point_row])
        return await self.mirror.push("water_readings", [s.model_dump(mode="json") for s in rows]) and ok
