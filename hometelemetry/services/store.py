# hometelemetry/services/store.py
"""
Idempotent local store.

Every write call is one transaction: the whole batch lands or none of it
does. Writes are keyed by each entity's natural key:

  readings              (channel, timestamp)        insert once, never updated
  energy_readings       (timestamp, type)           last write wins
  water_readings        (reading_date, reading_type) last write wins
  meter_point_readings  (reading_date, reading_time) last write wins

Rows whose primary number is not finite are skipped and counted; zero is a
valid value. A store-level lock serializes writers, and ``close()`` waits for
the transaction in flight before disposing the engine.
"""

from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel
from sqlalchemy import and_, delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hometelemetry.core.database import close_database
from hometelemetry.models.readings import EnergyReading, MeterPointReading, SensorReading, WaterReading
from hometelemetry.models.series import EnergyRecord, MeterPoint, SensorSample, WaterReadingType, WaterSample, format_ts

logger = logging.getLogger(__name__)


class StoreResult(BaseModel):
    stored: int = 0
    skipped: int = 0


def is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_dict(row: Any, columns: Sequence[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for col in columns:
        value = getattr(row, col)
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        out[col] = value
    return out


SENSOR_COLUMNS = ("id", "timestamp", "channel", "room_name", "temperature_c", "humidity", "battery")
ENERGY_COLUMNS = ("timestamp", "type", "quantity", "cost_pence", "is_estimated")
WATER_COLUMNS = ("timestamp", "reading_date", "consumption_m3", "reading_type", "meter_serial")
METER_POINT_COLUMNS = ("reading_date", "reading_time", "reading_datetime", "value_m3")


class TelemetryStore:
    def __init__(self, sessionmaker: async_sessionmaker) -> None:
        self._sessionmaker = sessionmaker
        self._write_lock = asyncio.Lock()
        self._closed = False

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._write_lock:
            if self._closed:
                raise RuntimeError("store is closed")
            async with self._sessionmaker() as session:
                async with session.begin():
                    yield session

    async def close(self) -> None:
        async with self._write_lock:
            self._closed = True
            await close_database()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def insert_sensor_readings(self, timestamp: str, samples: Sequence[SensorSample]) -> StoreResult:
        rows = []
        skipped = 0
        for s in samples:
            if not is_finite_number(s.temperature_c):
                skipped += 1
                continue
            humidity = s.humidity if is_finite_number(s.humidity) else None
            rows.append(
                {
                    "timestamp": timestamp,
                    "channel": s.channel,
                    "room_name": s.room_name,
                    "temperature_c": s.temperature_c,
                    "humidity": humidity,
                    "battery": s.battery,
                }
            )

        if rows:
            stmt = sqlite_insert(SensorReading.__table__).on_conflict_do_nothing(index_elements=["channel", "timestamp"])
            async with self._transaction() as session:
                await session.execute(stmt, rows)

        if skipped:
            logger.warning(f"Skipped {skipped} sensor readings with non-finite temperature")
        return StoreResult(stored=len(rows), skipped=skipped)

    async def upsert_energy(self, records: Sequence[EnergyRecord]) -> StoreResult:
        now = _utcnow()
        rows = []
        skipped = 0
        for r in records:
            if not is_finite_number(r.quantity):
                skipped += 1
                continue
            rows.append(
                {
                    "timestamp": r.timestamp,
                    "type": r.type,
                    "quantity": r.quantity,
                    "cost_pence": r.cost_pence if is_finite_number(r.cost_pence) else None,
                    "is_estimated": r.is_estimated,
                    "updated_at": now,
                }
            )

        if rows:
            stmt = sqlite_insert(EnergyReading.__table__)
            stmt = stmt.on_conflict_do_update(
                index_elements=["timestamp", "type"],
                set_={
                    "quantity": stmt.excluded.quantity,
                    "cost_pence": stmt.excluded.cost_pence,
                    "is_estimated": stmt.excluded.is_estimated,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            async with self._transaction() as session:
                await session.execute(stmt, rows)

        if skipped:
            logger.warning(f"Skipped {skipped} energy readings with non-finite quantity")
        return StoreResult(stored=len(rows), skipped=skipped)

    @staticmethod
    def _water_rows(samples: Sequence[WaterSample], now: datetime) -> List[Dict[str, Any]]:
        return [
            {
                "timestamp": s.timestamp,
                "reading_date": s.reading_date,
                "consumption_m3": s.consumption_m3,
                "reading_type": s.reading_type.value,
                "meter_serial": s.meter_serial,
                "updated_at": now,
            }
            for s in samples
            if is_finite_number(s.consumption_m3)
        ]

    @staticmethod
    async def _upsert_water_rows(session: AsyncSession, rows: List[Dict[str, Any]]) -> None:
        stmt = sqlite_insert(WaterReading.__table__)
        stmt = stmt.on_conflict_do_update(
            index_elements=["reading_date", "reading_type"],
            set_={
                "timestamp": stmt.excluded.timestamp,
                "consumption_m3": stmt.excluded.consumption_m3,
                "meter_serial": stmt.excluded.meter_serial,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await session.execute(stmt, rows)

    async def upsert_water(self, samples: Sequence[WaterSample]) -> StoreResult:
        rows = self._water_rows(samples, _utcnow())
        skipped = len(samples) - len(rows)
        if rows:
            async with self._transaction() as session:
                await self._upsert_water_rows(session, rows)
        if skipped:
            logger.warning(f"Skipped {skipped} water readings with non-finite consumption")
        return StoreResult(stored=len(rows), skipped=skipped)

    async def record_meter_point(
        self,
        point: MeterPoint,
        derived: Sequence[WaterSample] = (),
        clear_meter_days: Optional[Tuple[date, date]] = None,
    ) -> StoreResult:
        """
        Persist a cumulative point and the daily rows derived from it in one transaction.

        ``clear_meter_days`` is an (after, through] date range whose derived
        "meter" rows are deleted first, so a late point can replace the rows
        its neighbours produced.
        """
        if not is_finite_number(point.value_m3):
            raise ValueError(f"meter value must be a finite number, got {point.value_m3!r}")

        stmt = sqlite_insert(MeterPointReading.__table__)
        stmt = stmt.on_conflict_do_update(
            index_elements=["reading_date", "reading_time"],
            set_={"value_m3": stmt.excluded.value_m3, "reading_datetime": stmt.excluded.reading_datetime},
        )
        water_rows = self._water_rows(derived, _utcnow())

        async with self._transaction() as session:
            if clear_meter_days is not None:
                after, through = clear_meter_days
                await session.execute(
                    delete(WaterReading).where(
                        WaterReading.reading_type == WaterReadingType.METER.value,
                        WaterReading.reading_date > after,
                        WaterReading.reading_date <= through,
                    )
                )
            await session.execute(
                stmt,
                [
                    {
                        "reading_date": point.reading_date,
                        "reading_time": point.reading_time,
                        "reading_datetime": point.reading_datetime,
                        "value_m3": point.value_m3,
                    }
                ],
            )
            if water_rows:
                await self._upsert_water_rows(session, water_rows)

        return StoreResult(stored=1 + len(water_rows), skipped=len(derived) - len(water_rows))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def latest_sensor_readings(self) -> List[Dict[str, Any]]:
        latest = (
            select(SensorReading.channel, func.max(SensorReading.timestamp).label("max_ts"))
            .group_by(SensorReading.channel)
            .subquery()
        )
        stmt = (
            select(SensorReading)
            .join(latest, and_(SensorReading.channel == latest.c.channel, SensorReading.timestamp == latest.c.max_ts))
            .order_by(SensorReading.channel)
        )
        async with self._sessionmaker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_dict(r, SENSOR_COLUMNS) for r in rows]

    async def sensor_history(self, hours: int = 24, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        since = format_ts((now or _utcnow()) - timedelta(hours=hours))
        stmt = (
            select(SensorReading)
            .where(SensorReading.timestamp > since)
            .order_by(SensorReading.timestamp.asc(), SensorReading.channel)
        )
        async with self._sessionmaker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_dict(r, SENSOR_COLUMNS) for r in rows]

    async def energy_range(
        self, start: datetime, end: datetime, types: Optional[Sequence[str]] = None
    ) -> List[Dict[str, Any]]:
        stmt = select(EnergyReading).where(
            EnergyReading.timestamp >= format_ts(start), EnergyReading.timestamp < format_ts(end)
        )
        if types:
            stmt = stmt.where(EnergyReading.type.in_(list(types)))
        stmt = stmt.order_by(EnergyReading.timestamp, EnergyReading.type)
        async with self._sessionmaker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_dict(r, ENERGY_COLUMNS) for r in rows]

    async def latest_energy(self) -> List[Dict[str, Any]]:
        latest = (
            select(EnergyReading.type, func.max(EnergyReading.timestamp).label("max_ts"))
            .group_by(EnergyReading.type)
            .subquery()
        )
        stmt = (
            select(EnergyReading)
            .join(latest, and_(EnergyReading.type == latest.c.type, EnergyReading.timestamp == latest.c.max_ts))
            .order_by(EnergyReading.type)
        )
        async with self._sessionmaker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_dict(r, ENERGY_COLUMNS) for r in rows]

    async def daily_energy_totals(self, start: datetime, end: datetime, energy_type: str) -> List[Dict[str, Any]]:
        day = func.substr(EnergyReading.timestamp, 1, 10).label("day")
        stmt = (
            select(
                day,
                func.sum(EnergyReading.quantity).label("quantity"),
                func.sum(EnergyReading.cost_pence).label("cost_pence"),
                func.count().label("slots"),
                func.sum(EnergyReading.is_estimated).label("estimated_slots"),
            )
            .where(
                EnergyReading.type == energy_type,
                EnergyReading.timestamp >= format_ts(start),
                EnergyReading.timestamp < format_ts(end),
            )
            .group_by(day)
            .order_by(day)
        )
        async with self._sessionmaker() as session:
            rows = (await session.execute(stmt)).all()
        return [
            {
                "date": r.day,
                "quantity": round(r.quantity or 0.0, 4),
                "cost_pence": round(r.cost_pence, 2) if r.cost_pence is not None else None,
                "slots": r.slots,
                "estimated_slots": int(r.estimated_slots or 0),
            }
            for r in rows
        ]

    async def water_readings(
        self, start: date, end: date, reading_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        stmt = select(WaterReading).where(WaterReading.reading_date >= start, WaterReading.reading_date <= end)
        if reading_type:
            stmt = stmt.where(WaterReading.reading_type == reading_type)
        stmt = stmt.order_by(WaterReading.reading_date, WaterReading.reading_type)
        async with self._sessionmaker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_dict(r, WATER_COLUMNS) for r in rows]

    async def previous_meter_point(self, before: datetime) -> Optional[MeterPoint]:
        stmt = (
            select(MeterPointReading)
            .where(MeterPointReading.reading_datetime < before)
            .order_by(MeterPointReading.reading_datetime.desc())
            .limit(1)
        )
        async with self._sessionmaker() as session:
            row = (await session.execute(stmt)).scalars().first()
        if row is None:
            return None
        return MeterPoint(reading_date=row.reading_date, reading_time=row.reading_time, value_m3=row.value_m3)

    async def next_meter_point(self, after: datetime) -> Optional[MeterPoint]:
        stmt = (
            select(MeterPointReading)
            .where(MeterPointReading.reading_datetime > after)
            .order_by(MeterPointReading.reading_datetime.asc())
            .limit(1)
        )
        async with self._sessionmaker() as session:
            row = (await session.execute(stmt)).scalars().first()
        if row is None:
            return None
        return MeterPoint(reading_date=row.reading_date, reading_time=row.reading_time, value_m3=row.value_m3)

    async def meter_points(self) -> List[Dict[str, Any]]:
        stmt = select(MeterPointReading).order_by(MeterPointReading.reading_datetime)
        async with self._sessionmaker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_dict(r, METER_POINT_COLUMNS) for r in rows]
