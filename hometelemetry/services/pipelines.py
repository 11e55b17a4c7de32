# hometelemetry/services/pipelines.py
"""
One poll cycle per provider:

    Idle -> Authenticating -> Fetching -> Merging -> Storing -> MirrorSyncing -> Idle

Anything failing at or before Storing means nothing was persisted for the
cycle. The mirror push runs as a detached task: its result is logged and
never turns a stored cycle into a failed one.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from hometelemetry.core.errors import TelemetryError
from hometelemetry.models.series import (
    EnergyRecord,
    Granularity,
    SeriesPoint,
    UtilityType,
    WaterReadingType,
    WaterSample,
    floor_half_hour,
    format_ts,
    parse_ts,
    start_of_day,
)
from hometelemetry.services.ecowitt_client import EcowittClient
from hometelemetry.services.fallback_fetcher import GranularityFallbackFetcher
from hometelemetry.services.mirror import MirrorSink
from hometelemetry.services.series_merge import merge_series
from hometelemetry.services.source_client import SourceClient, utcnow
from hometelemetry.services.store import TelemetryStore, is_finite_number

logger = logging.getLogger("telemetry.pipeline")


class CycleState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    FETCHING = "fetching"
    MERGING = "merging"
    STORING = "storing"
    MIRROR_SYNCING = "mirror_syncing"


class IngestBatch(BaseModel):
    """What one window produced and committed."""

    fetched: Dict[str, int] = Field(default_factory=dict)
    stored: Dict[str, int] = Field(default_factory=dict)
    skipped: int = 0
    estimated: int = 0
    mirror_rows: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)


class CycleReport(BaseModel):
    provider: str
    started_at: str
    finished_at: Optional[str] = None
    state: CycleState = CycleState.IDLE
    fetched: Dict[str, int] = Field(default_factory=dict)
    stored: Dict[str, int] = Field(default_factory=dict)
    skipped: int = 0
    estimated: int = 0
    mirror: str = "skipped"  # scheduled | disabled | skipped
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ProviderPipeline(ABC):
    name = "provider"
    # per-request window limit for backfills; None when the provider has no history
    chunk_days: Optional[int] = None

    def __init__(
        self,
        client: SourceClient,
        store: TelemetryStore,
        mirror: MirrorSink,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.store = store
        self.mirror = mirror
        self._clock = clock
        self.state = CycleState.IDLE
        self.last_mirror_ok: Optional[bool] = None
        self._mirror_tasks: Set[asyncio.Task] = set()

    def _enter(self, state: CycleState) -> None:
        self.state = state
        logger.debug(f"[{self.name}] -> {state.value}")

    @abstractmethod
    async def ingest_current(self) -> IngestBatch:
        """Fetch, merge and store the provider's current window."""

    async def ingest_range(self, start: datetime, end: datetime) -> IngestBatch:
        raise TelemetryError(f"{self.name} has no historical range to ingest")

    async def run(self) -> CycleReport:
        report = CycleReport(provider=self.name, started_at=format_ts(self._clock()))
        try:
            self._enter(CycleState.AUTHENTICATING)
            await self.client.ensure_token()
            batch = await self.ingest_current()
        except Exception as e:
            report.state = self.state
            report.error = str(e) or e.__class__.__name__
            report.finished_at = format_ts(self._clock())
            logger.warning(f"[{self.name}] cycle failed during {self.state.value}: {report.error}")
            self._enter(CycleState.IDLE)
            return report

        report.fetched = batch.fetched
        report.stored = batch.stored
        report.skipped = batch.skipped
        report.estimated = batch.estimated

        self._enter(CycleState.MIRROR_SYNCING)
        report.mirror = self._schedule_mirror(batch)
        report.state = CycleState.MIRROR_SYNCING
        report.finished_at = format_ts(self._clock())
        self._enter(CycleState.IDLE)

        logger.info(
            f"[{self.name}] cycle OK - stored {sum(batch.stored.values())} rows "
            f"({batch.skipped} skipped, {batch.estimated} estimated), mirror {report.mirror}"
        )
        return report

    # ------------------------------------------------------------------
    # Mirror
    # ------------------------------------------------------------------
    async def mirror_batch(self, batch: IngestBatch) -> bool:
        ok = True
        for entity, rows in batch.mirror_rows.items():
            ok = await self.mirror.push(entity, rows) and ok
        self.last_mirror_ok = ok
        if not ok:
            logger.warning(f"[{self.name}] mirror sync incomplete; local data unaffected")
        return ok

    def _schedule_mirror(self, batch: IngestBatch) -> str:
        if not self.mirror.enabled:
            return "disabled"
        if not any(batch.mirror_rows.values()):
            return "skipped"
        task = asyncio.create_task(self.mirror_batch(batch), name=f"mirror-{self.name}")
        self._mirror_tasks.add(task)
        task.add_done_callback(self._mirror_tasks.discard)
        return "scheduled"

    async def drain_mirror(self) -> None:
        """Wait for detached mirror pushes (shutdown and tests)."""
        if self._mirror_tasks:
            await asyncio.gather(*list(self._mirror_tasks), return_exceptions=True)


# ----------------------------------------------------------------------
# Sensors (Ecowitt)
# ----------------------------------------------------------------------
class SensorPipeline(ProviderPipeline):
    name = "ecowitt"

    def __init__(self, client: EcowittClient, store: TelemetryStore, mirror: MirrorSink, **kwargs: Any) -> None:
        super().__init__(client, store, mirror, **kwargs)
        self.client: EcowittClient = client

    async def ingest_current(self) -> IngestBatch:
        self._enter(CycleState.FETCHING)
        snapshot = await self.client.fetch_current()
        if not snapshot.ok:
            raise snapshot.error

        # one snapshot, nothing to join
        self._enter(CycleState.MERGING)
        timestamp = format_ts(self._clock())

        self._enter(CycleState.STORING)
        result = await self.store.insert_sensor_readings(timestamp, snapshot.samples)

        rows = [
            {"timestamp": timestamp, **s.model_dump()}
            for s in snapshot.samples
            if is_finite_number(s.temperature_c)
        ]
        return IngestBatch(
            fetched={"readings": len(snapshot.samples)},
            stored={"readings": result.stored},
            skipped=result.skipped,
            mirror_rows={"readings": rows},
        )


# ----------------------------------------------------------------------
# Electricity + gas (Glow)
# ----------------------------------------------------------------------
class UtilityResources(BaseModel):
    consumption: str
    cost: Optional[str] = None


class EnergyPipeline(ProviderPipeline):
    name = "glow"

    def __init__(
        self,
        client: SourceClient,
        store: TelemetryStore,
        mirror: MirrorSink,
        resources: Dict[UtilityType, UtilityResources],
        lookback_days: int = 2,
        chunk_days: int = 10,
        fetcher: Optional[GranularityFallbackFetcher] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(client, store, mirror, **kwargs)
        if not resources:
            raise ValueError("at least one utility resource is required")
        self.resources = resources
        self.lookback_days = lookback_days
        self.chunk_days = chunk_days
        self.fetcher = fetcher or GranularityFallbackFetcher(client)

    async def ingest_current(self) -> IngestBatch:
        now = self._clock()
        end = floor_half_hour(now)
        start = start_of_day(now) - timedelta(days=self.lookback_days)
        return await self.ingest_range(start, end)

    async def ingest_range(self, start: datetime, end: datetime) -> IngestBatch:
        self._enter(CycleState.FETCHING)
        series: Dict[str, List[SeriesPoint]] = {}
        for utility, res in self.resources.items():
            series[utility.value] = (await self.fetcher.fetch(res.consumption, start, end)).unwrap()
            if res.cost:
                series[utility.cost_type] = (await self.fetcher.fetch(res.cost, start, end)).unwrap()

        self._enter(CycleState.MERGING)
        records: List[EnergyRecord] = []
        for utility in self.resources:
            cost_points = series.get(utility.cost_type)
            for m in merge_series(series[utility.value], cost_points):
                records.append(
                    EnergyRecord(
                        timestamp=m.timestamp,
                        type=utility.value,
                        quantity=m.value,
                        cost_pence=m.cost,
                        is_estimated=m.is_estimated,
                    )
                )
            for p in cost_points or []:
                records.append(
                    EnergyRecord(timestamp=p.timestamp, type=utility.cost_type, quantity=p.value, is_estimated=p.is_estimated)
                )

        self._enter(CycleState.STORING)
        result = await self.store.upsert_energy(records)

        kept = [r for r in records if is_finite_number(r.quantity)]
        return IngestBatch(
            fetched={kind: len(points) for kind, points in series.items()},
            stored=dict(Counter(r.type for r in kept)),
            skipped=result.skipped,
            estimated=sum(1 for r in kept if r.is_estimated),
            mirror_rows={"energy_readings": [r.model_dump() for r in kept]},
        )


# ----------------------------------------------------------------------
# Water (Kraken)
# ----------------------------------------------------------------------
class WaterPipeline(ProviderPipeline):
    name = "kraken"

    def __init__(
        self,
        client: SourceClient,
        store: TelemetryStore,
        mirror: MirrorSink,
        meter_serial: str,
        lookback_days: int = 7,
        chunk_days: int = 31,
        **kwargs: Any,
    ) -> None:
        super().__init__(client, store, mirror, **kwargs)
        self.meter_serial = meter_serial
        self.lookback_days = lookback_days
        self.chunk_days = chunk_days

    async def ingest_current(self) -> IngestBatch:
        end = start_of_day(self._clock()) + timedelta(days=1)
        start = end - timedelta(days=self.lookback_days)
        return await self.ingest_range(start, end)

    async def ingest_range(self, start: datetime, end: datetime) -> IngestBatch:
        self._enter(CycleState.FETCHING)
        points = (await self.client.fetch_range(self.meter_serial, start, end, Granularity.DAY)).unwrap()

        # daily smart readings only; nothing to join
        self._enter(CycleState.MERGING)
        samples = [
            WaterSample(
                timestamp=p.timestamp,
                reading_date=p.local_date or parse_ts(p.timestamp).date(),
                consumption_m3=p.value,
                reading_type=WaterReadingType.SMART,
                meter_serial=self.meter_serial,
            )
            for p in points
        ]

        self._enter(CycleState.STORING)
        result = await self.store.upsert_water(samples)

        kept = [s for s in samples if is_finite_number(s.consumption_m3)]
        return IngestBatch(
            fetched={"water": len(points)},
            stored={"water": result.stored},
            skipped=result.skipped,
            mirror_rows={"water_readings": [s.model_dump(mode="json") for s in kept]},
        )
