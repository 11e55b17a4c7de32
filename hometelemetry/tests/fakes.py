"""Fake collaborators shared by the test modules."""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from hometelemetry.core.errors import SourceError, TransportError
from hometelemetry.models.series import FetchResult, Granularity, SeriesPoint, SnapshotResult, format_ts, parse_ts
from hometelemetry.services.mirror import MirrorSink
from hometelemetry.services.pipelines import CycleReport, CycleState, IngestBatch, ProviderPipeline
from hometelemetry.services.source_client import utcnow


def half_hours(start: datetime, values: List[float], step: timedelta = timedelta(minutes=30)) -> List[SeriesPoint]:
    return [SeriesPoint(timestamp=format_ts(start + i * step), value=v) for i, v in enumerate(values)]


class FakeSeriesClient:
    """Serves canned series per (resource_id, granularity), or a SourceError."""

    name = "glow"

    def __init__(self, series: Optional[Dict[Tuple[str, Granularity], object]] = None):
        self.series = series or {}
        self.calls: List[Tuple[str, Granularity, datetime, datetime]] = []
        self.logins = 0

    async def ensure_token(self):
        self.logins += 1

    async def fetch_range(self, resource_id, start, end, granularity):
        self.calls.append((resource_id, granularity, start, end))
        value = self.series.get((resource_id, granularity))
        if isinstance(value, SourceError):
            return FetchResult.failure(value)
        return FetchResult(points=[p for p in value or [] if start <= parse_ts(p.timestamp) < end])

    async def aclose(self):
        return None


class FakeSensorClient:
    name = "ecowitt"

    def __init__(self, result: SnapshotResult):
        self.result = result

    async def ensure_token(self):
        return None

    async def fetch_current(self):
        return self.result


class RecordingMirror(MirrorSink):
    name = "recording"

    def __init__(self):
        self.pushed: Dict[str, List[dict]] = {}

    async def _push(self, entity, rows):
        self.pushed.setdefault(entity, []).extend(rows)


class FailingMirror(MirrorSink):
    name = "failing"

    def __init__(self):
        self.attempts = 0

    async def _push(self, entity, rows):
        self.attempts += 1
        raise ConnectionError("mirror unreachable")


class FakePipeline:
    """Stands in for a ProviderPipeline in the scheduler; optionally blocks until released."""

    def __init__(self, name, error=None, gate=None):
        self.name = name
        self.error = error
        self.gate = gate
        self.state = CycleState.IDLE
        self.last_mirror_ok = None
        self.runs = 0

    async def run(self):
        self.runs += 1
        if self.gate is not None:
            await self.gate.wait()
        state = CycleState.FETCHING if self.error else CycleState.MIRROR_SYNCING
        return CycleReport(
            provider=self.name,
            started_at="2024-01-01T00:00:00Z",
            finished_at="2024-01-01T00:00:01Z",
            state=state,
            error=self.error,
        )


class ChunkPipeline(ProviderPipeline):
    """Energy-like pipeline whose ingest_range fails for chosen chunk starts."""

    name = "glow"
    chunk_days = 10

    def __init__(self, mirror, fail_on=(), clock=None):
        super().__init__(client=None, store=None, mirror=mirror, clock=clock or utcnow)
        self.fail_on = set(fail_on)
        self.windows = []

    async def ingest_current(self):
        raise AssertionError("backfill must not use the current window")

    async def ingest_range(self, start, end):
        self.windows.append((start, end))
        if start in self.fail_on:
            raise TransportError("glow: HTTP 500", provider="glow", status_code=500)
        return IngestBatch(
            fetched={"electricity": 480},
            stored={"electricity": 480, "electricity_cost": 470},
            mirror_rows={"energy_readings": [{"timestamp": start.isoformat(), "type": "electricity", "quantity": 1.0}]},
        )
