# hometelemetry/services/backfill.py

from __future__ import annotations

import asyncio
import logging
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from hometelemetry.models.series import format_ts, start_of_day
from hometelemetry.services.pipelines import CycleState, ProviderPipeline
from hometelemetry.services.source_client import utcnow

logger = logging.getLogger("telemetry.backfill")


class ChunkOutcome(BaseModel):
    index: int
    start: str
    end: str
    fetched: Dict[str, int] = Field(default_factory=dict)
    stored: Dict[str, int] = Field(default_factory=dict)
    skipped: int = 0
    estimated: int = 0
    mirror_ok: Optional[bool] = None  # None: not attempted
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BackfillReport(BaseModel):
    provider: str
    window_start: str
    window_end: str
    chunk_days: int
    total_chunks: int
    chunks: List[ChunkOutcome] = Field(default_factory=list)
    totals: Dict[str, int] = Field(default_factory=dict)
    fetched_totals: Dict[str, int] = Field(default_factory=dict)
    errors: int = 0
    mirror_enabled: bool = False
    mirror_ok: bool = False
    started_at: str
    finished_at: Optional[str] = None


def plan_chunks(window_end: datetime, days: int, chunk_days: int) -> List[Tuple[datetime, datetime]]:
    """Split the ``days`` before ``window_end`` into chunks, newest first."""
    window_start = window_end - timedelta(days=days)
    step = timedelta(days=chunk_days)
    chunks: List[Tuple[datetime, datetime]] = []
    chunk_end = window_end
    while chunk_end > window_start:
        chunk_start = max(chunk_end - step, window_start)
        chunks.append((chunk_start, chunk_end))
        chunk_end = chunk_start
    return chunks


class BackfillOrchestrator:
    """
    Re-ingests a historical window through a provider pipeline, one
    provider-sized chunk at a time, walking backward from the start of today.

    Chunks run strictly one after another under the provider's run lock: the
    upstream APIs do not accept concurrent requests for one credential. A
    failing chunk is recorded and the walk carries on.
    """

    def __init__(
        self,
        pipeline: ProviderPipeline,
        max_days: int = 400,
        chunk_days: Optional[int] = None,
        lock: Optional[asyncio.Lock] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        chunk = chunk_days or pipeline.chunk_days
        if not chunk or chunk <= 0:
            raise ValueError(f"{pipeline.name} does not support backfill")
        self.pipeline = pipeline
        self.max_days = max_days
        self.chunk_days = chunk
        self._lock = lock
        self._clock = clock

    async def run(self, days: Optional[int] = None) -> BackfillReport:
        days = self.max_days if days is None else days
        if days <= 0:
            raise ValueError("days must be positive")
        days = min(days, self.max_days)

        window_end = start_of_day(self._clock())
        chunks = plan_chunks(window_end, days, self.chunk_days)
        report = BackfillReport(
            provider=self.pipeline.name,
            window_start=format_ts(window_end - timedelta(days=days)),
            window_end=format_ts(window_end),
            chunk_days=self.chunk_days,
            total_chunks=len(chunks),
            mirror_enabled=self.pipeline.mirror.enabled,
            started_at=format_ts(self._clock()),
        )
        logger.info(
            f"[backfill:{self.pipeline.name}] {days} days in {len(chunks)} chunks of {self.chunk_days} days"
        )

        async with self._lock or nullcontext():
            for index, (start, end) in enumerate(chunks):
                outcome = await self._run_chunk(index, start, end)
                report.chunks.append(outcome)
                for kind, count in outcome.stored.items():
                    report.totals[kind] = report.totals.get(kind, 0) + count
                for kind, count in outcome.fetched.items():
                    report.fetched_totals[kind] = report.fetched_totals.get(kind, 0) + count

        report.errors = sum(1 for c in report.chunks if not c.ok)
        report.mirror_ok = report.mirror_enabled and all(c.mirror_ok is True for c in report.chunks if c.ok)
        report.finished_at = format_ts(self._clock())

        logger.info(
            f"[backfill:{self.pipeline.name}] done: {report.total_chunks} chunks, {report.errors} failed, "
            f"totals {report.totals}, mirror_ok={report.mirror_ok}"
        )
        return report

    async def _run_chunk(self, index: int, start: datetime, end: datetime) -> ChunkOutcome:
        outcome = ChunkOutcome(index=index, start=format_ts(start), end=format_ts(end))
        try:
            batch = await self.pipeline.ingest_range(start, end)
        except Exception as e:
            outcome.error = str(e) or e.__class__.__name__
            logger.warning(
                f"[backfill:{self.pipeline.name}] chunk {index} {outcome.start} -> {outcome.end} failed "
                f"during {self.pipeline.state.value}: {outcome.error}"
            )
            return outcome
        finally:
            self.pipeline.state = CycleState.IDLE

        outcome.fetched = batch.fetched
        outcome.stored = batch.stored
        outcome.skipped = batch.skipped
        outcome.estimated = batch.estimated
        if self.pipeline.mirror.enabled:
            outcome.mirror_ok = await self.pipeline.mirror_batch(batch)

        logger.info(
            f"[backfill:{self.pipeline.name}] chunk {index} {outcome.start} -> {outcome.end}: stored {outcome.stored}"
        )
        return outcome
