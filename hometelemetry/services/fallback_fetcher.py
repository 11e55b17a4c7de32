# hometelemetry/services/fallback_fetcher.py
"""
Half-hourly fetch with a daily fallback for provider lag.

Smart-meter backends (DCC) fill in recent half-hours late, and the gap shows
up as runs of zeros rather than as errors. When most of the last 48 hours of
the requested window reads zero, the half-hourly result is thrown away for
the whole window and each daily total is spread evenly over its 48 slots.
Those spread values are an approximation: they carry ``is_estimated=True``.
A zero in an otherwise healthy series is real usage and is kept.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Sequence

from hometelemetry.models.series import (
    HALF_HOUR,
    SLOTS_PER_DAY,
    FetchResult,
    Granularity,
    SeriesPoint,
    format_ts,
    parse_ts,
    start_of_day,
)
from hometelemetry.services.source_client import SourceClient

logger = logging.getLogger("telemetry.fallback")

RECENT_WINDOW = timedelta(hours=48)
ZERO_FRACTION_THRESHOLD = 0.5


def recent_zero_fraction(
    points: Sequence[SeriesPoint], start: datetime, end: datetime, recent_window: timedelta = RECENT_WINDOW
) -> float:
    """Share of zero slots among the points in the last ``recent_window`` of [start, end)."""
    lo = format_ts(max(start, end - recent_window))
    hi = format_ts(end)
    recent = [p for p in points if lo <= p.timestamp < hi]
    if not recent:
        # nothing published yet for the recent window: as lagged as it gets
        return 1.0
    zeros = sum(1 for p in recent if p.value == 0)
    return zeros / len(recent)


def expand_daily(points: Sequence[SeriesPoint]) -> List[SeriesPoint]:
    """Spread each daily total over 48 half-hour slots starting at its midnight."""
    expanded: List[SeriesPoint] = []
    for day in points:
        midnight = start_of_day(parse_ts(day.timestamp))
        slot_value = day.value / SLOTS_PER_DAY
        for i in range(SLOTS_PER_DAY):
            expanded.append(
                SeriesPoint(timestamp=format_ts(midnight + i * HALF_HOUR), value=slot_value, is_estimated=True)
            )
    return expanded


class GranularityFallbackFetcher:
    def __init__(
        self,
        client: SourceClient,
        recent_window: timedelta = RECENT_WINDOW,
        zero_threshold: float = ZERO_FRACTION_THRESHOLD,
    ) -> None:
        self.client = client
        self.recent_window = recent_window
        self.zero_threshold = zero_threshold

    async def fetch(self, resource_id: str, start: datetime, end: datetime) -> FetchResult:
        fine = await self.client.fetch_range(resource_id, start, end, Granularity.HALF_HOUR)
        if not fine.ok:
            return fine

        fraction = recent_zero_fraction(fine.points, start, end, self.recent_window)
        if fraction <= self.zero_threshold:
            return fine

        logger.warning(
            f"[{self.client.name}] {resource_id}: {fraction:.0%} of recent half-hours are zero "
            f"({start} -> {end}); substituting daily totals expanded to synthetic half-hours"
        )
        coarse = await self.client.fetch_range(resource_id, start_of_day(start), end, Granularity.DAY)
        if not coarse.ok:
            return coarse

        expanded = expand_daily(coarse.points)
        logger.info(f"[{self.client.name}] {resource_id}: {len(coarse.points)} days -> {len(expanded)} estimated slots")
        return FetchResult(points=expanded)
