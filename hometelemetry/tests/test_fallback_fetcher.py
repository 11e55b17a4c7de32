from datetime import datetime, timedelta, timezone

import pytest

from hometelemetry.core.errors import TransportError
from hometelemetry.models.series import Granularity, SeriesPoint
from hometelemetry.services.fallback_fetcher import (
    GranularityFallbackFetcher,
    expand_daily,
    recent_zero_fraction,
)
from hometelemetry.tests.fakes import FakeSeriesClient, half_hours

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 1, 3, tzinfo=timezone.utc)


def test_recent_zero_fraction_only_looks_at_recent_window():
    # 4 days of data: old days busy, last 48h mostly zero
    start = END - timedelta(days=4)
    points = half_hours(start, [1.0] * 96 + [0.0] * 60 + [1.0] * 36)
    assert recent_zero_fraction(points, start, END) == pytest.approx(60 / 96)


def test_recent_zero_fraction_of_empty_recent_window_is_total():
    assert recent_zero_fraction([], START, END) == 1.0


def test_expand_daily_spreads_total_over_48_estimated_slots():
    expanded = expand_daily([SeriesPoint(timestamp="2024-01-01T00:00:00Z", value=9.6)])

    assert len(expanded) == 48
    assert expanded[0].timestamp == "2024-01-01T00:00:00Z"
    assert expanded[-1].timestamp == "2024-01-01T23:30:00Z"
    assert all(p.is_estimated for p in expanded)
    assert sum(p.value for p in expanded) == pytest.approx(9.6)
    assert expanded[5].value == pytest.approx(0.2)


@pytest.mark.asyncio
async def test_healthy_series_is_returned_untouched():
    values = [0.0] * 40 + [0.4] * 56  # 40 zeros out of 96
    client = FakeSeriesClient({("elec", Granularity.HALF_HOUR): half_hours(START, values)})

    result = await GranularityFallbackFetcher(client).fetch("elec", START, END)

    assert result.ok
    assert len(result.points) == 96
    assert not any(p.is_estimated for p in result.points)
    assert [c[1] for c in client.calls] == [Granularity.HALF_HOUR]


@pytest.mark.asyncio
async def test_lagged_series_is_replaced_by_expanded_daily_totals():
    values = [0.3] * 40 + [0.0] * 56
    daily = half_hours(START, [4.8, 9.6], step=timedelta(days=1))
    client = FakeSeriesClient(
        {
            ("elec", Granularity.HALF_HOUR): half_hours(START, values),
            ("elec", Granularity.DAY): daily,
        }
    )

    result = await GranularityFallbackFetcher(client).fetch("elec", START + timedelta(hours=6), END)

    assert result.ok
    assert len(result.points) == 96
    assert all(p.is_estimated for p in result.points)
    assert result.points[0].timestamp == "2024-01-01T00:00:00Z"
    assert result.points[0].value == pytest.approx(0.1)
    assert result.points[48].value == pytest.approx(0.2)
    # daily refetch starts at the beginning of the first day
    day_call = client.calls[1]
    assert day_call[1] == Granularity.DAY
    assert day_call[2] == START


@pytest.mark.asyncio
async def test_exactly_half_zero_does_not_fall_back():
    values = [0.0, 1.0] * 48
    client = FakeSeriesClient({("elec", Granularity.HALF_HOUR): half_hours(START, values)})

    result = await GranularityFallbackFetcher(client).fetch("elec", START, END)

    assert not any(p.is_estimated for p in result.points)


@pytest.mark.asyncio
async def test_fetch_error_is_passed_through():
    client = FakeSeriesClient({("elec", Granularity.HALF_HOUR): TransportError("glow: HTTP 502", provider="glow")})

    result = await GranularityFallbackFetcher(client).fetch("elec", START, END)

    assert not result.ok
    assert isinstance(result.error, TransportError)
