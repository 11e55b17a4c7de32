from datetime import date

import pytest

from hometelemetry.services.meter_reconciler import MeterReconciler
from hometelemetry.tests.fakes import FailingMirror, RecordingMirror


@pytest.mark.asyncio
async def test_first_reading_derives_nothing(store):
    result = await MeterReconciler(store, meter_serial="WM-01").record(date(2024, 1, 1), "08:00", 100.0)

    assert result.previous is None
    assert result.derived == []
    assert result.anomaly is None
    assert len(await store.meter_points()) == 1


@pytest.mark.asyncio
async def test_delta_spread_evenly_over_following_days(store):
    reconciler = MeterReconciler(store, meter_serial="WM-01")
    await reconciler.record(date(2024, 1, 1), "08:00", 100.0)

    result = await reconciler.record(date(2024, 1, 3), "08:00", 100.24)

    assert result.previous.value_m3 == 100.0
    assert result.elapsed_hours == 48
    assert result.daily_rate_m3 == pytest.approx(0.12)
    assert [d.reading_date for d in result.derived] == [date(2024, 1, 2), date(2024, 1, 3)]

    rows = await store.water_readings(date(2024, 1, 1), date(2024, 1, 5), reading_type="meter")
    assert [(r["reading_date"], r["consumption_m3"]) for r in rows] == [
        ("2024-01-02", pytest.approx(0.12)),
        ("2024-01-03", pytest.approx(0.12)),
    ]
    assert rows[0]["meter_serial"] == "WM-01"
    assert rows[0]["timestamp"] == "2024-01-02T00:00:00Z"


@pytest.mark.asyncio
async def test_decreasing_register_is_an_anomaly_but_point_is_kept(store):
    reconciler = MeterReconciler(store)
    await reconciler.record(date(2024, 1, 1), "08:00", 100.0)

    result = await reconciler.record(date(2024, 1, 4), "09:30", 12.5)

    assert result.anomaly["kind"] == "meter_value_decreased"
    assert result.derived == []
    assert result.daily_rate_m3 is None
    assert len(await store.meter_points()) == 2
    assert await store.water_readings(date(2024, 1, 1), date(2024, 1, 5)) == []


@pytest.mark.asyncio
async def test_late_entry_uses_the_reading_just_before_it(store):
    reconciler = MeterReconciler(store)
    await reconciler.record(date(2024, 1, 1), "08:00", 100.0)
    await reconciler.record(date(2024, 1, 10), "08:00", 101.0)

    result = await reconciler.record(date(2024, 1, 5), "08:00", 100.4)

    assert result.previous.reading_date == date(2024, 1, 1)
    assert result.daily_rate_m3 == pytest.approx(0.1)
    assert len(result.derived) == 4


@pytest.mark.asyncio
async def test_same_day_readings_give_a_rate_but_no_rows(store):
    reconciler = MeterReconciler(store)
    await reconciler.record(date(2024, 1, 1), "06:00", 100.0)

    result = await reconciler.record(date(2024, 1, 1), "18:00", 100.1)

    assert result.daily_rate_m3 == pytest.approx(0.2)
    assert result.derived == []


@pytest.mark.asyncio
@pytest.mark.parametrize("reading_time, value", [("8am", 100.0), ("25:00", 100.0), ("08:00", float("inf"))])
async def test_invalid_input_is_rejected(store, reading_time, value):
    with pytest.raises(ValueError):
        await MeterReconciler(store).record(date(2024, 1, 1), reading_time, value)
    assert await store.meter_points() == []


@pytest.mark.asyncio
async def test_two_day_interval_from_midnight_readings(store):
    reconciler = MeterReconciler(store)
    await reconciler.record(date(2024, 1, 1), "00:00", 10.000)

    result = await reconciler.record(date(2024, 1, 3), "00:00", 10.240)

    assert result.daily_rate_m3 == 0.12
    assert [(d.reading_date, d.consumption_m3) for d in result.derived] == [
        (date(2024, 1, 2), 0.12),
        (date(2024, 1, 3), 0.12),
    ]


@pytest.mark.asyncio
async def test_late_entry_re_derives_days_up_to_the_following_reading(store):
    reconciler = MeterReconciler(store)
    await reconciler.record(date(2024, 1, 1), "00:00", 10.0)
    await reconciler.record(date(2024, 1, 4), "00:00", 10.3)

    result = await reconciler.record(date(2024, 1, 2), "00:00", 10.25)

    assert result.following.reading_date == date(2024, 1, 4)
    assert [(d.reading_date, d.consumption_m3) for d in result.rederived] == [
        (date(2024, 1, 3), 0.025),
        (date(2024, 1, 4), 0.025),
    ]
    rows = await store.water_readings(date(2024, 1, 1), date(2024, 1, 5), reading_type="meter")
    assert [(r["reading_date"], r["consumption_m3"]) for r in rows] == [
        ("2024-01-02", pytest.approx(0.25)),
        ("2024-01-03", pytest.approx(0.025)),
        ("2024-01-04", pytest.approx(0.025)),
    ]
    assert sum(r["consumption_m3"] for r in rows) == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_late_entry_above_the_following_reading_clears_its_days(store):
    reconciler = MeterReconciler(store)
    await reconciler.record(date(2024, 1, 1), "00:00", 10.0)
    await reconciler.record(date(2024, 1, 4), "00:00", 10.3)

    result = await reconciler.record(date(2024, 1, 2), "00:00", 10.5)

    assert result.rederived == []
    rows = await store.water_readings(date(2024, 1, 1), date(2024, 1, 5), reading_type="meter")
    assert [(r["reading_date"], r["consumption_m3"]) for r in rows] == [("2024-01-02", pytest.approx(0.5))]


@pytest.mark.asyncio
async def test_point_and_derived_rows_are_mirrored(store):
    mirror = RecordingMirror()
    reconciler = MeterReconciler(store, meter_serial="WM-01", mirror=mirror)
    await reconciler.record(date(2024, 1, 1), "00:00", 10.0)

    result = await reconciler.record(date(2024, 1, 3), "00:00", 10.24)

    assert result.mirror_ok is True
    assert [p["reading_date"] for p in mirror.pushed["meter_point_readings"]] == ["2024-01-01", "2024-01-03"]
    assert [(w["reading_date"], w["reading_type"]) for w in mirror.pushed["water_readings"]] == [
        ("2024-01-02", "meter"),
        ("2024-01-03", "meter"),
    ]


@pytest.mark.asyncio
async def test_mirror_failure_keeps_the_local_write(store):
    reconciler = MeterReconciler(store, mirror=FailingMirror())

    result = await reconciler.record(date(2024, 1, 1), "08:00", 100.0)

    assert result.mirror_ok is False
    assert len(await store.meter_points()) == 1
