from datetime import date

import pytest
from fastapi import HTTPException

from hometelemetry.api import energy, ingest, sensors, water
from hometelemetry.models.series import EnergyRecord, SensorSample
from hometelemetry.services.backfill import BackfillOrchestrator
from hometelemetry.services.container import Services, set_services
from hometelemetry.services.meter_reconciler import MeterReconciler
from hometelemetry.services.mirror import DisabledMirror
from hometelemetry.services.poller import PollScheduler
from hometelemetry.tests.fakes import ChunkPipeline, FakePipeline


@pytest.fixture
def services(store):
    scheduler = PollScheduler()
    svc = Services(store, DisabledMirror(), scheduler, MeterReconciler(store, meter_serial="WM-01"))
    set_services(svc)
    yield svc
    set_services(None)


def test_calculate_stats_ignores_outdoor():
    readings = [
        {"channel": "outdoor", "room_name": "Outside", "temperature_c": 30.0},
        {"channel": "ch1", "room_name": "Hallway", "temperature_c": 18.0},
        {"channel": "ch2", "room_name": "Living Room", "temperature_c": 21.5},
        {"channel": "indoor", "room_name": "Console", "temperature_c": 19.0},
    ]

    stats = sensors.calculate_stats(readings)

    assert stats["average"] == 19.5
    assert stats["warmest"] == {"room": "Living Room", "temp": 21.5}
    assert stats["coldest"] == {"room": "Hallway", "temp": 18.0}


def test_calculate_stats_without_indoor_readings():
    assert sensors.calculate_stats([{"channel": "outdoor", "room_name": "Outside", "temperature_c": 3.0}]) == {
        "average": None,
        "warmest": None,
        "coldest": None,
    }


@pytest.mark.asyncio
async def test_current_returns_latest_readings_and_stats(services):
    await services.store.insert_sensor_readings(
        "2024-01-01T10:00:00Z",
        [
            SensorSample(channel="ch1", room_name="Hallway", temperature_c=18.0),
            SensorSample(channel="ch2", room_name="Living Room", temperature_c=20.0),
        ],
    )

    body = await sensors.get_current()

    assert len(body["readings"]) == 2
    assert body["stats"]["average"] == 19.0
    assert body["lastPoll"] is None


@pytest.mark.asyncio
async def test_poll_unknown_provider_is_404(services):
    with pytest.raises(HTTPException) as exc:
        await ingest.poll_provider("solar")
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_poll_failure_is_503(services):
    services.scheduler.register(FakePipeline("glow", error="glow: HTTP 500"), 1800)

    with pytest.raises(HTTPException) as exc:
        await ingest.poll_provider("glow")

    assert exc.value.status_code == 503
    assert exc.value.detail["state"] == "fetching"


@pytest.mark.asyncio
async def test_poll_success_returns_report(services):
    services.scheduler.register(FakePipeline("ecowitt"), 300)

    body = await ingest.poll_provider("ecowitt")

    assert body["success"] is True
    assert body["report"]["provider"] == "ecowitt"
    status = await ingest.get_status()
    assert status["providers"]["ecowitt"]["status"]["total_successes"] == 1


@pytest.mark.asyncio
async def test_backfill_while_provider_busy_is_409(services):
    pipeline = ChunkPipeline(DisabledMirror())
    services.scheduler.register(pipeline, 1800)
    services.backfills["glow"] = BackfillOrchestrator(pipeline, lock=services.scheduler.lock_for("glow"))

    lock = services.scheduler.lock_for("glow")
    await lock.acquire()
    try:
        with pytest.raises(HTTPException) as exc:
            await ingest.backfill_provider("glow", days=10)
        assert exc.value.status_code == 409
    finally:
        lock.release()

    report = await ingest.backfill_provider("glow", days=10)
    assert report["total_chunks"] == 1
    assert report["errors"] == 0


@pytest.mark.asyncio
async def test_energy_rejects_bad_dates_and_types(services):
    with pytest.raises(HTTPException) as exc:
        await energy.get_energy(start="yesterday", end=None, type=None)
    assert exc.value.status_code == 400

    with pytest.raises(HTTPException) as exc:
        await energy.get_energy(start=None, end=None, type="oil")
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_energy_range_and_daily(services):
    await services.store.upsert_energy(
        [
            EnergyRecord(timestamp="2024-01-01T00:00:00Z", type="electricity", quantity=0.5, cost_pence=10.0),
            EnergyRecord(timestamp="2024-01-01T00:30:00Z", type="electricity", quantity=0.5, cost_pence=10.0),
        ]
    )

    body = await energy.get_energy(start="2024-01-01", end="2024-01-02", type="electricity")
    assert body["count"] == 2

    daily = await energy.get_daily_energy(start="2024-01-01", end="2024-01-02", type="electricity")
    assert daily["days"][0]["quantity"] == 1.0


@pytest.mark.asyncio
async def test_meter_reading_submission_derives_daily_rows(services):
    await water.submit_meter_reading(water.MeterReadingIn(reading_date=date(2024, 1, 1), reading_time="08:00", value_m3=100.0))
    body = await water.submit_meter_reading(
        water.MeterReadingIn(reading_date=date(2024, 1, 3), reading_time="08:00", value_m3=100.24)
    )

    assert body["daily_rate_m3"] == pytest.approx(0.12)
    assert len(body["derived"]) == 2

    listed = await water.get_water(start="2024-01-01", end="2024-01-05", reading_type="meter")
    assert len(listed["readings"]) == 2


def test_meter_reading_payload_validation():
    with pytest.raises(ValueError):
        water.MeterReadingIn(reading_date=date(2024, 1, 1), reading_time="8:00", value_m3=1.0)
    with pytest.raises(ValueError):
        water.MeterReadingIn(reading_date=date(2024, 1, 1), reading_time="08:00", value_m3=float("nan"))
