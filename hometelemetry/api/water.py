# hometelemetry/api/water.py

import logging
import math
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field, field_validator

from hometelemetry.api._params import parse_day
from hometelemetry.models.series import WaterReadingType
from hometelemetry.services.container import get_services

router = APIRouter()
logger = logging.getLogger(__name__)


class MeterReadingIn(BaseModel):
    reading_date: date
    reading_time: str = Field(default="00:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    value_m3: float

    @field_validator("value_m3")
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("value_m3 must be a finite number")
        return v


@router.post("/water/meter-readings")
async def submit_meter_reading(payload: MeterReadingIn):
    """Record a cumulative register value and derive daily consumption from it."""
    services = get_services()
    try:
        result = await services.reconciler.record(payload.reading_date, payload.reading_time, payload.value_m3)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"message": str(e)})
    return result.model_dump(mode="json")


@router.get("/water")
async def get_water(
    start: Optional[str] = None,
    end: Optional[str] = None,
    reading_type: Optional[str] = None,
):
    end_day = parse_day(end, "end") or datetime.now(timezone.utc).date()
    start_day = parse_day(start, "start") or end_day - timedelta(days=30)
    if start_day > end_day:
        raise HTTPException(status_code=400, detail={"message": "start must not be after end"})
    if reading_type is not None and reading_type not in {t.value for t in WaterReadingType}:
        raise HTTPException(
            status_code=400,
            detail={"message": f"Unknown reading type: {reading_type}", "allowed": [t.value for t in WaterReadingType]},
        )

    services = get_services()
    readings = await services.store.water_readings(start_day, end_day, reading_type=reading_type)
    return {"start": start_day.isoformat(), "end": end_day.isoformat(), "readings": readings}


@router.get("/water/meter-readings")
async def list_meter_readings():
    services = get_services()
    return await services.store.meter_points()
