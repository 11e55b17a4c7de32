# hometelemetry/api/energy.py

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from hometelemetry.api._params import instant_window
from hometelemetry.models.series import UtilityType
from hometelemetry.services.container import get_services

router = APIRouter()
logger = logging.getLogger(__name__)

ENERGY_TYPES = {t.value for t in UtilityType} | {t.cost_type for t in UtilityType}


def _check_type(value: str) -> str:
    if value not in ENERGY_TYPES:
        raise HTTPException(
            status_code=400,
            detail={"message": f"Unknown energy type: {value}", "allowed": sorted(ENERGY_TYPES)},
        )
    return value


@router.get("/energy")
async def get_energy(
    start: Optional[str] = None,
    end: Optional[str] = None,
    type: Optional[str] = Query(default=None, description="electricity, gas or a *_cost series"),
):
    """Half-hourly rows in [start, end). Defaults to the last two days."""
    start_dt, end_dt = instant_window(start, end, default_days=2)
    types = [_check_type(type)] if type else None
    services = get_services()
    readings = await services.store.energy_range(start_dt, end_dt, types=types)
    return {"start": start_dt.isoformat(), "end": end_dt.isoformat(), "count": len(readings), "readings": readings}


@router.get("/energy/latest")
async def get_latest_energy():
    services = get_services()
    return await services.store.latest_energy()


@router.get("/energy/daily")
async def get_daily_energy(
    start: Optional[str] = None,
    end: Optional[str] = None,
    type: str = "electricity",
):
    start_dt, end_dt = instant_window(start, end, default_days=30)
    services = get_services()
    return {
        "type": _check_type(type),
        "days": await services.store.daily_energy_totals(start_dt, end_dt, type),
    }
