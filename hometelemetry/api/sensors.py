# hometelemetry/api/sensors.py

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, Query

from hometelemetry.services.container import get_services

router = APIRouter()
logger = logging.getLogger(__name__)


def calculate_stats(readings: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Indoor average, warmest and coldest room. The outdoor sensor is ignored."""
    indoor = [
        r for r in readings
        if r.get("channel") != "outdoor" and r.get("temperature_c") is not None
    ]
    if not indoor:
        return {"average": None, "warmest": None, "coldest": None}

    average = sum(r["temperature_c"] for r in indoor) / len(indoor)
    warmest = max(indoor, key=lambda r: r["temperature_c"])
    coldest = min(indoor, key=lambda r: r["temperature_c"])
    return {
        "average": round(average, 1),
        "warmest": {"room": warmest["room_name"], "temp": warmest["temperature_c"]},
        "coldest": {"room": coldest["room_name"], "temp": coldest["temperature_c"]},
    }


@router.get("/current")
async def get_current():
    """Latest reading per channel plus indoor statistics."""
    services = get_services()
    readings = await services.store.latest_sensor_readings()

    last_poll = None
    next_poll = None
    if "ecowitt" in services.scheduler.providers:
        status = services.scheduler.get_status("ecowitt")
        last_poll = status["status"]["last_success"]
        next_poll = status["config"]["next_run_time"]

    return {
        "readings": readings,
        "stats": calculate_stats(readings),
        "lastPoll": last_poll,
        "nextPoll": next_poll,
    }


@router.get("/history")
async def get_history(hours: int = Query(default=24, ge=1, le=24 * 400)):
    services = get_services()
    try:
        return await services.store.sensor_history(hours=hours)
    except Exception as e:
        logger.exception("History query failed")
        raise HTTPException(status_code=503, detail={"message": "History unavailable", "error": str(e)})
