# hometelemetry/api/ingest.py

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from hometelemetry.services.container import get_services
from hometelemetry.services.poller import UnknownProvider

router = APIRouter()
logger = logging.getLogger(__name__)


def _unknown(provider: str, available) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"message": f"Unknown or disabled provider: {provider}", "available": list(available)},
    )


@router.post("/poll/{provider}")
async def poll_provider(provider: str):
    """Run one cycle now. Waits for a cycle already in flight, then runs."""
    services = get_services()
    try:
        report = await services.scheduler.trigger(provider)
    except UnknownProvider:
        raise _unknown(provider, services.scheduler.providers)

    if not report.ok:
        raise HTTPException(
            status_code=503,
            detail={
                "message": f"{provider} poll failed",
                "state": report.state.value,
                "error": report.error,
            },
        )
    return {"success": True, "report": report.model_dump(mode="json")}


@router.get("/status")
async def get_status():
    services = get_services()
    return {
        "providers": services.scheduler.get_all_status(),
        "mirror": {"enabled": services.mirror.enabled, "backend": services.mirror.__class__.__name__},
    }


@router.post("/backfill/{provider}")
async def backfill_provider(provider: str, days: Optional[int] = Query(default=None, ge=1)):
    services = get_services()
    orchestrator = services.backfills.get(provider)
    if orchestrator is None:
        raise _unknown(provider, services.backfills.keys())

    try:
        if services.scheduler.is_running(provider):
            raise HTTPException(
                status_code=409,
                detail={"message": f"{provider} is busy", "suggestion": "Retry when the current run finishes"},
            )
    except UnknownProvider:
        raise _unknown(provider, services.backfills.keys())

    logger.info(f"Backfill requested for {provider} ({days or orchestrator.max_days} days)")
    try:
        report = await orchestrator.run(days)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"message": str(e)})
    return report.model_dump(mode="json")
