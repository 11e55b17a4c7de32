# hometelemetry/api/_params.py

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple

from fastapi import HTTPException


def parse_instant(value: Optional[str], field: str) -> Optional[datetime]:
    """Accept ``YYYY-MM-DD`` or an ISO-8601 instant; naive values are UTC."""
    if value is None or value == "":
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"message": f"Invalid {field}", "value": value, "expected": "YYYY-MM-DD or ISO-8601"},
        )
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_day(value: Optional[str], field: str) -> Optional[date]:
    if value is None or value == "":
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"message": f"Invalid {field}", "value": value, "expected": "YYYY-MM-DD"},
        )


def instant_window(start: Optional[str], end: Optional[str], default_days: int) -> Tuple[datetime, datetime]:
    end_dt = parse_instant(end, "end") or datetime.now(timezone.utc)
    start_dt = parse_instant(start, "start") or end_dt - timedelta(days=default_days)
    if start_dt >= end_dt:
        raise HTTPException(status_code=400, detail={"message": "start must be before end"})
    return start_dt, end_dt
