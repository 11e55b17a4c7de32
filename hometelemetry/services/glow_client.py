# hometelemetry/services/glow_client.py

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from hometelemetry.core.config import settings
from hometelemetry.core.errors import AuthError
from hometelemetry.models.payloads import GlowAuthResponse, GlowReadingsResponse
from hometelemetry.models.series import Granularity, SeriesPoint, Token, format_ts
from hometelemetry.services.source_client import SourceClient

logger = logging.getLogger("telemetry.glow")

GLOW_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


class GlowClient(SourceClient):
    """
    Glowmarkt (Hildebrand) resource API.

    Login is a plain credential POST returning a bearer token with an epoch
    expiry. Readings come back as ``[[epoch_seconds, value], ...]``.
    """

    name = "glow"

    def __init__(
        self,
        username: str,
        password: str,
        application_id: Optional[str] = None,
        base_url: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.username = username
        self.password = password
        self.application_id = application_id or settings.GLOW_APPLICATION_ID
        self.base_url = (base_url or settings.GLOW_API_URL).rstrip("/")

    async def _login(self) -> Token:
        response = await self._send(
            "POST",
            f"{self.base_url}/auth",
            json={"username": self.username, "password": self.password},
            headers={"applicationId": self.application_id, "Content-Type": "application/json"},
        )
        self._check_status(response)
        payload = self._parse(GlowAuthResponse, response)
        if not payload.valid or not payload.token:
            raise AuthError("glow: credentials rejected", provider=self.name, status_code=response.status_code)

        expires_at = datetime.fromtimestamp(payload.exp, tz=timezone.utc) if payload.exp else None
        return Token(value=payload.token, expires_at=expires_at)

    async def _fetch_series(
        self, token: Token, resource_id: str, start: datetime, end: datetime, granularity: Granularity
    ) -> List[SeriesPoint]:
        params = {
            "from": start.astimezone(timezone.utc).strftime(GLOW_TIME_FORMAT),
            "to": end.astimezone(timezone.utc).strftime(GLOW_TIME_FORMAT),
            "period": granularity.value,
            "function": "sum",
            "offset": 0,
        }
        response = await self._send(
            "GET",
            f"{self.base_url}/resource/{resource_id}/readings",
            params=params,
            headers={"applicationId": self.application_id, "token": token.value},
        )
        self._check_status(response)
        body = self._parse(GlowReadingsResponse, response)

        points: List[SeriesPoint] = []
        for row in body.data:
            if len(row) < 2 or row[0] is None or row[1] is None:
                logger.warning(f"[glow] {resource_id}: skipping incomplete row {row!r}")
                continue
            try:
                ts = datetime.fromtimestamp(float(row[0]), tz=timezone.utc)
                value = float(row[1])
            except (TypeError, ValueError, OverflowError, OSError):
                logger.warning(f"[glow] {resource_id}: skipping unparseable row {row!r}")
                continue
            if not (start <= ts < end):
                continue
            points.append(SeriesPoint(timestamp=format_ts(ts), value=value))

        logger.debug(f"[glow] {resource_id} {granularity.value}: {len(points)} points")
        return points
