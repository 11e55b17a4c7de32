# hometelemetry/services/mirror.py
"""
Best-effort secondary copy of locally stored rows.

A push never raises: failures are logged as MirrorSyncFailure and reported
as ``False``. Nothing retries synchronously; the next cycle's push carries
the overlapping rows again and the mirror merges them by natural key.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReplaceOne

from hometelemetry.core.config import Settings
from hometelemetry.core.errors import MirrorSyncFailure, body_excerpt

logger = logging.getLogger("telemetry.mirror")

ENTITY_KEYS: Dict[str, Sequence[str]] = {
    "readings": ("channel", "timestamp"),
    "energy_readings": ("timestamp", "type"),
    "water_readings": ("reading_date", "reading_type"),
    "meter_point_readings": ("reading_date", "reading_time"),
}


class MirrorSink(ABC):
    name = "mirror"
    enabled = True

    @abstractmethod
    async def _push(self, entity: str, rows: List[Dict[str, Any]]) -> None:
        """Send one batch; raise on any failure."""

    async def push(self, entity: str, rows: List[Dict[str, Any]]) -> bool:
        if not rows:
            return True
        if entity not in ENTITY_KEYS:
            raise ValueError(f"unknown mirror entity {entity!r}")
        try:
            await self._push(entity, rows)
        except Exception as e:
            failure = e if isinstance(e, MirrorSyncFailure) else MirrorSyncFailure(f"{self.name}: {e}")
            logger.warning(f"[mirror] {entity}: {len(rows)} rows not mirrored: {failure}")
            return False
        logger.debug(f"[mirror] {entity}: {len(rows)} rows mirrored to {self.name}")
        return True

    async def aclose(self) -> None:
        return None


class DisabledMirror(MirrorSink):
    name = "disabled"
    enabled = False

    async def _push(self, entity: str, rows: List[Dict[str, Any]]) -> None:
        return None


class RestMirror(MirrorSink):
    """PostgREST / Supabase table endpoint with merge-duplicates upsert."""

    name = "rest"

    def __init__(self, base_url: str, api_key: str, http: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def _push(self, entity: str, rows: List[Dict[str, Any]]) -> None:
        try:
            response = await self._http.post(
                f"{self.base_url}/rest/v1/{entity}",
                params={"on_conflict": ",".join(ENTITY_KEYS[entity])},
                json=rows,
                headers={
                    "apikey": self.api_key,
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "Prefer": "resolution=merge-duplicates,return=minimal",
                },
            )
        except httpx.HTTPError as e:
            raise MirrorSyncFailure(f"rest: request failed: {e}") from e

        if response.status_code >= 300:
            raise MirrorSyncFailure(f"rest: HTTP {response.status_code}: {body_excerpt(response.text)}")

    async def aclose(self) -> None:
        await self._http.aclose()


class MongoMirror(MirrorSink):
    """One collection per entity, replaced by natural key."""

    name = "mongo"

    def __init__(self, database: Any, client: Optional[AsyncIOMotorClient] = None):
        self._db = database
        self._client = client

    async def _push(self, entity: str, rows: List[Dict[str, Any]]) -> None:
        keys = ENTITY_KEYS[entity]
        ops = [ReplaceOne({k: row[k] for k in keys}, dict(row), upsert=True) for row in rows]
        await self._db[entity].bulk_write(ops, ordered=False)

    async def aclose(self) -> None:
        if self._client is not None:
            self._client.close()


def build_mirror(settings: Settings) -> MirrorSink:
    backend = (settings.MIRROR_BACKEND or "none").strip().lower()

    if backend == "rest":
        if not settings.SUPABASE_URL or not settings.SUPABASE_KEY:
            logger.warning("MIRROR_BACKEND=rest but SUPABASE_URL/SUPABASE_KEY missing; mirroring disabled")
            return DisabledMirror()
        return RestMirror(settings.SUPABASE_URL, settings.SUPABASE_KEY, timeout=settings.HTTP_TIMEOUT_SECONDS)

    if backend == "mongo":
        if not settings.MONGODB_URL:
            logger.warning("MIRROR_BACKEND=mongo but MONGODB_URL missing; mirroring disabled")
            return DisabledMirror()
        client = AsyncIOMotorClient(settings.MONGODB_URL)
        return MongoMirror(client[settings.MONGODB_DB], client=client)

    if backend != "none":
        logger.warning(f"Unknown MIRROR_BACKEND={backend!r}; mirroring disabled")
    return DisabledMirror()
