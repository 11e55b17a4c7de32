# hometelemetry/services/source_client.py
"""
Shared machinery for provider clients.

A client owns one cached token and refreshes it transparently: when no token
is held, when the held token expires within the refresh margin, and once
after the provider rejects a call with an auth status. Fetch failures are
returned inside a FetchResult; the caller decides what to do with them.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from hometelemetry.core.config import settings
from hometelemetry.core.errors import AuthError, ParseError, SourceError, TransportError, body_excerpt
from hometelemetry.models.series import FetchResult, Granularity, SeriesPoint, Token

logger = logging.getLogger("telemetry.source")

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

MIN_REFRESH_MARGIN = timedelta(hours=1)
AUTH_REJECTION_STATUSES = (401, 403)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceClient(ABC):
    """Base class for an authenticated provider client."""

    name: str = "source"

    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        refresh_margin: Optional[timedelta] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._http = http
        self._owns_http = http is None
        self._timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        margin = refresh_margin or timedelta(seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS)
        self.refresh_margin = max(margin, MIN_REFRESH_MARGIN)
        self._clock = clock
        self._token: Optional[Token] = None
        self._auth_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------
    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"User-Agent": "HomeTelemetry/1.0", "Accept": "application/json"},
            )
            self._owns_http = True
        return self._http

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
        self._http = None

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._get_http().request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{self.name}: request timed out ({url})", provider=self.name) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{self.name}: request failed ({url}): {e}", provider=self.name) from e

    def _check_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status in AUTH_REJECTION_STATUSES:
            raise AuthError(f"{self.name}: HTTP {status} (auth rejected)", provider=self.name, status_code=status)
        if status >= 400:
            logger.warning(f"[{self.name}] HTTP {status}: {body_excerpt(response.text)}")
            raise TransportError(f"{self.name}: HTTP {status}", provider=self.name, status_code=status)

    def _parse(self, schema: Type[M], response: httpx.Response) -> M:
        try:
            return schema.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ParseError(
                f"{self.name}: unexpected {schema.__name__} payload",
                provider=self.name,
                status_code=response.status_code,
                body=response.text,
            ) from e

    # ------------------------------------------------------------------
    # Token cache
    # ------------------------------------------------------------------
    @abstractmethod
    async def _login(self) -> Token:
        """Exchange the configured credentials for a fresh token."""

    @property
    def token(self) -> Optional[Token]:
        return self._token

    def invalidate_token(self) -> None:
        self._token = None

    async def authenticate(self) -> Token:
        """Log in and cache the token. Raises AuthError on any failure."""
        async with self._auth_lock:
            try:
                token = await self._login()
            except AuthError:
                self._token = None
                raise
            except SourceError as e:
                self._token = None
                raise AuthError(f"{self.name}: login failed: {e}", provider=self.name) from e
            self._token = token
            logger.info(f"[{self.name}] authenticated (expires {token.expires_at or 'never'})")
            return token

    async def ensure_token(self) -> Token:
        token = self._token
        if token is None or token.expires_within(self.refresh_margin, self._clock()):
            token = await self.authenticate()
        return token

    async def _authorized(self, call: Callable[[Token], Awaitable[T]]) -> T:
        """Run ``call`` with a valid token, re-authenticating once if it is rejected."""
        token = await self.ensure_token()
        try:
            return await call(token)
        except AuthError:
            logger.warning(f"[{self.name}] token rejected, re-authenticating once")
            self.invalidate_token()
            token = await self.authenticate()
            return await call(token)

    # ------------------------------------------------------------------
    # Series fetch
    # ------------------------------------------------------------------
    async def _fetch_series(
        self, token: Token, resource_id: str, start: datetime, end: datetime, granularity: Granularity
    ) -> List[SeriesPoint]:
        raise SourceError(f"{self.name} does not serve time series", provider=self.name)

    async def fetch_range(
        self, resource_id: str, start: datetime, end: datetime, granularity: Granularity
    ) -> FetchResult:
        """Ordered (timestamp, value) pairs in [start, end), or the error that stopped the fetch."""

        async def call(token: Token) -> List[SeriesPoint]:
            return await self._fetch_series(token, resource_id, start, end, granularity)

        try:
            points = await self._authorized(call)
        except SourceError as e:
            logger.warning(f"[{self.name}] fetch {resource_id} {granularity.value} {start} -> {end} failed: {e}")
            return FetchResult.failure(e)
        return FetchResult(points=sorted(points, key=lambda p: p.timestamp))
