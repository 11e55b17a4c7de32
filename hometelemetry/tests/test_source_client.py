import time
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from hometelemetry.core.errors import AuthError, ParseError, TransportError
from hometelemetry.models.series import Granularity
from hometelemetry.services.glow_client import GlowClient

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 1, 1, 2, tzinfo=timezone.utc)


def _epoch(dt: datetime) -> int:
    return int(dt.timestamp())


class GlowStub:
    """MockTransport handler for the two Glow endpoints we use."""

    def __init__(self, token_ttl=timedelta(days=7), readings=None):
        self.token_ttl = token_ttl
        self.readings = readings or []
        self.auth_calls = 0
        self.reading_requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/auth"):
            self.auth_calls += 1
            return httpx.Response(
                200,
                json={
                    "valid": True,
                    "token": f"tok-{self.auth_calls}",
                    "exp": int(time.time() + self.token_ttl.total_seconds()),
                },
            )
        self.reading_requests.append(request)
        response = self.readings.pop(0) if self.readings else None
        if response is None:
            return httpx.Response(200, json={"data": [[_epoch(START), 0.5]]})
        return response


def make_client(stub: GlowStub) -> GlowClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return GlowClient("user", "secret", application_id="app-id", base_url="https://glow.test/api/v0-1", http=http)


@pytest.mark.asyncio
async def test_fetch_range_returns_sorted_points_inside_window():
    body = {
        "data": [
            [_epoch(START + timedelta(minutes=30)), 0.0],
            [_epoch(START), 0.5],
            [_epoch(START + timedelta(hours=1)), None],
            [_epoch(END), 1.0],
        ]
    }
    stub = GlowStub(readings=[httpx.Response(200, json=body)])
    client = make_client(stub)

    result = await client.fetch_range("elec-1", START, END, Granularity.HALF_HOUR)

    assert result.ok
    assert [(p.timestamp, p.value) for p in result.points] == [
        ("2024-01-01T00:00:00Z", 0.5),
        ("2024-01-01T00:30:00Z", 0.0),
    ]
    request = stub.reading_requests[0]
    assert request.url.path == "/api/v0-1/resource/elec-1/readings"
    assert request.url.params["period"] == "PT30M"
    assert request.url.params["from"] == "2024-01-01T00:00:00"
    assert request.headers["token"] == "tok-1"
    assert request.headers["applicationId"] == "app-id"


@pytest.mark.asyncio
async def test_token_is_reused_while_outside_refresh_margin():
    stub = GlowStub(token_ttl=timedelta(days=1))
    client = make_client(stub)

    await client.fetch_range("elec-1", START, END, Granularity.HALF_HOUR)
    await client.fetch_range("elec-1", START, END, Granularity.HALF_HOUR)

    assert stub.auth_calls == 1


@pytest.mark.asyncio
async def test_token_close_to_expiry_is_refreshed_before_use():
    stub = GlowStub(token_ttl=timedelta(minutes=30))
    client = make_client(stub)

    await client.fetch_range("elec-1", START, END, Granularity.HALF_HOUR)
    await client.fetch_range("elec-1", START, END, Granularity.HALF_HOUR)

    assert stub.auth_calls == 2


def test_refresh_margin_never_below_one_hour():
    client = GlowClient("user", "secret", refresh_margin=timedelta(minutes=5))
    assert client.refresh_margin == timedelta(hours=1)


@pytest.mark.asyncio
async def test_rejected_token_triggers_exactly_one_reauthentication():
    stub = GlowStub(readings=[httpx.Response(401, text="expired"), None])
    client = make_client(stub)

    result = await client.fetch_range("elec-1", START, END, Granularity.HALF_HOUR)

    assert result.ok
    assert stub.auth_calls == 2
    assert [r.headers["token"] for r in stub.reading_requests] == ["tok-1", "tok-2"]


@pytest.mark.asyncio
async def test_persistent_rejection_surfaces_auth_error():
    stub = GlowStub(readings=[httpx.Response(401), httpx.Response(403), httpx.Response(401)])
    client = make_client(stub)

    result = await client.fetch_range("elec-1", START, END, Granularity.HALF_HOUR)

    assert not result.ok
    assert isinstance(result.error, AuthError)
    assert stub.auth_calls == 2
    assert len(stub.reading_requests) == 2


@pytest.mark.asyncio
async def test_server_error_is_transport_error_with_status():
    stub = GlowStub(readings=[httpx.Response(502, text="bad gateway")])
    client = make_client(stub)

    result = await client.fetch_range("elec-1", START, END, Granularity.HALF_HOUR)

    assert isinstance(result.error, TransportError)
    assert result.error.status_code == 502


@pytest.mark.asyncio
async def test_non_json_body_is_parse_error_with_excerpt():
    html = "<html>" + "x" * 1000
    stub = GlowStub(readings=[httpx.Response(200, text=html)])
    client = make_client(stub)

    result = await client.fetch_range("elec-1", START, END, Granularity.HALF_HOUR)

    assert isinstance(result.error, ParseError)
    assert result.error.body_excerpt.startswith("<html>")
    assert len(result.error.body_excerpt) == 300


@pytest.mark.asyncio
async def test_network_failure_is_transport_error():
    def handler(request):
        if request.url.path.endswith("/auth"):
            return httpx.Response(200, json={"valid": True, "token": "t", "exp": int(time.time()) + 86400})
        raise httpx.ConnectError("connection refused", request=request)

    client = GlowClient("u", "p", base_url="https://glow.test", http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    result = await client.fetch_range("elec-1", START, END, Granularity.HALF_HOUR)

    assert isinstance(result.error, TransportError)


@pytest.mark.asyncio
async def test_invalid_credentials_raise_auth_error():
    def handler(request):
        return httpx.Response(200, json={"valid": False})

    client = GlowClient("u", "wrong", base_url="https://glow.test", http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(AuthError):
        await client.authenticate()
    assert client.token is None


@pytest.mark.asyncio
async def test_non_numeric_value_skips_only_that_row():
    body = {"data": [[_epoch(START), 0.5], [_epoch(START + timedelta(minutes=30)), "n/a"]]}
    stub = GlowStub(readings=[httpx.Response(200, json=body)])
    client = make_client(stub)

    result = await client.fetch_range("elec-1", START, END, Granularity.HALF_HOUR)

    assert result.ok
    assert [(p.timestamp, p.value) for p in result.points] == [("2024-01-01T00:00:00Z", 0.5)]
