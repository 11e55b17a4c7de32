# hometelemetry/services/kraken_client.py

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from hometelemetry.core.errors import AuthError, ParseError
from hometelemetry.models.payloads import GraphQLResponse, KrakenMeasurement, KrakenToken, KrakenViewer
from hometelemetry.models.series import Granularity, SeriesPoint, Token, format_ts
from hometelemetry.services.source_client import SourceClient

logger = logging.getLogger("telemetry.kraken")

OBTAIN_TOKEN_MUTATION = """
mutation obtainKrakenToken($input: ObtainJSONWebTokenInput!) {
  obtainKrakenToken(input: $input) {
    token
    payload
  }
}
"""

VIEWER_ACCOUNTS_QUERY = """
query viewerAccounts {
  viewer {
    accounts {
      number
    }
  }
}
"""

MEASUREMENTS_QUERY = """
query waterMeasurements(
  $accountNumber: String!
  $deviceId: String!
  $startAt: DateTime!
  $endAt: DateTime!
  $frequency: ReadingFrequencyType!
  $first: Int!
) {
  account(accountNumber: $accountNumber) {
    properties {
      measurements(
        first: $first
        startAt: $startAt
        endAt: $endAt
        utilityFilters: [{ waterFilters: { readingFrequencyType: $frequency, deviceId: $deviceId } }]
      ) {
        edges {
          node {
            value
            unit
            ... on IntervalMeasurementType {
              startAt
              endAt
            }
          }
        }
      }
    }
  }
}
"""

FREQUENCIES = {
    Granularity.HALF_HOUR: "RAW_INTERVAL",
    Granularity.DAY: "DAY_INTERVAL",
}

# Kraken error codes meaning "your token/credentials are no good"
AUTH_ERROR_CODES = {
    "KT-CT-1111",
    "KT-CT-1112",
    "KT-CT-1124",
    "KT-CT-1134",
    "KT-CT-1135",
    "KT-CT-1138",
    "KT-CT-1139",
    "KT-CT-1143",
}

MAX_EDGES = 1000


class KrakenClient(SourceClient):
    """
    Kraken GraphQL API.

    Challenge/response login: ``obtainKrakenToken`` issues a JWT, then the
    account number must be resolved through ``viewer`` before any data query.
    The account number is cached on the instance for the life of the process.
    """

    name = "kraken"

    def __init__(self, api_url: str, email: str, password: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_url = api_url
        self.email = email
        self.password = password
        self._account_number: Optional[str] = None

    @property
    def account_number(self) -> Optional[str]:
        return self._account_number

    async def _graphql(self, query: str, variables: Dict[str, Any], token: Optional[Token] = None) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if token is not None:
            headers["Authorization"] = token.value

        response = await self._send("POST", self.api_url, json={"query": query, "variables": variables}, headers=headers)
        self._check_status(response)
        body = self._parse(GraphQLResponse, response)

        if body.errors:
            codes = {str((e.extensions or {}).get("errorCode", "")) for e in body.errors}
            types = {str((e.extensions or {}).get("errorType", "")) for e in body.errors}
            message = "; ".join(e.message for e in body.errors)
            if codes & AUTH_ERROR_CODES or "AUTHORIZATION" in types:
                raise AuthError(f"kraken: {message}", provider=self.name)
            raise ParseError(f"kraken: GraphQL error: {message}", provider=self.name, body=response.text)

        if body.data is None:
            raise ParseError("kraken: response has no data", provider=self.name, body=response.text)
        return body.data

    async def _login(self) -> Token:
        data = await self._graphql(
            OBTAIN_TOKEN_MUTATION,
            {"input": {"email": self.email, "password": self.password}},
        )
        try:
            issued = KrakenToken.model_validate(data.get("obtainKrakenToken") or {})
        except ValidationError as e:
            raise ParseError("kraken: malformed obtainKrakenToken payload", provider=self.name, body=str(data)) from e

        exp = issued.payload.exp if issued.payload else None
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None
        return Token(value=issued.token, expires_at=expires_at)

    async def _resolve_account(self, token: Token) -> str:
        if self._account_number:
            return self._account_number

        data = await self._graphql(VIEWER_ACCOUNTS_QUERY, {}, token=token)
        try:
            viewer = KrakenViewer.model_validate(data.get("viewer") or {})
        except ValidationError as e:
            raise ParseError("kraken: malformed viewer payload", provider=self.name, body=str(data)) from e
        if not viewer.accounts:
            raise ParseError("kraken: no account visible to this login", provider=self.name, body=str(data))

        self._account_number = viewer.accounts[0].number
        logger.info(f"[kraken] resolved account {self._account_number}")
        return self._account_number

    async def resolve_account(self) -> str:
        return await self._authorized(self._resolve_account)

    async def _fetch_series(
        self, token: Token, resource_id: str, start: datetime, end: datetime, granularity: Granularity
    ) -> List[SeriesPoint]:
        account = await self._resolve_account(token)
        daily = granularity == Granularity.DAY
        # local days start up to a day before the UTC window edge
        query_start = start - timedelta(days=1) if daily else start
        first_day = start.date()
        last_day = (end - timedelta(microseconds=1)).date()
        data = await self._graphql(
            MEASUREMENTS_QUERY,
            {
                "accountNumber": account,
                "deviceId": resource_id,
                "startAt": query_start.astimezone(timezone.utc).isoformat(),
                "endAt": end.astimezone(timezone.utc).isoformat(),
                "frequency": FREQUENCIES[granularity],
                "first": MAX_EDGES,
            },
            token=token,
        )

        properties = ((data.get("account") or {}).get("properties")) or []
        points: List[SeriesPoint] = []
        for prop in properties:
            edges = ((prop or {}).get("measurements") or {}).get("edges") or []
            for edge in edges:
                try:
                    node = KrakenMeasurement.model_validate((edge or {}).get("node") or {})
                except ValidationError:
                    logger.warning(f"[kraken] skipping malformed measurement {edge!r}")
                    continue
                try:
                    value = float(node.value)
                except (TypeError, ValueError):
                    logger.warning(f"[kraken] skipping non-numeric measurement value {node.value!r}")
                    continue
                ts = node.startAt if node.startAt.tzinfo else node.startAt.replace(tzinfo=timezone.utc)
                if daily:
                    # ts.date() is the day in the offset Kraken reported it with
                    if first_day <= ts.date() <= last_day:
                        points.append(SeriesPoint(timestamp=format_ts(ts), value=value, local_date=ts.date()))
                elif start <= ts < end:
                    points.append(SeriesPoint(timestamp=format_ts(ts), value=value))

        return points
