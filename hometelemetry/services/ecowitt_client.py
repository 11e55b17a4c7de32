# hometelemetry/services/ecowitt_client.py

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from hometelemetry.core.config import settings
from hometelemetry.core.errors import AuthError, DataQualityAnomaly, ParseError, SourceError
from hometelemetry.models.payloads import EcowittRealtimeResponse, EcowittSensor, EcowittValue
from hometelemetry.models.series import SensorSample, SnapshotResult, Token
from hometelemetry.services.source_client import SourceClient

logger = logging.getLogger("telemetry.ecowitt")

# application_key / api_key / mac not accepted
ECOWITT_AUTH_CODES = {40010, 40011, 40012}
MULTI_CHANNELS = 8


def fahrenheit_to_celsius(f: float) -> float:
    return ((f - 32) * 5) / 9


def _number(field: Optional[EcowittValue]) -> Optional[float]:
    if field is None or field.value is None or field.value == "":
        return None
    try:
        return float(field.value)
    except (TypeError, ValueError):
        return None


def _temperature_c(field: Optional[EcowittValue]) -> Optional[float]:
    value = _number(field)
    if value is None:
        return None
    unit = (field.unit or "").upper()
    if "C" not in unit and "\u2103" not in unit:  # ℃
        value = fahrenheit_to_celsius(value)
    return round(value, 1)


def parse_sensors(data: Dict[str, Any], room_names: Dict[str, str]) -> Tuple[List[SensorSample], List[DataQualityAnomaly]]:
    """Turn a real_time ``data`` block into one sample per reporting channel."""
    sources = [("indoor", "indoor"), ("outdoor", "outdoor")]
    sources += [(f"ch{i}", f"temp_and_humidity_ch{i}") for i in range(1, MULTI_CHANNELS + 1)]

    samples: List[SensorSample] = []
    anomalies: List[DataQualityAnomaly] = []
    for channel, key in sources:
        raw = data.get(key)
        if not raw:
            continue
        try:
            sensor = EcowittSensor.model_validate(raw)
        except ValidationError:
            anomalies.append(DataQualityAnomaly("malformed_sensor", f"{channel}: {str(raw)[:120]}"))
            continue

        temperature = _temperature_c(sensor.temperature)
        if temperature is None:
            anomalies.append(DataQualityAnomaly("non_numeric_temperature", f"{channel}: {sensor.temperature!r}"))
            continue

        battery = None
        if channel.startswith("ch"):
            level = _number(sensor.battery)
            battery = int(level) if level is not None else None

        samples.append(
            SensorSample(
                channel=channel,
                room_name=room_names.get(channel) or f"Channel {channel[2:]}",
                temperature_c=temperature,
                humidity=_number(sensor.humidity),
                battery=battery,
            )
        )
    return samples, anomalies


class EcowittClient(SourceClient):
    """
    Ecowitt cloud API. Authentication is a static application/api key pair,
    so the "token" never expires; it still goes through the shared cache so
    the pipeline treats every provider the same way.
    """

    name = "ecowitt"

    def __init__(
        self,
        application_key: str,
        api_key: str,
        mac: str,
        base_url: Optional[str] = None,
        room_names: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.application_key = application_key
        self.api_key = api_key
        self.mac = mac
        self.base_url = (base_url or settings.ECOWITT_API_URL).rstrip("/")
        self.room_names = room_names or settings.get_room_names()

    async def _login(self) -> Token:
        if not self.application_key or not self.api_key:
            raise AuthError("ecowitt: application_key/api_key not configured", provider=self.name)
        return Token(value=self.api_key, expires_at=None)

    async def _realtime(self, token: Token) -> Dict[str, Any]:
        response = await self._send(
            "GET",
            f"{self.base_url}/device/real_time",
            params={
                "application_key": self.application_key,
                "api_key": token.value,
                "mac": self.mac,
                "call_back": "all",
            },
        )
        self._check_status(response)
        body = self._parse(EcowittRealtimeResponse, response)

        if body.code in ECOWITT_AUTH_CODES:
            raise AuthError(f"ecowitt: {body.msg or body.code}", provider=self.name)
        if body.code != 0:
            raise ParseError(f"ecowitt: API error {body.code}: {body.msg or 'Unknown error'}", provider=self.name, body=response.text)
        if not isinstance(body.data, dict) or not body.data:
            raise ParseError("ecowitt: response carries no sensor data", provider=self.name, body=response.text)
        return body.data

    async def fetch_current(self) -> SnapshotResult:
        try:
            data = await self._authorized(self._realtime)
        except SourceError as e:
            logger.warning(f"[ecowitt] real_time fetch failed: {e}")
            return SnapshotResult(error=e)

        samples, anomalies = parse_sensors(data, self.room_names)
        for anomaly in anomalies:
            logger.warning(f"[ecowitt] skipped reading: {anomaly}")
        return SnapshotResult(samples=samples)
