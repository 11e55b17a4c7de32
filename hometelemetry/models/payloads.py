# hometelemetry/models/payloads.py
"""Response schemas for the provider APIs. Absent fields stay None."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


# ---------- Glow ----------

class GlowAuthResponse(BaseModel):
    valid: bool = False
    token: Optional[str] = None
    exp: Optional[int] = None  # epoch seconds
    accountId: Optional[str] = None


class GlowReadingsResponse(BaseModel):
    status: Optional[str] = None
    resourceId: Optional[str] = None
    units: Optional[str] = None
    data: List[List[Any]] = Field(default_factory=list)  # [[epoch, value], ...]


# ---------- Kraken (GraphQL) ----------

class GraphQLError(BaseModel):
    message: str = ""
    extensions: Optional[Dict[str, Any]] = None


class GraphQLResponse(BaseModel):
    data: Optional[Dict[str, Any]] = None
    errors: Optional[List[GraphQLError]] = None


class KrakenTokenPayload(BaseModel):
    exp: Optional[int] = None


class KrakenToken(BaseModel):
    token: str
    payload: Optional[KrakenTokenPayload] = None


class KrakenAccount(BaseModel):
    number: str


class KrakenViewer(BaseModel):
    accounts: List[KrakenAccount] = Field(default_factory=list)


class KrakenMeasurement(BaseModel):
    value: Union[float, str, None] = None
    startAt: datetime
    endAt: Optional[datetime] = None
    unit: Optional[str] = None


# ---------- Ecowitt ----------

class EcowittValue(BaseModel):
    value: Union[float, str, None] = None
    unit: Optional[str] = None


class EcowittSensor(BaseModel):
    temperature: Optional[EcowittValue] = None
    humidity: Optional[EcowittValue] = None
    battery: Optional[EcowittValue] = None


class EcowittRealtimeResponse(BaseModel):
    code: int
    msg: Optional[str] = None
    data: Union[Dict[str, Any], List[Any], None] = None
