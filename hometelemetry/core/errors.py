# hometelemetry/core/errors.py

from __future__ import annotations

from typing import Optional

BODY_EXCERPT_CHARS = 300


def body_excerpt(text: Optional[str], limit: int = BODY_EXCERPT_CHARS) -> str:
    return (text or "")[:limit].replace("\n", " ")


class TelemetryError(RuntimeError):
    """Base error for the ingestion engine."""


class SourceError(TelemetryError):
    """A provider call failed. Aborts the current cycle of that provider only."""

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class AuthError(SourceError):
    """Bad credentials or a token the provider keeps rejecting."""


class TransportError(SourceError):
    """Network failure or timeout."""


class ParseError(SourceError):
    """The provider answered with something we cannot read."""

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None, body: str = ""):
        super().__init__(message, provider=provider, status_code=status_code)
        self.body_excerpt = body_excerpt(body)

    def __str__(self) -> str:
        base = super().__str__()
        if self.body_excerpt:
            return f"{base} (body: {self.body_excerpt})"
        return base


class MirrorSyncFailure(TelemetryError):
    """The secondary mirror rejected or never received a batch. Never fatal."""


class DataQualityAnomaly(TelemetryError):
    """
    Non-fatal data problem: a skipped record or a meter delta that cannot be
    turned into consumption. Returned to callers, not raised through a cycle.
    """

    def __init__(self, kind: str, detail: str):
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
        self.detail = detail

    def as_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.detail}
