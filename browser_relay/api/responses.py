"""HTTP response helpers for relay envelopes."""

from datetime import datetime
from typing import Dict

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..models import RelayResponse

STATUS_BY_KIND: Dict[str, int] = {
    "not_connected": 503,
    "discovery_failed": 503,
    "connection_lost": 502,
    "agent_error": 502,
    "timeout": 504,
    "pool_closed": 503,
    "process_crashed": 500,
    "audit_failed": 500,
    "internal_error": 500,
    "invalid_request": 400,
    "validation_error": 422,
}


def status_for(response: RelayResponse) -> int:
    """HTTP status reflecting an envelope's error kind."""
    if response.success or response.error is None:
        return 200
    kind = response.error.kind
    if kind.startswith("http_") and kind[5:].isdigit():
        return int(kind[5:])
    return STATUS_BY_KIND.get(kind, 500)


def envelope_response(response: RelayResponse) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(response),
        content=response.model_dump(mode='json')
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="healthy or degraded")
    version: str
    timestamp: datetime
    services: Dict[str, str] = Field(default_factory=dict)
    uptime_seconds: float
