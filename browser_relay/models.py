"""Pydantic models shared across the relay.

This module defines the uniform response envelope returned for every
capability, the identity document served for discovery, and the
transient artifacts captured from the agent.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ArtifactKind(str, Enum):
    """Kinds of data produced by the capture agent or the audit engine."""
    CONSOLE_LOG = "console-log"
    CONSOLE_ERROR = "console-error"
    NETWORK_REQUEST = "network-request"
    SCREENSHOT = "screenshot"
    DOM_SNAPSHOT = "dom-snapshot"
    STORAGE = "storage"
    ELEMENT = "element"
    AUDIT_REPORT = "audit-report"
    OTHER = "other"


class CapturedArtifact(BaseModel):
    """A transient unit of captured data awaiting sanitization."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: ArtifactKind = Field(default=ArtifactKind.OTHER)
    payload: Any = Field(default=None)
    size: int = Field(default=0, ge=0, description="Serialized size in characters")
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def create(cls, kind: ArtifactKind, payload: Any) -> "CapturedArtifact":
        """Build an artifact, measuring its serialized size best-effort."""
        try:
            size = len(json.dumps(payload, default=str))
        except (TypeError, ValueError):
            size = len(str(payload))
        return cls(kind=kind, payload=payload, size=size)


class ErrorInfo(BaseModel):
    """Structured error carried by a failed envelope."""

    kind: str = Field(..., description="Stable error kind")
    message: str = Field(..., description="Human readable description")
    details: Optional[Dict[str, Any]] = Field(default=None)


class RelayResponse(BaseModel):
    """Uniform envelope for every relay capability."""

    success: bool = Field(..., description="Whether the capability succeeded")
    error: Optional[ErrorInfo] = Field(default=None)
    data: Any = Field(default=None, description="Sanitized payload")
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def ok(cls, data: Any = None, warnings: Optional[List[str]] = None) -> "RelayResponse":
        return cls(success=True, data=data, warnings=warnings or [])

    @classmethod
    def fail(
        cls,
        kind: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> "RelayResponse":
        return cls(success=False, error=ErrorInfo(kind=kind, message=message, details=details or None))


class AgentStatus(BaseModel):
    """Connection state of the capture agent as reported by identity."""

    connected: bool = False
    connection_id: Optional[str] = None


class ServerIdentity(BaseModel):
    """Identity document served at ``/.identity``."""

    name: str
    version: str
    status: str = "running"
    capabilities: List[str] = Field(default_factory=list)
    agent: AgentStatus = Field(default_factory=AgentStatus)


class ResolvedEndpoint(BaseModel):
    """A relay instance located by discovery."""

    host: str
    port: int
    name: str
    version: str

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"
