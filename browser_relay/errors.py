"""Error taxonomy for the browser relay.

Every failure that can reach the invocation client is expressed as a
RelayError subclass carrying a stable ``kind`` string, a human readable
message and optional structured details. The API layer converts these
into uniform response envelopes.
"""

from typing import Any, Dict, List, Optional


class RelayError(Exception):
    """Base relay error."""

    kind = "relay_error"

    def __init__(
        self,
        message: str = "Relay operation failed",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_info(self) -> Dict[str, Any]:
        """Convert to the error section of a response envelope."""
        info: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            info["details"] = self.details
        return info


class DiscoveryFailed(RelayError):
    """Raised when no discovery candidate answered with a valid identity."""

    kind = "discovery_failed"

    def __init__(
        self,
        message: str = "No relay instance responded to identity probes",
        attempts: Optional[List[Dict[str, Any]]] = None
    ):
        super().__init__(message, {"attempts": attempts} if attempts else {})
        self.attempts = attempts or []


class NotConnected(RelayError):
    """Raised when an operation needs the agent channel and none is live."""

    kind = "not_connected"

    def __init__(self, message: str = "Capture agent is not connected"):
        super().__init__(message)


class ConnectionLost(RelayError):
    """Raised for requests in flight when the agent channel closes."""

    kind = "connection_lost"

    def __init__(
        self,
        message: str = "Connection to capture agent was lost",
        reason: Optional[str] = None
    ):
        super().__init__(message, {"reason": reason} if reason else {})
        self.reason = reason


class RequestTimeoutError(RelayError, TimeoutError):
    """Raised when no matching response arrives before the deadline."""

    kind = "timeout"

    def __init__(
        self,
        message: str = "Request timed out",
        timeout: Optional[float] = None,
        correlation_id: Optional[str] = None
    ):
        details: Dict[str, Any] = {}
        if timeout is not None:
            details["timeout_seconds"] = timeout
        if correlation_id:
            details["correlation_id"] = correlation_id
        super().__init__(message, details)
        self.timeout = timeout
        self.correlation_id = correlation_id


class ProcessCrashed(RelayError):
    """Raised when the pooled audit browser process dies."""

    kind = "process_crashed"

    def __init__(
        self,
        message: str = "Audit browser process crashed",
        session_id: Optional[str] = None
    ):
        super().__init__(message, {"session_id": session_id} if session_id else {})
        self.session_id = session_id


class SanitizationDegraded(RelayError):
    """Notice that the sanitizer fell back to a best-effort form.

    This is informational: the sanitizer attaches it to its result and
    never raises it.
    """

    kind = "sanitization_degraded"

    def __init__(
        self,
        message: str = "Payload sanitized with best-effort fallback",
        reasons: Optional[List[str]] = None
    ):
        super().__init__(message, {"reasons": reasons} if reasons else {})
        self.reasons = reasons or []


class AgentRequestError(RelayError):
    """Raised when the capture agent answers a request with an error."""

    kind = "agent_error"

    def __init__(self, message: str = "Capture agent reported an error", request_type: Optional[str] = None):
        super().__init__(message, {"request_type": request_type} if request_type else {})
        self.request_type = request_type


class AuditFailed(RelayError):
    """Raised when the audit engine fails while the browser is healthy."""

    kind = "audit_failed"


class InvalidRequest(RelayError):
    """Raised for requests that cannot be served as given."""

    kind = "invalid_request"
