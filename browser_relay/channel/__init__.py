"""Agent channel: transports, connection lifecycle and request correlation."""

from .backoff import BackoffState
from .connection import AgentConnection, ConnectionManager, ConnectionState, ConnectionSupervisor
from .correlator import PendingRequest, RequestCorrelator
from .transport import AiohttpDialer, Channel, Dialer, InboundDialer, StarletteChannel

__all__ = [
    'AgentConnection',
    'AiohttpDialer',
    'BackoffState',
    'Channel',
    'ConnectionManager',
    'ConnectionState',
    'ConnectionSupervisor',
    'Dialer',
    'InboundDialer',
    'PendingRequest',
    'RequestCorrelator',
    'StarletteChannel',
]
