"""Buffers for data streamed by the capture agent."""

from .log_store import LogStore

__all__ = ['LogStore']
