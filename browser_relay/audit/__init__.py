"""Headless browser audits: launcher, single-slot pool and Lighthouse engine."""

from .browser_factory import AuditBrowserConfig, AuditBrowserFactory, LaunchedBrowser, find_free_port
from .lighthouse import AuditCategory, AuditReport, LighthouseRunner, parse_report
from .pool import AuditInstancePool, AuditSession, PoolClosed, SessionState

__all__ = [
    'AuditBrowserConfig',
    'AuditBrowserFactory',
    'AuditCategory',
    'AuditInstancePool',
    'AuditReport',
    'AuditSession',
    'LaunchedBrowser',
    'LighthouseRunner',
    'PoolClosed',
    'SessionState',
    'find_free_port',
    'parse_report',
]
