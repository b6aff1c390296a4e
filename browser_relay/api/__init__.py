"""HTTP API for the browser relay."""

from .main import create_app
from .responses import STATUS_BY_KIND, envelope_response, status_for

__all__ = ['STATUS_BY_KIND', 'create_app', 'envelope_response', 'status_for']
