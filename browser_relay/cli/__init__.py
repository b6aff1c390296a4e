"""Command line interface for the browser relay."""

from .main import app

__all__ = ['app']
