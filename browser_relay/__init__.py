"""Browser Relay - bridges a browser capture agent and tool-invoking clients."""

__version__ = "1.0.0"
