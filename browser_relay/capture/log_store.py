"""Bounded in-memory buffers for unsolicited agent messages.

The capture agent streams console output, finished XHR/fetch requests,
the current URL and the element selected in DevTools without being
asked. LogStore keeps the most recent entries of each kind until the
page navigates or logs are wiped.
"""

import logging
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class LogStore:
    """Most recent console and network entries reported by the agent."""

    def __init__(self, buffer_size: int = 50):
        self.buffer_size = buffer_size
        self.console_logs: Deque[Dict[str, Any]] = deque(maxlen=buffer_size)
        self.console_errors: Deque[Dict[str, Any]] = deque(maxlen=buffer_size)
        self.network_success: Deque[Dict[str, Any]] = deque(maxlen=buffer_size)
        self.network_errors: Deque[Dict[str, Any]] = deque(maxlen=buffer_size)
        self.current_url: Optional[str] = None
        self.current_tab_id: Optional[Any] = None
        self.selected_element: Optional[Dict[str, Any]] = None
        self.last_updated: Optional[float] = None

    def handle_message(self, message: Dict[str, Any]) -> bool:
        """Record an unsolicited agent message.

        Returns:
            True if the message type is buffered here
        """
        message_type = message.get("type")
        entry = self._entry(message)

        if message_type == "console-log":
            if entry.get("level") == "error":
                self.console_errors.append(entry)
            else:
                self.console_logs.append(entry)
        elif message_type == "console-error":
            self.console_errors.append(entry)
        elif message_type == "network-request":
            status = entry.get("status")
            if isinstance(status, int) and status >= 400:
                self.network_errors.append(entry)
            else:
                self.network_success.append(entry)
        elif message_type == "current-url":
            self._update_url(entry)
        elif message_type == "page-navigated":
            logger.info(f"Page navigated to {entry.get('url')}; wiping logs")
            self.wipe()
            self._update_url(entry)
        elif message_type == "selected-element":
            self.selected_element = entry.get("element", entry)
        else:
            return False

        self.last_updated = time.time()
        return True

    def wipe(self) -> None:
        """Clear all log buffers; URL and selection survive."""
        self.console_logs.clear()
        self.console_errors.clear()
        self.network_success.clear()
        self.network_errors.clear()
        logger.debug("Log buffers wiped")

    def counts(self) -> Dict[str, int]:
        return {
            'console_logs': len(self.console_logs),
            'console_errors': len(self.console_errors),
            'network_success': len(self.network_success),
            'network_errors': len(self.network_errors),
        }

    def entries(self, buffer: str) -> List[Dict[str, Any]]:
        """Copy of one named buffer, oldest first."""
        return list(getattr(self, buffer))

    def _update_url(self, entry: Dict[str, Any]) -> None:
        url = entry.get("url")
        if url:
            self.current_url = url
        if entry.get("tabId") is not None:
            self.current_tab_id = entry["tabId"]

    @staticmethod
    def _entry(message: Dict[str, Any]) -> Dict[str, Any]:
        """Flatten an envelope into a stored entry."""
        payload = message.get("payload", message.get("data"))
        entry = {key: value for key, value in message.items() if key not in ("type", "payload", "data")}
        if isinstance(payload, dict):
            entry.update(payload)
        elif payload is not None:
            entry["data"] = payload
        entry.setdefault("timestamp", int(time.time() * 1000))
        return entry
