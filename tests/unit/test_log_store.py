"""Unit tests for the agent log buffers."""

from browser_relay.capture import LogStore


class TestLogStore:
    """Tests for LogStore."""

    def test_console_messages_split_by_level(self):
        store = LogStore()

        store.handle_message({"type": "console-log", "level": "info", "message": "ready"})
        store.handle_message({"type": "console-log", "level": "error", "message": "boom"})
        store.handle_message({"type": "console-error", "message": "uncaught", "timestamp": 5})

        assert [entry["message"] for entry in store.console_logs] == ["ready"]
        assert [entry["message"] for entry in store.console_errors] == ["boom", "uncaught"]
        assert store.console_errors[1]["timestamp"] == 5
        assert "timestamp" in store.console_logs[0]

    def test_network_requests_split_by_status(self):
        store = LogStore()

        store.handle_message({"type": "network-request", "url": "/api/a", "method": "GET", "status": 200})
        store.handle_message({"type": "network-request", "url": "/api/b", "method": "POST", "status": 500})
        store.handle_message({"type": "network-request", "data": {"url": "/api/c", "status": 404}})

        assert [entry["url"] for entry in store.network_success] == ["/api/a"]
        assert [entry["url"] for entry in store.network_errors] == ["/api/b", "/api/c"]

    def test_buffers_are_bounded(self):
        store = LogStore(buffer_size=3)

        for n in range(10):
            store.handle_message({"type": "console-log", "message": str(n)})

        assert [entry["message"] for entry in store.entries("console_logs")] == ["7", "8", "9"]

    def test_navigation_wipes_buffers(self):
        store = LogStore()
        store.handle_message({"type": "console-log", "message": "old"})
        store.handle_message({"type": "network-request", "url": "/old", "status": 200})

        store.handle_message({"type": "page-navigated", "url": "https://example.com/next", "tabId": 7})

        assert store.counts() == {
            'console_logs': 0,
            'console_errors': 0,
            'network_success': 0,
            'network_errors': 0,
        }
        assert store.current_url == "https://example.com/next"
        assert store.current_tab_id == 7

    def test_selected_element(self):
        store = LogStore()

        store.handle_message({"type": "selected-element", "element": {"tagName": "BUTTON", "id": "save"}})

        assert store.selected_element == {"tagName": "BUTTON", "id": "save"}

    def test_unknown_message_ignored(self):
        store = LogStore()

        assert store.handle_message({"type": "something-else"}) is False
        assert store.last_updated is None

    def test_wipe_keeps_url(self):
        store = LogStore()
        store.handle_message({"type": "current-url", "url": "https://example.com"})
        store.handle_message({"type": "console-error", "message": "x"})

        store.wipe()

        assert store.counts()['console_errors'] == 0
        assert store.current_url == "https://example.com"
