"""Unit tests for the command line interface."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

from typer.testing import CliRunner

from browser_relay.cli.main import app, choose_port
from browser_relay.errors import DiscoveryFailed
from browser_relay.models import ResolvedEndpoint


runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert "Browser Relay v1.0.0" in result.stdout


def test_discover_prints_endpoint():
    endpoint = ResolvedEndpoint(host="127.0.0.1", port=3026, name="Browser Relay", version="1.0.0")
    service = MagicMock()
    service.locate = AsyncMock(return_value=endpoint)

    with patch("browser_relay.cli.main.DiscoveryService", return_value=service):
        result = runner.invoke(app, ["discover", "--host", "127.0.0.1", "--port-start", "3025", "--port-count", "2"])

    assert result.exit_code == 0
    body = json.loads(result.stdout)
    assert body["port"] == 3026
    assert body["base_url"] == "http://127.0.0.1:3026"
    hosts, ports = service.locate.call_args.args
    assert hosts == ["127.0.0.1"]
    assert ports == [3025, 3026]


def test_discover_failure_exits_nonzero():
    service = MagicMock()
    service.locate = AsyncMock(side_effect=DiscoveryFailed(attempts=[
        {"host": "127.0.0.1", "port": 3025, "reason": "unreachable"}
    ]))

    with patch("browser_relay.cli.main.DiscoveryService", return_value=service):
        result = runner.invoke(app, ["discover"])

    assert result.exit_code == 1


def test_serve_uses_first_free_port():
    with patch("browser_relay.cli.main.choose_port", return_value=3027), \
         patch("browser_relay.cli.main.uvicorn.run") as run:
        result = runner.invoke(app, ["serve", "--port", "3025", "--log-level", "debug"])

    assert result.exit_code == 0
    assert run.call_args.kwargs["port"] == 3027
    assert run.call_args.kwargs["log_level"] == "debug"


def test_serve_without_free_port():
    with patch("browser_relay.cli.main.choose_port", return_value=None), \
         patch("browser_relay.cli.main.uvicorn.run") as run:
        result = runner.invoke(app, ["serve"])

    assert result.exit_code == 1
    run.assert_not_called()


def test_choose_port_skips_busy_ports():
    with patch("browser_relay.cli.main.port_is_free", side_effect=[False, False, True]):
        assert choose_port("127.0.0.1", 3025, 3) == 3027

    with patch("browser_relay.cli.main.port_is_free", return_value=False):
        assert choose_port("127.0.0.1", 3025, 3) is None
