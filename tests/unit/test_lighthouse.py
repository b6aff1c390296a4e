"""Unit tests for the Lighthouse audit engine."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from browser_relay.audit import AuditCategory, AuditSession, LighthouseRunner, parse_report
from browser_relay.errors import AuditFailed, ProcessCrashed, RequestTimeoutError
from tests.fakes import FakeBrowser


SAMPLE_REPORT = {
    "lighthouseVersion": "11.4.0",
    "requestedUrl": "https://example.com",
    "finalUrl": "https://example.com/",
    "fetchTime": "2024-05-01T10:00:00.000Z",
    "categories": {
        "performance": {
            "score": 0.87,
            "auditRefs": [
                {"id": "first-contentful-paint", "weight": 10},
                {"id": "render-blocking-resources", "weight": 0},
                {"id": "total-blocking-time", "weight": 30},
                {"id": "diagnostics", "weight": 0},
            ],
        },
        "accessibility": {
            "score": 1,
            "auditRefs": [{"id": "image-alt", "weight": 10}],
        },
    },
    "audits": {
        "first-contentful-paint": {
            "title": "First Contentful Paint",
            "score": 0.95,
            "numericValue": 1200.5,
            "displayValue": "1.2 s",
        },
        "total-blocking-time": {
            "title": "Total Blocking Time",
            "score": 0.4,
            "numericValue": 650,
            "displayValue": "650 ms",
        },
        "render-blocking-resources": {"title": "Eliminate render-blocking resources", "score": 1},
        "diagnostics": {"title": "Diagnostics", "score": None},
        "image-alt": {"title": "Image elements have [alt] attributes", "score": 1},
    },
}


def make_session(port=9222):
    browser = FakeBrowser(port)
    return AuditSession(
        session_id="session-1",
        browser=browser,
        debugging_port=port,
        created_at=0.0,
        last_used=0.0
    )


def make_process(stdout=b"", stderr=b"", returncode=0):
    process = MagicMock()
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.returncode = returncode
    process.wait = AsyncMock(return_value=returncode)
    return process


class TestParseReport:
    """Tests for parse_report."""

    def test_performance_report(self):
        report = parse_report(SAMPLE_REPORT, AuditCategory.PERFORMANCE, "https://example.com")

        assert report.score == 87.0
        assert report.url == "https://example.com/"
        assert report.lighthouse_version == "11.4.0"
        assert report.metrics["first-contentful-paint"]["value"] == 1200.5
        assert report.metrics["total-blocking-time"]["display"] == "650 ms"
        assert [audit["id"] for audit in report.failed_audits] == [
            "total-blocking-time",
            "first-contentful-paint",
        ]
        assert report.passed_count == 1

    def test_non_performance_category_has_no_metrics(self):
        report = parse_report(SAMPLE_REPORT, AuditCategory.ACCESSIBILITY, "https://example.com")

        assert report.score == 100.0
        assert report.metrics == {}
        assert report.failed_audits == []

    def test_missing_category(self):
        with pytest.raises(AuditFailed):
            parse_report(SAMPLE_REPORT, AuditCategory.SEO, "https://example.com")


class TestLighthouseRunner:
    """Tests for LighthouseRunner."""

    def test_build_command(self):
        runner = LighthouseRunner(command=["npx", "lighthouse"])

        args = runner.build_command("https://example.com", 9222, AuditCategory.BEST_PRACTICES)

        assert args == [
            "npx", "lighthouse", "https://example.com",
            "--port=9222",
            "--output=json",
            "--output-path=stdout",
            "--only-categories=best-practices",
            "--quiet",
        ]

    @pytest.mark.asyncio
    async def test_run_success(self):
        runner = LighthouseRunner()
        process = make_process(stdout=json.dumps(SAMPLE_REPORT).encode())

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as spawn:
            report = await runner.run(make_session(), "https://example.com", AuditCategory.PERFORMANCE)

        assert report.score == 87.0
        assert "--port=9222" in spawn.call_args.args

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        runner = LighthouseRunner()
        process = make_process(stderr=b"Unable to connect to Chrome", returncode=1)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(AuditFailed) as exc_info:
                await runner.run(make_session(), "https://example.com", AuditCategory.SEO)

        assert exc_info.value.details["stderr"] == "Unable to connect to Chrome"

    @pytest.mark.asyncio
    async def test_browser_crash_during_run(self):
        runner = LighthouseRunner()
        session = make_session()
        process = make_process(returncode=1)

        async def crash_then_exit():
            session.browser.crash()
            session.crashed = True
            return b"", b"Target closed"

        process.communicate = AsyncMock(side_effect=crash_then_exit)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ProcessCrashed) as exc_info:
                await runner.run(session, "https://example.com", AuditCategory.PERFORMANCE)

        assert exc_info.value.session_id == "session-1"

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        runner = LighthouseRunner(timeout=0.05)
        process = make_process()

        async def hang():
            await asyncio.sleep(10)

        process.communicate = AsyncMock(side_effect=hang)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(RequestTimeoutError):
                await runner.run(make_session(), "https://example.com", AuditCategory.PERFORMANCE)

        process.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_cli(self):
        runner = LighthouseRunner(command=["lighthouse-not-installed"])

        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError())):
            with pytest.raises(AuditFailed, match="not found"):
                await runner.run(make_session(), "https://example.com", AuditCategory.PERFORMANCE)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        runner = LighthouseRunner()
        process = make_process(stdout=b"Lighthouse crashed <html>")

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(AuditFailed, match="invalid JSON"):
                await runner.run(make_session(), "https://example.com", AuditCategory.PERFORMANCE)

    @pytest.mark.asyncio
    async def test_runtime_error(self):
        runner = LighthouseRunner()
        report = {"runtimeError": {"code": "NO_FCP", "message": "The page did not paint"}}
        process = make_process(stdout=json.dumps(report).encode())

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(AuditFailed) as exc_info:
                await runner.run(make_session(), "https://example.com", AuditCategory.PERFORMANCE)

        assert exc_info.value.details == {"code": "NO_FCP"}
