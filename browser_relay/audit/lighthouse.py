"""Lighthouse audit engine.

Runs the Lighthouse CLI against the pooled browser's remote debugging
port and condenses the JSON report into an AuditReport.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..errors import AuditFailed, ProcessCrashed, RequestTimeoutError
from .pool import AuditSession

logger = logging.getLogger(__name__)


class AuditCategory(str, Enum):
    """Lighthouse categories the relay can run."""
    PERFORMANCE = "performance"
    ACCESSIBILITY = "accessibility"
    SEO = "seo"
    BEST_PRACTICES = "best-practices"


PERFORMANCE_METRICS = (
    "first-contentful-paint",
    "largest-contentful-paint",
    "total-blocking-time",
    "cumulative-layout-shift",
    "speed-index",
    "interactive",
)


class AuditReport(BaseModel):
    """Condensed Lighthouse result for one category."""

    url: str
    category: AuditCategory
    score: Optional[float] = Field(default=None, description="Category score, 0-100")
    metrics: Dict[str, Any] = Field(default_factory=dict)
    failed_audits: List[Dict[str, Any]] = Field(default_factory=list)
    passed_count: int = 0
    fetch_time: Optional[str] = None
    lighthouse_version: Optional[str] = None


def parse_report(report: Dict[str, Any], category: AuditCategory, url: str) -> AuditReport:
    """Extract score, key metrics and failing audits from a Lighthouse report.

    Args:
        report: Parsed Lighthouse JSON (the ``lhr`` object)
        category: Category that was audited
        url: URL requested for the audit

    Returns:
        Condensed report

    Raises:
        AuditFailed: If the report does not contain the category
    """
    categories = report.get("categories") or {}
    category_data = categories.get(category.value)
    if not isinstance(category_data, dict):
        raise AuditFailed(f"Lighthouse report has no '{category.value}' category")

    audits = report.get("audits") or {}

    raw_score = category_data.get("score")
    score = round(raw_score * 100, 1) if isinstance(raw_score, (int, float)) else None

    metrics: Dict[str, Any] = {}
    if category == AuditCategory.PERFORMANCE:
        for metric_id in PERFORMANCE_METRICS:
            audit = audits.get(metric_id)
            if not audit:
                continue
            metrics[metric_id] = {
                'value': audit.get('numericValue'),
                'display': audit.get('displayValue'),
                'score': audit.get('score'),
            }

    failed: List[Dict[str, Any]] = []
    passed = 0
    for ref in category_data.get("auditRefs") or []:
        audit = audits.get(ref.get("id"))
        if not audit:
            continue
        audit_score = audit.get("score")
        if audit_score is None:
            continue
        if audit_score >= 1:
            passed += 1
            continue
        failed.append({
            'id': ref.get("id"),
            'title': audit.get("title"),
            'score': audit_score,
            'weight': ref.get("weight", 0),
            'display': audit.get("displayValue"),
        })

    failed.sort(key=lambda item: (-(item['weight'] or 0), item['score']))

    return AuditReport(
        url=report.get("finalUrl") or report.get("requestedUrl") or url,
        category=category,
        score=score,
        metrics=metrics,
        failed_audits=failed,
        passed_count=passed,
        fetch_time=report.get("fetchTime"),
        lighthouse_version=report.get("lighthouseVersion")
    )


class LighthouseRunner:
    """Runs Lighthouse as a subprocess attached to an audit session."""

    def __init__(self, command: Optional[Sequence[str]] = None, timeout: float = 120.0):
        """Initialize runner.

        Args:
            command: Executable (and leading args) of the Lighthouse CLI
            timeout: Seconds before the run is killed
        """
        self.command = list(command or ["lighthouse"])
        self.timeout = timeout

    def build_command(self, url: str, port: int, category: AuditCategory) -> List[str]:
        return self.command + [
            url,
            f"--port={port}",
            "--output=json",
            "--output-path=stdout",
            f"--only-categories={category.value}",
            "--quiet",
        ]

    async def run(self, session: AuditSession, url: str, category: AuditCategory) -> AuditReport:
        """Audit a URL using the session's browser.

        Raises:
            RequestTimeoutError: If Lighthouse exceeded the timeout
            ProcessCrashed: If the browser died during the run
            AuditFailed: If Lighthouse failed for any other reason
        """
        args = self.build_command(url, session.debugging_port, category)
        logger.info(f"Running {category.value} audit for {url} on port {session.debugging_port}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError as e:
            raise AuditFailed(f"Lighthouse CLI not found: {self.command[0]}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise RequestTimeoutError(
                f"{category.value} audit did not finish within {self.timeout}s",
                timeout=self.timeout
            )

        if session.crashed or not session.browser.is_connected:
            raise ProcessCrashed(session_id=session.session_id)

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()[-500:]
            logger.error(f"Lighthouse exited with {process.returncode}: {message}")
            raise AuditFailed(
                f"Lighthouse exited with code {process.returncode}",
                {'stderr': message}
            )

        try:
            report = json.loads(stdout)
        except ValueError as e:
            raise AuditFailed("Lighthouse produced invalid JSON") from e

        if not isinstance(report, dict):
            raise AuditFailed("Lighthouse report is not a JSON object")

        runtime_error = report.get("runtimeError")
        if isinstance(runtime_error, dict) and runtime_error:
            raise AuditFailed(
                f"Lighthouse runtime error: {runtime_error.get('message', runtime_error)}",
                {'code': runtime_error.get('code')}
            )

        return parse_report(report, category, url)
