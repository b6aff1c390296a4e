"""Relay service composing discovery identity, agent channel, audits and sanitizer.

Relay exposes one coroutine per capability. Each returns a RelayResponse
whose data went through the payload sanitizer; failures are reported in
the envelope instead of being raised.
"""

import base64
import binascii
import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiofiles

from . import __version__
from .audit import (
    AuditBrowserConfig,
    AuditBrowserFactory,
    AuditCategory,
    AuditInstancePool,
    LighthouseRunner,
)
from .capture import LogStore
from .channel import (
    AiohttpDialer,
    BackoffState,
    Channel,
    ConnectionManager,
    ConnectionSupervisor,
    Dialer,
    InboundDialer,
    RequestCorrelator,
)
from .config import RelayConfig
from .errors import AgentRequestError, InvalidRequest, NotConnected, RelayError
from .models import AgentStatus, ArtifactKind, CapturedArtifact, RelayResponse, ServerIdentity
from .paste import PasteInjector, resolve_target, select_injector
from .sanitize import PayloadSanitizer, SanitizerLimits
from .schemas import (
    AuditRequest,
    ClickElementRequest,
    FillInputRequest,
    InspectElementsRequest,
    RefreshBrowserRequest,
    ScreenshotRequest,
    SelectOptionRequest,
    SubmitFormRequest,
)

logger = logging.getLogger(__name__)

CAPABILITIES = [
    "capture-screenshot",
    "console-logs",
    "console-errors",
    "network-success",
    "network-errors",
    "wipe-logs",
    "cookies",
    "local-storage",
    "session-storage",
    "current-url",
    "selected-element",
    "click-element",
    "fill-input",
    "select-option",
    "submit-form",
    "refresh-browser",
    "inspect-elements",
    "audits",
]

VERSION_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)")


def decode_data_url(data_url: str) -> bytes:
    """Decode a base64 ``data:`` URL (or bare base64) into bytes.

    Raises:
        AgentRequestError: If the data is not valid base64
    """
    encoded = data_url.split("base64,", 1)[1] if "base64," in data_url else data_url
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AgentRequestError("Agent returned malformed screenshot data", request_type="take-screenshot") from e


def agent_version_warnings(agent_info: Dict[str, Any], relay_version: str = __version__) -> List[str]:
    """Compare the version an agent announced in its handshake with ours.

    Agents are expected to share the relay's major version. Agents that
    announced no version are not checked.
    """
    agent_version = agent_info.get("version") if isinstance(agent_info, dict) else None
    if not agent_version:
        return []

    agent_match = VERSION_PATTERN.match(str(agent_version))
    relay_match = VERSION_PATTERN.match(relay_version)
    if not agent_match or not relay_match:
        return [f"Cannot verify capture agent version {agent_version!r}"]
    if int(agent_match.group(1)) != int(relay_match.group(1)):
        return [f"Capture agent v{agent_version} may not be compatible with relay v{relay_version}"]
    return []


class Relay:
    """The relay service."""

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        dialer: Optional[Dialer] = None,
        pool: Optional[AuditInstancePool] = None,
        lighthouse: Optional[LighthouseRunner] = None,
        injector: Optional[PasteInjector] = None
    ):
        """Initialize relay.

        Args:
            config: Relay configuration; defaults apply when omitted
            dialer: Channel source; inbound unless connection.agent_url is set
            pool: Audit browser pool
            lighthouse: Audit engine
            injector: Paste implementation for the current platform
        """
        self.config = config or RelayConfig()
        connection_settings = self.config.connection
        audit_settings = self.config.audit

        if dialer is None:
            if connection_settings.agent_url:
                dialer = AiohttpDialer(connection_settings.agent_url)
            else:
                dialer = InboundDialer()
        self.dialer = dialer

        self.connection = ConnectionManager(
            dialer,
            liveness_timeout=connection_settings.liveness_timeout,
            connect_timeout=connection_settings.connect_timeout
        )
        self.correlator = RequestCorrelator(
            self.connection,
            default_timeout=self.config.correlator.default_timeout
        )
        self.supervisor = ConnectionSupervisor(
            self.connection,
            BackoffState(
                base_delay=connection_settings.reconnect_base_delay,
                max_delay=connection_settings.reconnect_max_delay
            )
        )

        self.log_store = LogStore(self.config.logs.buffer_size)
        self.correlator.subscribe(self.log_store.handle_message)

        self.pool = pool or AuditInstancePool(
            AuditBrowserFactory(AuditBrowserConfig(
                headless=audit_settings.headless,
                args=audit_settings.browser_args,
                launch_timeout=audit_settings.launch_timeout
            )),
            idle_timeout=audit_settings.idle_timeout,
            launch_timeout=audit_settings.launch_timeout
        )
        self.lighthouse = lighthouse or LighthouseRunner(
            audit_settings.lighthouse_command,
            timeout=audit_settings.audit_timeout
        )

        self.sanitizer = PayloadSanitizer(SanitizerLimits.from_settings(self.config.sanitizer))
        self.injector = injector or select_injector(timeout=self.config.paste.timeout)
        self.started_at = time.time()

    async def start(self) -> None:
        """Start keeping the agent channel up."""
        logger.info("Starting relay")
        self.supervisor.start()

    async def stop(self) -> None:
        """Stop reconnecting, close the agent channel and the audit browser."""
        logger.info("Stopping relay")
        await self.supervisor.stop()
        await self.connection.close("shutdown")
        await self.pool.close()

    async def accept_agent(self, channel: Channel) -> None:
        """Route an agent socket accepted by the HTTP endpoint.

        The most recent socket wins: a live connection is closed as
        superseded before the new channel is handed to the dialer.
        """
        if not isinstance(self.dialer, InboundDialer):
            logger.warning("Rejecting inbound agent socket; relay dials out to the agent")
            await channel.close(code=1008, reason="relay dials out")
            return
        if self.connection.is_connected:
            await self.connection.close("superseded")
        await self.dialer.offer(channel)

    def identity(self) -> ServerIdentity:
        connection = self.connection.connection
        return ServerIdentity(
            name=self.config.server.service_name,
            version=__version__,
            status="running",
            capabilities=CAPABILITIES,
            agent=AgentStatus(
                connected=connection is not None,
                connection_id=connection.connection_id if connection else None
            )
        )

    # Capture

    async def capture_screenshot(self, params: Optional[ScreenshotRequest] = None) -> RelayResponse:
        params = params or ScreenshotRequest()
        return await self._run("capture_screenshot", ArtifactKind.SCREENSHOT, lambda: self._capture_screenshot(params))

    async def _capture_screenshot(self, params: ScreenshotRequest) -> Dict[str, Any]:
        result = await self.correlator.dispatch(
            "take-screenshot",
            timeout=self.config.correlator.screenshot_timeout
        )
        data_url = (result.get("data") or result.get("dataUrl")) if isinstance(result, dict) else result
        if not isinstance(data_url, str) or not data_url:
            raise AgentRequestError("Agent returned no screenshot data", request_type="take-screenshot")

        path = await self.save_screenshot(decode_data_url(data_url))
        data: Dict[str, Any] = {'path': str(path)}

        auto_paste = self.config.paste.enabled if params.auto_paste is None else params.auto_paste
        if auto_paste:
            target = resolve_target(self.config.paste.target, self.config.paste.custom_app_name)
            outcome = await self.injector.inject_pasted_image(path, target)
            data['paste'] = {'success': outcome.success, 'message': outcome.message, 'target': outcome.target}
        return data

    async def save_screenshot(self, image: bytes) -> Path:
        """Write PNG bytes to the screenshot directory."""
        directory = Path(self.config.screenshots.directory).expanduser()
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"screenshot-{datetime.now().strftime('%Y%m%dT%H%M%S-%f')}.png"
        async with aiofiles.open(path, 'wb') as f:
            await f.write(image)
        logger.info(f"Saved screenshot to {path}")
        return path

    # Buffered logs

    async def console_logs(self) -> RelayResponse:
        return await self._run_buffer("console_logs", ArtifactKind.CONSOLE_LOG)

    async def console_errors(self) -> RelayResponse:
        return await self._run_buffer("console_errors", ArtifactKind.CONSOLE_ERROR)

    async def network_success(self) -> RelayResponse:
        return await self._run_buffer("network_success", ArtifactKind.NETWORK_REQUEST)

    async def network_errors(self) -> RelayResponse:
        return await self._run_buffer("network_errors", ArtifactKind.NETWORK_REQUEST)

    async def wipe_logs(self) -> RelayResponse:
        self.log_store.wipe()
        return RelayResponse.ok({'message': "All logs cleared"})

    # Storage

    async def cookies(self) -> RelayResponse:
        return await self._run_agent("get-cookies", ArtifactKind.STORAGE)

    async def local_storage(self) -> RelayResponse:
        return await self._run_agent("get-local-storage", ArtifactKind.STORAGE)

    async def session_storage(self) -> RelayResponse:
        return await self._run_agent("get-session-storage", ArtifactKind.STORAGE)

    # Page state

    async def current_url(self) -> RelayResponse:
        return await self._run("current_url", ArtifactKind.OTHER, self._current_url)

    async def _current_url(self) -> Dict[str, Any]:
        result = await self.correlator.dispatch("get-current-url")
        url = result.get("url") if isinstance(result, dict) else result
        if url:
            self.log_store.current_url = url
        return {'url': url}

    async def selected_element(self) -> RelayResponse:
        if self.log_store.selected_element is not None:
            return self._respond(self.log_store.selected_element, ArtifactKind.ELEMENT)
        return await self._run_agent("get-selected-element", ArtifactKind.ELEMENT)

    # Interaction

    async def click_element(self, params: ClickElementRequest) -> RelayResponse:
        return await self._run_agent("click-element", ArtifactKind.ELEMENT, params.to_agent_payload())

    async def fill_input(self, params: FillInputRequest) -> RelayResponse:
        return await self._run_agent("fill-input", ArtifactKind.ELEMENT, params.to_agent_payload())

    async def select_option(self, params: SelectOptionRequest) -> RelayResponse:
        return await self._run_agent("select-option", ArtifactKind.ELEMENT, params.to_agent_payload())

    async def submit_form(self, params: SubmitFormRequest) -> RelayResponse:
        return await self._run_agent("submit-form", ArtifactKind.ELEMENT, params.to_agent_payload())

    async def refresh_browser(self, params: Optional[RefreshBrowserRequest] = None) -> RelayResponse:
        params = params or RefreshBrowserRequest()
        timeout = max(self.config.correlator.default_timeout, params.timeout_ms / 1000 + 1)
        return await self._run_agent("refresh-browser", ArtifactKind.OTHER, params.to_agent_payload(), timeout)

    async def inspect_elements(self, params: InspectElementsRequest) -> RelayResponse:
        return await self._run_agent(
            "inspect-elements-by-selector",
            ArtifactKind.DOM_SNAPSHOT,
            params.to_agent_payload()
        )

    # Audits

    async def run_audit(self, category: AuditCategory, params: Optional[AuditRequest] = None) -> RelayResponse:
        params = params or AuditRequest()
        return await self._run(
            f"{category.value} audit",
            ArtifactKind.AUDIT_REPORT,
            lambda: self._run_audit(category, params)
        )

    async def _run_audit(self, category: AuditCategory, params: AuditRequest) -> Dict[str, Any]:
        url = params.url or self.log_store.current_url
        if not url:
            if not self.connection.is_connected:
                raise NotConnected("No URL given and the capture agent is not connected")
            url = (await self._current_url())['url']
        if not url:
            raise InvalidRequest("No URL given and the capture agent reported none")

        async with self.pool.checkout() as session:
            report = await self.lighthouse.run(session, url, category)
        return report.model_dump(mode="json")

    # Status

    async def status(self) -> RelayResponse:
        connection = self.connection.connection
        agent_info = connection.agent_info if connection else {}
        warnings = agent_version_warnings(agent_info)
        data = {
            'version': __version__,
            'uptime_seconds': round(time.time() - self.started_at, 1),
            'agent': {
                'state': self.connection.state.value,
                'connection_id': connection.connection_id if connection else None,
                'agent_info': agent_info,
                'version_compatible': not warnings,
            },
            'pending_requests': self.correlator.pending_count,
            'current_url': self.log_store.current_url,
            'logs': self.log_store.counts(),
            'audit_pool': self.pool.stats(),
        }
        return self._respond(data, ArtifactKind.OTHER, warnings)

    # Helpers

    async def _run_buffer(self, buffer: str, kind: ArtifactKind) -> RelayResponse:
        warnings: List[str] = []
        if not self.connection.is_connected:
            warnings.append("Capture agent is not connected; showing buffered entries")
        return self._respond(self.log_store.entries(buffer), kind, warnings)

    async def _run_agent(
        self,
        request_type: str,
        kind: ArtifactKind,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> RelayResponse:
        return await self._run(
            request_type,
            kind,
            lambda: self.correlator.dispatch(request_type, payload, timeout)
        )

    async def _run(
        self,
        name: str,
        kind: ArtifactKind,
        operation: Callable[[], Awaitable[Any]]
    ) -> RelayResponse:
        try:
            data = await operation()
        except RelayError as e:
            logger.warning(f"{name} failed: {e.kind}: {e.message}")
            return self._failure(e.kind, e.message, e.details)
        except Exception as e:
            logger.error(f"Unexpected error in {name}: {e}", exc_info=True)
            return self._failure("internal_error", f"Unexpected error in {name}: {e}", {})
        return self._respond(data, kind)

    def _respond(self, data: Any, kind: ArtifactKind, warnings: Optional[List[str]] = None) -> RelayResponse:
        result = self.sanitizer.sanitize(CapturedArtifact.create(kind, data))
        return RelayResponse.ok(result.data, warnings=[*(warnings or []), *result.warnings])

    def _failure(self, kind: str, message: str, details: Dict[str, Any]) -> RelayResponse:
        message = self.sanitizer.sanitize(message).data
        details = self.sanitizer.sanitize(details).data if details else None
        return RelayResponse.fail(kind, message, details)
