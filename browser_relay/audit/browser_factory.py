"""Launcher for the headless Chromium used by audits.

Lighthouse drives the browser over the Chrome DevTools protocol, so every
launch exposes a remote debugging port picked from the free ports of the
host.
"""

import logging
import socket
from typing import Any, Callable, Dict, List, Optional

from playwright.async_api import Browser, Playwright, async_playwright

logger = logging.getLogger(__name__)


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for a currently unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


class AuditBrowserConfig:
    """Configuration for audit browser launches."""

    def __init__(
        self,
        headless: bool = True,
        args: Optional[List[str]] = None,
        launch_timeout: float = 30.0,
        debugging_port: Optional[int] = None,
        **kwargs
    ):
        """Initialize audit browser configuration.

        Args:
            headless: Run browser in headless mode
            args: Extra Chromium command line switches
            launch_timeout: Seconds Playwright waits for the process to start
            debugging_port: Fixed remote debugging port; a free one is picked if None
        """
        self.headless = headless
        self.args = list(args or [])
        self.launch_timeout = launch_timeout
        self.debugging_port = debugging_port
        self.extra_options = kwargs

    def to_browser_options(self, debugging_port: int) -> Dict[str, Any]:
        """Convert to Playwright launch options for the given debugging port."""
        options = {
            'headless': self.headless,
            'args': self.args + [f'--remote-debugging-port={debugging_port}'],
            'timeout': self.launch_timeout * 1000,
        }
        options.update(self.extra_options)
        return options


class LaunchedBrowser:
    """Handle to one launched Chromium process."""

    def __init__(self, playwright: Playwright, browser: Browser, debugging_port: int):
        self.playwright = playwright
        self.browser = browser
        self.debugging_port = debugging_port
        self._closed = False

    @property
    def is_connected(self) -> bool:
        if self._closed:
            return False
        return self.browser.is_connected()

    @property
    def version(self) -> Optional[str]:
        return self.browser.version

    def on_disconnected(self, callback: Callable[[], None]) -> None:
        """Invoke callback when the browser process goes away."""
        self.browser.on("disconnected", lambda _browser: callback())

    async def close(self) -> None:
        """Terminate the browser process and the Playwright driver."""
        if self._closed:
            return
        self._closed = True
        try:
            if self.browser.is_connected():
                await self.browser.close()
        finally:
            await self.playwright.stop()

    def __repr__(self) -> str:
        return f"LaunchedBrowser(port={self.debugging_port}, connected={self.is_connected})"


class AuditBrowserFactory:
    """Factory launching Chromium instances suitable for Lighthouse."""

    def __init__(self, config: Optional[AuditBrowserConfig] = None):
        self.config = config or AuditBrowserConfig()
        self.launch_count = 0

    async def launch(self) -> LaunchedBrowser:
        """Start Playwright and launch Chromium with a debugging port.

        Returns:
            Handle to the launched browser

        Raises:
            Exception: Whatever Playwright raised; the driver is stopped first
        """
        port = self.config.debugging_port or find_free_port()
        logger.info(f"Launching audit browser (headless={self.config.headless}, port={port})")

        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(**self.config.to_browser_options(port))
        except BaseException as e:
            logger.error(f"Failed to launch audit browser: {e!r}")
            await playwright.stop()
            raise

        self.launch_count += 1
        logger.info(f"Audit browser launched (version={browser.version}, port={port})")
        return LaunchedBrowser(playwright, browser, port)
