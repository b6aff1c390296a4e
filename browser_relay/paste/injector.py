"""Paste a captured screenshot into a desktop application.

Each platform gets one PasteInjector variant that copies the image to
the clipboard, activates the target application and sends the paste
keystroke. The image path and target names reach the scripts through
environment variables, never through string interpolation.
"""

import asyncio
import logging
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

IMAGE_ENV = "RELAY_PASTE_IMAGE"
PROCESS_ENV = "RELAY_PASTE_PROCESS"
WINDOW_ENV = "RELAY_PASTE_WINDOW"
LABEL_ENV = "RELAY_PASTE_LABEL"


@dataclass(frozen=True)
class PasteTarget:
    """Application receiving the pasted image."""
    name: str
    process_name: str
    window_title: str


KNOWN_TARGETS: Dict[str, PasteTarget] = {
    "cursor": PasteTarget("Cursor", "Cursor", "Cursor"),
    "vscode": PasteTarget("Visual Studio Code", "Code", "Visual Studio Code"),
    "zed": PasteTarget("Zed", "Zed", "Zed"),
    "claude-desktop": PasteTarget("Claude Desktop", "Claude", "Claude"),
}


def resolve_target(target: str, custom_app_name: Optional[str] = None) -> PasteTarget:
    """Map a target identifier to application names; unknown ids fall back to Cursor."""
    if target == "custom" and custom_app_name:
        return PasteTarget(custom_app_name, custom_app_name, custom_app_name)
    return KNOWN_TARGETS.get(target, KNOWN_TARGETS["cursor"])


@dataclass
class PasteOutcome:
    """Opaque result of a paste attempt."""
    success: bool
    message: str
    platform: str
    target: Optional[str] = None


MACOS_SCRIPT = """
on run
    set imagePath to system attribute "RELAY_PASTE_IMAGE"
    set appName to system attribute "RELAY_PASTE_PROCESS"
    set the clipboard to (read (POSIX file imagePath) as «class PNGf»)
    tell application appName to activate
    delay 1
    tell application "System Events"
        tell process appName
            if (count of windows) is 0 then error "No windows found in " & appName
            keystroke "v" using command down
            delay 0.5
            key code 36
        end tell
    end tell
    return "Pasted screenshot into " & appName
end run
"""

WINDOWS_SCRIPT = r"""
Add-Type -AssemblyName System.Windows.Forms
Add-Type -AssemblyName System.Drawing
$imagePath = $env:RELAY_PASTE_IMAGE
$processName = $env:RELAY_PASTE_PROCESS
if (-not (Test-Path $imagePath)) { Write-Error "Image file not found: $imagePath"; exit 1 }
$image = [System.Drawing.Image]::FromFile($imagePath)
[System.Windows.Forms.Clipboard]::SetImage($image)
$image.Dispose()
$process = Get-Process -Name $processName -ErrorAction SilentlyContinue | Where-Object { $_.MainWindowHandle -ne 0 } | Select-Object -First 1
if ($null -eq $process) { Write-Error "$processName is not running"; exit 1 }
$shell = New-Object -ComObject WScript.Shell
[void]$shell.AppActivate($process.Id)
Start-Sleep -Milliseconds 800
[System.Windows.Forms.SendKeys]::SendWait("^v")
Start-Sleep -Milliseconds 300
[System.Windows.Forms.SendKeys]::SendWait("{ENTER}")
Write-Output "Pasted screenshot into $processName"
"""

LINUX_SCRIPT = """
set -e
command -v xclip >/dev/null 2>&1 || { echo "xclip is required but not installed" >&2; exit 1; }
command -v xdotool >/dev/null 2>&1 || { echo "xdotool is required but not installed" >&2; exit 1; }
xclip -selection clipboard -t image/png -i "$RELAY_PASTE_IMAGE"
WINDOW_ID=$(xdotool search --name "$RELAY_PASTE_WINDOW" | head -1)
if [ -z "$WINDOW_ID" ]; then echo "$RELAY_PASTE_LABEL window not found" >&2; exit 1; fi
xdotool windowactivate --sync "$WINDOW_ID"
sleep 0.5
xdotool key ctrl+v
sleep 0.3
xdotool key Return
echo "Pasted screenshot into $RELAY_PASTE_LABEL"
"""


class PasteInjector(ABC):
    """Platform-specific paste implementation."""

    platform = "unknown"

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    @abstractmethod
    def build_command(self) -> List[str]:
        """Command line running the platform script."""

    async def inject_pasted_image(self, path: Path, target: PasteTarget) -> PasteOutcome:
        """Paste the image at ``path`` into ``target``."""
        path = Path(path)
        if not path.is_file():
            return PasteOutcome(False, f"Image file not found: {path}", self.platform, target.name)

        env = dict(os.environ)
        env.update({
            IMAGE_ENV: str(path.resolve()),
            PROCESS_ENV: target.process_name,
            WINDOW_ENV: target.window_title,
            LABEL_ENV: target.name,
        })

        command = self.build_command()
        logger.info(f"Pasting {path.name} into {target.name} via {command[0]}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env
            )
        except OSError as e:
            logger.warning(f"Paste helper {command[0]} unavailable: {e}")
            return PasteOutcome(False, f"{command[0]} unavailable: {e}", self.platform, target.name)

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return PasteOutcome(False, f"Paste timed out after {self.timeout}s", self.platform, target.name)

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or f"exit code {process.returncode}"
            logger.warning(f"Paste into {target.name} failed: {message}")
            return PasteOutcome(False, message, self.platform, target.name)

        message = stdout.decode("utf-8", errors="replace").strip() or f"Pasted into {target.name}"
        return PasteOutcome(True, message, self.platform, target.name)


class MacOSPasteInjector(PasteInjector):
    """AppleScript via osascript."""

    platform = "darwin"

    def build_command(self) -> List[str]:
        return ["osascript", "-e", MACOS_SCRIPT]


class WindowsPasteInjector(PasteInjector):
    """PowerShell with Windows Forms."""

    platform = "win32"

    def build_command(self) -> List[str]:
        return ["powershell", "-NoProfile", "-ExecutionPolicy", "Bypass", "-Command", WINDOWS_SCRIPT]


class LinuxPasteInjector(PasteInjector):
    """xclip and xdotool under bash."""

    platform = "linux"

    def build_command(self) -> List[str]:
        return ["bash", "-c", LINUX_SCRIPT]


class UnsupportedPasteInjector(PasteInjector):
    """Reports failure on platforms without a paste implementation."""

    def __init__(self, platform: str, timeout: float = 30.0):
        super().__init__(timeout)
        self.platform = platform

    def build_command(self) -> List[str]:
        return []

    async def inject_pasted_image(self, path: Path, target: PasteTarget) -> PasteOutcome:
        return PasteOutcome(
            False,
            f"Platform {self.platform} not supported for auto-paste",
            self.platform,
            target.name
        )


def select_injector(platform: Optional[str] = None, timeout: float = 30.0) -> PasteInjector:
    """Pick the injector for ``platform`` (defaults to sys.platform)."""
    platform = platform or sys.platform
    if platform == "darwin":
        return MacOSPasteInjector(timeout)
    if platform.startswith("win"):
        return WindowsPasteInjector(timeout)
    if platform.startswith("linux"):
        return LinuxPasteInjector(timeout)
    return UnsupportedPasteInjector(platform, timeout)
