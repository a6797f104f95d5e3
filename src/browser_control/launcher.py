"""Local Chromium-family browser launcher."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

import httpx

from .config import ResolvedBrowserConfig, config_home

logger = logging.getLogger(__name__)

BROWSER_STARTUP_TIMEOUT = 15.0
BROWSER_POLL_INTERVAL = 0.2
BROWSER_STOP_TIMEOUT = 2.5


class ExecutableKind(str, Enum):
    CHROME = "chrome"
    CANARY = "canary"
    BRAVE = "brave"
    EDGE = "edge"
    CHROMIUM = "chromium"
    CUSTOM = "custom"


class LaunchError(RuntimeError):
    """The browser could not be started or never became reachable."""


@dataclass(frozen=True)
class BrowserExecutable:
    kind: ExecutableKind
    path: str


@dataclass
class RunningChrome:
    """A browser process started by this control plane."""

    pid: int
    executable: BrowserExecutable
    user_data_dir: Path
    cdp_port: int
    process: asyncio.subprocess.Process = field(repr=False)
    started_at: datetime = field(default_factory=datetime.now)

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await self.process.wait()


def _mac_candidates() -> list[BrowserExecutable]:
    apps = [
        (ExecutableKind.CHROME, "Google Chrome.app/Contents/MacOS/Google Chrome"),
        (ExecutableKind.BRAVE, "Brave Browser.app/Contents/MacOS/Brave Browser"),
        (ExecutableKind.EDGE, "Microsoft Edge.app/Contents/MacOS/Microsoft Edge"),
        (ExecutableKind.CHROMIUM, "Chromium.app/Contents/MacOS/Chromium"),
        (
            ExecutableKind.CANARY,
            "Google Chrome Canary.app/Contents/MacOS/Google Chrome Canary",
        ),
    ]
    roots = [Path("/Applications"), Path.home() / "Applications"]
    return [BrowserExecutable(kind, str(root / rel)) for kind, rel in apps for root in roots]


def _linux_candidates() -> list[BrowserExecutable]:
    names = [
        (ExecutableKind.CHROME, "google-chrome"),
        (ExecutableKind.CHROME, "google-chrome-stable"),
        (ExecutableKind.BRAVE, "brave-browser"),
        (ExecutableKind.EDGE, "microsoft-edge"),
        (ExecutableKind.CHROMIUM, "chromium"),
        (ExecutableKind.CHROMIUM, "chromium-browser"),
    ]
    found = []
    for kind, name in names:
        path = shutil.which(name)
        if path:
            found.append(BrowserExecutable(kind, path))
    return found


def _windows_candidates() -> list[BrowserExecutable]:
    local = os.environ.get("LOCALAPPDATA", "")
    program_files = os.environ.get("PROGRAMFILES", r"C:\Program Files")
    program_files_x86 = os.environ.get("PROGRAMFILES(X86)", r"C:\Program Files (x86)")
    rel = [
        (ExecutableKind.CHROME, r"Google\Chrome\Application\chrome.exe"),
        (ExecutableKind.BRAVE, r"BraveSoftware\Brave-Browser\Application\brave.exe"),
        (ExecutableKind.EDGE, r"Microsoft\Edge\Application\msedge.exe"),
        (ExecutableKind.CANARY, r"Google\Chrome SxS\Application\chrome.exe"),
    ]
    roots = [r for r in (local, program_files, program_files_x86) if r]
    return [
        BrowserExecutable(kind, os.path.join(root, path)) for kind, path in rel for root in roots
    ]


def find_browser_executable(resolved: ResolvedBrowserConfig) -> BrowserExecutable | None:
    """Pick the configured executable, else the first installed candidate."""
    if resolved.executable_path:
        path = os.path.expanduser(resolved.executable_path)
        if os.path.exists(path):
            return BrowserExecutable(ExecutableKind.CUSTOM, path)
        logger.warning("Configured browser executable not found: %s", path)
        return None

    if sys.platform == "darwin":
        candidates = _mac_candidates()
    elif sys.platform.startswith("win"):
        candidates = _windows_candidates()
    else:
        candidates = _linux_candidates()

    for candidate in candidates:
        if os.path.exists(candidate.path):
            return candidate
    return None


def resolve_user_data_dir(profile: str) -> Path:
    return config_home() / "browser" / profile / "user-data"


def build_browser_args(
    resolved: ResolvedBrowserConfig, user_data_dir: Path
) -> list[str]:
    """Build browser command-line arguments."""
    args = [
        f"--remote-debugging-port={resolved.cdp_port}",
        "--remote-debugging-address=127.0.0.1",
        f"--user-data-dir={user_data_dir}",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-sync",
        "--disable-background-networking",
        "--disable-component-update",
        "--disable-features=Translate,MediaRouter",
        "--password-store=basic",
    ]
    if resolved.headless:
        args.append("--headless=new")
        args.append("--disable-gpu")
    if sys.platform.startswith("linux") and hasattr(os, "geteuid") and os.geteuid() == 0:
        args.append("--no-sandbox")
    args.append("about:blank")
    return args


class ChromeLauncher:
    """Starts and stops the locally managed browser."""

    def __init__(
        self,
        startup_timeout: float = BROWSER_STARTUP_TIMEOUT,
        poll_interval: float = BROWSER_POLL_INTERVAL,
    ) -> None:
        self.startup_timeout = startup_timeout
        self.poll_interval = poll_interval

    async def _is_ready(self, cdp_port: int) -> bool:
        try:
            async with httpx.AsyncClient(timeout=0.5) as client:
                response = await client.get(f"http://127.0.0.1:{cdp_port}/json/version")
                return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def launch(self, resolved: ResolvedBrowserConfig) -> RunningChrome:
        """Launch a browser with remote debugging on ``resolved.cdp_port``.

        Raises:
            LaunchError: If no executable is found, the process exits early,
                or the debugger does not come up in time.
        """
        executable = find_browser_executable(resolved)
        if executable is None:
            raise LaunchError(
                "No supported browser found (Chrome, Brave, Edge or Chromium). "
                "Install one or set browser.executable_path."
            )

        user_data_dir = resolve_user_data_dir(resolved.profile)
        user_data_dir.mkdir(parents=True, exist_ok=True)
        args = build_browser_args(resolved, user_data_dir)

        logger.debug("Launching %s with: %s", executable.path, " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                executable.path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise LaunchError(f"Failed to launch {executable.path}: {e}") from e

        logger.info(
            "Browser launched (%s, PID: %d, cdp port %d)",
            executable.kind.value,
            process.pid,
            resolved.cdp_port,
        )

        await self._wait_until_ready(process, resolved.cdp_port)
        return RunningChrome(
            pid=process.pid,
            executable=executable,
            user_data_dir=user_data_dir,
            cdp_port=resolved.cdp_port,
            process=process,
        )

    async def _wait_until_ready(
        self, process: asyncio.subprocess.Process, cdp_port: int
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout

        while loop.time() < deadline:
            if process.returncode is not None:
                raise LaunchError(
                    f"Browser exited during startup with code {process.returncode}"
                )
            if await self._is_ready(cdp_port):
                return
            await asyncio.sleep(self.poll_interval)

        await self._terminate(process)
        raise LaunchError(
            f"Browser did not expose the debugger on port {cdp_port} "
            f"within {self.startup_timeout}s"
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=BROWSER_STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Browser (PID: %d) ignored SIGTERM, killing", process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def stop(self, running: RunningChrome) -> None:
        """Stop a browser started by :meth:`launch`."""
        logger.info("Stopping browser (PID: %d)", running.pid)
        await self._terminate(running.process)
