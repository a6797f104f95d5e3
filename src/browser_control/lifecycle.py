"""Browser lifecycle: attach to a reachable debugger or launch one.

Launch and teardown run under a single lock so that concurrent requests never
start two browsers. Read-only operations (probes, listings, commands) do not
take the lock, and a browser that is already reachable is reported without
waiting for it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Protocol

from .cdp import DEFAULT_PROBE_TIMEOUT, CDPTransport
from .config import ResolvedBrowserConfig
from .errors import ControlError, ErrorKind
from .launcher import RunningChrome

logger = logging.getLogger(__name__)


class Launcher(Protocol):
    async def launch(self, resolved: ResolvedBrowserConfig) -> RunningChrome: ...

    async def stop(self, running: RunningChrome) -> None: ...


class BrowserLifecycle:
    """Tracks the single browser instance owned by a control server."""

    def __init__(
        self,
        resolved: ResolvedBrowserConfig,
        launcher: Launcher,
        transport: CDPTransport,
    ) -> None:
        self.resolved = resolved
        self.launcher = launcher
        self.transport = transport
        self.running: RunningChrome | None = None
        self._lock = asyncio.Lock()
        self._exit_watchers: set[asyncio.Task[None]] = set()

    @property
    def cdp_port(self) -> int:
        return self.resolved.cdp_port

    async def is_reachable(self, timeout: float = DEFAULT_PROBE_TIMEOUT) -> bool:
        return await self.transport.is_reachable(self.cdp_port, timeout)

    async def ensure_browser_available(self) -> None:
        """Return once a debugger is reachable, launching a browser if needed.

        Raises:
            ControlError: ``ATTACH_ONLY_UNAVAILABLE`` when nothing is reachable
                and launching is disabled.
            LaunchError: Propagated unchanged from the launcher.
        """
        if await self.is_reachable():
            return

        async with self._lock:
            # Another request may have launched while this one waited.
            if await self.is_reachable():
                return
            if self.resolved.attach_only:
                raise ControlError(ErrorKind.ATTACH_ONLY_UNAVAILABLE)

            launched = await self.launcher.launch(self.resolved)
            self.running = launched
            self._watch_exit(launched)

    def _watch_exit(self, launched: RunningChrome) -> None:
        task = asyncio.create_task(self._await_exit(launched))
        self._exit_watchers.add(task)
        task.add_done_callback(self._exit_watchers.discard)

    async def _await_exit(self, launched: RunningChrome) -> None:
        returncode = await launched.wait()
        self.handle_exit(launched, returncode)

    def handle_exit(self, exited: RunningChrome, returncode: int | None = None) -> None:
        """Forget ``exited`` if it is still the recorded instance.

        A late exit notification from an instance that was already replaced
        must not clear the newer one.
        """
        if self.running is not None and self.running.pid == exited.pid:
            logger.warning("Browser (PID: %d) exited with code %s", exited.pid, returncode)
            self.running = None
        else:
            logger.debug("Ignoring exit of stale browser (PID: %d)", exited.pid)

    async def stop_browser(self) -> bool:
        """Stop the recorded browser. Returns False when none was running."""
        async with self._lock:
            current = self.running
            if current is None:
                return False
            await self.launcher.stop(current)
            if self.running is current:
                self.running = None
            return True

    async def shutdown(self) -> None:
        """Stop the browser (errors logged, not raised) and drop exit watchers."""
        try:
            await self.stop_browser()
        except Exception as e:
            logger.warning("Browser stop failed during shutdown: %s", e)

        for task in list(self._exit_watchers):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._exit_watchers.clear()
