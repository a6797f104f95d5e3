"""Loopback HTTP control surface.

``ControlServer`` owns the single ``ControlServerState`` of a process: the
listening socket, the uvicorn server task and the browser lifecycle. Route
handlers reach the state through the server object passed to ``build_app``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import sys
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .cdp import CDPTransport, WebSocketTransport
from .config import (
    AppConfig,
    ResolvedBrowserConfig,
    load_config,
    resolve_browser_config,
    should_start_local_server,
)
from .dispatcher import CommandDispatcher
from .errors import ControlError, ErrorKind, invalid_request, to_control_error
from .launcher import ChromeLauncher
from .lifecycle import BrowserLifecycle, Launcher
from .media import MediaStore
from .screenshot import ScreenshotPipeline
from .tabs import TabOperations

logger = logging.getLogger(__name__)

CONTROL_BIND_HOST = "127.0.0.1"
STARTUP_POLL_INTERVAL = 0.01
SHUTDOWN_TIMEOUT = 5.0


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the hosting process."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


@dataclass
class ControlServerState:
    """Everything a running control server owns."""

    port: int
    cdp_port: int
    resolved: ResolvedBrowserConfig
    lifecycle: BrowserLifecycle
    tabs: TabOperations
    dispatcher: CommandDispatcher
    screenshots: ScreenshotPipeline
    server: uvicorn.Server | None = None
    task: asyncio.Task[None] | None = None
    sock: socket.socket | None = None


class ControlServer:
    """Starts, stops and hands out the control server state."""

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        launcher: Launcher | None = None,
        transport: CDPTransport | None = None,
        media_store: MediaStore | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_config()
        self.launcher = launcher or ChromeLauncher()
        self.transport = transport or WebSocketTransport()
        self.media_store = media_store or MediaStore()
        self.http_transport = http_transport
        self.state: ControlServerState | None = None
        self._lock = asyncio.Lock()

    def create_state(self, resolved: ResolvedBrowserConfig) -> ControlServerState:
        """Wire up the per-server components without binding anything."""
        lifecycle = BrowserLifecycle(resolved, self.launcher, self.transport)
        tabs = TabOperations(lifecycle, self.transport, http_transport=self.http_transport)
        return ControlServerState(
            port=resolved.control_port,
            cdp_port=resolved.cdp_port,
            resolved=resolved,
            lifecycle=lifecycle,
            tabs=tabs,
            dispatcher=CommandDispatcher(tabs, self.transport),
            screenshots=ScreenshotPipeline(tabs, self.transport, self.media_store),
        )

    def require_state(self) -> ControlServerState:
        if self.state is None:
            raise ControlError(ErrorKind.NOT_STARTED)
        return self.state

    def _bind(self, port: int) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if sys.platform != "win32":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((CONTROL_BIND_HOST, port))
        except OSError:
            sock.close()
            raise
        return sock

    async def _serve(self, state: ControlServerState, sock: socket.socket) -> bool:
        """Run uvicorn on ``sock`` in a background task. False if it failed to start."""
        config = uvicorn.Config(
            build_app(self),
            log_config=None,
            lifespan="off",
            access_log=True,
        )
        server = _EmbeddedServer(config)
        state.server = server
        state.task = asyncio.create_task(server.serve(sockets=[sock]))

        while not server.started:
            if state.task.done():
                if not state.task.cancelled() and state.task.exception() is not None:
                    logger.error("Control server failed: %s", state.task.exception())
                return False
            await asyncio.sleep(STARTUP_POLL_INTERVAL)
        return True

    async def start(self) -> ControlServerState | None:
        """Start the control server once.

        Returns the existing state when already running, and ``None`` when no
        local server runs (disabled, non-loopback control URL or bind failure).
        """
        async with self._lock:
            if self.state is not None:
                return self.state

            try:
                resolved = resolve_browser_config(self.config.browser)
            except ValueError as e:
                logger.error("Invalid browser configuration: %s", e)
                return None
            if not resolved.enabled:
                logger.info("Browser control is disabled")
                return None
            if not should_start_local_server(resolved):
                logger.info(
                    "Control URL %s is not loopback; assuming a remote control server",
                    resolved.control_url,
                )
                return None

            try:
                sock = self._bind(resolved.control_port)
            except OSError as e:
                logger.error(
                    "Browser control failed to bind %s:%d: %s",
                    CONTROL_BIND_HOST,
                    resolved.control_port,
                    e,
                )
                return None

            state = self.create_state(resolved)
            state.sock = sock
            self.state = state
            if not await self._serve(state, sock):
                sock.close()
                self.state = None
                return None

            try:
                await asyncio.to_thread(self.media_store.clean_old)
            except OSError as e:
                logger.warning("Media cleanup failed: %s", e)

            logger.info(
                "Browser control listening on http://%s:%d/",
                CONTROL_BIND_HOST,
                resolved.control_port,
            )
            return state

    async def stop(self) -> None:
        """Stop the browser, then the listener. No-op when nothing runs."""
        async with self._lock:
            state = self.state
            if state is None:
                return

            await state.lifecycle.shutdown()

            if state.server is not None:
                state.server.should_exit = True
            if state.task is not None:
                try:
                    await asyncio.wait_for(state.task, timeout=SHUTDOWN_TIMEOUT)
                except asyncio.TimeoutError:
                    logger.warning("Control server did not shut down in time")
                except Exception as e:
                    logger.warning("Control server exited with error: %s", e)
            if state.sock is not None:
                state.sock.close()

            self.state = None
            logger.info("Browser control server stopped")


# --- HTTP surface ---


class _Body(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class OpenTabBody(_Body):
    url: Any = None


class FocusTabBody(_Body):
    target_id: Any = Field(default=None, alias="targetId")


class EvalBody(_Body):
    js: Any = None
    target_id: Any = Field(default=None, alias="targetId")
    await_promise: Any = Field(default=None, alias="await")


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _optional_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    try:
        return int(float(value))
    except (ValueError, OverflowError):
        return None


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("true", "1")


def build_app(control: ControlServer) -> FastAPI:
    """Build the FastAPI app serving ``control``'s state."""
    app = FastAPI(title="browser-control", docs_url=None, redoc_url=None, openapi_url=None)

    @app.exception_handler(ControlError)
    async def control_error_handler(request: Request, exc: ControlError) -> JSONResponse:
        logger.debug("%s %s -> %d %s", request.method, request.url.path, exc.status, exc.message)
        return JSONResponse({"error": exc.message}, status_code=exc.status)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse({"error": "invalid request body"}, status_code=400)

    @app.middleware("http")
    async def map_unhandled_errors(request: Request, call_next: Any) -> Any:
        try:
            return await call_next(request)
        except Exception as e:
            mapped = to_control_error(e)
            logger.error(
                "%s %s failed: %s", request.method, request.url.path, mapped.message, exc_info=e
            )
            return JSONResponse({"error": mapped.message}, status_code=mapped.status)

    @app.get("/")
    async def status() -> dict[str, Any]:
        state = control.require_state()
        resolved = state.resolved
        running = state.lifecycle.running
        return {
            "enabled": resolved.enabled,
            "controlUrl": resolved.control_url,
            "running": await state.lifecycle.is_reachable(),
            "pid": running.pid if running else None,
            "cdpPort": state.cdp_port,
            "debuggerPort": state.cdp_port,
            "chosenBrowser": running.executable.kind.value if running else None,
            "userDataDir": str(running.user_data_dir) if running else None,
            "color": resolved.color,
            "headless": resolved.headless,
            "attachOnly": resolved.attach_only,
        }

    @app.post("/start")
    async def start_browser() -> dict[str, Any]:
        state = control.require_state()
        try:
            await state.lifecycle.ensure_browser_available()
        except Exception as e:
            raise ControlError(ErrorKind.INTERNAL, to_control_error(e).message) from e
        return {"ok": True}

    @app.post("/stop")
    async def stop_browser() -> dict[str, Any]:
        state = control.require_state()
        stopped = await state.lifecycle.stop_browser()
        return {"ok": True, "stopped": stopped}

    @app.get("/tabs")
    async def list_tabs() -> dict[str, Any]:
        state = control.require_state()
        if not await state.lifecycle.is_reachable():
            return {"running": False, "tabs": []}
        tabs = await state.tabs.list_tabs()
        return {"running": True, "tabs": [t.to_dict() for t in tabs]}

    @app.post("/tabs/open")
    async def open_tab(body: OpenTabBody | None = None) -> dict[str, Any]:
        state = control.require_state()
        url = _text(body.url if body else None)
        if not url:
            raise invalid_request("url")
        await state.lifecycle.ensure_browser_available()
        tab = await state.tabs.open_tab(url)
        return tab.to_dict()

    @app.post("/tabs/focus")
    async def focus_tab(body: FocusTabBody | None = None) -> dict[str, Any]:
        state = control.require_state()
        target_id = _text(body.target_id if body else None)
        if not target_id:
            raise invalid_request("targetId")
        tab = await state.tabs.resolve_existing(target_id)
        await state.tabs.activate_tab(tab.target_id)
        return {"ok": True}

    @app.delete("/tabs/{target_id}")
    async def close_tab(target_id: str) -> dict[str, Any]:
        state = control.require_state()
        target_id = target_id.strip()
        if not target_id:
            raise invalid_request("targetId")
        tab = await state.tabs.resolve_existing(target_id)
        await state.tabs.close_tab(tab.target_id)
        return {"ok": True}

    @app.get("/screenshot")
    async def screenshot(
        targetId: str | None = None, fullPage: str | None = None
    ) -> dict[str, Any]:
        state = control.require_state()
        return await state.screenshots.capture(
            _text(targetId) or None, full_page=_flag(fullPage)
        )

    @app.post("/eval")
    async def evaluate(body: EvalBody | None = None) -> dict[str, Any]:
        state = control.require_state()
        body = body or EvalBody()
        result = await state.dispatcher.evaluate(
            _text(body.js),
            target_id=_text(body.target_id) or None,
            await_promise=bool(body.await_promise),
        )
        return {"ok": True, **result}

    @app.get("/query")
    async def query(
        selector: str | None = None,
        targetId: str | None = None,
        limit: str | None = None,
    ) -> dict[str, Any]:
        state = control.require_state()
        result = await state.dispatcher.query(
            _text(selector),
            target_id=_text(targetId) or None,
            limit=_optional_int(limit),
        )
        return {"ok": True, **result}

    @app.get("/dom")
    async def dom(
        targetId: str | None = None,
        format: str | None = None,
        selector: str | None = None,
        maxChars: str | None = None,
    ) -> dict[str, Any]:
        state = control.require_state()
        result = await state.dispatcher.dom(
            target_id=_text(targetId) or None,
            format=_text(format) or "html",
            selector=_text(selector) or None,
            max_chars=_optional_int(maxChars),
        )
        return {"ok": True, **result}

    @app.get("/snapshot")
    async def snapshot(
        targetId: str | None = None,
        format: str | None = None,
        limit: str | None = None,
    ) -> dict[str, Any]:
        state = control.require_state()
        result = await state.dispatcher.snapshot(
            target_id=_text(targetId) or None,
            format=_text(format) or "aria",
            limit=_optional_int(limit),
        )
        return {"ok": True, **result}

    return app
