"""Chrome DevTools Protocol transport primitives.

Each primitive opens a short-lived WebSocket session to the tab (or browser)
endpoint, issues one or two commands and closes it again. Nothing is cached
between calls.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import websockets
from websockets.asyncio.client import ClientConnection

from .snapshot import DEFAULT_SNAPSHOT_LIMIT, MAX_SNAPSHOT_LIMIT, clamp_limit, flatten_ax_tree

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 15.0
DEFAULT_PROBE_TIMEOUT = 0.3
DEFAULT_HTTP_TIMEOUT = 1.5

DEFAULT_QUERY_LIMIT = 20
MAX_QUERY_LIMIT = 200
DEFAULT_DOM_MAX_CHARS = 200_000
MAX_DOM_MAX_CHARS = 5_000_000


class CDPError(Exception):
    """Error from Chrome DevTools Protocol."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class CDPTimeoutError(CDPError, TimeoutError):
    """A CDP command or connection did not complete in time."""


@dataclass
class EvaluateResult:
    """Outcome of ``Runtime.evaluate``."""

    result: dict[str, Any] = field(default_factory=dict)
    exception_details: dict[str, Any] | None = None

    @property
    def value(self) -> Any:
        return self.result.get("value")

    @property
    def exception_message(self) -> str | None:
        if not self.exception_details:
            return None
        exception = self.exception_details.get("exception") or {}
        return (
            exception.get("description")
            or self.exception_details.get("text")
            or "JavaScript evaluation failed"
        )


class CDPSession:
    """A CDP connection to a single WebSocket endpoint."""

    def __init__(self, ws_url: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
        self.ws_url = ws_url
        self.timeout = timeout
        self._ws: ClientConnection | None = None
        self._message_id = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._receive_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> CDPSession:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(
                self.ws_url,
                max_size=100 * 1024 * 1024,  # full-page screenshots are large
                open_timeout=self.timeout,
                close_timeout=1,
            )
        except (asyncio.TimeoutError, TimeoutError) as err:
            raise CDPTimeoutError(f"Timeout connecting to {self.ws_url}") from err
        except (OSError, websockets.exceptions.WebSocketException) as err:
            raise CDPError(f"Failed to connect to {self.ws_url}: {err}") from err
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def close(self) -> None:
        """Close this CDP session."""
        if self._receive_task:
            self._receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receive_task
            self._receive_task = None
        for future in self._pending.values():
            if not future.done():
                future.set_exception(CDPError("Connection closed"))
        self._pending.clear()
        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug("Error closing WebSocket: %s", e)
            self._ws = None

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a CDP command and wait for the result.

        Raises:
            CDPError: If Chrome returns an error or the session is closed.
            CDPTimeoutError: If no response arrives in time.
        """
        if not self._ws:
            raise CDPError("Not connected to CDP endpoint")

        self._message_id += 1
        msg_id = self._message_id

        message: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            message["params"] = params

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future

        try:
            await self._ws.send(json.dumps(message))
            return await asyncio.wait_for(future, timeout=timeout or self.timeout)
        except asyncio.TimeoutError as err:
            raise CDPTimeoutError(f"Timeout waiting for response to {method}") from err
        except websockets.exceptions.ConnectionClosed as err:
            raise CDPError(f"Connection closed during {method}") from err
        finally:
            self._pending.pop(msg_id, None)

    async def _receive_loop(self) -> None:
        """Continuously receive messages from WebSocket."""
        assert self._ws is not None
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError as e:
                    logger.warning("Invalid JSON from CDP: %s", e)
                    continue

                # Events are not subscribed to; only command responses matter.
                msg_id = data.get("id")
                future = self._pending.get(msg_id) if msg_id is not None else None
                if future is None or future.done():
                    continue
                if "error" in data:
                    error = data["error"]
                    future.set_exception(
                        CDPError(error.get("message", "Unknown error"), error.get("code"))
                    )
                else:
                    future.set_result(data.get("result", {}))
        except websockets.exceptions.ConnectionClosed:
            logger.debug("WebSocket connection closed: %s", self.ws_url)
        except asyncio.CancelledError:
            pass
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(CDPError("Connection closed"))


class CDPTransport(Protocol):
    """Operations the control plane needs from the debugger."""

    async def is_reachable(self, cdp_port: int, timeout: float = ...) -> bool: ...

    async def create_target(self, cdp_port: int, url: str) -> str: ...

    async def evaluate(
        self,
        ws_url: str,
        expression: str,
        await_promise: bool = ...,
        return_by_value: bool = ...,
    ) -> EvaluateResult: ...

    async def query_selector(
        self, ws_url: str, selector: str, limit: int | None = ...
    ) -> dict[str, Any]: ...

    async def get_dom_text(
        self,
        ws_url: str,
        format: str = ...,
        max_chars: int | None = ...,
        selector: str | None = ...,
    ) -> dict[str, Any]: ...

    async def snapshot_aria(self, ws_url: str, limit: int | None = ...) -> dict[str, Any]: ...

    async def snapshot_dom(self, ws_url: str, limit: int | None = ...) -> dict[str, Any]: ...

    async def capture_screenshot(
        self,
        ws_url: str,
        full_page: bool = ...,
        format: str = ...,
        quality: int | None = ...,
    ) -> bytes: ...


# Page-side scripts. Each is an expression evaluated with returnByValue.

QUERY_SCRIPT = """
(() => {
  const selector = %(selector)s;
  const limit = %(limit)d;
  const all = Array.from(document.querySelectorAll(selector));
  const matches = all.slice(0, limit).map((el, index) => ({
    index,
    tag: el.tagName.toLowerCase(),
    id: el.id || null,
    className: typeof el.className === "string" ? el.className || null : null,
    text: (el.innerText || el.textContent || "").trim().slice(0, 500),
    value: "value" in el ? String(el.value) : null,
    href: el.getAttribute("href"),
    outerHTML: el.outerHTML.slice(0, 2000),
  }));
  return { total: all.length, matches };
})()
"""

DOM_TEXT_SCRIPT = """
(() => {
  const selector = %(selector)s;
  const format = %(format)s;
  const maxChars = %(max_chars)d;
  const el = selector ? document.querySelector(selector) : document.documentElement;
  if (!el) return { found: false, text: "", length: 0, truncated: false };
  const full = format === "text" ? (el.innerText || el.textContent || "") : el.outerHTML;
  return {
    found: true,
    text: full.slice(0, maxChars),
    length: full.length,
    truncated: full.length > maxChars,
  };
})()
"""

DOM_SNAPSHOT_SCRIPT = """
(() => {
  const limit = %(limit)d;
  const nodes = [];
  let truncated = false;
  const walk = (el, parentRef, depth) => {
    if (nodes.length >= limit) { truncated = true; return; }
    const ref = "n" + (nodes.length + 1);
    const ownText = Array.from(el.childNodes)
      .filter((n) => n.nodeType === Node.TEXT_NODE)
      .map((n) => n.textContent.trim())
      .filter(Boolean)
      .join(" ")
      .slice(0, 200);
    nodes.push({
      ref,
      parentRef,
      depth,
      tag: el.tagName.toLowerCase(),
      id: el.id || null,
      className: typeof el.className === "string" ? el.className || null : null,
      role: el.getAttribute("role"),
      name: el.getAttribute("aria-label") || el.getAttribute("name"),
      text: ownText || null,
      href: el.getAttribute("href"),
      type: el.getAttribute("type"),
      value: "value" in el ? String(el.value) : null,
    });
    for (const child of el.children) walk(child, ref, depth + 1);
  };
  if (document.documentElement) walk(document.documentElement, null, 0);
  return { nodes, truncated };
})()
"""


class WebSocketTransport:
    """Default transport: httpx for introspection, websockets for commands."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.host = host
        self.command_timeout = command_timeout

    def _session(self, ws_url: str) -> CDPSession:
        return CDPSession(ws_url, timeout=self.command_timeout)

    async def is_reachable(self, cdp_port: int, timeout: float = DEFAULT_PROBE_TIMEOUT) -> bool:
        """Lightweight probe of the debugger's ``/json/version`` endpoint."""
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(f"http://{self.host}:{cdp_port}/json/version")
                return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def get_browser_ws_url(self, cdp_port: int) -> str:
        async with httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT) as client:
            response = await client.get(f"http://{self.host}:{cdp_port}/json/version")
            response.raise_for_status()
            ws_url = response.json().get("webSocketDebuggerUrl")
        if not ws_url:
            raise CDPError("Chrome did not return browser webSocketDebuggerUrl")
        return ws_url

    async def create_target(self, cdp_port: int, url: str) -> str:
        """Create a page with ``Target.createTarget`` on the browser endpoint."""
        ws_url = await self.get_browser_ws_url(cdp_port)
        async with self._session(ws_url) as session:
            result = await session.send("Target.createTarget", {"url": url})
        target_id = result.get("targetId")
        if not target_id:
            raise CDPError("Target.createTarget returned no targetId")
        return str(target_id)

    async def evaluate(
        self,
        ws_url: str,
        expression: str,
        await_promise: bool = False,
        return_by_value: bool = True,
    ) -> EvaluateResult:
        async with self._session(ws_url) as session:
            result = await session.send(
                "Runtime.evaluate",
                {
                    "expression": expression,
                    "awaitPromise": await_promise,
                    "returnByValue": return_by_value,
                    "userGesture": True,
                },
            )
        return EvaluateResult(
            result=result.get("result") or {},
            exception_details=result.get("exceptionDetails"),
        )

    async def _evaluate_value(self, ws_url: str, expression: str) -> Any:
        evaluated = await self.evaluate(ws_url, expression)
        if evaluated.exception_details:
            raise CDPError(f"Page script failed: {evaluated.exception_message}")
        return evaluated.value

    async def query_selector(
        self, ws_url: str, selector: str, limit: int | None = None
    ) -> dict[str, Any]:
        script = QUERY_SCRIPT % {
            "selector": json.dumps(selector),
            "limit": clamp_limit(limit, DEFAULT_QUERY_LIMIT, MAX_QUERY_LIMIT),
        }
        value = await self._evaluate_value(ws_url, script)
        return value if isinstance(value, dict) else {"total": 0, "matches": []}

    async def get_dom_text(
        self,
        ws_url: str,
        format: str = "html",
        max_chars: int | None = None,
        selector: str | None = None,
    ) -> dict[str, Any]:
        script = DOM_TEXT_SCRIPT % {
            "selector": json.dumps(selector or ""),
            "format": json.dumps(format),
            "max_chars": clamp_limit(max_chars, DEFAULT_DOM_MAX_CHARS, MAX_DOM_MAX_CHARS),
        }
        value = await self._evaluate_value(ws_url, script)
        return value if isinstance(value, dict) else {"text": "", "truncated": False}

    async def snapshot_aria(self, ws_url: str, limit: int | None = None) -> dict[str, Any]:
        async with self._session(ws_url) as session:
            await session.send("Accessibility.enable")
            result = await session.send("Accessibility.getFullAXTree")
        return flatten_ax_tree(result.get("nodes", []), limit)

    async def snapshot_dom(self, ws_url: str, limit: int | None = None) -> dict[str, Any]:
        script = DOM_SNAPSHOT_SCRIPT % {
            "limit": clamp_limit(limit, DEFAULT_SNAPSHOT_LIMIT, MAX_SNAPSHOT_LIMIT),
        }
        value = await self._evaluate_value(ws_url, script)
        return value if isinstance(value, dict) else {"nodes": [], "truncated": False}

    async def capture_screenshot(
        self,
        ws_url: str,
        full_page: bool = False,
        format: str = "png",
        quality: int | None = None,
    ) -> bytes:
        """Capture the page as ``format`` ("jpeg" or "png") bytes."""
        params: dict[str, Any] = {"format": format}
        if quality is not None and format == "jpeg":
            params["quality"] = quality

        async with self._session(ws_url) as session:
            await session.send("Page.enable")
            if full_page:
                layout = await session.send("Page.getLayoutMetrics")
                content_size = layout.get("cssContentSize") or layout.get("contentSize", {})
                params["clip"] = {
                    "x": 0,
                    "y": 0,
                    "width": content_size.get("width", 1920),
                    "height": content_size.get("height", 1080),
                    "scale": 1,
                }
                params["captureBeyondViewport"] = True
            result = await session.send("Page.captureScreenshot", params)

        data = result.get("data")
        if not data:
            raise CDPError("Page.captureScreenshot returned no data")
        return base64.b64decode(data)
