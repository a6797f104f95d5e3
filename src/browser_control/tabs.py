"""Tab operations against the debugger's HTTP introspection endpoints.

The debugger's HTTP surface differs between browser versions:

- ``/json/new`` requires PUT on current Chrome and GET on older builds.
- ``/json/activate`` and ``/json/close`` answer with plain text while
  declaring ``application/json``, so only the status code is trusted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import httpx

from .cdp import DEFAULT_HTTP_TIMEOUT, CDPTransport
from .errors import ControlError, ErrorKind
from .lifecycle import BrowserLifecycle
from .strategies import Strategy, always, first_success
from .targets import Ambiguous, Resolved, Tab, resolve_tab

logger = logging.getLogger(__name__)

DEFAULT_TAB_URL = "about:blank"
OPEN_POLL_INTERVAL = 0.1
OPEN_POLL_DEADLINE = 2.0


def is_method_not_allowed(err: BaseException) -> bool:
    return (
        isinstance(err, httpx.HTTPStatusError)
        and err.response.status_code == httpx.codes.METHOD_NOT_ALLOWED
    )


class TabOperations:
    """List, open, activate and close tabs; resolve the tab a command targets."""

    def __init__(
        self,
        lifecycle: BrowserLifecycle,
        transport: CDPTransport,
        host: str = "127.0.0.1",
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
        http_transport: httpx.AsyncBaseTransport | None = None,
        poll_interval: float = OPEN_POLL_INTERVAL,
        poll_deadline: float = OPEN_POLL_DEADLINE,
    ) -> None:
        self.lifecycle = lifecycle
        self.transport = transport
        self.host = host
        self.http_timeout = http_timeout
        self._http_transport = http_transport
        self.poll_interval = poll_interval
        self.poll_deadline = poll_deadline

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.lifecycle.cdp_port}"

    async def _request(self, method: str, path: str) -> httpx.Response:
        """Issue one debugger HTTP call; any non-2xx raises HTTPStatusError."""
        async with httpx.AsyncClient(
            timeout=self.http_timeout, transport=self._http_transport
        ) as client:
            try:
                response = await client.request(method, f"{self.base_url}{path}")
            except httpx.TimeoutException as err:
                raise ControlError(ErrorKind.TIMEOUT, f"{method} {path} timed out") from err
        response.raise_for_status()
        return response

    async def list_tabs(self) -> list[Tab]:
        """Fetch the current target list. Entries without an id are dropped."""
        response = await self._request("GET", "/json/list")
        raw = response.json()
        if not isinstance(raw, list):
            raise ControlError(ErrorKind.INTERNAL, "unexpected /json/list payload")
        tabs = [Tab.from_cdp(item) for item in raw if isinstance(item, dict)]
        return [t for t in tabs if t.target_id]

    async def open_tab(self, url: str) -> Tab:
        """Open ``url`` in a new tab.

        ``Target.createTarget`` over the browser WebSocket is tried first;
        only if that call fails is the legacy ``/json/new`` endpoint used.
        Once created, the tab is polled for in ``/json/list``.
        """
        created: str | Tab = await first_success(
            [
                Strategy(
                    "Target.createTarget",
                    lambda: self.transport.create_target(self.lifecycle.cdp_port, url),
                    always,
                ),
                Strategy("/json/new", lambda: self._open_via_http(url)),
            ],
            label="open tab",
        )
        if isinstance(created, Tab):
            return created

        found = await self._wait_for_listed(created)
        if found is not None:
            return found
        logger.debug("Tab %s not listed after %.1fs, returning stub", created, self.poll_deadline)
        return Tab(target_id=created, title="", url=url, type="page")

    async def _wait_for_listed(self, target_id: str) -> Tab | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_deadline
        while loop.time() < deadline:
            try:
                tabs = await self.list_tabs()
            except Exception as e:
                logger.debug("Listing failed while waiting for %s: %s", target_id, e)
                tabs = []
            for tab in tabs:
                if tab.target_id == target_id:
                    return tab
            await asyncio.sleep(self.poll_interval)
        return None

    async def _open_via_http(self, url: str) -> Tab:
        path = f"/json/new?{quote(url, safe='')}"
        response = await first_success(
            [
                Strategy("PUT", lambda: self._request("PUT", path), is_method_not_allowed),
                Strategy("GET", lambda: self._request("GET", path)),
            ],
            label="/json/new",
        )
        created = self._parse_descriptor(response)
        if not created.get("id"):
            raise ControlError(ErrorKind.OPEN_FAILED)
        return Tab.from_cdp(created, default_url=url)

    @staticmethod
    def _parse_descriptor(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def activate_tab(self, target_id: str) -> None:
        await self._request("GET", f"/json/activate/{quote(target_id, safe='')}")

    async def close_tab(self, target_id: str) -> None:
        await self._request("GET", f"/json/close/{quote(target_id, safe='')}")

    def _pick(self, requested: str | None, tabs: list[Tab]) -> Tab:
        resolution = resolve_tab(requested, tabs)
        if isinstance(resolution, Ambiguous):
            raise ControlError(ErrorKind.AMBIGUOUS_TARGET)
        if not isinstance(resolution, Resolved):
            raise ControlError(ErrorKind.TARGET_NOT_FOUND)
        return resolution.tab

    async def ensure_tab_available(self, requested: str | None = None) -> Tab:
        """Make sure a browser and at least one tab exist, then resolve one.

        Raises:
            ControlError: ``AMBIGUOUS_TARGET`` or ``TARGET_NOT_FOUND`` (also when
                the tab has no attach URL), or any lifecycle failure.
        """
        await self.lifecycle.ensure_browser_available()

        if not await self.list_tabs():
            await self.open_tab(DEFAULT_TAB_URL)

        tab = self._pick(requested, await self.list_tabs())
        if not tab.ws_url:
            raise ControlError(ErrorKind.TARGET_NOT_FOUND)
        return tab

    async def resolve_existing(self, requested: str | None = None) -> Tab:
        """Resolve a tab in an already running browser. Never launches."""
        if not await self.lifecycle.is_reachable():
            raise ControlError(ErrorKind.BROWSER_UNREACHABLE)
        return self._pick(requested, await self.list_tabs())
