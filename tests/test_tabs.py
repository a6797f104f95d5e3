"""Tests for TabOperations against a faked debugger HTTP endpoint."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from browser_control.errors import ControlError, ErrorKind
from browser_control.tabs import TabOperations

CDP_PORT = 18792


def descriptor(target_id: str, url: str = "about:blank", ws: bool = True) -> dict[str, Any]:
    data: dict[str, Any] = {"id": target_id, "type": "page", "title": target_id, "url": url}
    if ws:
        data["webSocketDebuggerUrl"] = f"ws://127.0.0.1:{CDP_PORT}/devtools/page/{target_id}"
    return data


def make_lifecycle(reachable: bool = True) -> MagicMock:
    lifecycle = MagicMock()
    lifecycle.cdp_port = CDP_PORT
    lifecycle.ensure_browser_available = AsyncMock()
    lifecycle.is_reachable = AsyncMock(return_value=reachable)
    return lifecycle


def make_transport(created_id: str | None = "X") -> MagicMock:
    transport = MagicMock()
    if created_id is None:
        transport.create_target = AsyncMock(side_effect=RuntimeError("no browser endpoint"))
    else:
        transport.create_target = AsyncMock(return_value=created_id)
    return transport


class FakeDebugger:
    """Records requests and answers them with a handler per path prefix."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.list_calls = 0
        self.listings: Callable[[int], list[dict[str, Any]]] = lambda n: []
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.raw_listing: httpx.Response | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/json/list":
            self.list_calls += 1
            if self.raw_listing is not None:
                return httpx.Response(
                    self.raw_listing.status_code,
                    content=self.raw_listing.content,
                    headers=self.raw_listing.headers,
                )
            return httpx.Response(200, json=self.listings(self.list_calls))
        for prefix, handler in self.routes.items():
            if path.startswith(prefix):
                return handler(request)
        return httpx.Response(404, text="not found")

    def methods_for(self, prefix: str) -> list[str]:
        return [r.method for r in self.requests if r.url.path.startswith(prefix)]


def make_ops(
    debugger: FakeDebugger,
    transport: MagicMock | None = None,
    lifecycle: MagicMock | None = None,
    **kwargs: Any,
) -> TabOperations:
    kwargs.setdefault("poll_interval", 0)
    return TabOperations(
        lifecycle or make_lifecycle(),
        transport or make_transport(),
        http_transport=httpx.MockTransport(debugger),
        **kwargs,
    )


class TestListTabs:
    """Tests for TabOperations.list_tabs()."""

    @pytest.mark.asyncio
    async def test_drops_entries_without_id(self) -> None:
        debugger = FakeDebugger()
        debugger.listings = lambda n: [descriptor("T1"), {"id": "", "type": "page"}, {"type": "x"}]
        tabs = await make_ops(debugger).list_tabs()
        assert [t.target_id for t in tabs] == ["T1"]

    @pytest.mark.asyncio
    async def test_uses_debugger_port(self) -> None:
        debugger = FakeDebugger()
        await make_ops(debugger).list_tabs()
        assert debugger.requests[0].url.port == CDP_PORT
        assert debugger.requests[0].url.host == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_timeout_maps_to_timeout_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        ops = TabOperations(
            make_lifecycle(), make_transport(), http_transport=httpx.MockTransport(handler)
        )
        with pytest.raises(ControlError) as exc_info:
            await ops.list_tabs()
        assert exc_info.value.kind is ErrorKind.TIMEOUT


class TestOpenTabViaCDP:
    """Tests for the Target.createTarget path of open_tab()."""

    @pytest.mark.asyncio
    async def test_returns_tab_once_it_is_listed(self) -> None:
        """A tab listed from the third poll on is returned by the fourth poll."""
        debugger = FakeDebugger()
        debugger.listings = lambda n: [descriptor("X", "https://example.com/")] if n >= 3 else []
        transport = make_transport("X")

        tab = await make_ops(debugger, transport).open_tab("https://example.com/")

        assert tab.target_id == "X"
        assert tab.ws_url is not None
        assert debugger.list_calls <= 4
        transport.create_target.assert_awaited_once_with(CDP_PORT, "https://example.com/")

    @pytest.mark.asyncio
    async def test_returns_stub_after_deadline(self) -> None:
        debugger = FakeDebugger()
        ops = make_ops(debugger, make_transport("X"), poll_interval=0.01, poll_deadline=0.05)

        tab = await ops.open_tab("https://example.com/")

        assert tab.target_id == "X"
        assert tab.url == "https://example.com/"
        assert tab.title == ""
        assert tab.type == "page"
        assert tab.ws_url is None
        assert debugger.methods_for("/json/new") == []

    @pytest.mark.asyncio
    async def test_unparseable_listing_does_not_open_second_tab(self) -> None:
        """Listing failures after a successful create never reach /json/new."""
        debugger = FakeDebugger()
        debugger.raw_listing = httpx.Response(200, text="<html>oops</html>")
        debugger.routes["/json/new"] = lambda r: httpx.Response(200, json={"id": "DUP"})
        ops = make_ops(debugger, make_transport("X"), poll_interval=0.01, poll_deadline=0.05)

        tab = await ops.open_tab("https://example.com/")

        assert tab.target_id == "X"
        assert tab.url == "https://example.com/"
        assert debugger.list_calls >= 1
        assert debugger.methods_for("/json/new") == []


class TestOpenTabViaHTTP:
    """Tests for the /json/new fallback of open_tab()."""

    @pytest.mark.asyncio
    async def test_put_405_retries_once_with_get(self) -> None:
        debugger = FakeDebugger()

        def new_tab(request: httpx.Request) -> httpx.Response:
            if request.method == "PUT":
                return httpx.Response(405, text="Method Not Allowed")
            return httpx.Response(200, json=descriptor("N1", "https://example.com/"))

        debugger.routes["/json/new"] = new_tab
        tab = await make_ops(debugger, make_transport(None)).open_tab("https://example.com/")

        assert tab.target_id == "N1"
        assert debugger.methods_for("/json/new") == ["PUT", "GET"]

    @pytest.mark.asyncio
    async def test_put_success_does_not_retry(self) -> None:
        debugger = FakeDebugger()
        debugger.routes["/json/new"] = lambda r: httpx.Response(200, json={"id": "N1"})

        tab = await make_ops(debugger, make_transport(None)).open_tab("https://example.com/")

        assert tab.target_id == "N1"
        assert tab.url == "https://example.com/"
        assert debugger.methods_for("/json/new") == ["PUT"]

    @pytest.mark.asyncio
    async def test_other_put_failures_do_not_retry(self) -> None:
        debugger = FakeDebugger()
        debugger.routes["/json/new"] = lambda r: httpx.Response(500, text="boom")

        with pytest.raises(ControlError) as exc_info:
            await make_ops(debugger, make_transport(None)).open_tab("https://example.com/")

        assert exc_info.value.kind is ErrorKind.INTERNAL
        assert debugger.methods_for("/json/new") == ["PUT"]

    @pytest.mark.asyncio
    async def test_missing_id_is_open_failed(self) -> None:
        debugger = FakeDebugger()
        debugger.routes["/json/new"] = lambda r: httpx.Response(200, json={"url": "about:blank"})

        with pytest.raises(ControlError) as exc_info:
            await make_ops(debugger, make_transport(None)).open_tab("about:blank")

        assert exc_info.value.kind is ErrorKind.OPEN_FAILED
        assert exc_info.value.status == 500
        assert exc_info.value.message == "Failed to open tab (missing id)"

    @pytest.mark.asyncio
    async def test_non_json_body_is_open_failed(self) -> None:
        debugger = FakeDebugger()
        debugger.routes["/json/new"] = lambda r: httpx.Response(200, text="Created")

        with pytest.raises(ControlError) as exc_info:
            await make_ops(debugger, make_transport(None)).open_tab("about:blank")

        assert exc_info.value.kind is ErrorKind.OPEN_FAILED

    @pytest.mark.asyncio
    async def test_url_is_percent_encoded(self) -> None:
        debugger = FakeDebugger()
        debugger.routes["/json/new"] = lambda r: httpx.Response(200, json={"id": "N1"})

        await make_ops(debugger, make_transport(None)).open_tab("https://example.com/?q=a b")

        raw = debugger.requests[0].url.raw_path
        assert raw == b"/json/new?https%3A%2F%2Fexample.com%2F%3Fq%3Da%20b"


class TestActivateAndClose:
    """activate/close trust only the status code."""

    @pytest.mark.asyncio
    async def test_mislabeled_text_bodies_are_accepted(self) -> None:
        debugger = FakeDebugger()
        mislabeled = httpx.Response(
            200, content=b"Target activated", headers={"content-type": "application/json"}
        )
        debugger.routes["/json/activate/"] = lambda r: mislabeled
        debugger.routes["/json/close/"] = lambda r: httpx.Response(
            200, content=b"Target is closing", headers={"content-type": "application/json"}
        )
        ops = make_ops(debugger)

        await ops.activate_tab("T1")
        await ops.close_tab("T1")

        assert [r.url.path for r in debugger.requests] == ["/json/activate/T1", "/json/close/T1"]

    @pytest.mark.asyncio
    async def test_error_status_raises(self) -> None:
        debugger = FakeDebugger()
        with pytest.raises(httpx.HTTPStatusError):
            await make_ops(debugger).activate_tab("missing")


class TestEnsureTabAvailable:
    """Tests for TabOperations.ensure_tab_available()."""

    @pytest.mark.asyncio
    async def test_opens_blank_tab_when_none_exist(self) -> None:
        debugger = FakeDebugger()
        debugger.listings = lambda n: [] if n == 1 else [descriptor("B1")]
        transport = make_transport("B1")
        lifecycle = make_lifecycle()

        tab = await make_ops(debugger, transport, lifecycle).ensure_tab_available()

        assert tab.target_id == "B1"
        lifecycle.ensure_browser_available.assert_awaited_once()
        transport.create_target.assert_awaited_once_with(CDP_PORT, "about:blank")

    @pytest.mark.asyncio
    async def test_existing_tabs_are_not_reopened(self) -> None:
        debugger = FakeDebugger()
        debugger.listings = lambda n: [descriptor("T1"), descriptor("T2")]
        transport = make_transport("B1")

        tab = await make_ops(debugger, transport).ensure_tab_available("T2")

        assert tab.target_id == "T2"
        transport.create_target.assert_not_called()

    @pytest.mark.asyncio
    async def test_ambiguous_prefix(self) -> None:
        debugger = FakeDebugger()
        debugger.listings = lambda n: [descriptor("abc123"), descriptor("abc456")]

        with pytest.raises(ControlError) as exc_info:
            await make_ops(debugger).ensure_tab_available("abc")
        assert exc_info.value.kind is ErrorKind.AMBIGUOUS_TARGET

    @pytest.mark.asyncio
    async def test_tab_without_ws_url_is_not_found(self) -> None:
        debugger = FakeDebugger()
        debugger.listings = lambda n: [descriptor("T1", ws=False)]

        with pytest.raises(ControlError) as exc_info:
            await make_ops(debugger).ensure_tab_available("T1")
        assert exc_info.value.kind is ErrorKind.TARGET_NOT_FOUND

    @pytest.mark.asyncio
    async def test_lifecycle_failure_propagates(self) -> None:
        debugger = FakeDebugger()
        lifecycle = make_lifecycle()
        lifecycle.ensure_browser_available = AsyncMock(
            side_effect=ControlError(ErrorKind.ATTACH_ONLY_UNAVAILABLE)
        )

        with pytest.raises(ControlError) as exc_info:
            await make_ops(debugger, lifecycle=lifecycle).ensure_tab_available()
        assert exc_info.value.kind is ErrorKind.ATTACH_ONLY_UNAVAILABLE
        assert debugger.requests == []


class TestResolveExisting:
    """Tests for TabOperations.resolve_existing()."""

    @pytest.mark.asyncio
    async def test_unreachable_browser(self) -> None:
        debugger = FakeDebugger()
        lifecycle = make_lifecycle(reachable=False)

        with pytest.raises(ControlError) as exc_info:
            await make_ops(debugger, lifecycle=lifecycle).resolve_existing("T1")

        assert exc_info.value.kind is ErrorKind.BROWSER_UNREACHABLE
        lifecycle.ensure_browser_available.assert_not_called()

    @pytest.mark.asyncio
    async def test_never_opens_tabs(self) -> None:
        debugger = FakeDebugger()
        transport = make_transport("X")

        with pytest.raises(ControlError) as exc_info:
            await make_ops(debugger, transport).resolve_existing("T1")

        assert exc_info.value.kind is ErrorKind.TARGET_NOT_FOUND
        transport.create_target.assert_not_called()
