"""Page commands routed onto a resolved tab.

Required parameters are validated before any tab is resolved, so a bad
request never launches a browser.
"""

from __future__ import annotations

import logging
from typing import Any

from .cdp import CDPTransport
from .errors import ControlError, ErrorKind, invalid_request
from .tabs import TabOperations

logger = logging.getLogger(__name__)

DOM_FORMATS = ("html", "text")
SNAPSHOT_FORMATS = ("aria", "domSnapshot")


class CommandDispatcher:
    """Evaluate, query, DOM extraction and snapshots."""

    def __init__(self, tabs: TabOperations, transport: CDPTransport) -> None:
        self.tabs = tabs
        self.transport = transport

    async def evaluate(
        self, js: str, target_id: str | None = None, await_promise: bool = False
    ) -> dict[str, Any]:
        """Evaluate ``js`` in a tab and return its value.

        Raises:
            ControlError: ``SCRIPT_EXCEPTION`` with the page's own error text
                when the script throws.
        """
        js = (js or "").strip()
        if not js:
            raise invalid_request("js")

        tab = await self.tabs.ensure_tab_available(target_id)
        evaluated = await self.transport.evaluate(
            tab.ws_url or "",
            js,
            await_promise=await_promise,
            return_by_value=True,
        )
        if evaluated.exception_details:
            message = evaluated.exception_message or "JavaScript evaluation failed"
            logger.debug("Script in %s threw: %s", tab.target_id, message)
            raise ControlError(ErrorKind.SCRIPT_EXCEPTION, message)

        return {"targetId": tab.target_id, "url": tab.url, "result": evaluated.value}

    async def query(
        self, selector: str, target_id: str | None = None, limit: int | None = None
    ) -> dict[str, Any]:
        selector = (selector or "").strip()
        if not selector:
            raise invalid_request("selector")

        tab = await self.tabs.ensure_tab_available(target_id)
        result = await self.transport.query_selector(tab.ws_url or "", selector, limit)
        return {"targetId": tab.target_id, "url": tab.url, **result}

    async def dom(
        self,
        target_id: str | None = None,
        format: str = "html",
        selector: str | None = None,
        max_chars: int | None = None,
    ) -> dict[str, Any]:
        format = format if format in DOM_FORMATS else "html"
        tab = await self.tabs.ensure_tab_available(target_id)
        result = await self.transport.get_dom_text(
            tab.ws_url or "",
            format=format,
            max_chars=max_chars,
            selector=(selector or "").strip() or None,
        )
        return {"targetId": tab.target_id, "url": tab.url, "format": format, **result}

    async def snapshot(
        self,
        target_id: str | None = None,
        format: str = "aria",
        limit: int | None = None,
    ) -> dict[str, Any]:
        format = format if format in SNAPSHOT_FORMATS else "aria"
        tab = await self.tabs.ensure_tab_available(target_id)
        if format == "aria":
            result = await self.transport.snapshot_aria(tab.ws_url or "", limit)
        else:
            result = await self.transport.snapshot_dom(tab.ws_url or "", limit)
        return {"format": format, "targetId": tab.target_id, "url": tab.url, **result}
