"""Tests for the default CDP transport."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from browser_control.cdp import CDPError, EvaluateResult, WebSocketTransport

WS_URL = "ws://127.0.0.1:18792/devtools/page/T1"


class TestEvaluateResult:
    """Tests for EvaluateResult helpers."""

    def test_value(self) -> None:
        assert EvaluateResult(result={"type": "number", "value": 2}).value == 2
        assert EvaluateResult().value is None

    def test_exception_message_precedence(self) -> None:
        assert EvaluateResult().exception_message is None
        assert (
            EvaluateResult(
                exception_details={"text": "Uncaught", "exception": {"description": "Error: x"}}
            ).exception_message
            == "Error: x"
        )
        assert EvaluateResult(exception_details={"text": "Uncaught"}).exception_message == (
            "Uncaught"
        )
        assert EvaluateResult(exception_details={"lineNumber": 0}).exception_message == (
            "JavaScript evaluation failed"
        )


class TestWebSocketTransport:
    """Page-script helpers built on evaluate()."""

    @pytest.mark.asyncio
    async def test_query_selector_embeds_selector_and_clamped_limit(self) -> None:
        transport = WebSocketTransport()
        evaluate = AsyncMock(return_value=EvaluateResult(result={"value": {"total": 0, "matches": []}}))

        with patch.object(transport, "evaluate", evaluate):
            result = await transport.query_selector(WS_URL, 'a[href="x"]', limit=10_000)

        assert result == {"total": 0, "matches": []}
        script = evaluate.call_args.args[1]
        assert json.dumps('a[href="x"]') in script
        assert "const limit = 200;" in script

    @pytest.mark.asyncio
    async def test_get_dom_text_defaults(self) -> None:
        transport = WebSocketTransport()
        evaluate = AsyncMock(
            return_value=EvaluateResult(result={"value": {"found": True, "text": "hi"}})
        )

        with patch.object(transport, "evaluate", evaluate):
            await transport.get_dom_text(WS_URL, format="text")

        script = evaluate.call_args.args[1]
        assert "const maxChars = 200000;" in script
        assert 'const format = "text";' in script

    @pytest.mark.asyncio
    async def test_page_script_failure_raises(self) -> None:
        transport = WebSocketTransport()
        evaluate = AsyncMock(
            return_value=EvaluateResult(exception_details={"text": "SyntaxError: bad selector"})
        )

        with patch.object(transport, "evaluate", evaluate), pytest.raises(CDPError):
            await transport.query_selector(WS_URL, "a[")

    @pytest.mark.asyncio
    async def test_snapshot_dom_limit(self) -> None:
        transport = WebSocketTransport()
        evaluate = AsyncMock(
            return_value=EvaluateResult(result={"value": {"nodes": [], "truncated": False}})
        )

        with patch.object(transport, "evaluate", evaluate):
            result = await transport.snapshot_dom(WS_URL)

        assert result == {"nodes": [], "truncated": False}
        assert "const limit = 500;" in evaluate.call_args.args[1]

    @pytest.mark.asyncio
    async def test_unreachable_port(self) -> None:
        """Nothing listens on port 1 on a test machine."""
        assert await WebSocketTransport().is_reachable(1, timeout=0.2) is False
