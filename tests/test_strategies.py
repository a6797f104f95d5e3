"""Tests for ordered fallback chains and the error taxonomy."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from browser_control.cdp import CDPTimeoutError
from browser_control.errors import ControlError, ErrorKind, invalid_request, to_control_error
from browser_control.strategies import Strategy, first_success


class TestFirstSuccess:
    """Tests for first_success()."""

    @pytest.mark.asyncio
    async def test_first_success_wins(self) -> None:
        second = AsyncMock(return_value="b")
        result = await first_success(
            [Strategy("a", AsyncMock(return_value="a")), Strategy("b", second)],
            label="test",
        )
        assert result == "a"
        second.assert_not_called()

    @pytest.mark.asyncio
    async def test_falls_through_to_next_strategy(self) -> None:
        result = await first_success(
            [
                Strategy("a", AsyncMock(side_effect=RuntimeError("boom"))),
                Strategy("b", AsyncMock(return_value="b")),
            ],
            label="test",
        )
        assert result == "b"

    @pytest.mark.asyncio
    async def test_predicate_rejecting_failure_stops_chain(self) -> None:
        second = AsyncMock(return_value="b")
        with pytest.raises(ControlError) as exc_info:
            await first_success(
                [
                    Strategy(
                        "a",
                        AsyncMock(side_effect=RuntimeError("boom")),
                        fall_through=lambda err: False,
                    ),
                    Strategy("b", second),
                ],
                label="test",
            )
        assert exc_info.value.kind is ErrorKind.INTERNAL
        assert exc_info.value.message == "test: boom"
        second.assert_not_called()

    @pytest.mark.asyncio
    async def test_control_error_from_last_strategy_is_reraised(self) -> None:
        err = ControlError(ErrorKind.OPEN_FAILED)
        with pytest.raises(ControlError) as exc_info:
            await first_success(
                [
                    Strategy("a", AsyncMock(side_effect=RuntimeError("boom"))),
                    Strategy("b", AsyncMock(side_effect=err)),
                ],
                label="test",
            )
        assert exc_info.value is err

    @pytest.mark.asyncio
    async def test_timeout_from_last_strategy_maps_to_timeout(self) -> None:
        with pytest.raises(ControlError) as exc_info:
            await first_success(
                [Strategy("a", AsyncMock(side_effect=CDPTimeoutError("slow")))],
                label="test",
            )
        assert exc_info.value.kind is ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_empty_chain_is_internal_error(self) -> None:
        with pytest.raises(ControlError) as exc_info:
            await first_success([], label="test")
        assert exc_info.value.kind is ErrorKind.INTERNAL


class TestErrorMapping:
    """Tests for the ErrorKind -> status mapping."""

    def test_every_kind_has_a_status(self) -> None:
        for kind in ErrorKind:
            assert ControlError(kind).status >= 400

    @pytest.mark.parametrize(
        ("kind", "status", "message"),
        [
            (ErrorKind.NOT_STARTED, 503, "browser server not started"),
            (ErrorKind.AMBIGUOUS_TARGET, 409, "ambiguous target id prefix"),
            (ErrorKind.TARGET_NOT_FOUND, 404, "tab not found"),
            (ErrorKind.BROWSER_UNREACHABLE, 409, "browser not running"),
            (ErrorKind.OPEN_FAILED, 500, "Failed to open tab (missing id)"),
        ],
    )
    def test_default_messages(self, kind: ErrorKind, status: int, message: str) -> None:
        err = ControlError(kind)
        assert err.status == status
        assert err.message == message

    def test_invalid_request_names_field(self) -> None:
        err = invalid_request("js")
        assert err.status == 400
        assert err.message == "js is required"

    def test_unknown_errors_become_internal_with_raw_text(self) -> None:
        err = to_control_error(RuntimeError("socket hang up"))
        assert err.kind is ErrorKind.INTERNAL
        assert err.status == 500
        assert err.message == "socket hang up"

    def test_timeouts_become_timeout(self) -> None:
        for exc in (asyncio.TimeoutError(), httpx.ReadTimeout("read timed out")):
            assert to_control_error(exc).kind is ErrorKind.TIMEOUT
        assert ControlError(ErrorKind.TIMEOUT).status == 504

    def test_control_errors_pass_through(self) -> None:
        err = ControlError(ErrorKind.TARGET_NOT_FOUND)
        assert to_control_error(err) is err
