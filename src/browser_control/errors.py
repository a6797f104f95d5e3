"""Error taxonomy for the browser control plane.

Every failure that reaches the HTTP surface is a ``ControlError`` carrying an
``ErrorKind``. The HTTP status is looked up from the kind, never from the
message text.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from http import HTTPStatus

import httpx


class ErrorKind(str, Enum):
    """Request-level failure categories."""

    NOT_STARTED = "not_started"
    INVALID_REQUEST = "invalid_request"
    AMBIGUOUS_TARGET = "ambiguous_target"
    TARGET_NOT_FOUND = "target_not_found"
    BROWSER_UNREACHABLE = "browser_unreachable"
    ATTACH_ONLY_UNAVAILABLE = "attach_only_unavailable"
    SCRIPT_EXCEPTION = "script_exception"
    OPEN_FAILED = "open_failed"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_STARTED: HTTPStatus.SERVICE_UNAVAILABLE,
    ErrorKind.INVALID_REQUEST: HTTPStatus.BAD_REQUEST,
    ErrorKind.AMBIGUOUS_TARGET: HTTPStatus.CONFLICT,
    ErrorKind.TARGET_NOT_FOUND: HTTPStatus.NOT_FOUND,
    ErrorKind.BROWSER_UNREACHABLE: HTTPStatus.CONFLICT,
    ErrorKind.ATTACH_ONLY_UNAVAILABLE: HTTPStatus.CONFLICT,
    ErrorKind.SCRIPT_EXCEPTION: HTTPStatus.BAD_REQUEST,
    ErrorKind.OPEN_FAILED: HTTPStatus.INTERNAL_SERVER_ERROR,
    ErrorKind.TIMEOUT: HTTPStatus.GATEWAY_TIMEOUT,
    ErrorKind.INTERNAL: HTTPStatus.INTERNAL_SERVER_ERROR,
}

DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NOT_STARTED: "browser server not started",
    ErrorKind.AMBIGUOUS_TARGET: "ambiguous target id prefix",
    ErrorKind.TARGET_NOT_FOUND: "tab not found",
    ErrorKind.BROWSER_UNREACHABLE: "browser not running",
    ErrorKind.ATTACH_ONLY_UNAVAILABLE: (
        "Browser attachOnly is enabled and no browser is running."
    ),
    ErrorKind.OPEN_FAILED: "Failed to open tab (missing id)",
}


class ControlError(Exception):
    """A failure with a known category and a caller-facing message."""

    def __init__(self, kind: ErrorKind, message: str | None = None) -> None:
        if message is None:
            message = DEFAULT_MESSAGES.get(kind, kind.value.replace("_", " "))
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def status(self) -> int:
        return int(STATUS_BY_KIND[self.kind])

    def __repr__(self) -> str:
        return f"ControlError({self.kind.value!r}, {self.message!r})"


def invalid_request(field: str) -> ControlError:
    return ControlError(ErrorKind.INVALID_REQUEST, f"{field} is required")


def to_control_error(err: BaseException) -> ControlError:
    """Map any exception onto the taxonomy.

    Known control errors pass through, timeouts (``CDPTimeoutError`` and
    ``httpx.TimeoutException`` included) become ``TIMEOUT``, and anything
    else becomes ``INTERNAL`` carrying the raw error text.
    """
    if isinstance(err, ControlError):
        return err
    text = str(err) or type(err).__name__
    if isinstance(err, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return ControlError(ErrorKind.TIMEOUT, text)
    return ControlError(ErrorKind.INTERNAL, text)
