"""Ordered fallback chains.

A chain is a list of named strategies tried in order; the first success wins.
Each strategy decides, through ``fall_through``, which of its failures allow
the next strategy to run. Any other failure stops the chain immediately.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from .errors import ControlError, ErrorKind, to_control_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


def always(err: BaseException) -> bool:
    return True


@dataclass
class Strategy(Generic[T]):
    """One attempt in a fallback chain."""

    name: str
    run: Callable[[], Awaitable[T]]
    fall_through: Callable[[BaseException], bool] = always


async def first_success(strategies: Sequence[Strategy[T]], label: str) -> T:
    """Run ``strategies`` in order and return the first successful result.

    Raises:
        ControlError: The failure of the last strategy attempted. Control
            errors are re-raised unchanged, timeouts become ``TIMEOUT`` and
            anything else is wrapped as ``INTERNAL`` with the chain label.
    """
    if not strategies:
        raise ControlError(ErrorKind.INTERNAL, f"{label}: no strategies")

    for index, strategy in enumerate(strategies):
        is_last = index == len(strategies) - 1
        try:
            result = await strategy.run()
        except Exception as err:
            if not is_last and strategy.fall_through(err):
                logger.debug(
                    "%s: strategy %s failed (%s), trying %s",
                    label,
                    strategy.name,
                    err,
                    strategies[index + 1].name,
                )
                continue
            logger.debug("%s: strategy %s failed: %s", label, strategy.name, err)
            if isinstance(err, ControlError):
                raise
            mapped = to_control_error(err)
            if mapped.kind is ErrorKind.INTERNAL:
                mapped = ControlError(ErrorKind.INTERNAL, f"{label}: {err}")
            raise mapped from err
        logger.debug("%s: strategy %s succeeded", label, strategy.name)
        return result

    raise AssertionError("unreachable")
