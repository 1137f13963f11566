"""Utility functions for tonesync."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import sys
from collections.abc import Coroutine
from typing import Any, TypeVar

_T = TypeVar("_T")

# eager_start only exists on Python 3.12+
_SUPPORTS_EAGER_START = sys.version_info >= (3, 12) and "eager_start" in inspect.signature(
    asyncio.create_task
).parameters


def create_task(
    coro: Coroutine[None, None, _T],
    *,
    name: str | None = None,
    eager_start: bool = True,
) -> asyncio.Task[_T]:
    """Create an asyncio task that starts executing immediately where supported.

    Eager start lets a freshly launched long alignment report its RECORDING
    phase before the caller returns, which keeps status strings in step with
    the control loop.

    Args:
        coro: The coroutine to run as a task.
        name: Optional name for the task (for debugging).
        eager_start: Whether to start the task eagerly (Python 3.12+ only).

    Returns:
        The created asyncio Task.
    """
    kwargs: dict[str, Any] = {"name": name} if name is not None else {}
    if _SUPPORTS_EAGER_START:
        kwargs["eager_start"] = eager_start
    return asyncio.create_task(coro, **kwargs)


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait until it has finished."""
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
