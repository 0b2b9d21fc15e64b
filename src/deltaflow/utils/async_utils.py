"""
Bridging sync callers to the async entry points.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

T = TypeVar("T")


def dual(func: Callable[..., Awaitable[T]]) -> Callable[..., T]:
    """
    Let ``run(...)`` block when called from plain code, while ``await run(...)``
    still works inside a running event loop.
    """
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"dual() needs an async function, got {func!r}")

    @functools.wraps(func)
    def call(*args: Any, **kwargs: Any) -> Any:
        coro = func(*args, **kwargs)
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop in this thread: drive the coroutine to completion here
            return asyncio.run(coro)
        return coro

    return call  # type: ignore[return-value]
