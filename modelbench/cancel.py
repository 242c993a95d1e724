"""Timeouts that actually cancel the losing side.

``race`` hands a ``CancelToken`` to the operation. When the timer wins, the
awaiting task is cancelled and the token is set, so work running in a worker
thread can notice, release what it built and stop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger("modelbench.cancel")

T = TypeVar("T")


class CancelledByTimeout(Exception):
    pass


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledByTimeout("operation abandoned after timeout")


async def race(
    fn: Callable[[CancelToken], Awaitable[T]],
    timeout_ms: float,
    on_timeout: Callable[[], BaseException],
) -> T:
    """Run ``fn(token)``; raise ``on_timeout()`` only if the timer expires first.

    Errors raised by ``fn`` itself, a ``TimeoutError`` of its own included,
    propagate unchanged.
    """
    token = CancelToken()
    task = asyncio.ensure_future(fn(token))
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000.0)
    except asyncio.CancelledError:
        token.cancel()
        task.cancel()
        raise

    if task in done:
        return task.result()

    token.cancel()
    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Abandoned operation failed after timeout: %r", task.exception())
    raise on_timeout()
