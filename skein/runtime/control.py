"""
Control flow utilities for agent execution.

This module consolidates:
- CancellationSignal: one-way cooperative cancellation shared by a run
- race_cancellation: await something unless the signal fires first
"""

import asyncio
from typing import Any, Awaitable, TypeVar

from skein.errors import RunCancelledError, ToolCancelledError
from skein.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


# ============================================================================
# CancellationSignal
# ============================================================================


class CancellationSignal:
    """
    Cancellation signal shared by the loop, the provider call and every tool
    of one run.

    Starts unsignaled and transitions once. There is no reset: a new run
    gets a new signal.

    Examples:
        >>> signal = CancellationSignal()
        >>>
        >>> # Trigger from another task (UI, RPC, Ctrl-C handler)
        >>> signal.cancel("User cancelled")
        >>>
        >>> # Check at a tool checkpoint
        >>> signal.raise_if_cancelled()
        >>>
        >>> # Or async wait
        >>> await signal.wait()
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "Operation cancelled") -> bool:
        """
        Trigger the signal.

        Returns:
            bool: False if the signal had already fired (reason unchanged)
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        logger.debug("cancellation_signaled", reason=reason)
        return True

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Async wait for the signal."""
        await self._event.wait()

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_cancelled(self) -> None:
        """Tool checkpoint: raise ToolCancelledError once the signal fired."""
        if self._event.is_set():
            raise ToolCancelledError(self._reason)

    def __repr__(self) -> str:
        return f"CancellationSignal(cancelled={self.is_cancelled}, reason={self._reason!r})"


# ============================================================================
# Racing
# ============================================================================


async def race_cancellation(awaitable: Awaitable[T], signal: CancellationSignal) -> T:
    """
    Await `awaitable` unless the signal fires first.

    When the signal wins, the pending awaitable is cancelled and awaited so
    nothing keeps running in the background.

    Args:
        awaitable: Coroutine or future to await
        signal: Run cancellation signal

    Returns:
        The awaitable's result

    Raises:
        RunCancelledError: If the signal fired before the awaitable completed
    """
    if signal.is_cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RunCancelledError(signal.reason)

    task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task in done:
        waiter.cancel()
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        # The result is being discarded; the failure only matters for diagnosis
        logger.debug("cancelled_awaitable_failed", error=str(e))
    raise RunCancelledError(signal.reason)


__all__ = ["CancellationSignal", "race_cancellation"]
