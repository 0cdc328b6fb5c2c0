"""
polystream - Cancellation Tokens

Cooperative cancellation for asyncio code. A token can be cancelled once,
cascades to its children, and aborts whatever ``run_cancellable`` is
currently awaiting on its behalf. Tokens are bound to the event loop that
uses them and are not thread-safe; cancel from another thread through
``loop.call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, TypeVar

from .errors import OperationCancelled


T = TypeVar("T")

Callback = Callable[[str], None]


class CancellationToken:
    """A cancellation token with cascading parent/child semantics."""

    def __init__(self, *, parent: Optional["CancellationToken"] = None) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callback] = []
        self._waiter: Optional[asyncio.Event] = None
        self._detach: List[Callable[[], None]] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        if parent is not None:
            parent.link_child(self)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation. Only the first call has any effect."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason or "cancelled"
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._waiter is not None:
            self._waiter.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self._reason)

    def add_callback(self, callback: Callback) -> Callable[[], None]:
        """
        Run ``callback(reason)`` on cancellation.

        Runs immediately when already cancelled. Returns a function that
        unregisters the callback.
        """
        if self._cancelled:
            callback(self._reason or "cancelled")
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return remove

    def link_child(self, token: "CancellationToken") -> "CancellationToken":
        """Cascade cancellation to ``token`` (returns it)."""
        remove = self.add_callback(token.cancel)
        token._detach.append(remove)
        return token

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def cancel_after(self, delay_ms: float, reason: str = "timeout") -> None:
        """Cancel with ``reason`` once ``delay_ms`` elapses on the running loop."""
        if self._cancelled:
            return
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay_ms / 1000.0, self.cancel, reason)

    def clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def close(self) -> None:
        """Detach from parents and drop any pending timer."""
        self.clear_timer()
        detach, self._detach = self._detach, []
        for remove in detach:
            remove()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(self._reason or "cancelled")

    async def wait(self) -> str:
        """Block until cancelled; returns the reason."""
        if not self._cancelled:
            if self._waiter is None:
                self._waiter = asyncio.Event()
            await self._waiter.wait()
        return self._reason or "cancelled"

    def __repr__(self) -> str:
        return (
            f"CancellationToken(cancelled={self._cancelled}, "
            f"reason={self._reason!r}, callbacks={len(self._callbacks)})"
        )


def merge_tokens(*tokens: Optional[CancellationToken]) -> CancellationToken:
    """
    Create a token cancelled when any of ``tokens`` is.

    ``None`` entries are ignored. Call ``close()`` on the result when done
    so long-lived parents do not keep references to it.
    """
    merged = CancellationToken()
    for token in tokens:
        if token is not None:
            token.link_child(merged)
    return merged


async def run_cancellable(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken],
) -> T:
    """
    Await ``awaitable``, aborting it when ``token`` is cancelled.

    Raises ``OperationCancelled`` carrying the token's reason.
    """
    if token is None:
        return await awaitable
    if token.cancelled:
        # Close coroutines we never scheduled
        close = getattr(awaitable, "close", None)
        if close is not None:
            close()
        token.raise_if_cancelled()

    task = asyncio.ensure_future(awaitable)
    remove = token.add_callback(lambda _reason: task.cancel())
    try:
        return await task
    except asyncio.CancelledError:
        if token.cancelled and task.cancelled():
            raise OperationCancelled(token.reason or "cancelled") from None
        raise
    finally:
        remove()


async def sleep(ms: float, token: Optional[CancellationToken] = None) -> None:
    """Sleep for ``ms`` milliseconds, aborting early on cancellation."""
    await run_cancellable(asyncio.sleep(max(0.0, ms) / 1000.0), token)

