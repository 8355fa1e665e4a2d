"""Cooperative cancellation for a single package-generation run.

One :class:`CancellationToken` is created per run and shared by every phase.
Per-entry timeouts are expressed as derived child tokens: a child fires when
its parent fires or when its own timer elapses, but firing a child never
reaches the parent or its siblings. Children detach from their parent when
their ``async with`` block exits, so they never outlive the entry they guard.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from .errors import MediaTimeout, OperationCancelled

T = TypeVar("T")


class CancellationToken:
    """Asyncio cancellation token with derived child tokens.

    Examples:
        >>> token = CancellationToken()
        >>> async def load(entry):
        ...     async with token.child(timeout=30) as entry_token:
        ...         return await entry_token.run(store.get_media(entry.id))
        >>> token.cancel("cancelled by user")
    """

    def __init__(self, *, name: str = "run", parent: Optional["CancellationToken"] = None) -> None:
        self.name = name
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._timed_out = False
        self._parent = parent
        self._children: set[CancellationToken] = set()
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def timed_out(self) -> bool:
        """True when this token fired because its own timer elapsed."""
        return self._timed_out

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire this token and every child derived from it."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)

    def child(self, *, timeout: Optional[float] = None, name: Optional[str] = None) -> "CancellationToken":
        """Derive a token that also fires after ``timeout`` seconds.

        Must be called from a running event loop when ``timeout`` is set.
        """
        token = CancellationToken(name=name or f"{self.name}/child", parent=self)
        self._children.add(token)
        if self.cancelled:
            token.cancel(self._reason or "cancelled")
        elif timeout is not None:
            loop = asyncio.get_running_loop()
            token._timer = loop.call_later(timeout, token._expire)
        return token

    def _expire(self) -> None:
        self._timer = None
        if self._event.is_set():
            return
        self._timed_out = True
        self.cancel(f"{self.name} timed out")

    def close(self) -> None:
        """Stop the timer and detach from the parent."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._parent is not None:
            self._parent._children.discard(self)
            self._parent = None

    async def __aenter__(self) -> "CancellationToken":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def raise_if_cancelled(self) -> None:
        if not self._event.is_set():
            return
        if self._timed_out:
            raise MediaTimeout(self._reason or f"{self.name} timed out")
        raise OperationCancelled(self._reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless this token fires first.

        Raises:
            OperationCancelled: the token (or an ancestor) was cancelled.
            MediaTimeout: the token's own timer elapsed.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self.raise_if_cancelled()
        raise OperationCancelled(self._reason or "cancelled")
