"""
Cooperative cancellation and debouncing.

Every call into a collaborator runs under a CancellationToken. Tokens form a
tree (session -> flow -> attempt) so that signing out or tearing down the
context aborts everything below it and no late response can mutate state
that no longer belongs to anyone.
"""

import asyncio
import logging
import weakref
from typing import Awaitable, Callable, List, Optional, Set, TypeVar

from .errors import OperationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cancellation signal shared by a tree of operations."""

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []
        self._children: "weakref.WeakSet[CancellationToken]" = weakref.WeakSet()
        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def child(self) -> "CancellationToken":
        """Create a token that is cancelled together with this one."""
        return CancellationToken(parent=self)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation. Returns a function that removes it."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason or "cancelled"
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()
        for child in list(self._children):
            child.cancel(self._reason)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledError(self._reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``, aborting it if this token is cancelled first.

        Raises:
            OperationCancelledError: If the token was cancelled before or
                while the awaitable ran
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        remove = self.add_callback(task.cancel)
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancelled and task.cancelled():
                raise OperationCancelledError(self._reason) from None
            raise
        finally:
            remove()


class Debouncer:
    """Collapse bursts of calls into one.

    Each call restarts the delay. When the delay elapses the most recent
    factory runs once and every caller of the burst receives its result.
    """

    def __init__(self, delay: float):
        self.delay = delay
        self._handle: Optional[asyncio.TimerHandle] = None
        self._waiters: List[asyncio.Future] = []
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None or bool(self._tasks)

    def call(self, factory: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        future = loop.create_future()
        self._waiters.append(future)
        self._handle = loop.call_later(self.delay, self._fire, factory)
        return future

    def _fire(self, factory: Callable[[], Awaitable[T]]) -> None:
        self._handle = None
        waiters, self._waiters = self._waiters, []
        task = asyncio.ensure_future(factory())
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._settle(done, waiters))

    def _settle(self, task: asyncio.Task, waiters: List[asyncio.Future]) -> None:
        self._tasks.discard(task)
        for waiter in waiters:
            if waiter.done():
                continue
            if task.cancelled():
                waiter.set_exception(OperationCancelledError("debounced call cancelled"))
            elif task.exception() is not None:
                waiter.set_exception(task.exception())
            else:
                waiter.set_result(task.result())

    def cancel(self) -> None:
        """Drop the pending timer and abort a call that is already running."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(OperationCancelledError("debounce cancelled"))
        for task in list(self._tasks):
            task.cancel()
        if waiters or self._tasks:
            logger.debug("Debouncer cancelled", extra={"waiters": len(waiters)})
