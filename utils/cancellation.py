"""
Cooperative cancellation for the virtual tool engine.

Every public entry point takes a CancellationToken and checks it before and
after each remote call. Cancellation is never an error: callers get back an
empty or partial result.
"""
import asyncio
import threading
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

T = TypeVar('T')


class CancellationToken:
    """Read side of a cancellation signal."""

    NONE: 'CancellationToken'

    def __init__(self):
        self._event = threading.Event()
        self._listeners: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def is_cancellation_requested(self) -> bool:
        return self._event.is_set()

    def on_cancellation_requested(self, listener: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback; runs immediately if already cancelled.

        Returns:
            A function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._listeners.append(listener)
                return lambda: self._remove_listener(listener)
        listener()
        return lambda: None

    def _remove_listener(self, listener: Callable[[], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener()


class _NeverCancelledToken(CancellationToken):

    def on_cancellation_requested(self, listener: Callable[[], None]) -> Callable[[], None]:
        return lambda: None

    def _cancel(self) -> None:
        pass


CancellationToken.NONE = _NeverCancelledToken()


class CancellationTokenSource:
    """Owns a token and is the only thing allowed to cancel it."""

    def __init__(self):
        self.token = CancellationToken()

    def cancel(self) -> None:
        self.token._cancel()


async def wait_or_cancelled(awaitable: Awaitable[T], token: CancellationToken) -> Tuple[bool, Optional[T]]:
    """
    Await `awaitable` unless the token fires first.

    The awaited future is shielded, so other waiters on the same future are
    unaffected when this caller gives up.

    Returns:
        (completed, result); result is None when cancellation won.
    """
    if token.is_cancellation_requested:
        return False, None

    future = asyncio.ensure_future(awaitable)
    if token is CancellationToken.NONE:
        return True, await future

    loop = asyncio.get_running_loop()
    cancelled = loop.create_future()

    def _signal():
        loop.call_soon_threadsafe(lambda: cancelled.done() or cancelled.set_result(None))

    unregister = token.on_cancellation_requested(_signal)
    try:
        done, _ = await asyncio.wait({asyncio.shield(future), cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        unregister()
        if not cancelled.done():
            cancelled.cancel()

    if future.done():
        return True, future.result()
    return False, None
