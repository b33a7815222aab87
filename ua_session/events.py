# =============================================================================
# UA Session -- Event Dispatcher
# =============================================================================
#
# Per-kind observer registry with isolated delivery. Every observer gets
# its own serial lane (a single-worker executor): it sees events in
# emission order, and a slow one only backs up its own lane. A lane holds
# at most OBSERVER_BACKLOG_LIMIT undelivered events.
# =============================================================================

from __future__ import annotations

import asyncio
import functools
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Awaitable, Callable

from ._logging import logger
from .constants import (
    ACK_OBSERVER_TIMEOUT,
    OBSERVER_BACKLOG_LIMIT,
    SLOW_OBSERVER_WARNING,
)
from .types import EventKind

Observer = Callable[[Any], Any]
AsyncObserver = Callable[[Any], Awaitable[Any]]


class EventDispatcher:
    """Fan-out of session events to observers, one list per event kind.

    Observers may be plain callables or coroutine functions. Coroutine
    observers run on the bound event loop. Registration is thread-safe and
    may happen at any time, including during recovery.

    Args:
        synchronous: Deliver inline on the emitting thread instead of the
            observer lanes. Exceptions are still isolated.
        loop: Event loop for coroutine observers. Bound later by the
            session when omitted.
        backlog_limit: Undelivered events kept per observer; further
            events for that observer are dropped and logged.
    """

    def __init__(
        self,
        *,
        synchronous: bool = False,
        loop: asyncio.AbstractEventLoop | None = None,
        backlog_limit: int = OBSERVER_BACKLOG_LIMIT,
    ) -> None:
        self._synchronous = synchronous
        self._loop = loop
        self._backlog_limit = backlog_limit
        # Reentrant: a done callback may fire inline while _submit holds it.
        self._lock = threading.RLock()
        self._observers: dict[EventKind, tuple[Observer | AsyncObserver, ...]] = {}
        self._lanes: dict[Observer | AsyncObserver, _Lane] = {}
        self._closed = False
        self._dropped = 0

    @property
    def synchronous(self) -> bool:
        return self._synchronous

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    # -- Registration ---------------------------------------------------------

    def subscribe(self, kind: EventKind, fn: Observer | AsyncObserver) -> None:
        with self._lock:
            self._observers[kind] = self._observers.get(kind, ()) + (fn,)

    def unsubscribe(self, kind: EventKind, fn: Observer | AsyncObserver) -> None:
        with self._lock:
            current = self._observers.get(kind, ())
            if fn in current:
                idx = current.index(fn)
                self._observers[kind] = current[:idx] + current[idx + 1 :]
                self._retire_lane(fn)

    def on(
        self, kind: EventKind
    ) -> Callable[[Observer | AsyncObserver], Observer | AsyncObserver]:
        """Decorator form of :meth:`subscribe`.

        Example::

            @session.events.on(EventKind.PUBLISH)
            def handle(message):
                print(message.subscription_id, message.payload)
        """

        def decorator(fn: Observer | AsyncObserver) -> Observer | AsyncObserver:
            self.subscribe(kind, fn)
            return fn

        return decorator

    def observers(self, kind: EventKind) -> tuple[Observer | AsyncObserver, ...]:
        with self._lock:
            return self._observers.get(kind, ())

    def has_observers(self, kind: EventKind | None = None) -> bool:
        with self._lock:
            if kind is None:
                return any(self._observers.values())
            return bool(self._observers.get(kind))

    def copy_to(self, other: EventDispatcher) -> None:
        """Register every observer of this dispatcher on *other*."""
        with self._lock:
            snapshot = dict(self._observers)
        for kind, fns in snapshot.items():
            for fn in fns:
                other.subscribe(kind, fn)

    def clear(self) -> None:
        with self._lock:
            fns = list(self._lanes)
            self._observers.clear()
            for fn in fns:
                self._retire_lane(fn)

    # -- Emission -------------------------------------------------------------

    def emit(self, kind: EventKind, payload: Any) -> None:
        """Deliver *payload* to every observer of *kind* without waiting."""
        observers = self.observers(kind)
        if not observers:
            return
        if self._synchronous:
            for fn in observers:
                self._deliver(kind, payload, fn)
            return
        self._submit(kind, payload, observers)

    async def emit_and_wait(
        self,
        kind: EventKind,
        payload: Any,
        timeout: float = ACK_OBSERVER_TIMEOUT,
    ) -> bool:
        """Deliver and wait up to *timeout* for observers to finish.

        Returns False when the observers did not finish in time; the caller
        then proceeds with its own copy of the payload.
        """
        observers = self.observers(kind)
        if not observers:
            return True
        if self._synchronous:
            for fn in observers:
                self._deliver(kind, payload, fn)
            return True
        futures = self._submit(kind, payload, observers)
        if len(futures) < len(observers):
            return False
        # asyncio.wait leaves queued deliveries in place on timeout.
        _done, pending = await asyncio.wait(
            [asyncio.wrap_future(f) for f in futures], timeout=timeout
        )
        if pending:
            logger.warning(
                "Observers for '%s' did not finish within %.1fs", kind.value, timeout
            )
            return False
        return True

    def flush(self, timeout: float | None = None) -> bool:
        """Block until everything emitted so far has been delivered."""
        if self._synchronous:
            return True
        with self._lock:
            lanes = list(self._lanes.values())
        futures = []
        for lane in lanes:
            try:
                futures.append(lane.executor.submit(lambda: None))
            except RuntimeError:
                continue  # lane retired meanwhile
        _done, pending = wait(futures, timeout=timeout)
        return not pending

    def close(self) -> None:
        with self._lock:
            self._closed = True
            lanes = list(self._lanes.values())
            self._lanes.clear()
        for lane in lanes:
            lane.executor.shutdown(wait=False)

    @property
    def dropped(self) -> int:
        """Events discarded because an observer's backlog was full."""
        return self._dropped

    # -- Internal -------------------------------------------------------------

    def _submit(
        self,
        kind: EventKind,
        payload: Any,
        observers: tuple[Observer | AsyncObserver, ...],
    ) -> list[Future]:
        futures: list[Future] = []
        with self._lock:
            if self._closed:
                logger.debug("Dispatcher closed, dropping '%s' event", kind.value)
                return futures
            for fn in observers:
                lane = self._lanes.get(fn)
                if lane is None:
                    lane = self._lanes[fn] = _Lane()
                if lane.pending >= self._backlog_limit:
                    self._dropped += 1
                    logger.warning(
                        "Observer backlog full for '%s', event dropped: %r", kind.value, fn
                    )
                    continue
                lane.pending += 1
                future = lane.executor.submit(self._deliver, kind, payload, fn)
                future.add_done_callback(functools.partial(self._delivered, lane))
                futures.append(future)
        return futures

    def _delivered(self, lane: _Lane, _future: Future) -> None:
        with self._lock:
            lane.pending -= 1

    def _retire_lane(self, fn: Observer | AsyncObserver) -> None:
        """Drop the lane of an observer no longer registered for any kind."""
        if any(fn in fns for fns in self._observers.values()):
            return
        lane = self._lanes.pop(fn, None)
        if lane is not None:
            lane.executor.shutdown(wait=False)

    def _deliver(
        self,
        kind: EventKind,
        payload: Any,
        fn: Observer | AsyncObserver,
    ) -> None:
        started = time.monotonic()
        try:
            result = fn(payload)
            if asyncio.iscoroutine(result):
                self._schedule(kind, result)
        except Exception:
            logger.exception("Observer error for '%s'", kind.value)
        elapsed = time.monotonic() - started
        if elapsed > SLOW_OBSERVER_WARNING:
            logger.warning(
                "Slow observer for '%s' (%.2fs): %r", kind.value, elapsed, fn
            )

    def _schedule(self, kind: EventKind, coro: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("No event loop for async observer of '%s'", kind.value)
            coro.close()
            return
        asyncio.run_coroutine_threadsafe(self._guard(kind, coro), loop)

    @staticmethod
    async def _guard(kind: EventKind, coro: Any) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Async observer error for '%s'", kind.value)


class _Lane:
    """Serial delivery queue of one observer."""

    __slots__ = ("executor", "pending")

    def __init__(self) -> None:
        self.executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="ua-session-events"
        )
        self.pending = 0
