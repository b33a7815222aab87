# =============================================================================
# UA Session -- Keep-Alive Monitor
# =============================================================================
#
# Deadline tracking for server liveness. Any publish completion or explicit
# keep-alive response moves the deadline; a missed deadline raises one
# suspect signal per episode.
# =============================================================================

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable

from ._logging import logger
from .constants import KEEP_ALIVE_GUARD_BAND, KEEP_ALIVE_INTERVAL
from .events import EventDispatcher
from .types import EventKind, KeepAliveStatus, SessionState


class RecurringTimer:
    """Periodic callback on the running event loop.

    The callback may be sync or async. Each firing is awaited before the
    next sleep starts, so ticks never overlap; long work belongs in a
    separate task.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Any],
        *,
        name: str = "ua-session-timer",
    ) -> None:
        self._interval = interval
        self._callback = callback
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self._name)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def reset(self, interval: float | None = None) -> None:
        """Restart the period from now, optionally with a new interval."""
        if interval is not None:
            self._interval = interval
        if self._task is not None:
            self._task.cancel()
            self._task = None
            self.start()

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                return
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                return
            except Exception:
                logger.exception("Timer callback '%s' failed", self._name)


class KeepAliveMonitor:
    """Detects silent server or connection failure.

    Args:
        interval: Keep-alive interval in seconds.
        events: Session dispatcher; receives ``KEEP_ALIVE`` on every tick.
        state: Returns the current session state for tick payloads.
        on_suspect: Called once when a deadline is missed.
        ping: Optional coroutine function sending an explicit keep-alive
            request; run while connected, never blocking the tick.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        interval: float = KEEP_ALIVE_INTERVAL,
        *,
        events: EventDispatcher | None = None,
        state: Callable[[], SessionState] | None = None,
        on_suspect: Callable[[], Any] | None = None,
        ping: Callable[[], Awaitable[Any]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval = interval
        self._events = events
        self._state = state or (lambda: SessionState.CONNECTED)
        self._on_suspect = on_suspect
        self._ping = ping
        self._clock = clock

        self._last_activity = clock()
        self._suspect = False
        self._server_state: Any = None
        self._ping_task: asyncio.Task[None] | None = None
        self._timer = RecurringTimer(interval, self._on_timer, name="ua-session-keepalive")

        self._ticks = 0
        self._suspect_episodes = 0

    # -- Properties -----------------------------------------------------------

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def last_activity(self) -> float:
        return self._last_activity

    @property
    def deadline(self) -> float:
        return self._last_activity + self._interval + KEEP_ALIVE_GUARD_BAND

    @property
    def suspect(self) -> bool:
        return self._suspect

    @property
    def server_state(self) -> Any:
        return self._server_state

    @property
    def running(self) -> bool:
        return self._timer.running

    # -- Activity -------------------------------------------------------------

    def record_activity(self, at: float | None = None) -> None:
        """Note a server response; the most recent one wins."""
        at = self._clock() if at is None else at
        if at > self._last_activity:
            self._last_activity = at

    def check(self, now: float | None = None) -> bool:
        """True exactly when this call starts a new suspect episode."""
        now = self._clock() if now is None else now
        if self._suspect or now <= self.deadline:
            return False
        self._suspect = True
        self._suspect_episodes += 1
        logger.warning(
            "Keep-alive deadline missed (%.1fs since last activity)",
            now - self._last_activity,
        )
        return True

    def tick(self, now: float | None = None) -> bool:
        """One monitor firing: check the deadline and report status."""
        self._ticks += 1
        raised = self.check(now)
        if self._events is not None:
            self._events.emit(
                EventKind.KEEP_ALIVE,
                KeepAliveStatus(
                    state=self._state(),
                    last_activity=self._last_activity,
                    suspect=self._suspect,
                    server_state=self._server_state,
                ),
            )
        if raised and self._on_suspect is not None:
            self._on_suspect()
        return raised

    def clear_suspect(self, *, reset_clock: bool = True) -> None:
        """End the current episode after recovery or permanent failure."""
        self._suspect = False
        if reset_clock:
            self._last_activity = self._clock()

    # -- Timer ----------------------------------------------------------------

    def start(self) -> None:
        self._last_activity = self._clock()
        self._timer.start()

    async def stop(self) -> None:
        await self._timer.stop()
        if self._ping_task is not None:
            self._ping_task.cancel()
            await asyncio.gather(self._ping_task, return_exceptions=True)
            self._ping_task = None

    def set_interval(self, interval: float) -> None:
        self._interval = interval
        self._timer.reset(interval)

    def _on_timer(self) -> None:
        self.tick()
        if (
            self._ping is not None
            and not self._suspect
            and self._state() == SessionState.CONNECTED
            and (self._ping_task is None or self._ping_task.done())
        ):
            self._ping_task = asyncio.ensure_future(self._run_ping())

    async def _run_ping(self) -> None:
        assert self._ping is not None
        try:
            self._server_state = await self._ping()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Keep-alive request failed: %s", exc)
            return
        self.record_activity()

    def get_stats(self) -> dict[str, Any]:
        return {
            "interval": self._interval,
            "last_activity": self._last_activity,
            "suspect": self._suspect,
            "ticks": self._ticks,
            "suspect_episodes": self._suspect_episodes,
        }
