# =============================================================================
# UA Session -- Reconnect Controller
# =============================================================================
#
# CONNECTED -> SUSPECT -> RECONNECTING -> TRANSFERRING | RECREATING
#           -> CONNECTED | FAILED            (CLOSED on explicit close)
#
# The controller makes exactly one attempt per reconnect() call; the
# ReconnectHandler below is the optional retry loop with backoff.
# =============================================================================

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Callable, NoReturn

from ._logging import logger
from .channel import SessionChannel, invoke
from .constants import RECONNECT_ABSOLUTE_CAP, SESSION_FATAL_STATUS
from .errors import (
    ServiceFault,
    SessionClosedError,
    SessionFailedError,
    classify_fault,
)
from .events import EventDispatcher
from .keep_alive import KeepAliveMonitor
from .pipeline import PublishPipeline
from .registry import SubscriptionRegistry
from .subscription import Subscription
from .types import (
    EventKind,
    FaultSeverity,
    ReconnectConfig,
    ReconnectContext,
    ReconnectMode,
    ReconnectOutcome,
    SessionConfig,
    SessionIdentity,
    SessionState,
    StateChange,
)

StateListener = Callable[[SessionState], Any]

_TERMINAL = frozenset({SessionState.FAILED, SessionState.CLOSED})


class _SuspectContinuing(Exception):
    """Internal: the attempt ended without recovery; session stays SUSPECT."""

    def __init__(self, error: BaseException) -> None:
        self.error = error
        super().__init__(str(error))


class _Unrecoverable(Exception):
    """Internal: the attempt hit an identity or certificate rejection."""

    def __init__(self, error: BaseException) -> None:
        self.error = error
        super().__init__(str(error))


class ReconnectController:
    """Orchestrates session recovery after a detected failure.

    Args:
        channel: RPC layer.
        registry: Subscriptions to transfer or recreate.
        pipeline: Paused while recovering, resumed on success.
        monitor: Keep-alive monitor, re-armed on recovery or failure.
        events: Session dispatcher.
        config: Session configuration.
        identity: Current session identity, ``None`` before creation.
        credentials: Opaque user identity passed to ``activate``.
    """

    def __init__(
        self,
        channel: SessionChannel,
        registry: SubscriptionRegistry,
        pipeline: PublishPipeline,
        monitor: KeepAliveMonitor,
        events: EventDispatcher,
        config: SessionConfig,
        *,
        identity: SessionIdentity | None = None,
        credentials: Any = None,
    ) -> None:
        self._channel = channel
        self._registry = registry
        self._pipeline = pipeline
        self._monitor = monitor
        self._events = events
        self._config = config
        self._identity = identity
        self._credentials = credentials

        self._state = SessionState.CONNECTED
        self._context: ReconnectContext | None = None
        self._lock: asyncio.Lock | None = None
        self._attempt_task: asyncio.Task[ReconnectOutcome] | None = None
        self._listeners: list[StateListener] = []
        self._failure: BaseException | None = None

        self._attempts = 0
        self._recoveries = 0

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def context(self) -> ReconnectContext | None:
        return self._context

    @property
    def identity(self) -> SessionIdentity | None:
        return self._identity

    @identity.setter
    def identity(self, identity: SessionIdentity | None) -> None:
        self._identity = identity

    @property
    def failure(self) -> BaseException | None:
        """The fault that moved the session to FAILED, if any."""
        return self._failure

    def add_state_listener(self, fn: StateListener) -> None:
        self._listeners.append(fn)

    def apply_config(self, config: SessionConfig) -> None:
        self._config = config

    # -- Transitions ----------------------------------------------------------

    def mark_suspect(self, reason: str = "") -> bool:
        """Enter SUSPECT from CONNECTED. Returns False if already recovering."""
        if self._state != SessionState.CONNECTED:
            return False
        self._pipeline.pause()
        self._context = ReconnectContext(
            phase=SessionState.SUSPECT,
            reason=reason,
            started_at=time.monotonic(),
        )
        self._set_state(SessionState.SUSPECT, reason)
        return True

    def mark_failed(self, error: BaseException) -> None:
        """Move to FAILED; the application must close and recreate the session."""
        if self._state in _TERMINAL:
            return
        logger.error("Session failed: %s", error)
        self._failure = error
        self._pipeline.pause()
        self._context = None
        self._monitor.clear_suspect(reset_clock=False)
        self._set_state(SessionState.FAILED, str(error))

    def ensure_usable(self) -> None:
        """Fail fast for operations on a terminal session."""
        if self._state == SessionState.FAILED:
            raise SessionFailedError(f"Session failed: {self._failure}")
        if self._state == SessionState.CLOSED:
            raise SessionClosedError("Session is closed")

    async def abort(self) -> None:
        """Abort any attempt in progress and move to CLOSED."""
        if self._state == SessionState.CLOSED:
            return
        self._set_state(SessionState.CLOSED, "closed")
        self._context = None
        task = self._attempt_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # -- Reconnect ------------------------------------------------------------

    async def reconnect(self) -> ReconnectOutcome:
        """Make one recovery attempt.

        Returns the outcome; ``SUSPECT`` means connectivity could not be
        re-established and the caller may retry.

        Raises:
            SessionFailedError: If the session already failed.
            SessionClosedError: If the session is closed.
        """
        self.ensure_usable()
        if self._state == SessionState.CONNECTED:
            self.mark_suspect("reconnect requested")

        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._state == SessionState.CONNECTED:
                return ReconnectOutcome(SessionState.CONNECTED)
            self.ensure_usable()
            self._attempts += 1
            self._attempt_task = asyncio.ensure_future(self._attempt())
            try:
                return await self._attempt_task
            except asyncio.CancelledError:
                if self._state == SessionState.CLOSED:
                    return ReconnectOutcome(SessionState.CLOSED)
                raise
            finally:
                self._attempt_task = None

    async def _attempt(self) -> ReconnectOutcome:
        ctx = self._context or ReconnectContext(
            phase=SessionState.SUSPECT, started_at=time.monotonic()
        )
        self._context = ctx
        self._pipeline.pause()

        timeout = self._config.reconnect_timeout
        ctx.phase = SessionState.RECONNECTING
        ctx.deadline = time.monotonic() + timeout
        self._set_state(SessionState.RECONNECTING, ctx.reason)

        try:
            try:
                await invoke(self._channel.reconnect, timeout=timeout)
            except Exception as exc:
                self._raise_for(exc, "Channel reconnect failed")

            session_valid = await self._reactivate()
            if session_valid and self._config.transfer_subscriptions_on_reconnect:
                outcome = await self._transfer(ctx)
            elif session_valid:
                outcome = ReconnectOutcome(SessionState.CONNECTED)
            else:
                outcome = await self._recreate(ctx)
        except _SuspectContinuing as exc:
            ctx.phase = SessionState.SUSPECT
            ctx.deadline = None
            self._set_state(SessionState.SUSPECT, str(exc.error))
            return ReconnectOutcome(SessionState.SUSPECT, error=exc.error)
        except _Unrecoverable as exc:
            self.mark_failed(exc.error)
            return ReconnectOutcome(SessionState.FAILED, error=exc.error)

        if self._state in _TERMINAL:
            return ReconnectOutcome(self._state)
        self._recovered()
        return outcome

    async def _reactivate(self) -> bool:
        """Activate the original session; False if the server no longer knows it."""
        if self._identity is None:
            return False
        try:
            await invoke(
                self._channel.activate,
                self._identity.session_id,
                self._credentials,
                timeout=self._config.operation_timeout,
            )
        except ServiceFault as exc:
            if classify_fault(exc) == FaultSeverity.UNRECOVERABLE:
                raise _Unrecoverable(exc) from exc
            if exc.status_code in SESSION_FATAL_STATUS:
                logger.info("Session %s no longer valid (%s)", self._identity.session_id, exc.status_code)
                return False
            raise _SuspectContinuing(exc) from exc
        except Exception as exc:
            self._raise_for(exc, "Session activation failed")
        logger.info("Session %s reactivated", self._identity.session_id)
        return True

    async def _transfer(self, ctx: ReconnectContext) -> ReconnectOutcome:
        ctx.phase = SessionState.TRANSFERRING
        self._set_state(SessionState.TRANSFERRING)

        subs = [s for s in self._registry.snapshot() if s.id is not None]
        ids = [s.id for s in subs]
        ctx.pending_transfer = tuple(ids)  # type: ignore[arg-type]
        if not ids:
            return ReconnectOutcome(SessionState.CONNECTED)

        try:
            results = await invoke(
                self._channel.transfer_subscriptions,
                ids,
                False,
                timeout=self._config.operation_timeout,
            )
        except Exception as exc:
            self._raise_for(exc, "Subscription transfer failed")

        confirmed = {r.subscription_id: r for r in results or () if r.success}
        transferred: list[int] = []
        unconfirmed: list[Subscription] = []
        for sub in subs:
            result = confirmed.get(sub.id)  # type: ignore[arg-type]
            if result is None:
                unconfirmed.append(sub)
                continue
            # Window stays intact so post-transfer duplicates are still caught.
            sub.window.prune_acks(result.available_sequence_numbers)
            transferred.append(sub.id)  # type: ignore[arg-type]

        logger.info(
            "Transferred %d/%d subscriptions", len(transferred), len(ids)
        )
        deleted: list[int] = []
        recreated: list[int] = []
        if unconfirmed:
            if self._config.delete_subscriptions_on_close:
                deleted = await self._delete(unconfirmed)
            else:
                recreated, dropped = await self._recreate_each(unconfirmed)
                deleted.extend(dropped)

        ctx.pending_transfer = ()
        return ReconnectOutcome(
            SessionState.CONNECTED,
            transferred=tuple(transferred),
            recreated=tuple(recreated),
            deleted=tuple(deleted),
        )

    async def _recreate(self, ctx: ReconnectContext) -> ReconnectOutcome:
        ctx.phase = SessionState.RECREATING
        self._set_state(SessionState.RECREATING)
        try:
            identity = await invoke(
                self._channel.create_session,
                self._config,
                timeout=self._config.operation_timeout,
            )
            await invoke(
                self._channel.activate,
                identity.session_id,
                self._credentials,
                timeout=self._config.operation_timeout,
            )
        except Exception as exc:
            self._raise_for(exc, "Session recreation failed")

        old = self._identity
        self._identity = identity
        logger.info(
            "Session recreated: %s -> %s",
            old.session_id if old else None,
            identity.session_id,
        )
        self._events.emit(EventKind.SESSION_CONFIGURATION_CHANGED, identity)

        recreated, dropped = await self._recreate_each(list(self._registry.snapshot()))
        return ReconnectOutcome(
            SessionState.CONNECTED,
            recreated=tuple(recreated),
            deleted=tuple(dropped),
        )

    async def _recreate_each(
        self, subs: list[Subscription]
    ) -> tuple[list[int], list[int]]:
        """Recreate *subs* one by one; a failing one is dropped, not left half-bound.

        New ids are applied together once every create returned, since a
        restarted server may hand out ids the old subscriptions still hold.
        """
        new_ids: dict[Subscription, int] = {}
        dropped: list[int] = []
        for sub in subs:
            old_id = sub.id
            try:
                new_id = await invoke(
                    self._channel.create_subscription,
                    sub.settings,
                    timeout=self._config.operation_timeout,
                )
            except Exception as exc:
                if classify_fault(exc) != FaultSeverity.TRANSIENT:
                    self._raise_for(exc, "Subscription recreation failed")
                logger.warning("Could not recreate subscription %s: %s", old_id, exc)
                self._registry.remove(sub)
                if old_id is not None:
                    dropped.append(old_id)
                continue
            new_ids[sub] = new_id
            logger.debug("Subscription %s recreated as %s", old_id, new_id)

        # Removed by the application while the creates were outstanding.
        new_ids = {s: i for s, i in new_ids.items() if s in self._registry}
        for sub in new_ids:
            sub.window.reset()
        try:
            self._registry.rekey_many(new_ids)
        except ValueError as exc:
            self._raise_for(exc, "Recreated subscription ids conflict")
        return list(new_ids.values()), dropped

    async def _delete(self, subs: list[Subscription]) -> list[int]:
        ids = [s.id for s in subs if s.id is not None]
        self._registry.remove_many(subs)
        try:
            await invoke(
                self._channel.delete_subscriptions,
                ids,
                timeout=self._config.operation_timeout,
            )
        except Exception as exc:
            logger.debug("Server-side delete of %s failed: %s", ids, exc)
        logger.info("Deleted %d untransferable subscriptions", len(ids))
        return ids

    def _recovered(self) -> None:
        self._context = None
        self._recoveries += 1
        self._set_state(SessionState.CONNECTED, "recovered")
        self._monitor.clear_suspect(reset_clock=True)
        self._pipeline.resume()

    def _raise_for(self, exc: BaseException, what: str) -> NoReturn:
        """Convert *exc* into the internal outcome signal for this attempt."""
        if classify_fault(exc) == FaultSeverity.UNRECOVERABLE:
            raise _Unrecoverable(exc) from exc
        logger.warning("%s: %s", what, exc)
        raise _SuspectContinuing(exc) from exc

    # -- State ----------------------------------------------------------------

    def _set_state(self, new_state: SessionState, reason: str = "") -> None:
        if new_state == self._state or self._state == SessionState.CLOSED:
            return
        if self._state == SessionState.FAILED and new_state != SessionState.CLOSED:
            return
        old = self._state
        self._state = new_state
        logger.info("Session state: %s -> %s", old.value, new_state.value)
        self._events.emit(EventKind.STATE_CHANGED, StateChange(old, new_state, reason))
        for fn in list(self._listeners):
            try:
                fn(new_state)
            except Exception:
                logger.exception("State listener failed")

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "attempts": self._attempts,
            "recoveries": self._recoveries,
            "phase": self._context.phase.value if self._context else None,
        }


class ReconnectHandler:
    """Retry loop around :meth:`ReconnectController.reconnect` with backoff.

    Starts itself whenever the controller enters SUSPECT. Stops once an
    attempt leaves SUSPECT or ``max_attempts`` is reached.
    """

    def __init__(
        self,
        controller: ReconnectController,
        config: ReconnectConfig | None = None,
    ) -> None:
        self._controller = controller
        self._config = config or ReconnectConfig()
        self._task: asyncio.Task[ReconnectOutcome | None] | None = None
        self._attempts = 0
        controller.add_state_listener(self._on_state)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def attempts(self) -> int:
        return self._attempts

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def wait(self) -> ReconnectOutcome | None:
        if self._task is None:
            return None
        return await self._task

    def _on_state(self, state: SessionState) -> None:
        if state == SessionState.SUSPECT and not self.running:
            try:
                self.start()
            except RuntimeError:
                logger.debug("No running loop, auto-reconnect not started")

    async def _run(self) -> ReconnectOutcome | None:
        self._attempts = 0
        cfg = self._config
        while True:
            if cfg.max_attempts >= 0 and self._attempts >= cfg.max_attempts:
                logger.error("Max reconnect attempts (%d) reached", cfg.max_attempts)
                return None
            try:
                outcome = await self._controller.reconnect()
            except (SessionFailedError, SessionClosedError):
                return None
            self._attempts += 1
            if outcome.state != SessionState.SUSPECT:
                return outcome

            delay = self._calculate_delay()
            logger.info(
                "Reconnecting in %.1fs (attempt %d/%s)",
                delay,
                self._attempts + 1,
                cfg.max_attempts if cfg.max_attempts >= 0 else "inf",
            )
            await asyncio.sleep(delay)

    def _calculate_delay(self) -> float:
        """Compute the delay before the next attempt based on strategy."""
        cfg = self._config
        attempt = max(0, self._attempts - 1)

        if cfg.mode == ReconnectMode.LINEAR:
            delay = cfg.base_delay + attempt * 1.0
        elif cfg.mode == ReconnectMode.FIBONACCI:
            delay = cfg.base_delay * _fib(min(attempt + 1, 10))
        else:
            delay = cfg.base_delay * (cfg.factor**attempt)

        delay = min(delay, cfg.max_delay, RECONNECT_ABSOLUTE_CAP)

        if cfg.jitter:
            jitter_amount = delay * 0.2 * (random.random() - 0.5)
            delay = max(0.0, delay + jitter_amount)

        return delay


def _fib(n: int) -> int:
    a, b = 0, 1
    for _ in range(n):
        a, b = b, a + b
    return a
