# =============================================================================
# UA Session -- Publish Pipeline
# =============================================================================
#
# Keeps a target number of publish requests outstanding, piggybacks
# acknowledgements on the next request, validates every notification
# against its subscription's sequence window and requests republish for
# holes the window stops waiting for.
# =============================================================================

from __future__ import annotations

import asyncio
import itertools
import time
from typing import Any, Callable

from ._logging import logger
from .channel import SessionChannel, invoke
from .constants import (
    ACK_OBSERVER_TIMEOUT,
    MAX_PUBLISH_REQUEST_COUNT,
    PUBLISH_RETRY_BASE_DELAY,
    PUBLISH_RETRY_MAX_DELAY,
    STATUS_MESSAGE_NOT_AVAILABLE,
    STATUS_NO_SUBSCRIPTION,
    STATUS_SEQUENCE_NUMBER_UNKNOWN,
    STATUS_TOO_MANY_PUBLISH_REQUESTS,
)
from .errors import ServiceFault, classify_fault
from .events import EventDispatcher
from .registry import SubscriptionRegistry
from .subscription import Subscription
from .types import (
    AcknowledgementBatch,
    DataLossInfo,
    EventKind,
    FaultSeverity,
    NotificationMessage,
    PublishErrorInfo,
    PublishSlot,
    SequenceClass,
    SessionConfig,
    SubscriptionAcknowledgement,
    SubscriptionsChange,
)

FaultCallback = Callable[[BaseException], Any]


class PublishPipeline:
    """Flow-controlled publish request pipeline.

    The slot set is owned by the event loop the pipeline was started on.
    Other threads only reach it through registry notifications, which are
    marshalled onto that loop.

    Args:
        channel: RPC layer.
        registry: Subscriptions consulted for sizing and correlation.
        events: Session dispatcher.
        config: Session configuration.
        on_activity: Called on every successful completion.
        on_session_fatal: Called once per fatal fault, after pausing.
        on_unrecoverable: Called for identity/certificate rejection.
    """

    def __init__(
        self,
        channel: SessionChannel,
        registry: SubscriptionRegistry,
        events: EventDispatcher,
        config: SessionConfig,
        *,
        on_activity: Callable[[], Any] | None = None,
        on_session_fatal: FaultCallback | None = None,
        on_unrecoverable: FaultCallback | None = None,
    ) -> None:
        self._channel = channel
        self._registry = registry
        self._events = events
        self._config = config
        self._on_activity = on_activity
        self._on_session_fatal = on_session_fatal
        self._on_unrecoverable = on_unrecoverable

        self._slots: dict[int, PublishSlot] = {}
        self._handles = itertools.count(1)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._paused = True
        self._closing = False
        self._idle = False
        self._server_limit: int | None = None
        self._consecutive_failures = 0
        self._escalated: FaultSeverity | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._republishing: set[tuple[int, int]] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()

        # Stats
        self._issued = 0
        self._completed = 0
        self._failed = 0
        self._cancelled = 0
        self._keep_alives = 0
        self._duplicates = 0
        self._republished = 0

        registry.add_listener(self._on_registry_change)

    # -- Properties -----------------------------------------------------------

    @property
    def outstanding(self) -> int:
        return len(self._slots)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def slots(self) -> tuple[PublishSlot, ...]:
        return tuple(self._slots.values())

    @property
    def target(self) -> int:
        """Desired outstanding count for the current registry snapshot.

        Zero while no subscription is active or the server reported
        BadNoSubscription, even though the configured minimum is at least
        1: a request parked on a server with nothing to publish only comes
        back as that fault.
        """
        active = self._registry.active_count
        if active == 0 or self._idle:
            return 0
        cap = min(self._config.max_publish_request_count, MAX_PUBLISH_REQUEST_COUNT)
        if self._server_limit is not None:
            cap = min(cap, self._server_limit)
        return max(1, min(max(self._config.min_publish_request_count, active), cap))

    # -- Lifecycle ------------------------------------------------------------

    def start(self) -> None:
        """Bind to the running loop and fill the pipeline."""
        self._loop = asyncio.get_running_loop()
        self._closing = False
        self._paused = False
        self._escalated = None
        self.replenish()

    def pause(self) -> None:
        """Stop issuing requests; in-flight ones complete or time out."""
        if not self._paused:
            logger.debug("Publish pipeline paused (%d in flight)", len(self._slots))
        self._paused = True
        self._cancel_retry()

    def resume(self) -> None:
        """Resume at the computed target size."""
        self._paused = False
        self._idle = False
        self._server_limit = None
        self._consecutive_failures = 0
        self._escalated = None
        logger.debug("Publish pipeline resumed (target %d)", self.target)
        self.replenish()

    def apply_config(self, config: SessionConfig) -> None:
        self._config = config
        self.replenish()

    async def stop(self, *, cancel: bool = True, timeout: float | None = None) -> None:
        """Drain every slot exactly once.

        With *cancel* set, in-flight requests are cancelled and their
        acknowledgements returned to the windows. Otherwise they may complete
        naturally within *timeout*; stragglers are then cancelled.
        """
        self._closing = True
        self._paused = True
        self._cancel_retry()
        self._registry.remove_listener(self._on_registry_change)

        tasks = [s.task for s in self._slots.values() if s.task is not None]
        tasks.extend(self._background_tasks)
        if not tasks:
            return
        if cancel:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            return
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -- Replenishment --------------------------------------------------------

    def replenish(self) -> int:
        """Issue requests until the outstanding count reaches the target."""
        if self._paused or self._closing or self._loop is None:
            return 0
        issued = 0
        target = self.target
        while len(self._slots) < target:
            self._issue()
            issued += 1
        return issued

    def _issue(self) -> PublishSlot:
        slot = PublishSlot(handle=next(self._handles), issued_at=time.monotonic())
        self._slots[slot.handle] = slot
        self._issued += 1
        slot.task = asyncio.ensure_future(self._run_slot(slot))
        return slot

    def _schedule_retry(self) -> None:
        """Replace a failed request, backing off on consecutive failures."""
        n = self._consecutive_failures
        if n <= 1:
            self.replenish()
            return
        delay = min(PUBLISH_RETRY_BASE_DELAY * (2 ** (n - 2)), PUBLISH_RETRY_MAX_DELAY)
        logger.debug("Publish retry in %.2fs (%d consecutive failures)", delay, n)
        self._cancel_retry()
        assert self._loop is not None
        self._retry_handle = self._loop.call_later(delay, self._retry_now)

    def _retry_now(self) -> None:
        self._retry_handle = None
        self.replenish()

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    # -- Slot execution -------------------------------------------------------

    async def _run_slot(self, slot: PublishSlot) -> None:
        try:
            slot.acks = await self._collect_acks()
            message = await invoke(
                self._channel.publish,
                list(slot.acks),
                timeout=self._config.operation_timeout,
            )
        except asyncio.CancelledError:
            self._release(slot, delivered=False)
            self._cancelled += 1
            raise
        except Exception as exc:
            self._release(slot, delivered=False)
            self._handle_fault(exc)
            return

        self._release(slot, delivered=True)
        self._completed += 1
        self._consecutive_failures = 0
        if self._on_activity is not None:
            self._on_activity()
        self._handle_message(message)

    def _release(self, slot: PublishSlot, *, delivered: bool) -> None:
        if self._slots.pop(slot.handle, None) is None:
            return
        if not delivered and slot.acks:
            self._requeue(slot.acks)

    # -- Acknowledgements -----------------------------------------------------

    async def _collect_acks(self) -> list[SubscriptionAcknowledgement]:
        """Take queued acks from every window for the next request."""
        taken: list[SubscriptionAcknowledgement] = []
        for sub in self._registry.snapshot():
            if sub.id is None:
                continue
            for n in sub.window.take_acks():
                taken.append(SubscriptionAcknowledgement(sub.id, n))
        if not taken:
            return []

        batch = AcknowledgementBatch(acknowledgements=list(taken))
        finished = await self._events.emit_and_wait(
            EventKind.SEQUENCE_NUMBERS_TO_ACKNOWLEDGE,
            batch,
            timeout=ACK_OBSERVER_TIMEOUT,
        )
        if not finished:
            return taken

        deferred = set(batch.deferred)
        approved = set(batch.acknowledgements)
        send = [a for a in taken if a in approved and a not in deferred]
        held = [a for a in taken if a not in approved or a in deferred]
        if held:
            logger.debug("Deferring %d acknowledgements", len(held))
            self._requeue(held)
        return send

    def _requeue(self, acks: list[SubscriptionAcknowledgement]) -> None:
        by_sub: dict[int, list[int]] = {}
        for ack in acks:
            by_sub.setdefault(ack.subscription_id, []).append(ack.sequence_number)
        for sub_id, numbers in by_sub.items():
            sub = self._registry.get(sub_id)
            if sub is None:
                logger.debug("Dropping %d acks for removed subscription %d", len(numbers), sub_id)
                continue
            sub.window.requeue_acks(numbers)

    # -- Completions ----------------------------------------------------------

    def _handle_message(self, message: NotificationMessage) -> None:
        sub = self._registry.get(message.subscription_id)

        if message.keep_alive:
            self._keep_alives += 1
            if sub is not None:
                sub.window.prune_acks(message.available_sequence_numbers)
            self.replenish()
            return

        if sub is None:
            logger.warning(
                "Notification for unknown subscription %s (seq %d) dropped",
                message.subscription_id,
                message.sequence_number,
            )
            self.replenish()
            return

        self._process_notification(sub, message)
        self.replenish()

        candidates = sub.window.republish_candidates()
        if candidates and not self._closing:
            self._fire_task(self._republish(sub, candidates))

    def _process_notification(
        self, sub: Subscription, message: NotificationMessage
    ) -> None:
        verdict = sub.window.accept(message.sequence_number)
        if message.available_sequence_numbers:
            sub.window.prune_acks(message.available_sequence_numbers)

        if verdict.kind == SequenceClass.DUPLICATE:
            self._duplicates += 1
            logger.debug(
                "Duplicate notification sub=%d seq=%d ignored",
                sub.id,
                message.sequence_number,
            )
            return

        if verdict.kind == SequenceClass.OUT_OF_ORDER:
            logger.debug(
                "Out-of-order notification sub=%d seq=%d missing=%s",
                sub.id,
                message.sequence_number,
                verdict.missing,
            )

        sub.record_notification()
        self._events.emit(EventKind.PUBLISH, message)
        sub.events.emit(EventKind.PUBLISH, message)

        if verdict.lost:
            self._report_loss(sub, verdict.lost)

    def _report_loss(self, sub: Subscription, lost: tuple[int, ...]) -> None:
        logger.warning(
            "Data loss on subscription %d: %d notifications (%d..%d) unrecoverable",
            sub.id,
            len(lost),
            lost[0],
            lost[-1],
        )
        info = DataLossInfo(
            subscription_id=sub.id,  # type: ignore[arg-type]
            lost=lost,
            last_acknowledged=sub.window.last_acked,
        )
        self._events.emit(EventKind.DATA_LOSS, info)
        sub.events.emit(EventKind.DATA_LOSS, info)

    async def _republish(self, sub: Subscription, numbers: tuple[int, ...]) -> None:
        """Ask the server to resend notifications the window gave up waiting for."""
        for n in numbers:
            sub_id = sub.id
            if sub_id is None or self._closing or self._paused:
                return
            key = (sub_id, n)
            if key in self._republishing or n <= sub.window.last_acked:
                continue
            self._republishing.add(key)
            try:
                message = await invoke(
                    self._channel.republish,
                    sub_id,
                    n,
                    timeout=self._config.operation_timeout,
                )
            except ServiceFault as exc:
                if exc.status_code in (
                    STATUS_MESSAGE_NOT_AVAILABLE,
                    STATUS_SEQUENCE_NUMBER_UNKNOWN,
                ):
                    lost = sub.window.declare_lost([n])
                    if lost:
                        self._report_loss(sub, lost)
                    continue
                self._handle_republish_fault(exc, sub_id, n)
                return
            except Exception as exc:
                self._handle_republish_fault(exc, sub_id, n)
                return
            finally:
                self._republishing.discard(key)

            self._republished += 1
            self._process_notification(sub, message)

    def _handle_republish_fault(self, exc: BaseException, sub_id: int, n: int) -> None:
        severity = classify_fault(exc)
        if self._already_escalated(severity):
            return
        logger.warning("Republish sub=%d seq=%d failed: %s", sub_id, n, exc)
        self._events.emit(
            EventKind.PUBLISH_ERROR,
            PublishErrorInfo(exc, severity, subscription_id=sub_id, sequence_number=n),
        )
        self._escalate(exc, severity)

    # -- Faults ---------------------------------------------------------------

    def _handle_fault(self, exc: BaseException) -> None:
        self._failed += 1
        severity = classify_fault(exc)
        if self._already_escalated(severity):
            logger.debug("Publish fault within current %s episode: %s", severity.value, exc)
            return
        self._events.emit(EventKind.PUBLISH_ERROR, PublishErrorInfo(exc, severity))

        if self._escalate(exc, severity):
            return

        status = exc.status_code if isinstance(exc, ServiceFault) else None
        if status == STATUS_TOO_MANY_PUBLISH_REQUESTS:
            limit = max(1, len(self._slots))
            if self._server_limit is None or limit < self._server_limit:
                logger.info("Server limits outstanding publish requests to %d", limit)
                self._server_limit = limit
            return
        if status == STATUS_NO_SUBSCRIPTION:
            logger.debug("Server reports no subscriptions, pipeline idle")
            self._idle = True
            return

        logger.warning("Publish request failed: %s", exc)
        self._consecutive_failures += 1
        if not self._closing and not self._paused:
            self._schedule_retry()

    def _escalate(self, exc: BaseException, severity: FaultSeverity) -> bool:
        """Hand session-wide faults to the session; True if handed off."""
        if severity == FaultSeverity.TRANSIENT:
            return False
        self._escalated = severity
        self.pause()
        if self._closing:
            return True
        if severity == FaultSeverity.UNRECOVERABLE:
            logger.error("Unrecoverable publish fault: %s", exc)
            if self._on_unrecoverable is not None:
                self._on_unrecoverable(exc)
        else:
            logger.warning("Session-fatal publish fault: %s", exc)
            if self._on_session_fatal is not None:
                self._on_session_fatal(exc)
        return True

    def _already_escalated(self, severity: FaultSeverity) -> bool:
        """True if this episode already surfaced a fault at least this severe."""
        if severity == FaultSeverity.TRANSIENT or self._escalated is None:
            return False
        return (
            self._escalated == FaultSeverity.UNRECOVERABLE
            or severity == self._escalated
        )

    # -- Registry -------------------------------------------------------------

    def _on_registry_change(self, change: SubscriptionsChange) -> None:
        """Registry listener; may run on any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._apply_registry_change)

    def _apply_registry_change(self) -> None:
        self._idle = False
        self.replenish()

    # -- Helpers --------------------------------------------------------------

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def get_stats(self) -> dict[str, Any]:
        return {
            "outstanding": len(self._slots),
            "target": self.target,
            "paused": self._paused,
            "issued": self._issued,
            "completed": self._completed,
            "failed": self._failed,
            "cancelled": self._cancelled,
            "keep_alives": self._keep_alives,
            "duplicates": self._duplicates,
            "republished": self._republished,
            "server_limit": self._server_limit,
        }
