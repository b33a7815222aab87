# =============================================================================
# UA Session -- Session
# =============================================================================
#
# Owns one instance of each engine component and wires them together:
# completions feed the keep-alive clock, missed deadlines and session-fatal
# publish faults go to the reconnect controller, and recovery resumes the
# pipeline.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any

from ._logging import logger
from .channel import SessionChannel, invoke
from .errors import SessionClosedError, SessionFailedError
from .events import EventDispatcher
from .keep_alive import KeepAliveMonitor
from .pipeline import PublishPipeline
from .reconnect import ReconnectController, ReconnectHandler
from .registry import SubscriptionRegistry
from .subscription import Subscription
from .types import (
    MUTABLE_CONFIG_FIELDS,
    EventKind,
    ReconnectConfig,
    ReconnectOutcome,
    SessionConfig,
    SessionIdentity,
    SessionState,
    SubscriptionSettings,
)


class Session:
    """Client session that survives connection loss.

    Args:
        channel: RPC layer implementing :class:`SessionChannel`.
        config: Session configuration.
        identity: Identity of an already created and activated session.
            When omitted, :meth:`open` creates one.
        credentials: Opaque user identity handed to ``activate``.
        auto_reconnect: Retry recovery with this backoff whenever the
            session becomes suspect. ``None`` leaves retries to the caller
            via :meth:`reconnect`.
        synchronous_events: Deliver events inline (deterministic, for tests).

    Example::

        async with Session(channel, SessionConfig(), auto_reconnect=ReconnectConfig()) as session:
            sub = await session.add_subscription(SubscriptionSettings(publishing_interval=0.5))

            @sub.events.on(EventKind.PUBLISH)
            def handle(message):
                print(message.sequence_number, message.payload)
    """

    def __init__(
        self,
        channel: SessionChannel,
        config: SessionConfig | None = None,
        *,
        identity: SessionIdentity | None = None,
        credentials: Any = None,
        auto_reconnect: ReconnectConfig | None = None,
        synchronous_events: bool = False,
    ) -> None:
        self._channel = channel
        self._config = config or SessionConfig()
        self._credentials = credentials
        self._auto_reconnect = auto_reconnect
        self._opened = False

        self.events = EventDispatcher(synchronous=synchronous_events)
        self.registry = SubscriptionRegistry(self.events)

        self._pipeline = PublishPipeline(
            channel,
            self.registry,
            self.events,
            self._config,
            on_activity=self._on_activity,
            on_session_fatal=self._on_session_fatal,
            on_unrecoverable=self._on_unrecoverable,
        )
        self._monitor = KeepAliveMonitor(
            self._config.keep_alive_interval,
            events=self.events,
            state=lambda: self.state,
            on_suspect=self._on_keep_alive_missed,
            ping=self._ping,
        )
        self._controller = ReconnectController(
            channel,
            self.registry,
            self._pipeline,
            self._monitor,
            self.events,
            self._config,
            identity=identity,
            credentials=credentials,
        )
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._reconnect_handler: ReconnectHandler | None = None
        if auto_reconnect is not None:
            self._reconnect_handler = ReconnectHandler(self._controller, auto_reconnect)

    @classmethod
    def from_template(
        cls,
        template: Session,
        channel: SessionChannel | None = None,
        *,
        copy_event_handlers: bool = False,
    ) -> Session:
        """Build a new, unopened session with *template*'s configuration.

        Subscriptions are cloned without server ids and are created when the
        new session opens. Observers (session-level and per-subscription)
        are copied only when *copy_event_handlers* is set.
        """
        session = cls(
            channel if channel is not None else template._channel,
            template.config,
            credentials=template._credentials,
            auto_reconnect=template._auto_reconnect,
            synchronous_events=template.events.synchronous,
        )
        if copy_event_handlers:
            template.events.copy_to(session.events)
        for sub in template.registry.clone_subscriptions(copy_event_handlers):
            session.registry.add(sub)
        return session

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> Session:
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._controller.state

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def identity(self) -> SessionIdentity | None:
        return self._controller.identity

    @property
    def channel(self) -> SessionChannel:
        return self._channel

    @property
    def is_open(self) -> bool:
        return self._opened and self.state not in (SessionState.CLOSED, SessionState.FAILED)

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return self.registry.snapshot()

    @property
    def pipeline(self) -> PublishPipeline:
        return self._pipeline

    @property
    def keep_alive(self) -> KeepAliveMonitor:
        return self._monitor

    @property
    def controller(self) -> ReconnectController:
        return self._controller

    # -- Lifecycle ------------------------------------------------------------

    async def open(self) -> None:
        """Create (if needed) and activate the session, then start publishing."""
        self._controller.ensure_usable()
        if self._opened:
            return
        loop = asyncio.get_running_loop()
        self.events.bind_loop(loop)

        if self._controller.identity is None:
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
            self._controller.identity = identity
            logger.info("Session %s created", identity.session_id)

        for sub in self.registry.snapshot():
            sub.events.bind_loop(loop)
            if not sub.created:
                sub_id = await self._create_subscription(sub.settings)
                self.registry.rekey(sub, sub_id)

        self._opened = True
        self._pipeline.start()
        self._monitor.start()

    async def close(self, delete_subscriptions: bool | None = None) -> None:
        """Close the session, aborting any recovery in progress.

        Every in-flight publish is drained exactly once before the channel
        is closed.
        """
        if self.state == SessionState.CLOSED:
            return
        if delete_subscriptions is None:
            delete_subscriptions = self._config.delete_subscriptions_on_close

        self.events.emit(EventKind.SESSION_CLOSING, self)
        was_open = self._opened
        self._opened = False

        await self._controller.abort()
        if self._reconnect_handler is not None:
            await self._reconnect_handler.stop()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        await self._monitor.stop()
        await self._pipeline.stop(cancel=True)

        if was_open:
            try:
                await invoke(
                    self._channel.close,
                    delete_subscriptions,
                    timeout=self._config.operation_timeout,
                )
            except Exception as exc:
                logger.warning("Channel close failed: %s", exc)

        logger.info("Session closed")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.events.flush, 1.0)
        self.events.close()
        for sub in self.registry.snapshot():
            sub.events.close()

    async def reconnect(self) -> ReconnectOutcome:
        """Make one recovery attempt now."""
        return await self._controller.reconnect()

    # -- Subscriptions --------------------------------------------------------

    async def add_subscription(
        self, subscription: Subscription | SubscriptionSettings | None = None
    ) -> Subscription:
        """Register a subscription, creating it server-side if the session is open."""
        self._controller.ensure_usable()
        if not isinstance(subscription, Subscription):
            subscription = Subscription(
                subscription,
                out_of_order_threshold=self._config.out_of_order_threshold,
                outdated_threshold=self._config.outdated_threshold,
                synchronous_events=self.events.synchronous,
            )
        if self._opened:
            subscription.events.bind_loop(asyncio.get_running_loop())
            if not subscription.created:
                subscription.assign_id(await self._create_subscription(subscription.settings))
        self.registry.add(subscription)
        return subscription

    async def remove_subscription(
        self, subscription: Subscription, *, delete: bool = True
    ) -> bool:
        """Detach *subscription*, deleting it server-side unless *delete* is False."""
        self._controller.ensure_usable()
        if not self.registry.remove(subscription):
            return False
        if delete and self._opened and subscription.id is not None:
            await invoke(
                self._channel.delete_subscriptions,
                [subscription.id],
                timeout=self._config.operation_timeout,
            )
        return True

    async def _create_subscription(self, settings: SubscriptionSettings) -> int:
        return await invoke(
            self._channel.create_subscription,
            settings,
            timeout=self._config.operation_timeout,
        )

    # -- Configuration --------------------------------------------------------

    def update_config(self, **changes: Any) -> SessionConfig:
        """Change the mutable configuration fields of a live session.

        Raises:
            ValueError: For immutable or unknown fields, or invalid values.
        """
        self._controller.ensure_usable()
        invalid = set(changes) - MUTABLE_CONFIG_FIELDS
        if invalid:
            raise ValueError(f"Cannot change {sorted(invalid)} on a live session")
        new = self._config.replace(**changes)
        old = self._config
        self._config = new
        self._pipeline.apply_config(new)
        self._controller.apply_config(new)
        if new.keep_alive_interval != old.keep_alive_interval:
            self._monitor.set_interval(new.keep_alive_interval)
        logger.info("Session configuration updated: %s", changes)
        self.events.emit(EventKind.SESSION_CONFIGURATION_CHANGED, new)
        return new

    # -- Component callbacks --------------------------------------------------

    def _on_activity(self) -> None:
        self._monitor.record_activity()

    def _on_session_fatal(self, exc: BaseException) -> None:
        self._begin_recovery(f"publish fault: {exc}")

    def _on_unrecoverable(self, exc: BaseException) -> None:
        self._controller.mark_failed(exc)

    def _on_keep_alive_missed(self) -> None:
        self._begin_recovery("keep-alive timeout")

    def _begin_recovery(self, reason: str) -> None:
        """Enter SUSPECT and start the first reconnect attempt right away.

        With ``auto_reconnect`` the handler makes that attempt (it starts on
        SUSPECT) and keeps retrying; otherwise one attempt is made here and
        further ones are up to the application.
        """
        if not self._controller.mark_suspect(reason):
            return
        if self._reconnect_handler is None:
            self._fire_task(self._reconnect_once())

    async def _reconnect_once(self) -> None:
        try:
            outcome = await self._controller.reconnect()
        except (SessionFailedError, SessionClosedError):
            return
        if outcome.state == SessionState.SUSPECT:
            logger.warning(
                "Reconnect attempt failed (%s), call reconnect() to retry", outcome.error
            )

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _ping(self) -> Any:
        return await invoke(
            self._channel.keep_alive, timeout=self._config.operation_timeout
        )

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return session statistics."""
        identity = self.identity
        return {
            "state": self.state.value,
            "session_id": identity.session_id if identity else None,
            "subscriptions": [s.get_stats() for s in self.registry.snapshot()],
            "pipeline": self._pipeline.get_stats(),
            "keep_alive": self._monitor.get_stats(),
            "reconnect": self._controller.get_stats(),
            "auto_reconnect_attempts": (
                self._reconnect_handler.attempts if self._reconnect_handler else None
            ),
        }

    def __repr__(self) -> str:
        identity = self.identity
        return (
            f"Session(id={identity.session_id if identity else None}, "
            f"state={self.state.value}, subscriptions={len(self.registry)})"
        )
