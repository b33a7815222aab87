# =============================================================================
# UA Session -- Synchronous Wrapper
# =============================================================================
#
# Thread-based wrapper around Session for blocking usage.
# =============================================================================

from __future__ import annotations

import asyncio
import queue
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Coroutine

from ._logging import logger
from .channel import SessionChannel
from .errors import UASessionError, UATimeoutError
from .session import Session
from .subscription import Subscription
from .types import (
    EventKind,
    NotificationMessage,
    ReconnectConfig,
    ReconnectOutcome,
    SessionConfig,
    SessionState,
    SubscriptionSettings,
)


class SyncSession:
    """Blocking / thread-based session.

    Runs a :class:`Session` on a background event loop thread. All public
    methods are thread-safe and block until complete.

    Args:
        channel: RPC layer implementing :class:`SessionChannel`.
        config: Session configuration.
        credentials: Opaque user identity handed to ``activate``.
        auto_reconnect: Backoff for automatic recovery.
        queue_size: Max notifications buffered for ``recv()`` (default 1000).

    Example (pull)::

        session = SyncSession(channel)
        session.open()
        session.add_subscription(SubscriptionSettings(publishing_interval=1.0))
        message = session.recv(timeout=5.0)
        session.close()

    Example (callbacks)::

        @session.on(EventKind.DATA_LOSS)
        def handle(info):
            print(info.subscription_id, info.lost)
    """

    def __init__(
        self,
        channel: SessionChannel,
        config: SessionConfig | None = None,
        *,
        credentials: Any = None,
        auto_reconnect: ReconnectConfig | None = None,
        queue_size: int = 1000,
    ) -> None:
        self._channel = channel
        self._config = config or SessionConfig()
        self._credentials = credentials
        self._auto_reconnect = auto_reconnect

        self._message_queue: queue.Queue[NotificationMessage | None] = queue.Queue(
            maxsize=queue_size
        )
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._session: Session | None = None
        self._ready = threading.Event()
        self._stopped: asyncio.Event | None = None
        self._open_error: BaseException | None = None

    # -- Lifecycle ------------------------------------------------------------

    def open(self, timeout: float = 15.0) -> None:
        """Open the session on a background thread. Blocks until ready."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._ready.clear()
        self._open_error = None
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="ua-session"
        )
        self._thread.start()

        if not self._ready.wait(timeout=timeout):
            self._shutdown(timeout=3.0)
            raise UATimeoutError(f"Session open timed out after {timeout}s")

        if self._open_error is not None:
            err = self._open_error
            self._shutdown(timeout=3.0)
            raise err

    def close(self, delete_subscriptions: bool | None = None, timeout: float = 10.0) -> None:
        """Close the session and stop the background thread."""
        if self._loop is not None and self._session is not None:
            try:
                self._call(self._session.close(delete_subscriptions), timeout)
            except Exception as exc:
                logger.warning("Session close failed: %s", exc)
        self._shutdown(timeout=timeout)

    # -- Operations -----------------------------------------------------------

    def add_subscription(
        self,
        subscription: Subscription | SubscriptionSettings | None = None,
        timeout: float | None = None,
    ) -> Subscription:
        """Create a subscription; its notifications also feed ``recv()``."""
        session = self._require()
        sub = self._call(session.add_subscription(subscription), timeout)
        sub.events.subscribe(EventKind.PUBLISH, self._enqueue)
        return sub

    def remove_subscription(
        self, subscription: Subscription, *, delete: bool = True, timeout: float | None = None
    ) -> bool:
        session = self._require()
        subscription.events.unsubscribe(EventKind.PUBLISH, self._enqueue)
        return self._call(session.remove_subscription(subscription, delete=delete), timeout)

    def reconnect(self, timeout: float | None = None) -> ReconnectOutcome:
        """Make one recovery attempt. Blocks until it finishes."""
        session = self._require()
        return self._call(session.reconnect(), timeout)

    def update_config(self, **changes: Any) -> SessionConfig:
        session = self._require()

        async def _update() -> SessionConfig:
            return session.update_config(**changes)

        return self._call(_update(), None)

    # -- Receive --------------------------------------------------------------

    def recv(self, timeout: float | None = None) -> NotificationMessage:
        """Receive the next notification. Blocks until available.

        Raises:
            UATimeoutError: If *timeout* expires.
            UASessionError: If the session is closed.
        """
        try:
            message = self._message_queue.get(timeout=timeout)
        except queue.Empty:
            raise UATimeoutError("recv() timed out") from None

        if message is None:
            raise UASessionError("Session closed")
        return message

    # -- Handler registration -------------------------------------------------

    def on(
        self, kind: EventKind
    ) -> Callable[[Callable[[Any], Any]], Callable[[Any], Any]]:
        """Decorator for session event observers (sync callbacks)."""
        session = self._require()
        return session.events.on(kind)

    def off(self, kind: EventKind, fn: Callable[[Any], Any]) -> None:
        """Remove a specific observer."""
        session = self._require()
        session.events.unsubscribe(kind, fn)

    # -- Properties -----------------------------------------------------------

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def state(self) -> SessionState:
        if self._session:
            return self._session.state
        return SessionState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._session is not None and self._session.is_open

    @property
    def queue_size(self) -> int:
        return self._message_queue.qsize()

    def get_stats(self) -> dict[str, Any]:
        if self._session:
            return self._session.get_stats()
        return {}

    # -- Internal -------------------------------------------------------------

    def _require(self) -> Session:
        if self._session is None or self._loop is None:
            raise UASessionError("Session is not open")
        return self._session

    def _call(self, coro: Coroutine[Any, Any, Any], timeout: float | None) -> Any:
        loop = self._loop
        if loop is None:
            coro.close()
            raise UASessionError("Session is not open")
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        if timeout is None:
            timeout = self._config.operation_timeout
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            raise UATimeoutError(f"Operation timed out after {timeout}s") from None

    def _enqueue(self, message: NotificationMessage) -> None:
        try:
            self._message_queue.put_nowait(message)
        except queue.Full:
            # Drop oldest
            try:
                self._message_queue.get_nowait()
                self._message_queue.put_nowait(message)
            except (queue.Empty, queue.Full):
                pass

    def _shutdown(self, timeout: float) -> None:
        loop = self._loop
        if loop is not None and self._stopped is not None:
            try:
                loop.call_soon_threadsafe(self._stopped.set)
            except RuntimeError:
                logger.debug("Background loop already closed")
        try:
            self._message_queue.put_nowait(None)
        except queue.Full:
            pass
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

    def _run_loop(self) -> None:
        """Background thread: run the async event loop."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            loop.run_until_complete(self._async_main())
        except Exception as exc:
            logger.error("Background loop error: %s", exc)
        finally:
            self._loop = None
            loop.close()

    async def _async_main(self) -> None:
        """Async entry point in the background thread."""
        self._stopped = asyncio.Event()
        self._session = Session(
            self._channel,
            self._config,
            credentials=self._credentials,
            auto_reconnect=self._auto_reconnect,
        )
        try:
            await self._session.open()
        except Exception as exc:
            logger.error("Session open failed: %s", exc)
            self._open_error = exc
            self._ready.set()
            await self._session.close()
            return
        self._ready.set()
        await self._stopped.wait()
        if self._session.state != SessionState.CLOSED:
            await self._session.close()
