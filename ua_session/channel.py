# =============================================================================
# UA Session -- RPC Layer Interface
# =============================================================================
#
# The engine never encodes messages itself. It drives a SessionChannel,
# whose methods may be coroutine functions, blocking functions (run on the
# default executor) or functions returning an awaitable.
# =============================================================================

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import inspect
from typing import Any, Callable, Protocol, runtime_checkable

from .errors import UATimeoutError
from .types import (
    NotificationMessage,
    SessionConfig,
    SessionIdentity,
    SubscriptionAcknowledgement,
    SubscriptionSettings,
    TransferResult,
)


@runtime_checkable
class SessionChannel(Protocol):
    """Service calls the session engine consumes.

    Faults are reported by raising :class:`~ua_session.errors.ServiceFault`
    (or :class:`~ua_session.errors.UAConnectionError` when the transport is
    gone).
    """

    def reconnect(self) -> Any:
        """Re-establish channel-level connectivity."""

    def create_session(self, config: SessionConfig) -> SessionIdentity:
        """Create a new server session."""

    def activate(self, session_id: str, credentials: Any) -> Any:
        """Activate (or re-activate) *session_id* on the current channel."""

    def publish(
        self, acks: list[SubscriptionAcknowledgement]
    ) -> NotificationMessage:
        """Pull the next notification, acknowledging *acks*."""

    def republish(self, subscription_id: int, sequence_number: int) -> NotificationMessage:
        """Ask the server to resend one retained notification."""

    def transfer_subscriptions(
        self, subscription_ids: list[int], send_initial_values: bool
    ) -> list[TransferResult]:
        """Move subscriptions to the current session."""

    def create_subscription(self, settings: SubscriptionSettings) -> int:
        """Create a subscription; returns the server id."""

    def delete_subscriptions(self, subscription_ids: list[int]) -> Any:
        """Delete subscriptions server-side."""

    def keep_alive(self) -> Any:
        """Explicit liveness ping, e.g. a server-status read."""

    def close(self, delete_subscriptions: bool) -> Any:
        """Close the session."""


async def invoke(
    fn: Callable[..., Any],
    *args: Any,
    timeout: float | None = None,
    **kwargs: Any,
) -> Any:
    """Call one channel method regardless of its calling convention.

    Raises:
        UATimeoutError: If the call does not complete within *timeout*.
    """
    if inspect.iscoroutinefunction(fn):
        awaitable: Any = fn(*args, **kwargs)
    else:
        loop = asyncio.get_running_loop()
        awaitable = loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    try:
        result = await asyncio.wait_for(awaitable, timeout=timeout)
        if isinstance(result, concurrent.futures.Future):
            result = asyncio.wrap_future(result)
        if inspect.isawaitable(result):
            result = await asyncio.wait_for(result, timeout=timeout)
    except asyncio.TimeoutError:
        name = getattr(fn, "__name__", repr(fn))
        raise UATimeoutError(f"{name} timed out after {timeout}s") from None
    return result
