# =============================================================================
# UA Session -- Type Definitions
# =============================================================================

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .constants import (
    DEFAULT_PUBLISH_REQUEST_COUNT,
    KEEP_ALIVE_INTERVAL,
    MAX_PUBLISH_REQUEST_COUNT,
    OPERATION_TIMEOUT,
    OUT_OF_ORDER_THRESHOLD,
    OUTDATED_THRESHOLD,
    RECONNECT_BASE_DELAY,
    RECONNECT_FACTOR,
    RECONNECT_MAX_ATTEMPTS,
    RECONNECT_MAX_DELAY,
    RECONNECT_TIMEOUT,
    SESSION_TIMEOUT,
)


class SessionState(str, Enum):
    """Session lifecycle state.

    Typical flow: CONNECTED -> SUSPECT -> RECONNECTING -> TRANSFERRING or
    RECREATING -> CONNECTED. FAILED and CLOSED are terminal.
    """

    CONNECTED = "connected"
    SUSPECT = "suspect"
    RECONNECTING = "reconnecting"
    TRANSFERRING = "transferring"
    RECREATING = "recreating"
    FAILED = "failed"
    CLOSED = "closed"


class SequenceClass(str, Enum):
    """Classification of an incoming sequence number against a window."""

    IN_ORDER = "in-order"
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out-of-order"
    GAP = "gap"


class FaultSeverity(str, Enum):
    """How far a service fault reaches.

    TRANSIENT -- one request failed, the channel is still usable.
    SESSION_FATAL -- session or channel gone, reconnect needed.
    UNRECOVERABLE -- identity or certificate rejected, session is lost.
    """

    TRANSIENT = "transient"
    SESSION_FATAL = "session-fatal"
    UNRECOVERABLE = "unrecoverable"


class EventKind(str, Enum):
    """Observable session events."""

    KEEP_ALIVE = "keep_alive"
    PUBLISH = "publish"
    PUBLISH_ERROR = "publish_error"
    SEQUENCE_NUMBERS_TO_ACKNOWLEDGE = "sequence_numbers_to_acknowledge"
    SUBSCRIPTIONS_CHANGED = "subscriptions_changed"
    SESSION_CLOSING = "session_closing"
    SESSION_CONFIGURATION_CHANGED = "session_configuration_changed"
    DATA_LOSS = "data_loss"
    STATE_CHANGED = "state_changed"


class ReconnectMode(str, Enum):
    """Backoff strategy for automatic reconnection."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIBONACCI = "fibonacci"


class ChangeType(str, Enum):
    """Kind of registry mutation reported by SUBSCRIPTIONS_CHANGED."""

    ADDED = "added"
    REMOVED = "removed"
    REKEYED = "rekeyed"


# -- Identity / configuration --------------------------------------------------


@dataclass(frozen=True, slots=True)
class SessionIdentity:
    """Server-assigned session identity.

    Attributes:
        session_id: Server session id.
        auth_token: Authentication token bound to the session.
        revised_timeout: Session timeout in seconds as revised by the server.
    """

    session_id: str
    auth_token: str
    revised_timeout: float = SESSION_TIMEOUT


@dataclass(frozen=True)
class SessionConfig:
    """Configuration for one session object.

    Immutable for the session's lifetime except the fields listed in
    :data:`MUTABLE_CONFIG_FIELDS`, which :meth:`Session.update_config` may
    change.

    Attributes:
        session_name: Human readable name sent on session creation.
        session_timeout: Requested server-side session timeout (seconds).
        keep_alive_interval: Keep-alive tick period (seconds).
        min_publish_request_count: Lower bound for outstanding publishes.
        max_publish_request_count: Upper bound, at most 100.
        transfer_subscriptions_on_reconnect: Transfer subscriptions when the
            original session is still valid after a reconnect.
        delete_subscriptions_on_close: Delete subscriptions server-side on
            close, and drop untransferable ones instead of recreating them.
        reconnect_timeout: Bound on one channel reconnect attempt.
        operation_timeout: Bound on ordinary service calls.
        out_of_order_threshold: Span of missing numbers waited for before
            asking the server to republish.
        outdated_threshold: Gap beyond which missing numbers are lost.
        preferred_locales: Locale ids sent on activation.
        max_request_message_size: 0 means no limit.
    """

    session_name: str = "ua-session"
    session_timeout: float = SESSION_TIMEOUT
    keep_alive_interval: float = KEEP_ALIVE_INTERVAL
    min_publish_request_count: int = DEFAULT_PUBLISH_REQUEST_COUNT
    max_publish_request_count: int = MAX_PUBLISH_REQUEST_COUNT
    transfer_subscriptions_on_reconnect: bool = True
    delete_subscriptions_on_close: bool = True
    reconnect_timeout: float = RECONNECT_TIMEOUT
    operation_timeout: float = OPERATION_TIMEOUT
    out_of_order_threshold: int = OUT_OF_ORDER_THRESHOLD
    outdated_threshold: int = OUTDATED_THRESHOLD
    preferred_locales: tuple[str, ...] = ()
    max_request_message_size: int = 0

    def __post_init__(self) -> None:
        if self.keep_alive_interval <= 0:
            raise ValueError("keep_alive_interval must be positive")
        if self.min_publish_request_count < 1:
            raise ValueError("min_publish_request_count must be >= 1")
        if not (1 <= self.max_publish_request_count <= MAX_PUBLISH_REQUEST_COUNT):
            raise ValueError(
                f"max_publish_request_count must be in 1..{MAX_PUBLISH_REQUEST_COUNT}"
            )
        if self.min_publish_request_count > self.max_publish_request_count:
            raise ValueError("min_publish_request_count exceeds maximum")
        if self.out_of_order_threshold < 1 or self.outdated_threshold < 1:
            raise ValueError("sequence thresholds must be positive")
        if self.out_of_order_threshold > self.outdated_threshold:
            raise ValueError("out_of_order_threshold exceeds outdated_threshold")
        if self.reconnect_timeout <= 0 or self.operation_timeout <= 0:
            raise ValueError("timeouts must be positive")

    def replace(self, **changes: Any) -> SessionConfig:
        return dataclasses.replace(self, **changes)


MUTABLE_CONFIG_FIELDS = frozenset(
    {"keep_alive_interval", "min_publish_request_count", "operation_timeout"}
)


@dataclass
class ReconnectConfig:
    """Backoff settings for :class:`~ua_session.reconnect.ReconnectHandler`.

    Attributes:
        mode: Backoff strategy (default: exponential).
        base_delay: Delay in seconds before the first retry.
        max_delay: Maximum delay cap in seconds.
        max_attempts: Max retries, ``-1`` for infinite.
        factor: Multiplier per attempt for exponential backoff.
        jitter: Randomize delays by +/-10%.
    """

    mode: ReconnectMode = ReconnectMode.EXPONENTIAL
    base_delay: float = RECONNECT_BASE_DELAY
    max_delay: float = RECONNECT_MAX_DELAY
    max_attempts: int = RECONNECT_MAX_ATTEMPTS
    factor: float = RECONNECT_FACTOR
    jitter: bool = True


@dataclass(frozen=True)
class SubscriptionSettings:
    """Client-requested subscription parameters.

    ``monitored_items`` is opaque to the engine; it is handed back to the
    channel unchanged when a subscription has to be recreated.
    """

    publishing_interval: float = 1.0
    lifetime_count: int = 60
    max_keep_alive_count: int = 10
    max_notifications_per_publish: int = 0
    priority: int = 0
    publishing_enabled: bool = True
    monitored_items: tuple[Any, ...] = ()


# -- Wire-level values ---------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SubscriptionAcknowledgement:
    subscription_id: int
    sequence_number: int


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    """A publish (or republish) response.

    Attributes:
        subscription_id: Subscription the message belongs to.
        sequence_number: Per-subscription sequence number. For keep-alive
            messages this is the *next* number and is not consumed.
        payload: Notification data, opaque to the engine.
        publish_time: Server timestamp, if provided.
        keep_alive: True when the server had nothing to report.
        available_sequence_numbers: Numbers the server still retains for
            republish.
        more_notifications: Server has more queued for this subscription.
    """

    subscription_id: int
    sequence_number: int
    payload: Any = None
    publish_time: float | None = None
    keep_alive: bool = False
    available_sequence_numbers: tuple[int, ...] = ()
    more_notifications: bool = False


@dataclass(frozen=True, slots=True)
class TransferResult:
    subscription_id: int
    success: bool
    status_code: str = "Good"
    available_sequence_numbers: tuple[int, ...] = ()


# -- Engine state --------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SequenceVerdict:
    """Outcome of feeding one sequence number to a window.

    Attributes:
        kind: The classification.
        sequence_number: The number that was classified.
        missing: Numbers still missing below the highest received one.
        lost: Numbers declared permanently lost by this call.
    """

    kind: SequenceClass
    sequence_number: int
    missing: tuple[int, ...] = ()
    lost: tuple[int, ...] = ()


@dataclass
class PublishSlot:
    """An in-flight publish request."""

    handle: int
    issued_at: float
    acks: list[SubscriptionAcknowledgement] = field(default_factory=list)
    task: Any = None


@dataclass
class ReconnectContext:
    """Transient state of one recovery episode."""

    phase: SessionState
    deadline: float | None = None
    pending_transfer: tuple[int, ...] = ()
    reason: str = ""
    started_at: float | None = None


# -- Event payloads ------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class KeepAliveStatus:
    state: SessionState
    last_activity: float
    suspect: bool
    server_state: Any = None


@dataclass(frozen=True, slots=True)
class PublishErrorInfo:
    error: BaseException
    severity: FaultSeverity
    subscription_id: int | None = None
    sequence_number: int | None = None


@dataclass
class AcknowledgementBatch:
    """Payload of SEQUENCE_NUMBERS_TO_ACKNOWLEDGE.

    Observers may move entries from ``acknowledgements`` to ``deferred``;
    deferred entries stay queued for a later request.
    """

    acknowledgements: list[SubscriptionAcknowledgement]
    deferred: list[SubscriptionAcknowledgement] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DataLossInfo:
    subscription_id: int
    lost: tuple[int, ...]
    last_acknowledged: int


@dataclass(frozen=True, slots=True)
class SubscriptionsChange:
    change: ChangeType
    subscription_ids: tuple[int, ...]
    count: int


@dataclass(frozen=True, slots=True)
class StateChange:
    old: SessionState
    new: SessionState
    reason: str = ""


@dataclass(frozen=True, slots=True)
class ReconnectOutcome:
    """Result of one :meth:`ReconnectController.reconnect` attempt."""

    state: SessionState
    transferred: tuple[int, ...] = ()
    recreated: tuple[int, ...] = ()
    deleted: tuple[int, ...] = ()
    error: BaseException | None = None

    @property
    def recovered(self) -> bool:
        return self.state == SessionState.CONNECTED
