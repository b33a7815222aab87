"""Client-side session continuity for subscription-based UA servers.

Keeps subscription notifications flowing across connection loss: pipelined
publish requests, per-subscription sequence validation, keep-alive
supervision and session recovery (transfer or recreate).

Async usage::

    from ua_session import Session, SessionConfig, SubscriptionSettings, EventKind

    async with Session(channel, SessionConfig()) as session:
        sub = await session.add_subscription(SubscriptionSettings(publishing_interval=0.5))

        @sub.events.on(EventKind.PUBLISH)
        def handle(message):
            print(message.sequence_number, message.payload)

Sync usage::

    from ua_session import SyncSession

    session = SyncSession(channel)
    session.open()
    session.add_subscription()
    message = session.recv(timeout=5.0)
    session.close()

Optional extras::

    pip install ua-session[fast]     # orjson for the WebSocket channel
"""

from ._version import __version__
from .channel import SessionChannel
from .errors import (
    ServiceFault,
    SessionClosedError,
    SessionFailedError,
    SessionFatalError,
    TransferError,
    UAConnectionError,
    UASessionError,
    UATimeoutError,
    UnrecoverableError,
    classify_fault,
)
from .events import EventDispatcher
from .keep_alive import KeepAliveMonitor, RecurringTimer
from .pipeline import PublishPipeline
from .reconnect import ReconnectController, ReconnectHandler
from .registry import SubscriptionRegistry
from .sequence import SequenceWindow, classify
from .session import Session
from .subscription import Subscription
from .sync_client import SyncSession
from .transport import WebSocketChannel
from .types import (
    MUTABLE_CONFIG_FIELDS,
    AcknowledgementBatch,
    DataLossInfo,
    EventKind,
    FaultSeverity,
    KeepAliveStatus,
    NotificationMessage,
    PublishErrorInfo,
    ReconnectConfig,
    ReconnectMode,
    ReconnectOutcome,
    SequenceClass,
    SessionConfig,
    SessionIdentity,
    SessionState,
    StateChange,
    SubscriptionAcknowledgement,
    SubscriptionSettings,
    SubscriptionsChange,
    TransferResult,
)

__all__ = [
    "__version__",
    "Session",
    "SyncSession",
    "SessionChannel",
    "WebSocketChannel",
    "Subscription",
    "SubscriptionRegistry",
    "SequenceWindow",
    "classify",
    "PublishPipeline",
    "KeepAliveMonitor",
    "RecurringTimer",
    "ReconnectController",
    "ReconnectHandler",
    "EventDispatcher",
    "EventKind",
    "SessionState",
    "SequenceClass",
    "FaultSeverity",
    "ReconnectMode",
    "SessionConfig",
    "MUTABLE_CONFIG_FIELDS",
    "ReconnectConfig",
    "SessionIdentity",
    "SubscriptionSettings",
    "SubscriptionAcknowledgement",
    "NotificationMessage",
    "TransferResult",
    "AcknowledgementBatch",
    "DataLossInfo",
    "KeepAliveStatus",
    "PublishErrorInfo",
    "ReconnectOutcome",
    "StateChange",
    "SubscriptionsChange",
    "classify_fault",
    "UASessionError",
    "UAConnectionError",
    "UATimeoutError",
    "ServiceFault",
    "SessionFatalError",
    "UnrecoverableError",
    "SessionFailedError",
    "SessionClosedError",
    "TransferError",
]
