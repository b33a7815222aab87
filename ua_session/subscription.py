# =============================================================================
# UA Session -- Subscription
# =============================================================================

from __future__ import annotations

import itertools
import time
from typing import Any

from .constants import OUT_OF_ORDER_THRESHOLD, OUTDATED_THRESHOLD
from .events import EventDispatcher
from .sequence import SequenceWindow
from .types import SubscriptionSettings

_client_handles = itertools.count(1)


class Subscription:
    """Client-side view of one server subscription.

    Holds the requested settings, the server-assigned id (``None`` until the
    subscription is created), the sequence window and the subscription's own
    observers (``PUBLISH``, ``DATA_LOSS``).

    Args:
        settings: Requested publishing parameters.
        subscription_id: Server id, when the subscription already exists.
        display_name: Free text for logs.
        out_of_order_threshold: See :class:`SequenceWindow`.
        outdated_threshold: See :class:`SequenceWindow`.
    """

    def __init__(
        self,
        settings: SubscriptionSettings | None = None,
        *,
        subscription_id: int | None = None,
        display_name: str = "",
        out_of_order_threshold: int = OUT_OF_ORDER_THRESHOLD,
        outdated_threshold: int = OUTDATED_THRESHOLD,
        synchronous_events: bool = False,
    ) -> None:
        self.settings = settings or SubscriptionSettings()
        self.display_name = display_name
        self.client_handle = next(_client_handles)
        self.window = SequenceWindow(
            out_of_order_threshold=out_of_order_threshold,
            outdated_threshold=outdated_threshold,
        )
        self.events = EventDispatcher(synchronous=synchronous_events)
        self.last_notification_at: float | None = None
        self.notification_count = 0
        self._id = subscription_id

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def created(self) -> bool:
        return self._id is not None

    def assign_id(self, subscription_id: int | None) -> None:
        """Set the server id. Use the registry's ``rekey`` for registered subs."""
        self._id = subscription_id

    def record_notification(self) -> None:
        self.notification_count += 1
        self.last_notification_at = time.monotonic()

    def clone(self, copy_observers: bool = False) -> Subscription:
        """Duplicate configuration under a fresh identity.

        The clone has no server id and an empty window. It shares no mutable
        state with this subscription; observers are copied only when
        *copy_observers* is set.
        """
        clone = Subscription(
            self.settings,
            display_name=self.display_name,
            out_of_order_threshold=self.window.out_of_order_threshold,
            outdated_threshold=self.window.outdated_threshold,
            synchronous_events=self.events.synchronous,
        )
        if copy_observers:
            self.events.copy_to(clone.events)
        return clone

    def get_stats(self) -> dict[str, Any]:
        return {
            "id": self._id,
            "client_handle": self.client_handle,
            "display_name": self.display_name,
            "notifications": self.notification_count,
            "window": self.window.get_stats(),
        }

    def __repr__(self) -> str:
        return (
            f"Subscription(id={self._id}, handle={self.client_handle}, "
            f"last_acked={self.window.last_acked})"
        )
