# =============================================================================
# UA Session -- Subscription Registry
# =============================================================================
#
# The one structure mutated by both application threads and recovery logic.
# Every mutation swaps in a new immutable snapshot under the lock, so
# readers (pipeline sizing, transfer) never see a partially-updated set.
# =============================================================================

from __future__ import annotations

import threading
from typing import Callable, Iterator

from ._logging import logger
from .events import EventDispatcher
from .subscription import Subscription
from .types import ChangeType, EventKind, SubscriptionsChange

ChangeListener = Callable[[SubscriptionsChange], None]


class SubscriptionRegistry:
    """Thread-safe collection of the subscriptions attached to a session.

    Args:
        events: Session dispatcher; receives ``SUBSCRIPTIONS_CHANGED``.
    """

    def __init__(self, events: EventDispatcher | None = None) -> None:
        self._lock = threading.RLock()
        self._events = events
        self._items: tuple[Subscription, ...] = ()
        self._by_id: dict[int, Subscription] = {}
        self._listeners: list[ChangeListener] = []

    # -- Internal listeners (pipeline) ----------------------------------------

    def add_listener(self, fn: ChangeListener) -> None:
        with self._lock:
            self._listeners.append(fn)

    def remove_listener(self, fn: ChangeListener) -> None:
        with self._lock:
            if fn in self._listeners:
                self._listeners.remove(fn)

    # -- Queries --------------------------------------------------------------

    def snapshot(self) -> tuple[Subscription, ...]:
        """Consistent, immutable view of the current subscriptions."""
        with self._lock:
            return self._items

    def get(self, subscription_id: int) -> Subscription | None:
        with self._lock:
            return self._by_id.get(subscription_id)

    def ids(self) -> tuple[int, ...]:
        return tuple(s.id for s in self.snapshot() if s.id is not None)

    @property
    def active_count(self) -> int:
        """Subscriptions that exist server-side and publish."""
        return sum(
            1 for s in self.snapshot() if s.created and s.settings.publishing_enabled
        )

    def __len__(self) -> int:
        return len(self.snapshot())

    def __iter__(self) -> Iterator[Subscription]:
        return iter(self.snapshot())

    def __contains__(self, subscription: object) -> bool:
        return subscription in self.snapshot()

    # -- Mutation -------------------------------------------------------------

    def add(self, subscription: Subscription) -> bool:
        """Attach *subscription*. Returns False if it is already registered."""
        with self._lock:
            if subscription in self._items:
                return False
            if subscription.id is not None and subscription.id in self._by_id:
                raise ValueError(f"Subscription id {subscription.id} already registered")
            self._items = self._items + (subscription,)
            if subscription.id is not None:
                self._by_id[subscription.id] = subscription
            change = self._change(ChangeType.ADDED, (subscription,))
        self._notify(change)
        return True

    def remove(self, subscription: Subscription) -> bool:
        """Detach *subscription*. Returns False if it was not registered."""
        with self._lock:
            if subscription not in self._items:
                return False
            self._items = tuple(s for s in self._items if s is not subscription)
            if self._by_id.get(subscription.id) is subscription:  # type: ignore[arg-type]
                del self._by_id[subscription.id]  # type: ignore[arg-type]
            change = self._change(ChangeType.REMOVED, (subscription,))
        self._notify(change)
        return True

    def remove_many(self, subscriptions: list[Subscription]) -> int:
        with self._lock:
            doomed = [s for s in subscriptions if s in self._items]
            if not doomed:
                return 0
            self._items = tuple(s for s in self._items if s not in doomed)
            for s in doomed:
                if self._by_id.get(s.id) is s:  # type: ignore[arg-type]
                    del self._by_id[s.id]  # type: ignore[arg-type]
            change = self._change(ChangeType.REMOVED, tuple(doomed))
        self._notify(change)
        return len(doomed)

    def rekey(self, subscription: Subscription, new_id: int | None) -> None:
        """Change the server id of a registered subscription."""
        self.rekey_many({subscription: new_id})

    def rekey_many(self, new_ids: dict[Subscription, int | None]) -> None:
        """Change several server ids at once.

        The id index is rebuilt in one step, so new ids may reuse ids other
        subscriptions held before (a restarted server numbers from 1 again).
        """
        if not new_ids:
            return
        with self._lock:
            for subscription in new_ids:
                if subscription not in self._items:
                    raise KeyError(f"{subscription!r} is not registered")
            targets = [i for i in new_ids.values() if i is not None]
            if len(targets) != len(set(targets)):
                raise ValueError(f"Duplicate subscription ids in {targets}")
            moving = set(new_ids)
            for sub_id in targets:
                holder = self._by_id.get(sub_id)
                if holder is not None and holder not in moving:
                    raise ValueError(f"Subscription id {sub_id} already registered")
            for subscription, new_id in new_ids.items():
                subscription.assign_id(new_id)
            self._by_id = {s.id: s for s in self._items if s.id is not None}
            change = self._change(ChangeType.REKEYED, tuple(new_ids))
        self._notify(change)

    def clear(self) -> list[Subscription]:
        with self._lock:
            removed = list(self._items)
            if not removed:
                return []
            self._items = ()
            self._by_id.clear()
            change = self._change(ChangeType.REMOVED, tuple(removed))
        self._notify(change)
        return removed

    def clone_subscriptions(self, copy_observers: bool = False) -> list[Subscription]:
        """Clone every subscription (fresh identity, no shared state)."""
        return [s.clone(copy_observers) for s in self.snapshot()]

    # -- Internal -------------------------------------------------------------

    def _change(
        self, change: ChangeType, subs: tuple[Subscription, ...]
    ) -> SubscriptionsChange:
        return SubscriptionsChange(
            change=change,
            subscription_ids=tuple(s.id for s in subs if s.id is not None),
            count=len(self._items),
        )

    def _notify(self, change: SubscriptionsChange) -> None:
        logger.debug(
            "Subscriptions %s: ids=%s count=%d",
            change.change.value,
            change.subscription_ids,
            change.count,
        )
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(change)
            except Exception:
                logger.exception("Registry listener failed")
        if self._events is not None:
            self._events.emit(EventKind.SUBSCRIPTIONS_CHANGED, change)
