"""Tests for the subscription registry and subscriptions."""

import threading
from unittest.mock import MagicMock

import pytest

from ua_session.events import EventDispatcher
from ua_session.registry import SubscriptionRegistry
from ua_session.subscription import Subscription
from ua_session.types import ChangeType, EventKind, SubscriptionSettings


def _sub(sub_id=None, **settings) -> Subscription:
    return Subscription(
        SubscriptionSettings(**settings), subscription_id=sub_id, synchronous_events=True
    )


class TestMembership:
    def test_add_and_get(self):
        reg = SubscriptionRegistry()
        sub = _sub(1)
        assert reg.add(sub) is True
        assert reg.get(1) is sub
        assert sub in reg
        assert len(reg) == 1

    def test_add_twice_is_noop(self):
        reg = SubscriptionRegistry()
        sub = _sub(1)
        reg.add(sub)
        assert reg.add(sub) is False
        assert len(reg) == 1

    def test_duplicate_id_rejected(self):
        reg = SubscriptionRegistry()
        reg.add(_sub(1))
        with pytest.raises(ValueError):
            reg.add(_sub(1))

    def test_uncreated_subscriptions_allowed(self):
        reg = SubscriptionRegistry()
        reg.add(_sub())
        reg.add(_sub())
        assert len(reg) == 2
        assert reg.ids() == ()

    def test_remove(self):
        reg = SubscriptionRegistry()
        sub = _sub(1)
        reg.add(sub)
        assert reg.remove(sub) is True
        assert reg.get(1) is None
        assert reg.remove(sub) is False

    def test_remove_many(self):
        reg = SubscriptionRegistry()
        subs = [_sub(i) for i in (1, 2, 3)]
        for s in subs:
            reg.add(s)
        assert reg.remove_many(subs[:2]) == 2
        assert reg.ids() == (3,)

    def test_clear(self):
        reg = SubscriptionRegistry()
        reg.add(_sub(1))
        reg.add(_sub(2))
        removed = reg.clear()
        assert len(removed) == 2
        assert len(reg) == 0


class TestSnapshot:
    def test_snapshot_is_immutable_view(self):
        reg = SubscriptionRegistry()
        reg.add(_sub(1))
        snap = reg.snapshot()
        reg.add(_sub(2))
        assert len(snap) == 1
        assert len(reg.snapshot()) == 2

    def test_active_count(self):
        reg = SubscriptionRegistry()
        reg.add(_sub(1))
        reg.add(_sub(2, publishing_enabled=False))
        reg.add(_sub())  # not created yet
        assert reg.active_count == 1


class TestRekey:
    def test_rekey_moves_index(self):
        reg = SubscriptionRegistry()
        sub = _sub(1)
        reg.add(sub)
        reg.rekey(sub, 7)
        assert sub.id == 7
        assert reg.get(7) is sub
        assert reg.get(1) is None

    def test_rekey_many_with_overlapping_ids(self):
        reg = SubscriptionRegistry()
        a, b = _sub(5), _sub(1)
        reg.add(a)
        reg.add(b)
        reg.rekey_many({a: 1, b: 2})
        assert (a.id, b.id) == (1, 2)
        assert reg.get(1) is a
        assert reg.get(2) is b
        assert reg.get(5) is None

    def test_rekey_many_swap(self):
        reg = SubscriptionRegistry()
        a, b = _sub(1), _sub(2)
        reg.add(a)
        reg.add(b)
        reg.rekey_many({a: 2, b: 1})
        assert reg.get(2) is a
        assert reg.get(1) is b

    def test_rekey_onto_held_id_rejected(self):
        reg = SubscriptionRegistry()
        a, b = _sub(5), _sub(1)
        reg.add(a)
        reg.add(b)
        with pytest.raises(ValueError):
            reg.rekey(a, 1)
        assert reg.get(1) is b
        assert reg.get(5) is a

    def test_rekey_many_duplicate_targets_rejected(self):
        reg = SubscriptionRegistry()
        a, b = _sub(1), _sub(2)
        reg.add(a)
        reg.add(b)
        with pytest.raises(ValueError):
            reg.rekey_many({a: 3, b: 3})
        assert (a.id, b.id) == (1, 2)

    def test_remove_after_id_reuse_keeps_new_holder(self):
        reg = SubscriptionRegistry()
        a, b = _sub(5), _sub(1)
        reg.add(a)
        reg.add(b)
        reg.rekey_many({a: 1, b: 2})
        reg.remove(b)
        assert reg.get(1) is a

    def test_rekey_unregistered_raises(self):
        reg = SubscriptionRegistry()
        with pytest.raises(KeyError):
            reg.rekey(_sub(1), 2)


class TestNotifications:
    def test_changes_emitted(self):
        events = EventDispatcher(synchronous=True)
        reg = SubscriptionRegistry(events)
        changes = []
        events.subscribe(EventKind.SUBSCRIPTIONS_CHANGED, changes.append)

        sub = _sub(1)
        reg.add(sub)
        reg.rekey(sub, 2)
        reg.remove(sub)

        assert [c.change for c in changes] == [
            ChangeType.ADDED,
            ChangeType.REKEYED,
            ChangeType.REMOVED,
        ]
        assert changes[0].subscription_ids == (1,)
        assert changes[1].subscription_ids == (2,)
        assert changes[-1].count == 0

    def test_listener_called(self):
        reg = SubscriptionRegistry()
        listener = MagicMock()
        reg.add_listener(listener)
        reg.add(_sub(1))
        listener.assert_called_once()
        reg.remove_listener(listener)
        reg.add(_sub(2))
        listener.assert_called_once()

    def test_listener_error_isolated(self):
        events = EventDispatcher(synchronous=True)
        reg = SubscriptionRegistry(events)
        reg.add_listener(MagicMock(side_effect=RuntimeError("boom")))
        changes = []
        events.subscribe(EventKind.SUBSCRIPTIONS_CHANGED, changes.append)
        reg.add(_sub(1))
        assert len(changes) == 1


class TestConcurrency:
    def test_concurrent_adds(self):
        reg = SubscriptionRegistry()
        subs = [_sub(i) for i in range(1, 201)]

        def worker(chunk):
            for s in chunk:
                reg.add(s)

        threads = [threading.Thread(target=worker, args=(subs[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(reg) == 200
        assert sorted(reg.ids()) == list(range(1, 201))


class TestClone:
    def test_clone_has_fresh_identity(self):
        sub = _sub(5, publishing_interval=0.25)
        sub.window.accept(1)
        clone = sub.clone()
        assert clone.id is None
        assert clone.settings == sub.settings
        assert clone.window.last_acked == 0
        assert clone.client_handle != sub.client_handle

    def test_clone_shares_no_state(self):
        sub = _sub(5)
        clone = sub.clone()
        clone.window.accept(1)
        assert sub.window.last_acked == 0
        assert clone.window is not sub.window
        assert clone.events is not sub.events

    def test_clone_observers_only_when_requested(self):
        sub = _sub(5)
        sub.events.subscribe(EventKind.PUBLISH, print)
        assert not sub.clone(copy_observers=False).events.has_observers()
        assert sub.clone(copy_observers=True).events.observers(EventKind.PUBLISH) == (print,)

    def test_registry_clone_subscriptions(self):
        reg = SubscriptionRegistry()
        reg.add(_sub(1))
        reg.add(_sub(2))
        clones = reg.clone_subscriptions()
        assert len(clones) == 2
        assert all(c.id is None for c in clones)
        assert all(c not in reg for c in clones)
