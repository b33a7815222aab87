"""Shared fixtures: a scriptable in-memory SessionChannel."""

import asyncio
import itertools

import pytest

from ua_session.constants import STATUS_MESSAGE_NOT_AVAILABLE, STATUS_SESSION_ID_INVALID
from ua_session.errors import ServiceFault
from ua_session.types import (
    NotificationMessage,
    SessionIdentity,
    TransferResult,
)


class FakeChannel:
    """SessionChannel double.

    Publish requests block until a response is pushed with :meth:`push` or
    :meth:`notify`; pushed exceptions are raised from the request that
    picks them up.
    """

    def __init__(self):
        self.publish_calls = []
        self.republish_calls = []
        self.activate_calls = []
        self.transfer_calls = []
        self.created_settings = []
        self.deleted = []
        self.closed = []
        self.reconnect_calls = 0
        self.keep_alive_calls = 0
        self.sessions = []

        # Scripting
        self.reconnect_errors = []
        self.reconnect_gate = None
        self.activate_error = None
        self.invalid_sessions = set()
        self.transfer_confirm = None  # None confirms every id
        self.republish_responses = {}

        self._publish_queue = asyncio.Queue()
        self._session_ids = itertools.count(1)
        self._subscription_ids = itertools.count(1)

    # -- Scripting helpers ----------------------------------------------------

    def push(self, item):
        self._publish_queue.put_nowait(item)

    def notify(self, subscription_id, sequence_number, payload=None, **kwargs):
        self.push(
            NotificationMessage(subscription_id, sequence_number, payload, **kwargs)
        )

    def restart_server(self, next_subscription_id=1):
        """Forget every session; subscription ids are handed out again."""
        self.invalid_sessions.update(self.sessions)
        self._subscription_ids = itertools.count(next_subscription_id)

    def acked(self, call_index=-1):
        return [
            (a.subscription_id, a.sequence_number)
            for a in self.publish_calls[call_index]
        ]

    # -- SessionChannel -------------------------------------------------------

    async def reconnect(self):
        self.reconnect_calls += 1
        if self.reconnect_gate is not None:
            await self.reconnect_gate.wait()
        if self.reconnect_errors:
            raise self.reconnect_errors.pop(0)

    async def create_session(self, config):
        n = next(self._session_ids)
        self.sessions.append(f"session-{n}")
        return SessionIdentity(f"session-{n}", f"token-{n}", config.session_timeout)

    async def activate(self, session_id, credentials):
        self.activate_calls.append((session_id, credentials))
        if self.activate_error is not None:
            raise self.activate_error
        if session_id in self.invalid_sessions:
            raise ServiceFault(STATUS_SESSION_ID_INVALID)

    async def publish(self, acks):
        self.publish_calls.append(list(acks))
        item = await self._publish_queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def republish(self, subscription_id, sequence_number):
        self.republish_calls.append((subscription_id, sequence_number))
        item = self.republish_responses.get((subscription_id, sequence_number))
        if item is None:
            raise ServiceFault(STATUS_MESSAGE_NOT_AVAILABLE)
        if isinstance(item, BaseException):
            raise item
        return item

    async def transfer_subscriptions(self, subscription_ids, send_initial_values):
        self.transfer_calls.append((list(subscription_ids), send_initial_values))
        confirm = self.transfer_confirm
        return [
            TransferResult(
                sid,
                success=confirm is None or sid in confirm,
                status_code="Good" if confirm is None or sid in confirm else "BadSubscriptionIdInvalid",
            )
            for sid in subscription_ids
        ]

    async def create_subscription(self, settings):
        self.created_settings.append(settings)
        return next(self._subscription_ids)

    async def delete_subscriptions(self, subscription_ids):
        self.deleted.append(list(subscription_ids))

    async def keep_alive(self):
        self.keep_alive_calls += 1
        return "Running"

    async def close(self, delete_subscriptions):
        self.closed.append(delete_subscriptions)


async def settle(rounds=50):
    """Let scheduled tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def channel():
    return FakeChannel()


async def wait_until(predicate, timeout=2.0):
    """Poll *predicate* until it holds; False on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True
