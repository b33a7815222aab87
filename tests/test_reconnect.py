"""Tests for the reconnect controller and the auto-reconnect handler."""

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import settle, wait_until
from ua_session.errors import (
    ServiceFault,
    SessionFailedError,
    UAConnectionError,
)
from ua_session.reconnect import ReconnectHandler, _fib
from ua_session.session import Session
from ua_session.types import (
    EventKind,
    ReconnectConfig,
    ReconnectMode,
    SessionConfig,
    SessionState,
)


async def _session_with_two_subscriptions(channel, config=None, **kwargs):
    session = Session(channel, config or SessionConfig(), synchronous_events=True, **kwargs)
    await session.open()
    a = await session.add_subscription()
    b = await session.add_subscription()
    await settle()

    channel.notify(a.id, 1)
    channel.notify(b.id, 1)
    channel.notify(b.id, 2)
    channel.notify(b.id, 4)
    await settle()
    return session, a, b


def _record_states(session):
    states = []
    session.events.subscribe(EventKind.STATE_CHANGED, lambda c: states.append(c.new))
    return states


def _window(sub):
    return sub.window.last_acked, sub.window.missing()


class TestSuspect:
    @pytest.mark.asyncio
    async def test_session_fatal_publish_fault(self, channel):
        session, _, _ = await _session_with_two_subscriptions(channel)
        states = _record_states(session)
        channel.reconnect_gate = asyncio.Event()

        channel.push(ServiceFault("BadSecureChannelClosed"))
        await settle()
        assert states == [SessionState.SUSPECT, SessionState.RECONNECTING]
        assert session.pipeline.paused

        channel.reconnect_gate.set()
        assert await wait_until(lambda: session.state == SessionState.CONNECTED)
        assert not session.pipeline.paused
        await session.close()

    @pytest.mark.asyncio
    async def test_keep_alive_miss_reconnects_immediately(self, channel):
        session, _, _ = await _session_with_two_subscriptions(channel)
        states = _record_states(session)
        monitor = session.keep_alive

        monitor.tick(monitor.deadline + 0.5)
        assert session.state == SessionState.SUSPECT
        assert await wait_until(lambda: session.state == SessionState.CONNECTED)
        assert states[:2] == [SessionState.SUSPECT, SessionState.RECONNECTING]
        assert states[-1] == SessionState.CONNECTED
        assert channel.reconnect_calls == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_failed_automatic_attempt_stays_suspect(self, channel):
        session, _, _ = await _session_with_two_subscriptions(channel)
        channel.reconnect_errors = [UAConnectionError("refused")]
        monitor = session.keep_alive

        monitor.tick(monitor.deadline + 0.5)
        assert await wait_until(lambda: channel.reconnect_calls == 1)
        await settle()
        assert session.state == SessionState.SUSPECT
        assert session.pipeline.paused

        outcome = await session.reconnect()
        assert outcome.recovered
        await session.close()

    @pytest.mark.asyncio
    async def test_mark_suspect_once_per_episode(self, channel):
        session, _, _ = await _session_with_two_subscriptions(channel)
        assert session.controller.mark_suspect("first") is True
        assert session.controller.mark_suspect("second") is False
        assert session.controller.context.reason == "first"
        await session.close()

    @pytest.mark.asyncio
    async def test_close_cancels_automatic_attempt(self, channel):
        session, _, _ = await _session_with_two_subscriptions(channel)
        channel.reconnect_gate = asyncio.Event()
        monitor = session.keep_alive

        monitor.tick(monitor.deadline + 0.5)
        await settle()
        assert session.state == SessionState.RECONNECTING
        await session.close()
        assert session.state == SessionState.CLOSED


class TestTransfer:
    @pytest.mark.asyncio
    async def test_both_subscriptions_confirmed(self, channel):
        session, a, b = await _session_with_two_subscriptions(channel)
        before = [_window(a), _window(b)]
        assert before == [(1, ()), (2, (3,))]
        states = _record_states(session)

        outcome = await session.reconnect()

        assert states == [
            SessionState.SUSPECT,
            SessionState.RECONNECTING,
            SessionState.TRANSFERRING,
            SessionState.CONNECTED,
        ]
        assert outcome.recovered
        assert outcome.transferred == (a.id, b.id)
        assert channel.transfer_calls == [([a.id, b.id], False)]
        assert [_window(a), _window(b)] == before
        assert session.identity.session_id == "session-1"
        await session.close()

    @pytest.mark.asyncio
    async def test_transport_failure_recovers_by_transfer(self, channel):
        session, a, b = await _session_with_two_subscriptions(channel)
        before = [_window(a), _window(b)]
        states = _record_states(session)

        channel.push(UAConnectionError("transport failure"))
        assert await wait_until(lambda: session.state == SessionState.CONNECTED and states)
        assert states == [
            SessionState.SUSPECT,
            SessionState.RECONNECTING,
            SessionState.TRANSFERRING,
            SessionState.CONNECTED,
        ]
        assert [_window(a), _window(b)] == before
        await session.close()

    @pytest.mark.asyncio
    async def test_recovery_resumes_pipeline_and_rearms_monitor(self, channel):
        session, a, _ = await _session_with_two_subscriptions(channel)
        monitor = session.keep_alive
        monitor.tick(monitor.deadline + 0.5)
        assert monitor.suspect

        assert await wait_until(lambda: session.state == SessionState.CONNECTED)
        await settle()
        assert not monitor.suspect
        assert not session.pipeline.paused
        assert session.pipeline.outstanding >= 2

        # Notifications keep flowing after recovery.
        channel.notify(a.id, 2)
        await settle()
        assert a.window.last_acked == 2
        await session.close()

    @pytest.mark.asyncio
    async def test_unconfirmed_subscription_deleted(self, channel):
        session, a, b = await _session_with_two_subscriptions(channel)
        channel.transfer_confirm = {a.id}
        old_b = b.id

        outcome = await session.reconnect()
        assert outcome.transferred == (a.id,)
        assert outcome.deleted == (old_b,)
        assert b not in session.registry
        assert channel.deleted == [[old_b]]
        await session.close()

    @pytest.mark.asyncio
    async def test_unconfirmed_subscription_recreated(self, channel):
        config = SessionConfig(delete_subscriptions_on_close=False)
        session, a, b = await _session_with_two_subscriptions(channel, config)
        channel.transfer_confirm = {a.id}
        old_b = b.id

        outcome = await session.reconnect()
        assert outcome.transferred == (a.id,)
        assert outcome.recreated == (b.id,)
        assert b.id != old_b
        assert session.registry.get(b.id) is b
        assert _window(b) == (0, ())
        assert _window(a) == (1, ())
        await session.close(delete_subscriptions=False)

    @pytest.mark.asyncio
    async def test_transfer_disabled(self, channel):
        config = SessionConfig(transfer_subscriptions_on_reconnect=False)
        session, _, _ = await _session_with_two_subscriptions(channel, config)
        states = _record_states(session)

        outcome = await session.reconnect()
        assert outcome.state == SessionState.CONNECTED
        assert channel.transfer_calls == []
        assert SessionState.TRANSFERRING not in states
        await session.close()


class TestRecreate:
    @pytest.mark.asyncio
    async def test_session_unknown_recreates_everything(self, channel):
        session, a, b = await _session_with_two_subscriptions(channel)
        old_ids = (a.id, b.id)
        states = _record_states(session)
        identities = []
        session.events.subscribe(EventKind.SESSION_CONFIGURATION_CHANGED, identities.append)

        channel.invalid_sessions.add("session-1")
        outcome = await session.reconnect()

        assert states == [
            SessionState.SUSPECT,
            SessionState.RECONNECTING,
            SessionState.RECREATING,
            SessionState.CONNECTED,
        ]
        assert outcome.recreated == (a.id, b.id)
        assert (a.id, b.id) != old_ids
        assert _window(a) == (0, ())
        assert _window(b) == (0, ())
        assert a.window.pending_acks == ()
        assert session.identity.session_id == "session-2"
        assert [i.session_id for i in identities] == ["session-2"]
        assert channel.transfer_calls == []
        await session.close()

    @pytest.mark.asyncio
    async def test_restarted_server_reuses_subscription_ids(self, channel):
        session, a, b = await _session_with_two_subscriptions(channel)
        assert (a.id, b.id) == (1, 2)
        seen = []
        a.events.subscribe(EventKind.PUBLISH, lambda m: seen.append(m.sequence_number))

        # New ids overlap the old ones: a takes b's former id.
        channel.restart_server(next_subscription_id=2)
        outcome = await session.reconnect()

        assert outcome.recreated == (2, 3)
        assert (a.id, b.id) == (2, 3)
        assert session.registry.get(2) is a
        assert session.registry.get(3) is b
        assert session.registry.get(1) is None

        await settle()
        channel.notify(a.id, 1)
        await settle()
        assert seen == [1]
        await session.close()


class TestFailure:
    @pytest.mark.asyncio
    async def test_reconnect_failure_stays_suspect(self, channel):
        session, _, _ = await _session_with_two_subscriptions(channel)
        channel.reconnect_errors = [UAConnectionError("refused")]

        outcome = await session.reconnect()
        assert outcome.state == SessionState.SUSPECT
        assert isinstance(outcome.error, UAConnectionError)
        assert session.state == SessionState.SUSPECT
        assert session.pipeline.paused

        outcome = await session.reconnect()
        assert outcome.recovered
        await session.close()

    @pytest.mark.asyncio
    async def test_unrecoverable_moves_to_failed(self, channel):
        session, _, _ = await _session_with_two_subscriptions(channel)
        channel.activate_error = ServiceFault("BadIdentityTokenRejected")

        outcome = await session.reconnect()
        assert outcome.state == SessionState.FAILED
        assert session.state == SessionState.FAILED
        assert not session.keep_alive.suspect

        with pytest.raises(SessionFailedError):
            await session.add_subscription()
        with pytest.raises(SessionFailedError):
            await session.reconnect()

        await session.close()
        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_unrecoverable_publish_fault(self, channel):
        session, _, _ = await _session_with_two_subscriptions(channel)
        channel.push(ServiceFault("BadCertificateInvalid"))
        await settle()
        assert session.state == SessionState.FAILED
        await session.close()


class TestCloseDuringReconnect:
    @pytest.mark.asyncio
    async def test_ends_closed_not_failed(self, channel):
        session, _, _ = await _session_with_two_subscriptions(channel)
        states = _record_states(session)
        channel.reconnect_gate = asyncio.Event()

        task = asyncio.ensure_future(session.reconnect())
        await settle()
        assert session.state == SessionState.RECONNECTING

        await session.close()
        outcome = await task
        assert outcome.state == SessionState.CLOSED
        assert session.state == SessionState.CLOSED
        assert SessionState.FAILED not in states
        assert states[-1] == SessionState.CLOSED


class TestReconnectHandler:
    def _delay(self, attempts, **cfg):
        handler = ReconnectHandler(MagicMock(), ReconnectConfig(jitter=False, **cfg))
        handler._attempts = attempts
        return handler._calculate_delay()

    def test_exponential_delay(self):
        assert self._delay(1, base_delay=1.0, factor=2.0) == 1.0
        assert self._delay(3, base_delay=1.0, factor=2.0) == 4.0

    def test_delay_capped(self):
        assert self._delay(20, base_delay=1.0, factor=2.0, max_delay=30.0) == 30.0

    def test_linear_delay(self):
        assert self._delay(3, mode=ReconnectMode.LINEAR, base_delay=1.0) == 3.0

    def test_fibonacci_delay(self):
        delays = [
            self._delay(n, mode=ReconnectMode.FIBONACCI, base_delay=1.0)
            for n in (1, 2, 3, 4, 5)
        ]
        assert delays == [1.0, 1.0, 2.0, 3.0, 5.0]

    def test_jitter_stays_near_delay(self):
        handler = ReconnectHandler(MagicMock(), ReconnectConfig(base_delay=10.0, jitter=True))
        handler._attempts = 1
        for _ in range(50):
            assert 9.0 <= handler._calculate_delay() <= 11.0

    def test_fib(self):
        assert [_fib(n) for n in range(8)] == [0, 1, 1, 2, 3, 5, 8, 13]

    @pytest.mark.asyncio
    async def test_retries_until_recovered(self, channel):
        session, _, _ = await _session_with_two_subscriptions(
            channel, auto_reconnect=ReconnectConfig(base_delay=0.01, jitter=False)
        )
        channel.reconnect_errors = [
            UAConnectionError("refused"),
            UAConnectionError("refused"),
        ]
        handler = session._reconnect_handler

        session.controller.mark_suspect("test")
        outcome = await asyncio.wait_for(handler.wait(), timeout=2.0)
        assert outcome.recovered
        assert handler.attempts == 3
        assert channel.reconnect_calls == 3
        assert session.state == SessionState.CONNECTED
        await session.close()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, channel):
        session, _, _ = await _session_with_two_subscriptions(
            channel,
            auto_reconnect=ReconnectConfig(base_delay=0.01, max_attempts=2, jitter=False),
        )
        channel.reconnect_errors = [UAConnectionError("refused")] * 5
        handler = session._reconnect_handler

        session.controller.mark_suspect("test")
        outcome = await asyncio.wait_for(handler.wait(), timeout=2.0)
        assert outcome is None
        assert channel.reconnect_calls == 2
        assert session.state == SessionState.SUSPECT
        await session.close()
