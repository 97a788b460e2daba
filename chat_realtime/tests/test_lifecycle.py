"""
Tests for connection open/close handling and presence transitions.
"""

import asyncio
import json

import pytest

from chat_realtime.handlers.connection import LifecycleManager
from chat_realtime.handlers.router import EventRouter

from .conftest import FakeConnection, create_invalid_token, create_test_token, flush, make_session


@pytest.fixture
def lifecycle(registry, subscriptions, presence) -> LifecycleManager:
    return LifecycleManager(registry, subscriptions, presence)


@pytest.fixture
def router(registry, subscriptions, presence, store) -> EventRouter:
    return EventRouter(registry, subscriptions, presence, store)


async def join(router, session, channel_id: int) -> None:
    await router.dispatch(session, json.dumps({"type": "join-channel", "channelId": channel_id}))


def status_frames(session) -> list[dict]:
    return session.connection.of_type("status-changed")


class TestOnOpen:
    """Tests for authenticating new connections."""

    @pytest.mark.asyncio
    async def test_open_registers_session(self, lifecycle, registry, store):
        connection = FakeConnection()

        session = await lifecycle.on_open(connection, create_test_token(1, "alice"))
        await flush(session)

        assert session is not None
        assert registry.get_sessions(1) == {session}
        assert store.presence[1] == "online"
        assert connection.frames == [{"type": "connected", "userId": 1, "username": "alice"}]

    @pytest.mark.asyncio
    async def test_invalid_token_closes_connection(self, lifecycle, registry, store):
        connection = FakeConnection()

        session = await lifecycle.on_open(connection, create_invalid_token())

        assert session is None
        assert connection.close_code == 4001
        assert connection.close_message == b"invalid token"
        assert registry.session_count() == 0
        assert store.presence == {}

    @pytest.mark.asyncio
    async def test_missing_token_closes_connection(self, lifecycle):
        connection = FakeConnection()

        assert await lifecycle.on_open(connection, None) is None
        assert connection.close_code == 4001
        assert connection.close_message == b"missing token"

    @pytest.mark.asyncio
    async def test_authenticator_crash_closes_connection(self, registry, subscriptions, presence):
        def broken(token):
            raise RuntimeError("key service down")

        lifecycle = LifecycleManager(registry, subscriptions, presence, authenticator=broken)
        connection = FakeConnection()

        assert await lifecycle.on_open(connection, "token") is None
        assert connection.close_code == 4001
        assert connection.close_message == b"authentication failed"

    @pytest.mark.asyncio
    async def test_presence_failure_keeps_connection(self, lifecycle, registry, store):
        store.fail_presence = True
        connection = FakeConnection()

        session = await lifecycle.on_open(connection, create_test_token(1, "alice"))
        await flush(session)

        assert registry.is_online(1)
        assert [f["type"] for f in connection.frames] == ["connected", "error"]
        assert connection.close_code is None


class TestOnClose:
    """Tests for teardown and the offline transition."""

    @pytest.mark.asyncio
    async def test_close_last_session_goes_offline(self, lifecycle, router, registry, store):
        session = await lifecycle.on_open(FakeConnection(), create_test_token(1, "alice"))
        watcher = make_session(2, "bob")
        registry.add(2, watcher)
        await join(router, session, 7)
        await join(router, watcher, 7)
        await flush(watcher)

        await lifecycle.on_close(session)
        await flush(watcher)

        assert not registry.is_online(1)
        assert store.presence[1] == "offline"
        assert status_frames(watcher) == [
            {"type": "status-changed", "userId": 1, "username": "alice", "status": "offline"}
        ]
        assert session.joined_channels == set()

    @pytest.mark.asyncio
    async def test_two_sessions_close_one_at_a_time(self, lifecycle, router, registry, store):
        token = create_test_token(1, "alice")
        first = await lifecycle.on_open(FakeConnection(), token)
        second = await lifecycle.on_open(FakeConnection(), token)
        watcher = make_session(2, "bob")
        registry.add(2, watcher)
        await join(router, first, 7)
        await join(router, second, 7)
        await join(router, watcher, 7)

        await lifecycle.on_close(first)
        await flush(watcher)

        assert store.presence[1] == "online"
        assert status_frames(watcher) == []

        await lifecycle.on_close(second)
        await flush(watcher)

        assert store.presence[1] == "offline"
        assert len(status_frames(watcher)) == 1

    @pytest.mark.asyncio
    async def test_offline_reaches_channels_of_earlier_sessions(self, lifecycle, router, registry):
        token = create_test_token(1, "alice")
        first = await lifecycle.on_open(FakeConnection(), token)
        second = await lifecycle.on_open(FakeConnection(), token)
        watcher = make_session(2, "bob")
        registry.add(2, watcher)
        await join(router, first, 7)
        await join(router, second, 8)
        await join(router, watcher, 7)
        await join(router, watcher, 8)

        await lifecycle.on_close(first)
        await lifecycle.on_close(second)
        await flush(watcher)

        assert len(status_frames(watcher)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_close_broadcasts_once(self, lifecycle, router, registry, store):
        token = create_test_token(1, "alice")
        first = await lifecycle.on_open(FakeConnection(), token)
        second = await lifecycle.on_open(FakeConnection(), token)
        watcher = make_session(2, "bob")
        registry.add(2, watcher)
        for session in (first, second, watcher):
            await join(router, session, 7)
        await join(router, first, 8)
        await join(router, watcher, 8)
        await flush(watcher)

        await asyncio.gather(lifecycle.on_close(first), lifecycle.on_close(second))
        await flush(watcher)

        offline = [f for f in status_frames(watcher) if f["status"] == "offline"]
        assert len(offline) == 2  # one per channel
        assert store.presence_log.count((1, "offline")) == 1
        assert store.presence[1] == "offline"
        assert not registry.is_online(1)

    @pytest.mark.asyncio
    async def test_double_close_is_noop(self, lifecycle, router, registry, store):
        session = await lifecycle.on_open(FakeConnection(), create_test_token(1, "alice"))
        watcher = make_session(2)
        registry.add(2, watcher)
        await join(router, session, 7)
        await join(router, watcher, 7)

        await lifecycle.on_close(session)
        await lifecycle.on_close(session)
        await flush(watcher)

        assert len(status_frames(watcher)) == 1
        assert store.presence_log.count((1, "offline")) == 1

    @pytest.mark.asyncio
    async def test_reconnect_during_close_stays_online(self, lifecycle, registry, store):
        token = create_test_token(1, "alice")
        first = await lifecycle.on_open(FakeConnection(), token)

        closing = asyncio.create_task(lifecycle.on_close(first))
        opening = asyncio.create_task(lifecycle.on_open(FakeConnection(), token))
        await asyncio.gather(closing, opening)

        assert registry.is_online(1)
        assert store.presence[1] == "online"

    @pytest.mark.asyncio
    async def test_events_after_close_ignored(self, lifecycle, router, subscriptions):
        session = await lifecycle.on_open(FakeConnection(), create_test_token(1, "alice"))
        await lifecycle.on_close(session)

        await join(router, session, 7)

        assert subscriptions.subscribers(7) == set()


class TestCancelledLifecycle:
    """Tests for open/close when the connection handler is cancelled midway."""

    @pytest.mark.asyncio
    async def test_cancelled_close_still_goes_offline(self, lifecycle, router, registry, store):
        session = await lifecycle.on_open(FakeConnection(), create_test_token(1, "alice"))
        watcher = await lifecycle.on_open(FakeConnection(), create_test_token(2, "bob"))
        await join(router, session, 7)
        await join(router, watcher, 7)

        closing = asyncio.create_task(lifecycle.on_close(session))
        await asyncio.sleep(0)
        closing.cancel()
        with pytest.raises(asyncio.CancelledError):
            await closing
        await lifecycle.wait_idle()
        await flush(watcher)

        assert not registry.is_online(1)
        assert store.presence[1] == "offline"
        assert status_frames(watcher) == [
            {"type": "status-changed", "userId": 1, "username": "alice", "status": "offline"}
        ]
        assert session._writer is None

    @pytest.mark.asyncio
    async def test_cancelled_close_then_second_close_is_noop(self, lifecycle, store):
        session = await lifecycle.on_open(FakeConnection(), create_test_token(1, "alice"))

        closing = asyncio.create_task(lifecycle.on_close(session))
        await asyncio.sleep(0)
        closing.cancel()
        with pytest.raises(asyncio.CancelledError):
            await closing
        await lifecycle.on_close(session)
        await lifecycle.wait_idle()

        assert store.presence_log.count((1, "offline")) == 1

    @pytest.mark.asyncio
    async def test_cancelled_open_is_torn_down(self, lifecycle, registry, store):
        connection = FakeConnection()

        opening = asyncio.create_task(lifecycle.on_open(connection, create_test_token(1, "alice")))
        await asyncio.sleep(0)
        opening.cancel()
        with pytest.raises(asyncio.CancelledError):
            await opening
        await lifecycle.wait_idle()

        assert not registry.is_online(1)
        assert registry.session_count() == 0
        assert store.presence_log == [(1, "online"), (1, "offline")]
        assert connection.sent == []
