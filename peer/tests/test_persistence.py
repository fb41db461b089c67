"""
Tests for persistence and recovery components.

These tests cover:
- RedisActionChannel: per-room action broadcasting over Redis pub/sub
- PostgresRoomStore: room records in PostgreSQL
- CheckpointService: checkpoint writes and divergence detection
- RecoveryService: resuming an unfinished game
- InactivityWatchdog, client identity, config and logging helpers

Redis and asyncpg are replaced with mocks.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest
import redis.asyncio as redis

from actions import DrawFromDeck, StartDrawGamble
from config import PeerConfig
from game import GameState, PlayerId, create_initial_state
from identity import get_or_create_client_id
from logging_config import (
    ContextLogger,
    DevelopmentFormatter,
    JSONFormatter,
    peer_context,
    record_context,
    room_id_var,
)
from models.room import RoomStatus, Role
from reducer import game_reducer
from room import RoomService
from services.checkpoint_service import CheckpointService
from services.recovery_service import RecoveryService
from services.watchdog import InactivityWatchdog
from stores.base import ConnectionStatus, RoomCodeTakenError
from stores.memory import InMemoryRoomStore
from stores.pubsub import ChannelMessage, RedisActionChannel
from stores.room_store import PostgresRoomStore


# =============================================================================
# Fixtures
# =============================================================================

class FakeAcquire:
    """Async context manager standing in for pool.acquire()."""

    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool and its connection."""
    conn = AsyncMock()
    pool = MagicMock()
    pool.acquire = MagicMock(return_value=FakeAcquire(conn))
    pool.close = AsyncMock()
    return pool, conn


def room_row(**overrides) -> dict:
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "code": "ABCD",
        "host_id": "host-id",
        "guest_id": None,
        "status": "waiting",
        "game_state": None,
        "current_player": None,
        "last_move_at": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


async def _idle_get_message(**kwargs):
    await asyncio.sleep(0.01)
    return None


@pytest.fixture
def mock_pubsub_redis():
    """Create mock Redis with pubsub support."""
    mock = AsyncMock()
    mock_pubsub = AsyncMock()
    mock_pubsub.subscribe = AsyncMock()
    mock_pubsub.unsubscribe = AsyncMock()
    mock_pubsub.get_message = AsyncMock(side_effect=_idle_get_message)
    mock_pubsub.aclose = AsyncMock()
    mock.pubsub = MagicMock(return_value=mock_pubsub)
    mock.publish = AsyncMock(return_value=1)
    return mock, mock_pubsub


# =============================================================================
# RedisActionChannel Tests
# =============================================================================

class TestRedisActionChannel:

    @pytest.mark.asyncio
    async def test_subscribe_to_room(self, mock_pubsub_redis):
        redis_client, mock_ps = mock_pubsub_redis
        channel = RedisActionChannel(redis_client, sender_id="peer-1")
        statuses = []

        await channel.subscribe("room-1", AsyncMock(), on_status=statuses.append)
        try:
            mock_ps.subscribe.assert_called_once_with("beefy:game:room-1")
            assert "beefy:game:room-1" in channel._handlers
            assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
        finally:
            await channel.unsubscribe("room-1")

    @pytest.mark.asyncio
    async def test_unsubscribe_from_room(self, mock_pubsub_redis):
        redis_client, mock_ps = mock_pubsub_redis
        channel = RedisActionChannel(redis_client, sender_id="peer-1")
        statuses = []

        await channel.subscribe("room-1", AsyncMock(), on_status=statuses.append)
        await channel.unsubscribe("room-1")

        mock_ps.unsubscribe.assert_called_once_with("beefy:game:room-1")
        assert "beefy:game:room-1" not in channel._handlers
        assert statuses[-1] == ConnectionStatus.DISCONNECTED
        mock_ps.aclose.assert_awaited()

    @pytest.mark.asyncio
    async def test_subscribe_failure_reports_error(self, mock_pubsub_redis):
        redis_client, mock_ps = mock_pubsub_redis
        mock_ps.subscribe.side_effect = redis.ConnectionError("refused")
        channel = RedisActionChannel(redis_client, sender_id="peer-1")
        statuses = []

        await channel.subscribe("room-1", AsyncMock(), on_status=statuses.append)
        assert statuses[-1] == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_publish_message(self, mock_pubsub_redis):
        redis_client, _ = mock_pubsub_redis
        channel = RedisActionChannel(redis_client, sender_id="peer-1")

        count = await channel.publish("room-1", '{"seq": 1}')

        assert count == 1
        call_args = redis_client.publish.call_args
        assert call_args[0][0] == "beefy:game:room-1"
        sent = json.loads(call_args[0][1])
        assert sent == {"room_id": "room-1", "sender_id": "peer-1", "payload": '{"seq": 1}'}

    @pytest.mark.asyncio
    async def test_publish_failure_raises_connection_error(self, mock_pubsub_redis):
        redis_client, _ = mock_pubsub_redis
        redis_client.publish.side_effect = redis.ConnectionError("down")
        channel = RedisActionChannel(redis_client, sender_id="peer-1")

        with pytest.raises(ConnectionError):
            await channel.publish("room-1", "{}")

    @pytest.mark.asyncio
    async def test_own_messages_skipped(self, mock_pubsub_redis):
        redis_client, _ = mock_pubsub_redis
        channel = RedisActionChannel(redis_client, sender_id="peer-1")
        handler = AsyncMock()
        channel._handlers["beefy:game:room-1"] = handler

        own = ChannelMessage(room_id="room-1", sender_id="peer-1", payload="mine")
        other = ChannelMessage(room_id="room-1", sender_id="peer-2", payload="theirs")
        await channel._handle_message({"channel": b"beefy:game:room-1", "data": own.to_json().encode()})
        await channel._handle_message({"channel": b"beefy:game:room-1", "data": other.to_json().encode()})

        handler.assert_awaited_once_with("theirs")

    @pytest.mark.asyncio
    async def test_garbage_message_ignored(self, mock_pubsub_redis):
        redis_client, _ = mock_pubsub_redis
        channel = RedisActionChannel(redis_client, sender_id="peer-1")
        handler = AsyncMock()
        channel._handlers["beefy:game:room-1"] = handler

        await channel._handle_message({"channel": "beefy:game:room-1", "data": "not json"})
        await channel._handle_message({"channel": "beefy:game:room-1", "data": "{}"})
        handler.assert_not_awaited()

    def test_channel_message_serialization(self):
        message = ChannelMessage(room_id="r", sender_id="s", payload="p")
        assert ChannelMessage.from_json(message.to_json()) == message


# =============================================================================
# PostgresRoomStore Tests
# =============================================================================

class TestPostgresRoomStore:

    @pytest.mark.asyncio
    async def test_insert_room(self, mock_pool):
        pool, conn = mock_pool
        row = room_row(code="WXYZ")
        conn.fetchrow.return_value = row
        store = PostgresRoomStore(pool)

        record = await store.insert_room("WXYZ", "host-id")

        assert record.id == str(row["id"])
        assert record.code == "WXYZ"
        assert record.status == RoomStatus.WAITING
        assert conn.fetchrow.call_args[0][1:] == ("WXYZ", "host-id")

    @pytest.mark.asyncio
    async def test_insert_duplicate_code(self, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.side_effect = asyncpg.UniqueViolationError("duplicate key")
        store = PostgresRoomStore(pool)

        with pytest.raises(RoomCodeTakenError):
            await store.insert_room("ABCD", "host-id")

    @pytest.mark.asyncio
    async def test_update_room_serializes_fields(self, mock_pool):
        pool, conn = mock_pool
        state = create_initial_state(1)
        conn.fetchrow.return_value = room_row(
            status="playing", game_state=state.to_json(), current_player="guest",
        )
        store = PostgresRoomStore(pool)

        record = await store.update_room(
            "room-1",
            {"status": RoomStatus.PLAYING, "game_state": state.to_dict(), "current_player": Role.GUEST},
        )

        query, *values = conn.fetchrow.call_args[0]
        assert query.startswith("UPDATE rooms SET status = $2, game_state = $3, current_player = $4")
        assert "AND status" not in query
        assert values[0] == "room-1"
        assert values[1] == "playing"
        assert json.loads(values[2]) == state.to_dict()
        assert values[3] == "guest"
        assert record.game_state == json.loads(state.to_json())
        assert record.current_player == Role.GUEST

    @pytest.mark.asyncio
    async def test_conditional_update(self, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.return_value = None
        store = PostgresRoomStore(pool)

        result = await store.update_room(
            "room-1", {"status": RoomStatus.FINISHED}, expected_status=RoomStatus.PLAYING
        )

        query, *values = conn.fetchrow.call_args[0]
        assert "AND status = $3" in query
        assert values == ["room-1", "finished", "playing"]
        assert result is None

    @pytest.mark.asyncio
    async def test_update_unknown_field(self, mock_pool):
        pool, _ = mock_pool
        store = PostgresRoomStore(pool)
        with pytest.raises(KeyError):
            await store.update_room("room-1", {"host_id": "me"})

    @pytest.mark.asyncio
    async def test_delete_room(self, mock_pool):
        pool, conn = mock_pool
        conn.execute.return_value = "DELETE 1"
        store = PostgresRoomStore(pool)
        assert await store.delete_room("room-1")

        conn.execute.return_value = "DELETE 0"
        assert not await store.delete_room("room-1")

    @pytest.mark.asyncio
    async def test_cleanup_old_rooms(self, mock_pool):
        pool, conn = mock_pool
        conn.execute.return_value = "DELETE 3"
        store = PostgresRoomStore(pool)

        assert await store.cleanup_old_rooms(60, 24) == 3
        assert conn.execute.call_args[0][1:] == (60, 24)

    @pytest.mark.asyncio
    async def test_change_notification_dispatched(self, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.return_value = room_row(status="finished")
        store = PostgresRoomStore(pool)
        handler = AsyncMock()
        store._handlers["room-1"] = [handler]

        await store._dispatch_change("room-1")

        handler.assert_awaited_once()
        assert handler.call_args[0][0].status == RoomStatus.FINISHED

    @pytest.mark.asyncio
    async def test_subscribe_requires_url(self, mock_pool):
        pool, _ = mock_pool
        store = PostgresRoomStore(pool)
        with pytest.raises(RuntimeError):
            await store.subscribe("room-1", AsyncMock())


# =============================================================================
# CheckpointService Tests
# =============================================================================

class TestCheckpointService:

    @pytest.fixture
    def rooms(self):
        rooms = MagicMock(spec=RoomService)
        rooms.update_game_state = AsyncMock(return_value=True)
        rooms.end_game = AsyncMock(return_value=True)
        return rooms

    def test_should_checkpoint_on_turn_change(self):
        state = create_initial_state(1)
        drawn = game_reducer(state, DrawFromDeck())
        assert CheckpointService.should_checkpoint(state, drawn)

    def test_no_checkpoint_for_hints(self):
        state = create_initial_state(1)
        assert not CheckpointService.should_checkpoint(state, game_reducer(state, StartDrawGamble()))
        assert not CheckpointService.should_checkpoint(state, state)

    def test_checkpoint_on_win(self):
        state = create_initial_state(1)
        assert CheckpointService.should_checkpoint(state, replace(state, winner=PlayerId.P1))

    @pytest.mark.asyncio
    async def test_checkpoint_writes_turn(self, rooms):
        service = CheckpointService(rooms, "room-1")
        state = game_reducer(create_initial_state(1), DrawFromDeck())

        assert await service.checkpoint(state)
        rooms.update_game_state.assert_awaited_once_with("room-1", state, PlayerId.P2)

        # Identical state is not written twice
        assert await service.checkpoint(state)
        assert rooms.update_game_state.await_count == 1

    @pytest.mark.asyncio
    async def test_checkpoint_win_ends_game(self, rooms):
        service = CheckpointService(rooms, "room-1")
        won = replace(create_initial_state(1), winner=PlayerId.P1)

        await service.checkpoint(won)
        rooms.end_game.assert_awaited_once_with("room-1", won)
        rooms.update_game_state.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_checkpoint_retried_next_time(self, rooms):
        rooms.update_game_state.return_value = False
        service = CheckpointService(rooms, "room-1")
        state = game_reducer(create_initial_state(1), DrawFromDeck())

        assert not await service.checkpoint(state)
        rooms.update_game_state.return_value = True
        assert await service.checkpoint(state)
        assert rooms.update_game_state.await_count == 2

    @pytest.mark.asyncio
    async def test_own_checkpoint_not_divergent(self, rooms):
        service = CheckpointService(rooms, "room-1")
        start = create_initial_state(1)
        after = game_reducer(start, DrawFromDeck())
        await service.checkpoint(after)
        assert not service.is_divergent(after.to_dict(), start)

    def test_equal_checkpoint_not_divergent(self, rooms):
        service = CheckpointService(rooms, "room-1")
        state = create_initial_state(1)
        assert not service.is_divergent(state.to_dict(), state)

    def test_local_selection_ignored(self, rooms):
        service = CheckpointService(rooms, "room-1")
        state = create_initial_state(1)
        assert not service.is_divergent(state.to_dict(), game_reducer(state, StartDrawGamble()))

    def test_stale_checkpoint_not_divergent(self, rooms):
        service = CheckpointService(rooms, "room-1")
        old = create_initial_state(1)
        local = game_reducer(old, DrawFromDeck())
        assert not service.is_divergent(old.to_dict(), local)

    def test_newer_checkpoint_divergent(self, rooms):
        service = CheckpointService(rooms, "room-1")
        local = create_initial_state(1)
        remote = game_reducer(local, DrawFromDeck())
        assert service.is_divergent(remote.to_dict(), local)

    def test_missing_or_garbage_checkpoint(self, rooms):
        service = CheckpointService(rooms, "room-1")
        local = create_initial_state(1)
        assert not service.is_divergent(None, local)
        assert not service.is_divergent({"deck": "nope"}, local)
        assert not service.is_divergent({"deck": ["card-0"], "centerPiles": []}, local)
        assert not service.is_divergent({**local.to_dict(), "players": ["P1", "P2"]}, local)


# =============================================================================
# RecoveryService Tests
# =============================================================================

class TestRecoveryService:

    @pytest.fixture
    def store(self):
        return InMemoryRoomStore()

    async def _started_room(self, store):
        host = RoomService(store, "host-id")
        guest = RoomService(store, "guest-id")
        room = await host.create_room()
        await guest.join_room(room.code)
        return await host.start_game(room.id, seed=9)

    @pytest.mark.asyncio
    async def test_nothing_to_resume(self, store):
        recovery = RecoveryService(RoomService(store, "guest-id"))
        assert await recovery.find_resumable_game() is None

    @pytest.mark.asyncio
    async def test_resume_active_game(self, store):
        room = await self._started_room(store)
        result = await RecoveryService(RoomService(store, "guest-id")).find_resumable_game()

        assert result.success
        assert result.room.id == room.id
        assert result.role == Role.GUEST
        assert result.state == GameState.from_dict(room.game_state)

    @pytest.mark.asyncio
    async def test_corrupt_checkpoint(self, store):
        room = await self._started_room(store)
        await store.update_room(room.id, {"game_state": {"deck": 7}})

        result = await RecoveryService(RoomService(store, "host-id")).find_resumable_game()
        assert not result.success
        assert result.error == "corrupt_checkpoint"

    @pytest.mark.asyncio
    async def test_misshapen_checkpoint(self, store):
        room = await self._started_room(store)
        await store.update_room(room.id, {"game_state": {"deck": ["card-0"], "centerPiles": []}})

        result = await RecoveryService(RoomService(store, "guest-id")).find_resumable_game()
        assert not result.success
        assert result.error == "corrupt_checkpoint"

    @pytest.mark.asyncio
    async def test_finished_game_not_resumed(self, store):
        room = await self._started_room(store)
        await RoomService(store, "host-id").end_game_by_inactivity(room.id)
        assert await RecoveryService(RoomService(store, "host-id")).find_resumable_game() is None


# =============================================================================
# InactivityWatchdog Tests
# =============================================================================

class TestInactivityWatchdog:

    def _watchdog(self, now, last, active=True):
        on_expired = AsyncMock()
        dog = InactivityWatchdog(
            timeout=60,
            interval=0.01,
            clock=lambda: now[0],
            last_move=lambda: last,
            is_active=lambda: active,
            on_expired=on_expired,
        )
        return dog, on_expired

    @pytest.mark.asyncio
    async def test_fires_once_after_timeout(self):
        now = [1000.0]
        dog, on_expired = self._watchdog(now, last=1000.0)

        now[0] = 1059.0
        assert not await dog.check()
        assert dog.seconds_remaining() == pytest.approx(1.0)

        now[0] = 1060.0
        assert await dog.check()
        assert not await dog.check()
        on_expired.assert_awaited_once()
        assert dog.seconds_remaining() == 0.0

    @pytest.mark.asyncio
    async def test_inactive_game_never_fires(self):
        dog, on_expired = self._watchdog([5000.0], last=0.0, active=False)
        assert not await dog.check()
        on_expired.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_background_loop(self):
        dog, on_expired = self._watchdog([5000.0], last=0.0)
        dog.start()
        await asyncio.sleep(0.05)
        await dog.stop()
        on_expired.assert_awaited_once()


# =============================================================================
# Identity, config and logging
# =============================================================================

class TestClientIdentity:

    def test_creates_and_reuses_id(self, tmp_path):
        path = tmp_path / "nested" / "client_id"
        first = get_or_create_client_id(str(path))
        assert uuid.UUID(first)
        assert path.read_text() == first
        assert get_or_create_client_id(str(path)) == first

    def test_empty_file_regenerated(self, tmp_path):
        path = tmp_path / "client_id"
        path.write_text("")
        assert get_or_create_client_id(str(path))


class TestConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("INACTIVITY_TIMEOUT_SECONDS", raising=False)
        cfg = PeerConfig.from_env()
        assert cfg.INACTIVITY_TIMEOUT_SECONDS == 60
        assert cfg.ROOM_CODE_LENGTH == 4

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("INACTIVITY_TIMEOUT_SECONDS", "15")
        monkeypatch.setenv("ECHO_SUPPRESS_SECONDS", "0.5")
        monkeypatch.setenv("DEBUG", "yes")
        cfg = PeerConfig.from_env()
        assert cfg.INACTIVITY_TIMEOUT_SECONDS == 15
        assert cfg.ECHO_SUPPRESS_SECONDS == 0.5
        assert cfg.DEBUG is True


class TestLogging:

    def _record(self, **extra):
        record = logging.LogRecord("peer", logging.WARNING, __file__, 1, "checkpoint diverged", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_context(self):
        token = room_id_var.set("room-123")
        try:
            data = json.loads(JSONFormatter().format(self._record(role="guest")))
        finally:
            room_id_var.reset(token)
        assert data["message"] == "checkpoint diverged"
        assert data["room_id"] == "room-123"
        assert data["role"] == "guest"

    def test_development_formatter_shows_room_code(self):
        output = DevelopmentFormatter().format(self._record(room_code="ABCD", role="host"))
        assert "[room=ABCD, host]" in output

    def test_context_logger_merges_extra(self):
        logger = ContextLogger(logging.getLogger("peer")).with_context(room_code="ABCD")
        msg, kwargs = logger.with_context(role="host").process("hi", {})
        assert kwargs["extra"] == {"room_code": "ABCD", "role": "host"}

    def test_peer_context_is_scoped(self):
        with peer_context(room_id="room-9", role="host"):
            assert record_context(self._record()) == {"room_id": "room-9", "role": "host"}
        assert record_context(self._record()) == {}
