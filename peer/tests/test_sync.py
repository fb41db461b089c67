"""
Tests for two-peer synchronization.

These tests wire a host and a guest GameSession through the in-memory
room store and broadcast hub and cover:
- Broadcast of local actions and replay on the opponent
- Local turn gate and remote turn authority
- Echo, duplicate and malformed envelopes
- Send failures healed by the room checkpoint
- Win and inactivity endings
- Connection status reporting
"""

import logging
import time
from unittest.mock import patch

import pytest
import pytest_asyncio

from actions import DrawFromDeck, SelectHandCard, SelectPile, StartDrawGamble
from cards import Card, Rank, Suit
from game import GameState, PlayerId, PlayerState
from models.messages import ActionEnvelope
from models.room import RoomStatus, Role
from room import RoomService
from session import GameOutcome, GameSession
from stores.base import ConnectionStatus
from stores.memory import InMemoryBroadcastHub, InMemoryRoomStore
from sync import MultiplayerSync


# =============================================================================
# Helpers
# =============================================================================

class FakeClock:
    """Manually advanced seconds clock, starting at wall time."""

    def __init__(self):
        self.now = time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def one_move_from_winning() -> GameState:
    """P1 holds a single 5 with no face-down cards left; pile 0 shows a 4."""
    def c(rank, n):
        return Card(id=f"w-{n}", rank=Rank(rank), suit=Suit.CLUBS)

    return GameState(
        deck=(c("9", 1), c("9", 2), c("9", 3)),
        center_piles=((c("4", 4),), (c("J", 5),), (c("J", 6),), (c("J", 7),)),
        players={
            PlayerId.P1: PlayerState(face_down=(None, None, None, None), hand=(c("5", 8),)),
            PlayerId.P2: PlayerState(face_down=(c("8", 9), c("8", 10), c("8", 11), c("8", 12))),
        },
        current_player=PlayerId.P1,
        seed=5,
        first_player_set=True,
    )


class Table:
    """A started room with both peers connected."""

    def __init__(self):
        self.store = InMemoryRoomStore()
        self.hub = InMemoryBroadcastHub()
        self.clock = FakeClock()
        self.host_rooms = RoomService(self.store, "host-id")
        self.guest_rooms = RoomService(self.store, "guest-id")
        self.room = None
        self.host: GameSession = None
        self.guest: GameSession = None

    async def start(self, first=PlayerId.P1, state=None):
        room = await self.host_rooms.create_room()
        await self.guest_rooms.join_room(room.code)
        with patch("room.random.choice", return_value=first):
            room = await self.host_rooms.start_game(room.id, seed=5)
        if state is not None:
            await self.store.update_room(room.id, {"game_state": state.to_dict()})
            room = await self.store.get_room(room.id)
        self.room = room

        self.host = GameSession(room, "host-id", self.host_rooms, self.hub.channel("host-id"), clock=self.clock)
        self.guest = GameSession(room, "guest-id", self.guest_rooms, self.hub.channel("guest-id"), clock=self.clock)
        await self.host.start()
        await self.guest.start()
        return self

    async def publish_raw(self, payload: str) -> None:
        await self.hub.channel("intruder").publish(self.room.id, payload)

    async def stop(self):
        await self.host.stop()
        await self.guest.stop()


@pytest_asyncio.fixture
async def table():
    t = await Table().start()
    yield t
    await t.stop()


def envelope(seq, role, action, timestamp=1000) -> str:
    return ActionEnvelope(seq=seq, player_id=role, action=action, timestamp=timestamp).to_json()


# =============================================================================
# Live play
# =============================================================================

class TestBroadcast:

    @pytest.mark.asyncio
    async def test_local_action_replayed_on_opponent(self, table):
        assert await table.host.dispatch(DrawFromDeck())
        assert table.guest.state.to_json() == table.host.state.to_json()
        assert table.guest.state.current_player == PlayerId.P2

    @pytest.mark.asyncio
    async def test_ui_hint_shown_to_opponent(self, table):
        assert await table.host.dispatch(StartDrawGamble())
        assert table.guest.state.selection == table.host.state.selection

    @pytest.mark.asyncio
    async def test_turn_change_checkpoints(self, table):
        await table.host.dispatch(DrawFromDeck())
        await table.host.flush()

        record = await table.store.get_room(table.room.id)
        assert record.current_player == Role.GUEST
        assert GameState.from_dict(record.game_state).to_json() == table.host.state.to_json()

    @pytest.mark.asyncio
    async def test_both_peers_alternate(self, table):
        await table.host.dispatch(DrawFromDeck())
        await table.guest.dispatch(DrawFromDeck())
        await table.host.dispatch(DrawFromDeck())
        await table.host.flush()
        await table.guest.flush()

        assert table.host.state.move_count == 3
        assert table.guest.state.to_json() == table.host.state.to_json()

    @pytest.mark.asyncio
    async def test_noop_is_not_broadcast(self, table):
        published = len(table.hub.published)
        assert not await table.host.dispatch(SelectPile(pile_index=0))
        assert len(table.hub.published) == published


class TestTurnGate:

    @pytest.mark.asyncio
    async def test_out_of_turn_local_action_refused(self, table):
        before = table.guest.state
        assert not await table.guest.dispatch(DrawFromDeck())
        assert table.guest.state is before
        assert table.hub.published == []

    @pytest.mark.asyncio
    async def test_forged_turn_action_rejected(self, table, caplog):
        before = table.host.state
        with caplog.at_level(logging.WARNING):
            await table.publish_raw(envelope(1, Role.GUEST, {"type": "draw_from_deck"}))
        assert table.host.state is before
        assert "Protocol violation" in caplog.text

    @pytest.mark.asyncio
    async def test_validate_action(self, table):
        state = table.host.state
        assert MultiplayerSync.validate_action(DrawFromDeck(), Role.HOST, state)
        assert not MultiplayerSync.validate_action(DrawFromDeck(), Role.GUEST, state)
        assert MultiplayerSync.validate_action(StartDrawGamble(), Role.GUEST, state)
        assert MultiplayerSync.is_turn_action(SelectPile(pile_index=0))
        assert not MultiplayerSync.is_turn_action(SelectHandCard(index=0))


class TestInboundFiltering:

    @pytest.mark.asyncio
    async def test_own_role_envelope_dropped(self, table, caplog):
        before = table.host.state
        with caplog.at_level(logging.WARNING):
            await table.publish_raw(envelope(1, Role.HOST, {"type": "draw_from_deck"}))
        assert table.host.state is before
        assert "Dropping draw_from_deck seq=1 claiming our own role host" in caplog.text

    @pytest.mark.asyncio
    async def test_malformed_envelope_dropped(self, table, caplog):
        before = table.guest.state
        with caplog.at_level(logging.WARNING):
            await table.publish_raw("not json")
            await table.publish_raw('{"seq": 0, "playerId": "host", "action": {}}')
        assert table.guest.state is before
        assert "malformed" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_action_dropped(self, table, caplog):
        before = table.guest.state
        with caplog.at_level(logging.WARNING):
            await table.publish_raw(envelope(1, Role.HOST, {"type": "deal_me_aces"}))
        assert table.guest.state is before
        assert "invalid action" in caplog.text

    @pytest.mark.asyncio
    async def test_lifecycle_action_not_accepted_remotely(self, table):
        before = table.guest.state
        await table.publish_raw(envelope(1, Role.HOST, {"type": "reset_game", "seed": 1}))
        assert table.guest.state is before

    @pytest.mark.asyncio
    async def test_duplicate_delivery_applied_once(self, table):
        table.hub.duplicate_deliveries = True
        await table.host.dispatch(DrawFromDeck())
        await table.guest.dispatch(DrawFromDeck())
        await table.host.flush()
        await table.guest.flush()

        assert table.host.state.move_count == 2
        assert table.guest.state.to_json() == table.host.state.to_json()

    @pytest.mark.asyncio
    async def test_replayed_seq_dropped_and_resubscribe_accepted(self, table, caplog):
        draw = {"type": "draw_from_deck"}
        await table.publish_raw(envelope(1, Role.HOST, draw, timestamp=1000))
        assert table.guest.state.move_count == 1

        # Same message again: dropped before reaching the session
        caplog.clear()
        with caplog.at_level(logging.WARNING):
            await table.publish_raw(envelope(1, Role.HOST, draw, timestamp=1000))
        assert table.guest.state.move_count == 1
        assert "Protocol violation" not in caplog.text

        # Sender restarted its sequence: passes sequencing, then fails turn authority
        caplog.clear()
        with caplog.at_level(logging.WARNING):
            await table.publish_raw(envelope(1, Role.HOST, draw, timestamp=2000))
        assert table.guest.state.move_count == 1
        assert "Protocol violation" in caplog.text


# =============================================================================
# Recovery through checkpoints
# =============================================================================

class TestCheckpointHealing:

    @pytest.mark.asyncio
    async def test_lost_broadcast_healed_by_checkpoint(self, table):
        table.hub.fail_sends = True
        assert await table.host.dispatch(DrawFromDeck())
        assert table.host.connection_status == ConnectionStatus.ERROR
        await table.host.flush()

        assert table.guest.state.move_count == 1
        assert table.guest.state.to_json() == table.host.state.to_json()

    @pytest.mark.asyncio
    async def test_held_broadcast_after_resync_is_harmless(self, table):
        table.hub.pause()
        await table.host.dispatch(DrawFromDeck())
        await table.host.flush()
        # Guest already healed from the checkpoint
        assert table.guest.state.to_json() == table.host.state.to_json()

        await table.hub.flush()
        assert table.guest.state.to_json() == table.host.state.to_json()

    @pytest.mark.asyncio
    async def test_unreadable_checkpoint_ignored(self, table, caplog):
        before = table.guest.state
        with caplog.at_level(logging.WARNING):
            await table.store.update_room(table.room.id, {"game_state": {"deck": ["card-0"], "centerPiles": []}})

        assert table.guest.state is before
        assert table.guest.outcome == GameOutcome.IN_PROGRESS
        assert "Ignoring unreadable checkpoint" in caplog.text
        assert "Error in room change handler" not in caplog.text

    @pytest.mark.asyncio
    async def test_checkpoint_failure_does_not_block_play(self, table):
        table.store.fail_writes = True
        assert await table.host.dispatch(DrawFromDeck())
        await table.host.flush()
        assert table.guest.state.to_json() == table.host.state.to_json()


# =============================================================================
# Endings
# =============================================================================

class TestEndings:

    @pytest.mark.asyncio
    async def test_win_finishes_room_on_both_peers(self):
        t = await Table().start(state=one_move_from_winning())
        try:
            await t.host.dispatch(SelectHandCard(index=0))
            await t.host.dispatch(SelectPile(pile_index=0))
            await t.host.flush()

            assert t.host.outcome == GameOutcome.WON
            assert t.guest.outcome == GameOutcome.WON
            assert t.guest.winner == PlayerId.P1
            record = await t.store.get_room(t.room.id)
            assert record.status == RoomStatus.FINISHED
            assert record.winner == "P1"

            assert not await t.guest.dispatch(DrawFromDeck())
        finally:
            await t.stop()

    @pytest.mark.asyncio
    async def test_inactivity_ends_game_once(self, table):
        table.clock.advance(30)
        assert not await table.host.watchdog.check()
        assert table.host.seconds_remaining() > 0

        table.clock.advance(120)
        assert await table.host.watchdog.check()
        assert not await table.guest.watchdog.check()

        assert table.host.outcome == GameOutcome.INACTIVITY
        assert table.guest.outcome == GameOutcome.INACTIVITY
        record = await table.store.get_room(table.room.id)
        assert record.status == RoomStatus.FINISHED
        assert record.ended_by_inactivity
        assert not await table.host.dispatch(DrawFromDeck())

    @pytest.mark.asyncio
    async def test_committed_move_resets_timer(self, table):
        table.clock.advance(50)
        await table.host.dispatch(DrawFromDeck())
        table.clock.advance(50)
        assert not await table.guest.watchdog.check()
        assert table.guest.seconds_remaining() == pytest.approx(10, abs=1)


# =============================================================================
# Connection status
# =============================================================================

class TestConnectionStatus:

    @pytest.mark.asyncio
    async def test_connected_after_start(self, table):
        assert table.host.connection_status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_disconnected_after_stop(self):
        t = await Table().start()
        await t.stop()
        assert t.host.connection_status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_channel_error_does_not_gate_local_play(self, table):
        table.hub.report_status(table.room.id, ConnectionStatus.ERROR)
        assert table.host.connection_status == ConnectionStatus.ERROR
        assert await table.host.dispatch(DrawFromDeck())
        assert table.host.state.move_count == 1

    @pytest.mark.asyncio
    async def test_failed_send_does_not_stop_later_broadcasts(self, table):
        table.hub.fail_sends = True
        assert await table.host.dispatch(DrawFromDeck())
        assert table.host.connection_status == ConnectionStatus.ERROR
        await table.host.flush()
        assert table.guest.state.to_json() == table.host.state.to_json()

        table.hub.fail_sends = False
        assert await table.guest.dispatch(DrawFromDeck())
        published = len(table.hub.published)

        assert await table.host.dispatch(DrawFromDeck())
        assert len(table.hub.published) == published + 1
        assert table.host.connection_status == ConnectionStatus.CONNECTED
        assert table.guest.state.to_json() == table.host.state.to_json()

    @pytest.mark.asyncio
    async def test_broadcast_requires_subscription(self):
        sync = MultiplayerSync("room-1", Role.HOST, InMemoryBroadcastHub().channel("host-id"))
        assert not await sync.broadcast(DrawFromDeck())
