"""
One peer's view of a live game.

GameSession wires the pure reducer to the outside world:

    local action  -> gate -> reducer -> broadcast -> (turn change?) checkpoint
    remote action -> turn authority -> reducer
    room update   -> inactivity end / divergence -> SyncState
    watchdog      -> end game by inactivity

Local actions are applied before they are sent, so a slow or failed
broadcast never delays the local player. The room checkpoint heals the
opponent if the broadcast was lost.
"""

import asyncio
import time
from enum import Enum
from typing import Callable, Optional

from actions import GameAction, SyncState, is_broadcast_action
from config import config
from game import GameState, PlayerId
from logging_config import get_logger, role_var, room_id_var
from models.room import RoomRecord, RoomStatus, Role, player_for_role
from reducer import game_reducer
from room import RoomError, RoomService
from services.checkpoint_service import CheckpointService
from services.watchdog import InactivityWatchdog
from stores.base import ActionChannel, ConnectionStatus
from sync import MultiplayerSync

logger = get_logger(__name__)


class GameOutcome(str, Enum):
    """How the session ended, if it has."""

    IN_PROGRESS = "in_progress"
    WON = "won"
    INACTIVITY = "inactivity"


StateListener = Callable[[GameState], None]


class GameSession:
    """
    Runs one peer of a two-player game.

    Args:
        room: The PLAYING room record to join.
        client_id: This client's identity.
        rooms: Room operations for this client.
        channel: Broadcast channel.
        clock: Seconds clock (time.time in production).

    Raises:
        RoomError: If the client is not in the room or the game has not
                   been dealt.
    """

    def __init__(
        self,
        room: RoomRecord,
        client_id: str,
        rooms: RoomService,
        channel: ActionChannel,
        clock: Callable[[], float] = time.time,
    ):
        role = room.role_of(client_id)
        if role is None:
            raise RoomError(f"{client_id} is not a member of room {room.code}")
        if not room.game_state:
            raise RoomError(f"Room {room.code} has no game")

        self.room = room
        self.client_id = client_id
        self.role: Role = role
        self.player: PlayerId = player_for_role(role)
        self.rooms = rooms
        self.clock = clock
        self.state = GameState.from_dict(room.game_state)

        self.sync = MultiplayerSync(room.id, role, channel, clock)
        self.checkpoints = CheckpointService(rooms, room.id)
        self.last_move_at: float = room.last_move_at.timestamp() if room.last_move_at else clock()

        if room.status == RoomStatus.FINISHED:
            self.outcome = GameOutcome.WON if self.state.winner else GameOutcome.INACTIVITY
        elif self.state.winner:
            self.outcome = GameOutcome.WON
        else:
            self.outcome = GameOutcome.IN_PROGRESS

        self.watchdog = InactivityWatchdog(
            timeout=config.INACTIVITY_TIMEOUT_SECONDS,
            interval=config.WATCHDOG_INTERVAL_SECONDS,
            clock=clock,
            last_move=lambda: self.last_move_at,
            is_active=lambda: self.outcome == GameOutcome.IN_PROGRESS,
            on_expired=self._on_inactive,
        )

        self._listeners: list[StateListener] = []
        self._tasks: set[asyncio.Task] = set()
        self._started = False
        self.log = logger.with_context(room_code=room.code, role=role.value)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to the room's actions and record changes, start the watchdog."""
        if self._started:
            return
        self._started = True
        room_id_var.set(self.room.id)
        role_var.set(self.role.value)

        await self.sync.subscribe(self._on_remote_action, self._on_connection_change)
        await self.rooms.subscribe(self.room.id, self._on_room_update)
        if self.outcome == GameOutcome.IN_PROGRESS:
            self.watchdog.start()
        self.log.info(f"Session started as {self.player.value}, {self.state.current_player.value} to move")

    async def stop(self) -> None:
        """Release subscriptions and background tasks."""
        if not self._started:
            return
        self._started = False
        await self.watchdog.stop()
        await self.flush()
        await self.sync.unsubscribe()
        await self.rooms.unsubscribe(self.room.id, self._on_room_update)
        self.log.info("Session stopped")

    async def flush(self) -> None:
        """Wait for pending checkpoint writes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def winner(self) -> Optional[PlayerId]:
        return self.state.winner

    @property
    def is_my_turn(self) -> bool:
        return self.outcome == GameOutcome.IN_PROGRESS and self.state.current_player == self.player

    @property
    def connection_status(self) -> ConnectionStatus:
        return self.sync.status

    def seconds_remaining(self) -> float:
        """Seconds until the inactivity timeout."""
        return self.watchdog.seconds_remaining()

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception as e:
                self.log.error(f"Error in state listener: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Local actions
    # -------------------------------------------------------------------------

    async def dispatch(self, action: GameAction) -> bool:
        """
        Apply a local action and send it to the opponent.

        Returns:
            True if the state changed.
        """
        if self.outcome != GameOutcome.IN_PROGRESS or self.state.winner:
            self.log.debug(f"Game over, {action.type.value} ignored")
            return False
        if not is_broadcast_action(action):
            self.log.warning(f"{action.type.value} cannot be dispatched during play")
            return False
        if self.state.current_player != self.player:
            self.log.debug(f"Not our turn, {action.type.value} ignored")
            return False

        prev = self.state
        new = game_reducer(prev, action)
        if new is prev:
            return False

        self._apply(prev, new)
        await self.sync.broadcast(action)

        if self.checkpoints.should_checkpoint(prev, new):
            self._spawn_checkpoint(new)
        return True

    def _spawn_checkpoint(self, state: GameState) -> None:
        task = asyncio.create_task(self.checkpoints.checkpoint(state))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _apply(self, prev: GameState, new: GameState) -> None:
        self.state = new
        if new.move_count > prev.move_count:
            self.last_move_at = self.clock()
        if new.winner and self.outcome == GameOutcome.IN_PROGRESS:
            self.outcome = GameOutcome.WON
            self.log.info(f"{new.winner.value} wins")
        self._notify()

    # -------------------------------------------------------------------------
    # Remote input
    # -------------------------------------------------------------------------

    async def _on_remote_action(self, action: GameAction, from_role: Role) -> None:
        if self.outcome != GameOutcome.IN_PROGRESS:
            return

        if not self.sync.validate_action(action, from_role, self.state):
            self.log.warning(
                f"Protocol violation: {action.type.value} from {from_role.value} "
                f"during {self.state.current_player.value}'s turn"
            )
            return

        # A hint sent before the turn passed would land on the other player's cursor
        if player_for_role(from_role) != self.state.current_player:
            self.log.debug(f"Stale {action.type.value} from {from_role.value} ignored")
            return

        prev = self.state
        new = game_reducer(prev, action)
        if new is not prev:
            self._apply(prev, new)

    async def _on_room_update(self, record: RoomRecord) -> None:
        self.room = record

        if record.last_move_at:
            self.last_move_at = max(self.last_move_at, record.last_move_at.timestamp())

        if self.outcome != GameOutcome.IN_PROGRESS:
            return

        if record.ended_by_inactivity:
            self.outcome = GameOutcome.INACTIVITY
            self.log.info("Game ended by inactivity")
            self._notify()
            return

        if self.checkpoints.is_divergent(record.game_state, self.state):
            self.log.warning(
                f"Checkpoint diverged from local state at move {self.state.move_count}, resyncing"
            )
            remote = GameState.from_dict(record.game_state)
            self._apply(self.state, game_reducer(self.state, SyncState(state=remote)))

    def _on_connection_change(self, status: ConnectionStatus) -> None:
        if status == ConnectionStatus.ERROR:
            self.log.warning("Broadcast connection error")
        else:
            self.log.info(f"Broadcast {status.value}")

    async def _on_inactive(self) -> None:
        ended = await self.rooms.end_game_by_inactivity(self.room.id)
        if not ended:
            self.log.debug("Room already finished by the other peer")
        if self.outcome == GameOutcome.IN_PROGRESS:
            self.outcome = GameOutcome.INACTIVITY
            self._notify()
