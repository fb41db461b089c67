"""
Room lifecycle for two-peer Beefy games.

A room is created by a host, joined by exactly one guest using its
4-letter code, started by the host, and finished by a win or by
inactivity. The room record doubles as the recovery checkpoint: the
latest committed GameState, whose turn it is, and when the last move
was made.

Room states:
    WAITING   host created the room, guest may join
    PLAYING   game dealt, both peers live over the broadcast channel
    FINISHED  someone won, or the game timed out (no winner recorded)

Persistence failures during play are logged and reported as False/None.
They never interrupt the live game; the broadcast channel is the
primary sync path and the checkpoint is only a backup.
"""

import logging
import random
from datetime import datetime, timezone
from typing import Optional

from actions import SetFirstPlayer
from config import config
from constants import ROOM_CODE_ALPHABET
from game import GameState, PlayerId, create_initial_state
from models.room import RoomRecord, RoomStatus, Role, role_for_player
from reducer import game_reducer
from stores.base import RoomChangeHandler, RoomCodeTakenError, RoomStore

logger = logging.getLogger(__name__)


class RoomError(Exception):
    """Base class for room lifecycle errors shown to the user."""
    pass


class RoomNotFoundError(RoomError):
    pass


class RoomFullError(RoomError):
    pass


class GameInProgressError(RoomError):
    pass


def generate_room_code(length: Optional[int] = None) -> str:
    """Random join code from an alphabet without I and O."""
    if length is None:
        length = config.ROOM_CODE_LENGTH
    return "".join(random.choices(ROOM_CODE_ALPHABET, k=length))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RoomService:
    """
    Room operations for one client identity.

    Args:
        store: Durable room storage.
        client_id: This client's persistent identity.
    """

    def __init__(self, store: RoomStore, client_id: str):
        self.store = store
        self.client_id = client_id

    # -------------------------------------------------------------------------
    # Lobby
    # -------------------------------------------------------------------------

    async def create_room(self) -> RoomRecord:
        """
        Create a waiting room hosted by this client.

        Raises:
            RuntimeError: If no unique code was found.
        """
        for attempt in range(config.ROOM_CODE_MAX_ATTEMPTS):
            code = generate_room_code()
            try:
                room = await self.store.insert_room(code, self.client_id)
            except RoomCodeTakenError:
                logger.debug(f"Room code {code} taken (attempt {attempt + 1})")
                continue
            logger.info(f"Room {room.code} created by {self.client_id}")
            return room
        raise RuntimeError("Could not generate unique room code")

    async def join_room(self, code: str) -> RoomRecord:
        """
        Join a waiting room as guest.

        Rejoining a room this client already belongs to returns it as is.

        Raises:
            RoomNotFoundError: No room has this code.
            GameInProgressError: The room is not waiting for players.
            RoomFullError: Another client already holds the guest seat.
        """
        room = await self.store.get_room_by_code(code.strip().upper())
        if room is None:
            raise RoomNotFoundError(f"Room {code.upper()} not found")

        if room.role_of(self.client_id) is not None:
            return room

        if room.status != RoomStatus.WAITING:
            raise GameInProgressError(f"Room {room.code} is not accepting players")
        if room.is_full:
            raise RoomFullError(f"Room {room.code} is full")

        updated = await self.store.update_room(
            room.id, {"guest_id": self.client_id}, expected_status=RoomStatus.WAITING
        )
        if updated is None:
            raise GameInProgressError(f"Room {room.code} is not accepting players")
        logger.info(f"{self.client_id} joined room {room.code}")
        return updated

    async def leave_room(self, room_id: str) -> bool:
        """
        Leave a room.

        The host leaving deletes the room; the guest leaving frees the
        guest seat.
        """
        try:
            room = await self.store.get_room(room_id)
            if room is None:
                return False

            role = room.role_of(self.client_id)
            if role == Role.HOST:
                await self.store.delete_room(room_id)
                logger.info(f"Host left, room {room.code} deleted")
                return True
            if role == Role.GUEST:
                await self.store.update_room(room_id, {"guest_id": None})
                logger.info(f"Guest left room {room.code}")
                return True
            return False
        except Exception as e:
            logger.error(f"Failed to leave room {room_id}: {e}")
            return False

    async def start_game(self, room_id: str, seed=None) -> RoomRecord:
        """
        Deal a new game and move the room to PLAYING.

        Only the host can start, and only once a guest has joined. The
        first player is picked at random and recorded in the dealt state.

        Raises:
            RoomNotFoundError: Unknown room.
            RoomError: Caller is not the host, or the room has no guest.
            GameInProgressError: The room is not waiting.
        """
        room = await self.store.get_room(room_id)
        if room is None:
            raise RoomNotFoundError(f"Room {room_id} not found")
        if room.role_of(self.client_id) != Role.HOST:
            raise RoomError("Only the host can start the game")
        if not room.is_full:
            raise RoomError("Waiting for a second player")
        if room.status != RoomStatus.WAITING:
            raise GameInProgressError(f"Room {room.code} already started")

        state = create_initial_state(seed)
        first = random.choice([PlayerId.P1, PlayerId.P2])
        state = game_reducer(state, SetFirstPlayer(player=first))

        updated = await self.store.update_room(
            room_id,
            {
                "status": RoomStatus.PLAYING,
                "game_state": state.to_dict(),
                "current_player": role_for_player(state.current_player),
                "last_move_at": _now(),
            },
            expected_status=RoomStatus.WAITING,
        )
        if updated is None:
            raise GameInProgressError(f"Room {room.code} already started")
        logger.info(f"Game started in room {room.code}, {first.value} goes first")
        return updated

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    async def update_game_state(self, room_id: str, state: GameState, next_player: PlayerId) -> bool:
        """Write a turn checkpoint."""
        try:
            updated = await self.store.update_room(
                room_id,
                {
                    "game_state": state.to_dict(),
                    "current_player": role_for_player(next_player),
                    "last_move_at": _now(),
                },
            )
        except Exception as e:
            logger.error(f"Failed to checkpoint room {room_id}: {e}")
            return False
        return updated is not None

    async def end_game(self, room_id: str, state: GameState) -> bool:
        """Record a won game and finish the room."""
        try:
            updated = await self.store.update_room(
                room_id,
                {
                    "status": RoomStatus.FINISHED,
                    "game_state": state.to_dict(),
                    "last_move_at": _now(),
                },
            )
        except Exception as e:
            logger.error(f"Failed to end game in room {room_id}: {e}")
            return False
        if updated is not None:
            logger.info(f"Room {updated.code} finished, {state.winner.value if state.winner else 'nobody'} won")
        return updated is not None

    async def end_game_by_inactivity(self, room_id: str) -> bool:
        """
        Finish a room that timed out.

        Only a PLAYING room transitions, so both peers expiring at once
        is harmless.

        Returns:
            True if this call made the transition.
        """
        try:
            updated = await self.store.update_room(
                room_id, {"status": RoomStatus.FINISHED}, expected_status=RoomStatus.PLAYING
            )
        except Exception as e:
            logger.error(f"Failed to end room {room_id} by inactivity: {e}")
            return False
        if updated is not None:
            logger.info(f"Room {updated.code} ended by inactivity")
        return updated is not None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_room(self, room_id: str) -> Optional[RoomRecord]:
        try:
            return await self.store.get_room(room_id)
        except Exception as e:
            logger.error(f"Failed to load room {room_id}: {e}")
            return None

    async def find_active_game(self) -> Optional[RoomRecord]:
        """Find a PLAYING room this client belongs to."""
        try:
            return await self.store.find_active_room(self.client_id)
        except Exception as e:
            logger.error(f"Failed to look up active game: {e}")
            return None

    async def subscribe(self, room_id: str, handler: RoomChangeHandler) -> None:
        await self.store.subscribe(room_id, handler)

    async def unsubscribe(self, room_id: str, handler: RoomChangeHandler) -> None:
        await self.store.unsubscribe(room_id, handler)

    async def cleanup(self) -> int:
        """Delete stale waiting and finished rooms."""
        try:
            return await self.store.cleanup_old_rooms(
                config.WAITING_ROOM_TTL_MINUTES, config.FINISHED_ROOM_TTL_HOURS
            )
        except Exception as e:
            logger.error(f"Room cleanup failed: {e}")
            return 0
