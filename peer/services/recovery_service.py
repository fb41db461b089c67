"""
Game recovery for a peer that restarted mid-game.

A peer keeps no local game state across restarts. On launch it asks the
room store for a PLAYING room it belongs to and, if there is one,
rebuilds its GameState from the room's checkpoint. Any actions the
other peer broadcast while we were gone are healed by the checkpoint
divergence check once the session is running.

Usage:
    recovery = RecoveryService(rooms)
    result = await recovery.find_resumable_game()
    if result and result.success:
        session = GameSession(result.room, client_id, rooms, channel)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from game import GameState
from models.room import RoomRecord, Role
from room import RoomService

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    """Result of a recovery attempt."""

    room: RoomRecord
    success: bool
    role: Optional[Role] = None
    state: Optional[GameState] = None
    error: Optional[str] = None


class RecoveryService:
    """Finds and decodes this client's unfinished game."""

    def __init__(self, rooms: RoomService):
        self.rooms = rooms

    async def find_resumable_game(self) -> Optional[RecoveryResult]:
        """
        Look for a PLAYING room this client belongs to.

        Returns:
            None when there is nothing to resume, otherwise a
            RecoveryResult (success False if the checkpoint is unusable).
        """
        room = await self.rooms.find_active_game()
        if room is None:
            return None

        role = room.role_of(self.rooms.client_id)
        if not room.game_state:
            logger.warning(f"Active room {room.code} has no checkpoint")
            return RecoveryResult(room=room, success=False, role=role, error="no_checkpoint")

        try:
            state = GameState.from_dict(room.game_state)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Checkpoint for room {room.code} is corrupt: {e}")
            return RecoveryResult(room=room, success=False, role=role, error="corrupt_checkpoint")

        logger.info(
            f"Recovered game in room {room.code} as {role.value if role else '?'} "
            f"at move {state.move_count}"
        )
        return RecoveryResult(room=room, success=True, role=role, state=state)
