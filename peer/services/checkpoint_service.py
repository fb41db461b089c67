"""
Durable checkpoints of the live game.

The room record holds the last committed GameState so a peer can
recover after a crash or reconnect, and so a peer that missed broadcast
actions can heal. It is written at turn boundaries and at the win, by
the peer whose action caused the change. Writes are last-write-wins.

Divergence check on every room update:
    - the checkpoint is the one we just wrote      -> ignore
    - it matches our committed state               -> ignore
    - it is older than our state (fewer moves)     -> ignore (stale)
    - anything else                                -> replace local state
"""

import logging
from dataclasses import replace
from typing import Optional

from game import GameState
from room import RoomService

logger = logging.getLogger(__name__)


def _committed_json(state: GameState) -> str:
    """Canonical JSON of the committed part of a state (no selection cursor)."""
    return replace(state, selection=None).to_json()


class CheckpointService:
    """
    Writes and compares checkpoints for one room.

    Args:
        rooms: Room operations for this client.
        room_id: Room being checkpointed.
    """

    def __init__(self, rooms: RoomService, room_id: str):
        self.rooms = rooms
        self.room_id = room_id
        self._last_authored: Optional[str] = None

    @staticmethod
    def should_checkpoint(prev: GameState, new: GameState) -> bool:
        """A checkpoint is due when the turn changed or the game was just won."""
        if new is prev:
            return False
        if new.winner is not None and prev.winner is None:
            return True
        return new.current_player != prev.current_player

    async def checkpoint(self, state: GameState) -> bool:
        """
        Write the state to the room record.

        A won state finishes the room; otherwise the turn marker moves to
        the state's current player.
        """
        payload = _committed_json(state)
        if payload == self._last_authored:
            return True

        # Set before writing: the change notification can arrive before the write returns
        previous, self._last_authored = self._last_authored, payload

        if state.winner is not None:
            ok = await self.rooms.end_game(self.room_id, state)
        else:
            ok = await self.rooms.update_game_state(self.room_id, state, state.current_player)

        if ok:
            logger.debug(f"Checkpoint written at move {state.move_count}")
        else:
            self._last_authored = previous
            logger.warning(f"Checkpoint at move {state.move_count} not written")
        return ok

    def is_divergent(self, remote: Optional[dict], local: GameState) -> bool:
        """
        Decide whether a checkpoint seen on the room record should replace
        the local state.

        Args:
            remote: The record's game_state dict (may be None).
            local: Our current state.
        """
        if not remote:
            return False
        try:
            remote_state = GameState.from_dict(remote)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable checkpoint: {e}")
            return False

        remote_json = _committed_json(remote_state)
        if remote_json == self._last_authored:
            return False
        if remote_json == _committed_json(local):
            return False
        if remote_state.move_count < local.move_count:
            logger.debug(
                f"Ignoring stale checkpoint (move {remote_state.move_count} < {local.move_count})"
            )
            return False
        return True
