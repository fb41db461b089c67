"""
Room record model.

A room is the durable record two peers share: who is host, who is guest,
the lifecycle status, and the last checkpointed GameState. It is a
recovery checkpoint, not the live sync path; live play flows over the
broadcast channel.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from game import PlayerId


class RoomStatus(str, Enum):
    """Room lifecycle: WAITING -> PLAYING -> FINISHED."""

    WAITING = "waiting"
    PLAYING = "playing"
    FINISHED = "finished"


class Role(str, Enum):
    """A client's seat in a room."""

    HOST = "host"
    GUEST = "guest"


ROLE_TO_PLAYER: dict[Role, PlayerId] = {
    Role.HOST: PlayerId.P1,
    Role.GUEST: PlayerId.P2,
}

PLAYER_TO_ROLE: dict[PlayerId, Role] = {p: r for r, p in ROLE_TO_PLAYER.items()}


def player_for_role(role: Role) -> PlayerId:
    """Host plays P1, guest plays P2."""
    return ROLE_TO_PLAYER[role]


def role_for_player(player: PlayerId) -> Role:
    return PLAYER_TO_ROLE[player]


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class RoomRecord:
    """
    A persisted room.

    Attributes:
        id: Room UUID.
        code: 4-letter join code.
        host_id: Client id of the host.
        guest_id: Client id of the guest (None until someone joins).
        status: waiting, playing or finished.
        game_state: Last checkpointed GameState as a dict.
        current_player: Turn marker (host or guest).
        last_move_at: When the last committed move was checkpointed.
        created_at: Creation time.
        updated_at: Last write time.
    """

    id: str
    code: str
    host_id: str
    guest_id: Optional[str] = None
    status: RoomStatus = RoomStatus.WAITING
    game_state: Optional[dict] = None
    current_player: Optional[Role] = None
    last_move_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def role_of(self, client_id: str) -> Optional[Role]:
        """Get the role a client holds in this room, if any."""
        if client_id == self.host_id:
            return Role.HOST
        if self.guest_id is not None and client_id == self.guest_id:
            return Role.GUEST
        return None

    @property
    def is_full(self) -> bool:
        return self.guest_id is not None

    @property
    def winner(self) -> Optional[str]:
        if not self.game_state:
            return None
        return self.game_state.get("winner")

    @property
    def ended_by_inactivity(self) -> bool:
        """A finished room whose checkpoint has no winner timed out."""
        return self.status == RoomStatus.FINISHED and self.winner is None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "code": self.code,
            "host_id": self.host_id,
            "guest_id": self.guest_id,
            "status": self.status.value,
            "game_state": self.game_state,
            "current_player": self.current_player.value if self.current_player else None,
            "last_move_at": self.last_move_at.isoformat() if self.last_move_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "RoomRecord":
        """Create from dictionary (or a database row mapping)."""
        game_state = d.get("game_state")
        if isinstance(game_state, str):
            game_state = json.loads(game_state)
        current_player = d.get("current_player")
        return cls(
            id=str(d["id"]),
            code=d["code"],
            host_id=d["host_id"],
            guest_id=d.get("guest_id"),
            status=RoomStatus(d.get("status", "waiting")),
            game_state=game_state,
            current_player=Role(current_player) if current_player else None,
            last_move_at=_parse_timestamp(d.get("last_move_at")),
            created_at=_parse_timestamp(d.get("created_at")),
            updated_at=_parse_timestamp(d.get("updated_at")),
        )
