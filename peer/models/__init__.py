"""Models package for the Beefy peer."""

from .messages import ActionEnvelope
from .room import (
    RoomRecord,
    RoomStatus,
    Role,
    player_for_role,
    role_for_player,
)

__all__ = [
    "ActionEnvelope",
    "RoomRecord",
    "RoomStatus",
    "Role",
    "player_for_role",
    "role_for_player",
]
