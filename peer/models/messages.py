"""
Broadcast envelope for peer-to-peer action sync.

Peers never exchange state snapshots during live play. Each broadcast
carries one action plus enough metadata for the receiver to order,
deduplicate and authorize it:

    {seq, playerId, action, timestamp}

The envelope is validated with pydantic on the way in, since it comes
straight off the network from the other peer.
"""

import time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models.room import Role


def now_ms() -> int:
    """Milliseconds since the epoch."""
    return int(time.time() * 1000)


class ActionEnvelope(BaseModel):
    """
    One broadcast action.

    Attributes:
        seq: Sequence number, monotonically increasing per sender.
        player_id: Role of the sender (host or guest).
        action: Serialized action (see actions.action_to_dict).
        timestamp: Send time in milliseconds since the epoch.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    seq: int = Field(ge=1)
    player_id: Role = Field(alias="playerId")
    action: dict
    timestamp: int = Field(default_factory=now_ms)

    def to_json(self) -> str:
        """Serialize to JSON for the wire."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "ActionEnvelope":
        """
        Deserialize from JSON.

        Raises:
            pydantic.ValidationError: If the payload is malformed.
        """
        return cls.model_validate_json(raw)

    @property
    def action_type(self) -> Optional[str]:
        return self.action.get("type")
