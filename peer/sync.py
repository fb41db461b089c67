"""
Broadcast synchronization between the two peers.

Live play never ships state snapshots. Each peer applies its own actions
optimistically and broadcasts them; the other peer validates and replays
them through the same reducer. Because the reducer is deterministic,
both peers stay identical as long as every action arrives once and in
order (the channel guarantees per-sender order).

Inbound handling, in order:
    1. Parse the envelope. Malformed -> dropped with a warning.
    2. Envelope from our own role -> dropped. Silent inside the echo
       window after our last send, warned otherwise.
    3. Sequence check. A seq already seen from this sender is dropped.
       seq 1 with a new timestamp means the sender resubscribed.
    4. Parse the action. Unknown or non-broadcast actions are dropped.
    5. Hand the action to the session, which validates it against the
       current state (validate_action) and applies it.

A broadcast held up past a checkpoint resync can still be applied once
the turn returns to its sender. The next checkpoint heals that window;
actions carry no state version to reject it outright.
"""

import logging
import time
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from actions import (
    GameAction,
    InvalidActionPayload,
    action_from_dict,
    action_to_dict,
    is_broadcast_action,
)
from actions import is_turn_action as _is_turn_action
from config import config
from game import GameState
from models.messages import ActionEnvelope
from models.room import Role, player_for_role
from stores.base import ActionChannel, ConnectionStatus

logger = logging.getLogger(__name__)


RemoteActionHandler = Callable[[GameAction, Role], Awaitable[None]]
ConnectionChangeHandler = Callable[[ConnectionStatus], None]


class MultiplayerSync:
    """
    Sends and receives actions for one room.

    Args:
        room_id: Room to sync.
        role: Our seat in the room.
        channel: Broadcast channel.
        clock: Seconds clock used for the echo window.
    """

    def __init__(
        self,
        room_id: str,
        role: Role,
        channel: ActionChannel,
        clock: Callable[[], float] = time.time,
    ):
        self.room_id = room_id
        self.role = role
        self.channel = channel
        self.clock = clock
        self.status = ConnectionStatus.DISCONNECTED
        self.subscribed = False

        self._seq = 0
        self._last_sent_at: Optional[float] = None
        # sender role -> (highest seq seen, timestamp of that sender's seq 1)
        self._last_seen: dict[Role, tuple[int, Optional[int]]] = {}
        self._on_action: Optional[RemoteActionHandler] = None
        self._on_connection_change: Optional[ConnectionChangeHandler] = None

    # -------------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------------

    async def subscribe(
        self,
        on_action: RemoteActionHandler,
        on_connection_change: Optional[ConnectionChangeHandler] = None,
    ) -> None:
        """Start receiving the opponent's actions."""
        self._on_action = on_action
        self._on_connection_change = on_connection_change
        self._set_status(ConnectionStatus.CONNECTING)
        await self.channel.subscribe(self.room_id, self._handle_payload, on_status=self._set_status)
        self.subscribed = True

    async def unsubscribe(self) -> None:
        """Stop receiving and reset sequence tracking."""
        self.subscribed = False
        await self.channel.unsubscribe(self.room_id)
        self._set_status(ConnectionStatus.DISCONNECTED)
        self._seq = 0
        self._last_seen.clear()
        self._on_action = None

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        logger.debug(f"Connection status {self.status.value} -> {status.value}")
        self.status = status
        if self._on_connection_change:
            try:
                self._on_connection_change(status)
            except Exception as e:
                logger.error(f"Error in connection handler: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def broadcast(self, action: GameAction) -> bool:
        """
        Send one action to the opponent.

        Failed sends are not retried or queued; the room checkpoint is
        the recovery path.

        Returns:
            True if the action was handed to the channel.
        """
        if not is_broadcast_action(action):
            return False
        if not self.subscribed:
            logger.warning(f"Not subscribed, {action.type.value} not broadcast")
            return False

        self._seq += 1
        envelope = ActionEnvelope(
            seq=self._seq,
            player_id=self.role,
            action=action_to_dict(action),
        )
        try:
            await self.channel.publish(self.room_id, envelope.to_json())
        except ConnectionError as e:
            logger.error(f"Broadcast failed: {e}")
            self._set_status(ConnectionStatus.ERROR)
            return False

        self._last_sent_at = self.clock()
        if self.status == ConnectionStatus.ERROR:
            self._set_status(ConnectionStatus.CONNECTED)
        return True

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def _handle_payload(self, payload: str) -> None:
        try:
            envelope = ActionEnvelope.from_json(payload)
        except ValidationError as e:
            logger.warning(f"Dropping malformed envelope: {e.error_count()} error(s)")
            return

        if envelope.player_id == self.role:
            if self._within_echo_window():
                return
            logger.warning(
                f"Dropping {envelope.action_type} seq={envelope.seq} claiming our own role {self.role.value}"
            )
            return

        if self._is_duplicate(envelope):
            logger.debug(
                f"Dropping duplicate {envelope.action_type} seq={envelope.seq} from {envelope.player_id.value}"
            )
            return

        try:
            action = action_from_dict(envelope.action)
        except InvalidActionPayload as e:
            logger.warning(f"Dropping invalid action from {envelope.player_id.value}: {e}")
            return

        if not is_broadcast_action(action):
            logger.warning(f"Dropping non-broadcast action {action.type.value} from {envelope.player_id.value}")
            return

        if self._on_action is None:
            return
        await self._on_action(action, envelope.player_id)

    def _within_echo_window(self) -> bool:
        if self._last_sent_at is None:
            return False
        return self.clock() - self._last_sent_at <= config.ECHO_SUPPRESS_SECONDS

    def _is_duplicate(self, envelope: ActionEnvelope) -> bool:
        """Track the sender's sequence; True if this envelope was seen already."""
        last_seq, run_started = self._last_seen.get(envelope.player_id, (0, None))

        if envelope.seq == 1:
            if last_seq >= 1 and envelope.timestamp == run_started:
                return True
            # First message, or the sender resubscribed
            self._last_seen[envelope.player_id] = (1, envelope.timestamp)
            return False

        if envelope.seq <= last_seq:
            return True
        self._last_seen[envelope.player_id] = (envelope.seq, run_started)
        return False

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    @staticmethod
    def is_turn_action(action: GameAction) -> bool:
        return _is_turn_action(action)

    @staticmethod
    def validate_action(action: GameAction, from_role: Role, state: GameState) -> bool:
        """
        Check that a remote action may be applied.

        Turn-actions are only accepted from the role that owns the
        current turn; UI hints are always accepted.
        """
        if not _is_turn_action(action):
            return True
        return player_for_role(from_role) == state.current_player
