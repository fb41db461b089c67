"""
Ports for the two external collaborators.

The peer core talks to the outside world through exactly two narrow
interfaces:

- RoomStore: the durable room record (last-write-wins, with change
  notifications). Slow path, used for lifecycle and checkpoints.
- ActionChannel: the per-room broadcast channel (at-least-once, ordered
  per sender, sender excluded). Fast path, used for live actions.

Production adapters live in room_store.py (PostgreSQL) and pubsub.py
(Redis); in-memory adapters for tests and simulation live in memory.py.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from models.room import RoomRecord, RoomStatus


class RoomCodeTakenError(Exception):
    """Raised when a room code collides with an existing room."""
    pass


class ConnectionStatus(str, Enum):
    """
    Broadcast connection status.

    Flow: CONNECTING -> CONNECTED -> (DISCONNECTED | ERROR)
    Purely informational; never gates local actions.
    """

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


# Type aliases for handlers
RoomChangeHandler = Callable[[RoomRecord], Awaitable[None]]
PayloadHandler = Callable[[str], Awaitable[None]]
StatusHandler = Callable[[ConnectionStatus], None]


class RoomStore(ABC):
    """Durable storage for room records."""

    @abstractmethod
    async def insert_room(self, code: str, host_id: str) -> RoomRecord:
        """
        Insert a new waiting room.

        Raises:
            RoomCodeTakenError: If the code is already in use.
        """

    @abstractmethod
    async def get_room(self, room_id: str) -> Optional[RoomRecord]:
        """Get a room by id."""

    @abstractmethod
    async def get_room_by_code(self, code: str) -> Optional[RoomRecord]:
        """Get a room by its join code (exact match, already upper-cased)."""

    @abstractmethod
    async def update_room(
        self,
        room_id: str,
        fields: dict[str, Any],
        expected_status: Optional[RoomStatus] = None,
    ) -> Optional[RoomRecord]:
        """
        Update room fields (last write wins).

        Args:
            room_id: Room to update.
            fields: Column values to set.
            expected_status: If given, only update when the room currently
                             has this status.

        Returns:
            The updated record, or None if no room matched.
        """

    @abstractmethod
    async def delete_room(self, room_id: str) -> bool:
        """Delete a room. Returns True if a room was deleted."""

    @abstractmethod
    async def find_active_room(self, client_id: str) -> Optional[RoomRecord]:
        """Find a playing room where the client is host or guest."""

    @abstractmethod
    async def cleanup_old_rooms(self, waiting_ttl_minutes: int, finished_ttl_hours: int) -> int:
        """Delete stale waiting and finished rooms. Returns the count removed."""

    @abstractmethod
    async def subscribe(self, room_id: str, handler: RoomChangeHandler) -> None:
        """Call `handler` with the fresh record after every change to the room."""

    @abstractmethod
    async def unsubscribe(self, room_id: str, handler: RoomChangeHandler) -> None:
        """Remove a change handler."""


class ActionChannel(ABC):
    """
    Per-room publish/subscribe channel for action payloads.

    A channel instance belongs to one sender; messages it publishes are
    never delivered back to its own handlers.
    """

    @abstractmethod
    async def subscribe(
        self,
        room_id: str,
        handler: PayloadHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> None:
        """Start receiving payloads for a room."""

    @abstractmethod
    async def publish(self, room_id: str, payload: str) -> int:
        """
        Publish a payload to the room.

        Returns:
            Number of receivers.

        Raises:
            ConnectionError: If the send fails.
        """

    @abstractmethod
    async def unsubscribe(self, room_id: str) -> None:
        """Stop receiving payloads and release the subscription."""
