"""
In-memory adapters for the room store and the broadcast channel.

Used by the test suite and by simulate.py to run two peers in one
process without Redis or PostgreSQL. Behavior follows the production
contracts (sender exclusion, last-write-wins, conditional updates,
change notifications) and adds a few knobs for fault injection:

    hub.fail_sends = True        # publish raises ConnectionError
    hub.duplicate_deliveries = True   # every message delivered twice
    hub.pause() / await hub.flush()   # hold messages to stage races
    store.fail_writes = True     # update_room raises ConnectionError
"""

import copy
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from models.room import RoomRecord, RoomStatus
from stores.base import (
    ActionChannel,
    ConnectionStatus,
    PayloadHandler,
    RoomChangeHandler,
    RoomCodeTakenError,
    RoomStore,
    StatusHandler,
)

logger = logging.getLogger(__name__)


class InMemoryRoomStore(RoomStore):
    """Dict-backed RoomStore."""

    def __init__(self) -> None:
        self.rooms: dict[str, RoomRecord] = {}
        self._handlers: dict[str, list[RoomChangeHandler]] = {}
        self.fail_writes = False
        self.write_count = 0

    def _check_writable(self) -> None:
        if self.fail_writes:
            raise ConnectionError("room store unavailable")

    async def _notify(self, room_id: str) -> None:
        record = self.rooms.get(room_id)
        if record is None:
            return
        for handler in list(self._handlers.get(room_id, [])):
            try:
                await handler(copy.deepcopy(record))
            except Exception as e:
                logger.error(f"Error in room change handler: {e}", exc_info=True)

    async def insert_room(self, code: str, host_id: str) -> RoomRecord:
        self._check_writable()
        if any(r.code == code for r in self.rooms.values()):
            raise RoomCodeTakenError(f"Room code {code} already exists")

        now = datetime.now(timezone.utc)
        record = RoomRecord(
            id=str(uuid.uuid4()),
            code=code,
            host_id=host_id,
            created_at=now,
            updated_at=now,
        )
        self.rooms[record.id] = record
        return copy.deepcopy(record)

    async def get_room(self, room_id: str) -> Optional[RoomRecord]:
        record = self.rooms.get(room_id)
        return copy.deepcopy(record) if record else None

    async def get_room_by_code(self, code: str) -> Optional[RoomRecord]:
        for record in self.rooms.values():
            if record.code == code:
                return copy.deepcopy(record)
        return None

    async def update_room(
        self,
        room_id: str,
        fields: dict[str, Any],
        expected_status: Optional[RoomStatus] = None,
    ) -> Optional[RoomRecord]:
        self._check_writable()
        record = self.rooms.get(room_id)
        if record is None:
            return None
        if expected_status is not None and record.status != expected_status:
            return None

        for key, value in fields.items():
            if not hasattr(record, key):
                raise KeyError(f"Unknown room field: {key}")
            setattr(record, key, copy.deepcopy(value))
        record.updated_at = datetime.now(timezone.utc)
        self.write_count += 1

        await self._notify(room_id)
        return copy.deepcopy(record)

    async def delete_room(self, room_id: str) -> bool:
        self._check_writable()
        return self.rooms.pop(room_id, None) is not None

    async def find_active_room(self, client_id: str) -> Optional[RoomRecord]:
        for record in self.rooms.values():
            if record.status == RoomStatus.PLAYING and client_id in (record.host_id, record.guest_id):
                return copy.deepcopy(record)
        return None

    async def cleanup_old_rooms(self, waiting_ttl_minutes: int, finished_ttl_hours: int) -> int:
        now = datetime.now(timezone.utc)
        stale = [
            r.id for r in self.rooms.values()
            if (r.status == RoomStatus.WAITING
                and r.created_at < now - timedelta(minutes=waiting_ttl_minutes))
            or (r.status == RoomStatus.FINISHED
                and r.updated_at < now - timedelta(hours=finished_ttl_hours))
        ]
        for room_id in stale:
            del self.rooms[room_id]
        return len(stale)

    async def subscribe(self, room_id: str, handler: RoomChangeHandler) -> None:
        self._handlers.setdefault(room_id, []).append(handler)

    async def unsubscribe(self, room_id: str, handler: RoomChangeHandler) -> None:
        handlers = self._handlers.get(room_id, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(room_id, None)


class InMemoryBroadcastHub:
    """
    Shared in-process broadcast medium.

    Each peer gets its own channel via hub.channel(sender_id).
    """

    def __init__(self) -> None:
        # room_id -> list of (sender_id, handler)
        self._subscribers: dict[str, list[tuple[str, PayloadHandler]]] = {}
        self._status_handlers: dict[tuple[str, str], StatusHandler] = {}
        self._pending: list[tuple[str, str, str]] = []
        self._paused = False
        self.fail_sends = False
        self.duplicate_deliveries = False
        self.published: list[tuple[str, str, str]] = []

    def channel(self, sender_id: str) -> "InMemoryActionChannel":
        return InMemoryActionChannel(self, sender_id)

    def pause(self) -> None:
        """Hold published messages until flush()."""
        self._paused = True

    async def flush(self) -> None:
        """Deliver held messages in publish order and resume live delivery."""
        self._paused = False
        pending, self._pending = self._pending, []
        for room_id, sender_id, payload in pending:
            await self._deliver(room_id, sender_id, payload)

    def report_status(self, room_id: str, status: ConnectionStatus) -> None:
        """Push a status change to every subscriber of a room."""
        for (rid, _), handler in list(self._status_handlers.items()):
            if rid == room_id:
                handler(status)

    async def _publish(self, room_id: str, sender_id: str, payload: str) -> int:
        if self.fail_sends:
            raise ConnectionError("broadcast send failed")

        self.published.append((room_id, sender_id, payload))
        receivers = [s for s, _ in self._subscribers.get(room_id, []) if s != sender_id]

        if self._paused:
            self._pending.append((room_id, sender_id, payload))
        else:
            await self._deliver(room_id, sender_id, payload)
        return len(receivers)

    async def _deliver(self, room_id: str, sender_id: str, payload: str) -> None:
        copies = 2 if self.duplicate_deliveries else 1
        for _ in range(copies):
            for subscriber_id, handler in list(self._subscribers.get(room_id, [])):
                # Sender excluded from its own broadcast
                if subscriber_id == sender_id:
                    continue
                try:
                    await handler(payload)
                except Exception as e:
                    logger.error(f"Error in broadcast handler: {e}", exc_info=True)


class InMemoryActionChannel(ActionChannel):
    """One sender's view of an InMemoryBroadcastHub."""

    def __init__(self, hub: InMemoryBroadcastHub, sender_id: str) -> None:
        self.hub = hub
        self.sender_id = sender_id

    async def subscribe(
        self,
        room_id: str,
        handler: PayloadHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> None:
        self.hub._subscribers.setdefault(room_id, []).append((self.sender_id, handler))
        if on_status:
            self.hub._status_handlers[(room_id, self.sender_id)] = on_status
            on_status(ConnectionStatus.CONNECTED)

    async def publish(self, room_id: str, payload: str) -> int:
        return await self.hub._publish(room_id, self.sender_id, payload)

    async def unsubscribe(self, room_id: str) -> None:
        subscribers = self.hub._subscribers.get(room_id, [])
        self.hub._subscribers[room_id] = [
            (s, h) for s, h in subscribers if s != self.sender_id
        ]
        on_status = self.hub._status_handlers.pop((room_id, self.sender_id), None)
        if on_status:
            on_status(ConnectionStatus.DISCONNECTED)
