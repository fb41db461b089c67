"""
PostgreSQL-backed room store.

The rooms table is the only durable state the peers share. It holds the
lifecycle status, both client ids and the last checkpointed GameState.
Writes are last-write-wins; a trigger publishes the room id on the
`room_changes` NOTIFY channel after every insert or update, and a
dedicated listener connection turns those notifications into change
callbacks for subscribed rooms.

Features:
- Unique room codes enforced by a unique constraint
- Conditional updates (WHERE status = ...) for idempotent transitions
- Change feed via LISTEN/NOTIFY
- TTL cleanup of stale waiting and finished rooms
"""

import asyncio
import json
import logging
from datetime import timezone
from typing import Any, Optional

import asyncpg

from constants import ROOM_CHANGES_CHANNEL
from models.room import RoomRecord, RoomStatus
from stores.base import RoomChangeHandler, RoomCodeTakenError, RoomStore

logger = logging.getLogger(__name__)


# SQL schema for the room store
SCHEMA_SQL = """
-- Rooms table (one row per two-player game)
CREATE TABLE IF NOT EXISTS rooms (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    code VARCHAR(4) NOT NULL UNIQUE,
    host_id TEXT NOT NULL,
    guest_id TEXT,
    status VARCHAR(20) NOT NULL DEFAULT 'waiting'
        CHECK (status IN ('waiting', 'playing', 'finished')),
    game_state JSONB,
    current_player VARCHAR(10) CHECK (current_player IN ('host', 'guest')),
    last_move_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_rooms_code ON rooms(code);
CREATE INDEX IF NOT EXISTS idx_rooms_status ON rooms(status);
CREATE INDEX IF NOT EXISTS idx_rooms_host ON rooms(host_id);
CREATE INDEX IF NOT EXISTS idx_rooms_guest ON rooms(guest_id) WHERE guest_id IS NOT NULL;

-- Keep updated_at current
CREATE OR REPLACE FUNCTION rooms_touch_updated_at() RETURNS TRIGGER AS $$
BEGIN
    NEW.updated_at = NOW();
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS rooms_touch_updated_at ON rooms;
CREATE TRIGGER rooms_touch_updated_at
    BEFORE UPDATE ON rooms
    FOR EACH ROW EXECUTE FUNCTION rooms_touch_updated_at();

-- Change feed
CREATE OR REPLACE FUNCTION rooms_notify_change() RETURNS TRIGGER AS $$
BEGIN
    PERFORM pg_notify('room_changes', NEW.id::text);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS rooms_notify_change ON rooms;
CREATE TRIGGER rooms_notify_change
    AFTER INSERT OR UPDATE ON rooms
    FOR EACH ROW EXECUTE FUNCTION rooms_notify_change();
"""

# Columns update_room may set
UPDATABLE_COLUMNS = frozenset({
    "guest_id",
    "status",
    "game_state",
    "current_player",
    "last_move_at",
})


class PostgresRoomStore(RoomStore):
    """
    PostgreSQL-backed RoomStore.

    Uses an asyncpg pool for queries and one extra connection that
    LISTENs on the room change channel.
    """

    def __init__(self, pool: asyncpg.Pool, postgres_url: Optional[str] = None):
        """
        Initialize room store with connection pool.

        Args:
            pool: asyncpg connection pool.
            postgres_url: URL used to open the listener connection. When
                          omitted, change subscriptions are unavailable.
        """
        self.pool = pool
        self.postgres_url = postgres_url
        self._listener: Optional[asyncpg.Connection] = None
        self._handlers: dict[str, list[RoomChangeHandler]] = {}
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    async def create(cls, postgres_url: str) -> "PostgresRoomStore":
        """
        Create a PostgresRoomStore with a new connection pool.

        Args:
            postgres_url: PostgreSQL connection URL.

        Returns:
            Configured PostgresRoomStore instance.
        """
        pool = await asyncpg.create_pool(postgres_url, min_size=1, max_size=5)
        store = cls(pool, postgres_url)
        await store.initialize_schema()
        return store

    async def initialize_schema(self) -> None:
        """Create the rooms table and triggers if they don't exist."""
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Room store schema initialized")

    async def close(self) -> None:
        """Close the listener connection and the pool."""
        if self._listener is not None:
            await self._listener.remove_listener(ROOM_CHANGES_CHANNEL, self._on_notify)
            await self._listener.close()
            self._listener = None
        for task in list(self._tasks):
            task.cancel()
        await self.pool.close()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert_room(self, code: str, host_id: str) -> RoomRecord:
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO rooms (code, host_id, status)
                    VALUES ($1, $2, 'waiting')
                    RETURNING *
                    """,
                    code,
                    host_id,
                )
            except asyncpg.UniqueViolationError:
                raise RoomCodeTakenError(f"Room code {code} already exists")
        return self._row_to_record(row)

    async def update_room(
        self,
        room_id: str,
        fields: dict[str, Any],
        expected_status: Optional[RoomStatus] = None,
    ) -> Optional[RoomRecord]:
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise KeyError(f"Unknown room field(s): {', '.join(sorted(unknown))}")
        if not fields:
            return await self.get_room(room_id)

        assignments = []
        values: list[Any] = [room_id]
        for column, value in fields.items():
            values.append(self._to_db_value(column, value))
            assignments.append(f"{column} = ${len(values)}")

        query = f"UPDATE rooms SET {', '.join(assignments)} WHERE id = $1"
        if expected_status is not None:
            values.append(expected_status.value)
            query += f" AND status = ${len(values)}"
        query += " RETURNING *"

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *values)
        return self._row_to_record(row) if row else None

    async def delete_room(self, room_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM rooms WHERE id = $1", room_id)
        return result.endswith(" 1")

    async def cleanup_old_rooms(self, waiting_ttl_minutes: int, finished_ttl_hours: int) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM rooms
                WHERE (status = 'waiting'
                       AND created_at < NOW() - make_interval(mins => $1))
                   OR (status = 'finished'
                       AND updated_at < NOW() - make_interval(hours => $2))
                """,
                waiting_ttl_minutes,
                finished_ttl_hours,
            )
        # "DELETE <n>"
        count = int(result.split()[-1])
        if count:
            logger.info(f"Cleaned up {count} stale rooms")
        return count

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_room(self, room_id: str) -> Optional[RoomRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM rooms WHERE id = $1", room_id)
        return self._row_to_record(row) if row else None

    async def get_room_by_code(self, code: str) -> Optional[RoomRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM rooms WHERE code = $1", code)
        return self._row_to_record(row) if row else None

    async def find_active_room(self, client_id: str) -> Optional[RoomRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM rooms
                WHERE status = 'playing' AND (host_id = $1 OR guest_id = $1)
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                client_id,
            )
        return self._row_to_record(row) if row else None

    # -------------------------------------------------------------------------
    # Change feed
    # -------------------------------------------------------------------------

    async def subscribe(self, room_id: str, handler: RoomChangeHandler) -> None:
        await self._ensure_listener()
        self._handlers.setdefault(room_id, []).append(handler)
        logger.debug(f"Subscribed to changes for room {room_id}")

    async def unsubscribe(self, room_id: str, handler: RoomChangeHandler) -> None:
        handlers = self._handlers.get(room_id, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(room_id, None)
        logger.debug(f"Unsubscribed from changes for room {room_id}")

    async def _ensure_listener(self) -> None:
        if self._listener is not None:
            return
        if not self.postgres_url:
            raise RuntimeError("Room change feed requires a postgres_url")
        self._listener = await asyncpg.connect(self.postgres_url)
        await self._listener.add_listener(ROOM_CHANGES_CHANNEL, self._on_notify)
        logger.info(f"Listening on {ROOM_CHANGES_CHANNEL}")

    def _on_notify(self, connection, pid, channel, payload: str) -> None:
        """asyncpg NOTIFY callback; fetches the row off the event loop callback."""
        if payload not in self._handlers:
            return
        task = asyncio.get_running_loop().create_task(self._dispatch_change(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch_change(self, room_id: str) -> None:
        try:
            record = await self.get_room(room_id)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Failed to load changed room {room_id}: {e}")
            return
        if record is None:
            return

        for handler in list(self._handlers.get(room_id, [])):
            try:
                await handler(record)
            except Exception as e:
                logger.error(f"Error in room change handler: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_db_value(column: str, value: Any) -> Any:
        if value is None:
            return None
        if column == "game_state":
            return json.dumps(value)
        if column in ("status", "current_player"):
            return getattr(value, "value", value)
        return value

    def _row_to_record(self, row: asyncpg.Record) -> RoomRecord:
        """Convert a database row to a RoomRecord."""
        d = dict(row)
        for key in ("last_move_at", "created_at", "updated_at"):
            if d.get(key) is not None and d[key].tzinfo is None:
                d[key] = d[key].replace(tzinfo=timezone.utc)
        return RoomRecord.from_dict(d)


# Global room store instance (initialized on first use)
_room_store: Optional[PostgresRoomStore] = None


async def get_room_store(postgres_url: str) -> PostgresRoomStore:
    """
    Get or create the global room store instance.

    Args:
        postgres_url: PostgreSQL connection URL.

    Returns:
        PostgresRoomStore instance.
    """
    global _room_store
    if _room_store is None:
        _room_store = await PostgresRoomStore.create(postgres_url)
    return _room_store


async def close_room_store() -> None:
    """Close the global room store connection pool."""
    global _room_store
    if _room_store is not None:
        await _room_store.close()
        _room_store = None
