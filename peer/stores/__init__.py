"""Stores package for the Beefy peer: room records and action broadcasts."""

from .base import (
    ActionChannel,
    ConnectionStatus,
    RoomCodeTakenError,
    RoomStore,
)
from .memory import InMemoryActionChannel, InMemoryBroadcastHub, InMemoryRoomStore
from .pubsub import ChannelMessage, RedisActionChannel, create_action_channel
from .room_store import PostgresRoomStore, get_room_store, close_room_store

__all__ = [
    # Ports
    "ActionChannel",
    "ConnectionStatus",
    "RoomCodeTakenError",
    "RoomStore",
    # In-memory adapters
    "InMemoryActionChannel",
    "InMemoryBroadcastHub",
    "InMemoryRoomStore",
    # Redis broadcast
    "ChannelMessage",
    "RedisActionChannel",
    "create_action_channel",
    # Postgres room store
    "PostgresRoomStore",
    "get_room_store",
    "close_room_store",
]
