"""
Redis pub/sub broadcast channel for live game actions.

Each room has one Redis channel. Both peers subscribe to it and publish
their actions to it; every message carries the sender id so a peer can
drop its own messages (Redis delivers to every subscriber, including the
publisher's own connection).

This module provides:
- One channel per room for targeted broadcasting
- A wire wrapper carrying the sender id and the opaque payload
- Async listener loop dispatching payloads to the room handler
- Connection status reporting (connecting/connected/disconnected/error)

Usage:
    channel = RedisActionChannel(redis_client, sender_id=client_id)

    async def handle_payload(payload: str):
        envelope = ActionEnvelope.from_json(payload)

    await channel.subscribe(room_id, handle_payload, on_status=print)
    await channel.publish(room_id, envelope.to_json())
    await channel.unsubscribe(room_id)
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis

from constants import GAME_CHANNEL_PREFIX
from stores.base import (
    ActionChannel,
    ConnectionStatus,
    PayloadHandler,
    StatusHandler,
)

logger = logging.getLogger(__name__)


@dataclass
class ChannelMessage:
    """
    Message sent via Redis pub/sub.

    Attributes:
        room_id: Room this message is for.
        sender_id: Client id of the sender (to avoid echo).
        payload: Opaque payload (a serialized ActionEnvelope).
    """

    room_id: str
    sender_id: str
    payload: str

    def to_json(self) -> str:
        """Serialize to JSON for Redis."""
        return json.dumps({
            "room_id": self.room_id,
            "sender_id": self.sender_id,
            "payload": self.payload,
        })

    @classmethod
    def from_json(cls, raw: str) -> "ChannelMessage":
        """Deserialize from JSON."""
        d = json.loads(raw)
        return cls(
            room_id=d["room_id"],
            sender_id=d["sender_id"],
            payload=d["payload"],
        )


class RedisActionChannel(ActionChannel):
    """
    Redis-backed ActionChannel.

    Manages subscriptions to room channels and dispatches incoming
    payloads from the other peer to the registered handler.
    """

    CHANNEL_PREFIX = GAME_CHANNEL_PREFIX

    def __init__(self, redis_client: redis.Redis, sender_id: str):
        """
        Initialize the channel with a Redis client.

        Args:
            redis_client: Async Redis client.
            sender_id: Unique id of this peer (its client id).
        """
        self.redis = redis_client
        self.sender_id = sender_id
        self.pubsub = redis_client.pubsub()
        self._handlers: dict[str, PayloadHandler] = {}
        self._status_handlers: dict[str, StatusHandler] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def _channel(self, room_id: str) -> str:
        """Get Redis channel name for a room."""
        return f"{self.CHANNEL_PREFIX}{room_id}"

    def _report(self, status: ConnectionStatus, room_id: Optional[str] = None) -> None:
        targets = (
            [self._status_handlers[room_id]]
            if room_id is not None and room_id in self._status_handlers
            else list(self._status_handlers.values())
        )
        for on_status in targets:
            try:
                on_status(status)
            except Exception as e:
                logger.error(f"Error in status handler: {e}", exc_info=True)

    async def subscribe(
        self,
        room_id: str,
        handler: PayloadHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> None:
        """
        Subscribe to a room's actions.

        Args:
            room_id: Room to subscribe to.
            handler: Async function called with each payload from the other peer.
            on_status: Optional callback for connection status changes.
        """
        channel = self._channel(room_id)
        if on_status:
            self._status_handlers[room_id] = on_status
        self._report(ConnectionStatus.CONNECTING, room_id)

        try:
            await self.pubsub.subscribe(channel)
        except redis.RedisError as e:
            logger.error(f"Failed to subscribe to {channel}: {e}")
            self._report(ConnectionStatus.ERROR, room_id)
            return

        self._handlers[channel] = handler
        logger.debug(f"Subscribed to channel {channel}")
        await self._start()
        self._report(ConnectionStatus.CONNECTED, room_id)

    async def unsubscribe(self, room_id: str) -> None:
        """
        Unsubscribe from a room's actions.

        Args:
            room_id: Room to unsubscribe from.
        """
        channel = self._channel(room_id)
        if channel in self._handlers:
            del self._handlers[channel]
            try:
                await self.pubsub.unsubscribe(channel)
            except redis.RedisError as e:
                logger.warning(f"Error unsubscribing from {channel}: {e}")
            logger.debug(f"Unsubscribed from channel {channel}")

        self._report(ConnectionStatus.DISCONNECTED, room_id)
        self._status_handlers.pop(room_id, None)

        if not self._handlers:
            await self._stop()

    async def publish(self, room_id: str, payload: str) -> int:
        """
        Publish a payload to a room's channel.

        Args:
            room_id: Target room.
            payload: Serialized envelope.

        Returns:
            Number of subscribers that received the message.

        Raises:
            ConnectionError: If Redis rejects or drops the publish.
        """
        channel = self._channel(room_id)
        message = ChannelMessage(room_id=room_id, sender_id=self.sender_id, payload=payload)
        try:
            count = await self.redis.publish(channel, message.to_json())
        except redis.RedisError as e:
            raise ConnectionError(f"Publish to {channel} failed: {e}") from e
        logger.debug(f"Published to {channel} ({count} receivers)")
        return count

    async def _start(self) -> None:
        """Start listening for messages."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._listen())
        logger.info("RedisActionChannel listener started")

    async def _stop(self) -> None:
        """Stop listening and clean up."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.pubsub.aclose()
        logger.info("RedisActionChannel listener stopped")

    async def _listen(self) -> None:
        """Main listener loop."""
        while self._running:
            try:
                message = await self.pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message and message["type"] == "message":
                    await self._handle_message(message)

            except asyncio.CancelledError:
                break
            except redis.ConnectionError as e:
                logger.error(f"PubSub connection error: {e}")
                self._report(ConnectionStatus.ERROR)
                await asyncio.sleep(1)
            except Exception as e:
                logger.error(f"PubSub listener error: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def _handle_message(self, raw_message: dict) -> None:
        """Handle an incoming Redis message."""
        try:
            channel = raw_message["channel"]
            if isinstance(channel, bytes):
                channel = channel.decode()

            data = raw_message["data"]
            if isinstance(data, bytes):
                data = data.decode()

            msg = ChannelMessage.from_json(data)

            # Skip messages from ourselves
            if msg.sender_id == self.sender_id:
                return

            handler = self._handlers.get(channel)
            if handler is None:
                return
            try:
                await handler(msg.payload)
            except Exception as e:
                logger.error(f"Error in action handler: {e}", exc_info=True)

        except (json.JSONDecodeError, KeyError) as e:
            logger.warning(f"Invalid message on action channel: {e}")
        except Exception as e:
            logger.error(f"Error processing action message: {e}", exc_info=True)


async def create_action_channel(redis_url: str, sender_id: str) -> RedisActionChannel:
    """
    Create a RedisActionChannel with a new Redis connection.

    Args:
        redis_url: Redis connection URL.
        sender_id: Unique id of this peer.

    Returns:
        Configured RedisActionChannel.
    """
    client = redis.from_url(redis_url, decode_responses=False)
    # Test connection
    await client.ping()
    logger.info("Action channel connected to Redis")
    return RedisActionChannel(client, sender_id)
