"""Real-time fan-out: room-keyed publish/subscribe.

Rooms:
- ``user_{id}``: one per user, every socket of that user joins it
- ``doubt_{id}``: participants currently viewing a doubt
- ``educators``: broadcast to every connected educator
- ``admins``: broadcast to every connected staff member

Two channels implement :class:`RealtimeChannel`:

- :class:`RoomHub` delivers directly to sockets held by this process.
- :class:`RedisRealtimeChannel` publishes to Redis so every worker's hub
  receives the event via :func:`relay_to_hub`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Protocol

logger = logging.getLogger(__name__)

EDUCATORS_ROOM = "educators"
ADMINS_ROOM = "admins"

# Relay resubscribe backoff, seconds
RELAY_RETRY_BASE_DELAY = 1.0
RELAY_RETRY_MAX_DELAY = 30.0


def user_room(user_id: str) -> str:
    return f"user_{user_id}"


def doubt_room(doubt_id: str) -> str:
    return f"doubt_{doubt_id}"


def envelope(event: str, payload: Any) -> dict[str, Any]:
    return {"event": event, "data": payload}


class Subscriber(Protocol):
    """Anything that can receive a JSON message (e.g. ``fastapi.WebSocket``)."""

    async def send_json(self, data: Any) -> None: ...


# ── Abstract Interface ───────────────────────────────────────


class RealtimeChannel(ABC):
    @abstractmethod
    async def publish(self, room: str, event: str, payload: Any) -> None:
        """Deliver *event* with *payload* to every subscriber of *room*."""

    async def close(self) -> None:
        return None


# ── In-process rooms ─────────────────────────────────────────


class RoomHub(RealtimeChannel):
    """Tracks which sockets are in which rooms for this process.

    Members are keyed by ``id()``: Starlette's ``WebSocket`` is a mapping
    and cannot be hashed.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, dict[int, Subscriber]] = {}

    def join(self, room: str, socket: Subscriber) -> None:
        self._rooms.setdefault(room, {})[id(socket)] = socket

    def leave(self, room: str, socket: Subscriber) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.pop(id(socket), None)
        if not members:
            del self._rooms[room]

    def is_member(self, room: str, socket: Subscriber) -> bool:
        return id(socket) in self._rooms.get(room, {})

    def leave_all(self, socket: Subscriber) -> None:
        for room in list(self._rooms):
            self.leave(room, socket)

    def members(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def publish(
        self,
        room: str,
        event: str,
        payload: Any,
        exclude: Subscriber | None = None,
    ) -> int:
        """Send to every socket in *room* except *exclude*; returns deliveries.

        Sockets that fail to receive are dropped from all rooms.
        """
        message = envelope(event, payload)
        delivered = 0
        dead: list[Subscriber] = []
        for socket in list(self._rooms.get(room, {}).values()):
            if socket is exclude:
                continue
            try:
                await socket.send_json(message)
                delivered += 1
            except Exception as exc:
                logger.warning("Dropping socket from %s after send failure: %s", room, exc)
                dead.append(socket)
        for socket in dead:
            self.leave_all(socket)
        return delivered


# ── Redis fan-out ────────────────────────────────────────────


class RedisRealtimeChannel(RealtimeChannel):
    """Publishes events to Redis channels named ``{prefix}{room}``."""

    def __init__(self, redis_url: str, prefix: str = "doubts:rt:") -> None:
        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=10,
        )
        self._prefix = prefix

    @property
    def prefix(self) -> str:
        return self._prefix

    async def publish(self, room: str, event: str, payload: Any) -> None:
        data = json.dumps({"room": room, **envelope(event, payload)}, default=str)
        await self._redis.publish(f"{self._prefix}{room}", data)

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            return await self._redis.ping()
        except Exception:
            return False

    async def relay_to_hub(self, hub: RoomHub) -> None:
        """Forward every published event to *hub* until cancelled.

        Should be started as an ``asyncio.Task`` in the FastAPI lifespan.
        Redis errors are logged and the subscription is re-established with
        exponential backoff; only cancellation stops the relay.
        """
        attempt = 0
        while True:
            pubsub = self._redis.pubsub()
            try:
                await pubsub.psubscribe(f"{self._prefix}*")
                logger.info("Realtime relay subscribed to %s*", self._prefix)
                attempt = 0
                async for message in pubsub.listen():
                    if message.get("type") != "pmessage":
                        continue
                    try:
                        body = json.loads(message["data"])
                        await hub.publish(body["room"], body["event"], body.get("data"))
                    except (ValueError, KeyError):
                        logger.warning("Ignoring malformed realtime message: %r", message.get("data"))
                return
            except Exception as exc:
                attempt += 1
                delay = min(RELAY_RETRY_BASE_DELAY * (2 ** (attempt - 1)), RELAY_RETRY_MAX_DELAY)
                logger.warning(
                    "Realtime relay lost Redis (%s), resubscribing in %.1fs [attempt %d]",
                    exc, delay, attempt,
                )
            finally:
                try:
                    await pubsub.aclose()
                except Exception as exc:
                    logger.debug("Closing realtime pubsub failed: %s", exc)
            await asyncio.sleep(delay)

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self._redis.aclose()
