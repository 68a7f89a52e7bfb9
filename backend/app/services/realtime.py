"""
Keystone Backend — Realtime Hub
===============================

What:  Pushes server events to connected WebSocket clients.
Why:   Clients learn about changes (e.g. "example:published") without polling.
How:   Each process keeps its own rooms of sockets. With Redis, every emit is
       published on one pub/sub channel and every instance (this one included)
       delivers it to the sockets it holds, so an event raised on any worker
       reaches the user wherever they are connected. Without Redis, or while
       the listener is resubscribing after a dropped connection, emits are
       delivered locally only.

Rooms:
    user-{id}   every socket opened by that user

Wire format (pub/sub and socket):
    {"room": "user-…", "event": "example:published", "data": {...}}
"""

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Dict, Optional, Set

import redis.asyncio as redis
from fastapi.encoders import jsonable_encoder
from redis.exceptions import RedisError
from starlette.websockets import WebSocket
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, wait_exponential

logger = logging.getLogger(__name__)

CHANNEL = "keystone:realtime"


def user_room(user_id: Any) -> str:
    return f"user-{user_id}"


class RealtimeHub:
    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        channel: str = CHANNEL,
        reconnect_backoff: float = 0.5,
    ):
        self._client = client
        self._channel = channel
        self._reconnect_backoff = reconnect_backoff
        # set while the listener is resubscribing
        self._degraded = False
        self._rooms: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._listener: Optional[asyncio.Task] = None
        self._pubsub = None

    @property
    def distributed(self) -> bool:
        return self._client is not None

    def connection_count(self, room: Optional[str] = None) -> int:
        if room is not None:
            return len(self._rooms.get(room, ()))
        return len({ws for sockets in self._rooms.values() for ws in sockets})

    # ── Membership ────────────────────────────────────────────────────────

    def join(self, room: str, websocket: WebSocket) -> None:
        self._rooms[room].add(websocket)
        logger.debug("Socket joined %s (%d in room)", room, len(self._rooms[room]))

    def leave(self, room: str, websocket: WebSocket) -> None:
        sockets = self._rooms.get(room)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._rooms[room]

    def leave_all(self, websocket: WebSocket) -> None:
        for room in list(self._rooms):
            self.leave(room, websocket)

    # ── Emit ──────────────────────────────────────────────────────────────

    async def emit_to_room(self, room: str, event: str, data: Any = None) -> None:
        message = {"room": room, "event": event, "data": jsonable_encoder(data)}
        if self._client is not None and not self._degraded:
            try:
                await self._client.publish(self._channel, json.dumps(message))
                return
            except RedisError as e:
                logger.warning("Realtime publish failed, delivering locally: %s", e)
        await self.deliver(message)

    async def emit_to_user(self, user_id: Any, event: str, data: Any = None) -> None:
        await self.emit_to_room(user_room(user_id), event, data)

    async def deliver(self, message: Dict[str, Any]) -> int:
        """Send a message to this process's sockets in its room; returns the number reached."""
        room = message.get("room")
        sockets = list(self._rooms.get(room, ()))
        payload = {"event": message.get("event"), "data": message.get("data")}
        sent = 0
        for websocket in sockets:
            try:
                await websocket.send_json(payload)
                sent += 1
            except (RuntimeError, OSError) as e:
                logger.info("Dropping dead socket in %s: %s", room, e)
                self.leave(room, websocket)
        return sent

    # ── Fan-out listener ──────────────────────────────────────────────────

    async def start(self) -> None:
        if self._client is None or self._listener is not None:
            return
        await self._subscribe()
        self._listener = asyncio.create_task(self._listen(), name="realtime-listener")
        logger.info("Realtime listener subscribed to %s", self._channel)

    async def _subscribe(self) -> None:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(self._channel)
        self._pubsub = pubsub

    async def _listen(self) -> None:
        while True:
            try:
                await self._consume()
                return
            except (RedisError, OSError) as e:
                # Until the channel is back, emits are delivered locally
                self._degraded = True
                logger.warning("Realtime listener lost Redis (%s); resubscribing", e)
                await self._resubscribe()

    async def _consume(self) -> None:
        async for raw in self._pubsub.listen():
            if raw.get("type") != "message":
                continue
            try:
                message = json.loads(raw["data"])
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed realtime message")
                continue
            await self.deliver(message)

    async def _resubscribe(self) -> None:
        await self._close_pubsub()
        # No attempt limit: stop() cancels the listener
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((RedisError, OSError)),
            wait=wait_exponential(multiplier=self._reconnect_backoff, max=30),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                await self._subscribe()
        self._degraded = False
        logger.info("Realtime listener resubscribed to %s", self._channel)

    async def _close_pubsub(self) -> None:
        if self._pubsub is None:
            return
        try:
            await self._pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug("Closing stale pub/sub failed: %s", e)
        self._pubsub = None

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self._channel)
                await self._pubsub.aclose()
            except RedisError as e:
                logger.warning("Realtime unsubscribe failed: %s", e)
            self._pubsub = None
        logger.info("Realtime listener stopped")
