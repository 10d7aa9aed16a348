"""Forward engine event channels to Redis Streams for the storage collaborator."""

from __future__ import annotations

import asyncio

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from futures_engine.events import EventChannels, EventKind
from futures_engine.models.messages import StreamMessage

logger = structlog.get_logger()

STREAMS = {
    EventKind.TICK: "engine:ticks",
    EventKind.SIGNAL: "engine:signals",
    EventKind.EXECUTION: "engine:executions",
    EventKind.ERROR: "engine:errors",
}


class RedisEventForwarder:
    """One task per channel: get() from the queue, XADD to its stream."""

    def __init__(
        self,
        events: EventChannels,
        redis_url: str = "redis://redis:6379",
        maxlen: int = 10_000,
        socket_timeout: float = 30.0,
        socket_connect_timeout: float = 10.0,
        retry_on_timeout: bool = True,
        client: aioredis.Redis | None = None,
    ) -> None:
        self.events = events
        self.redis_url = redis_url
        self.maxlen = maxlen
        self.socket_timeout = socket_timeout
        self.socket_connect_timeout = socket_connect_timeout
        self.retry_on_timeout = retry_on_timeout
        self.client: aioredis.Redis | None = client
        self.forwarded = 0
        self._tasks: list[asyncio.Task] = []

    async def connect(self) -> None:
        if self.client is None:
            self.client = aioredis.from_url(
                self.redis_url,
                decode_responses=False,
                max_connections=10,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_connect_timeout,
                retry_on_timeout=self.retry_on_timeout,
            )
        await self.client.ping()
        logger.info("redis_connected", url=self.redis_url)

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("redis_disconnected")

    async def publish(self, stream: str, message: StreamMessage) -> str:
        """XADD message to stream. Returns message ID."""
        assert self.client is not None
        msg_id = await self.client.xadd(
            stream, message.to_redis(), maxlen=self.maxlen, approximate=True
        )
        self.forwarded += 1
        logger.debug("redis_published", stream=stream, msg_id=msg_id, type=message.type)
        return msg_id.decode() if isinstance(msg_id, bytes) else msg_id

    async def read_latest(self, stream: str) -> StreamMessage | None:
        """XREVRANGE to get latest message from stream."""
        assert self.client is not None
        results = await self.client.xrevrange(stream, count=1)
        if not results:
            return None
        _msg_id, data = results[0]
        return StreamMessage.from_redis(data)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._forward(kind), name=f"redis-forward-{kind.value}")
            for kind in STREAMS
        ]
        logger.info("redis_forwarder_started", streams=list(STREAMS.values()))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("redis_forwarder_stopped", forwarded=self.forwarded)

    async def _forward(self, kind: EventKind) -> None:
        stream = STREAMS[kind]
        while True:
            message = await self.events.get(kind)
            try:
                await self.publish(stream, message)
            except RedisError:
                logger.exception("redis_forward_error", stream=stream, msg_id=message.msg_id)
                await asyncio.sleep(1)
