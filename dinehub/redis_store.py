"""
Redis-backed entity store

Each collection is a hash ``{prefix}:{collection}`` of id → JSON document.
Every write publishes a change notice on ``{prefix}:{collection}:changes``;
stream() listens on that channel and re-reads the whole hash per notice, so
each snapshot is a full replacement image of the collection.

Note: Redis Pub/Sub is fire-and-forget. A notice lost while disconnected is
recovered by the next one, since every snapshot is a full re-read.
"""

import asyncio
import contextlib
import json
import logging
from uuid import uuid4

import redis.asyncio as aioredis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from .errors import NotFound, StoreUnavailable
from .store import EntityStore, Snapshot, SnapshotStream

logger = logging.getLogger(__name__)


class RedisStore(EntityStore):
    def __init__(
        self,
        redis: aioredis.Redis,
        prefix: str = "dinehub",
        retry_delay: float = 1.0,
    ) -> None:
        self.redis = redis
        self.prefix = prefix
        self.retry_delay = retry_delay

    @classmethod
    def from_url(cls, url: str, prefix: str = "dinehub") -> "RedisStore":
        return cls(aioredis.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, collection: str) -> str:
        return f"{self.prefix}:{collection}"

    def _channel(self, collection: str) -> str:
        return f"{self.prefix}:{collection}:changes"

    async def _notify(self, collection: str, op: str, doc_id: str) -> None:
        await self.redis.publish(
            self._channel(collection), json.dumps({"op": op, "id": doc_id})
        )

    # ── writes ────────────────────────────────────

    async def create(self, collection: str, record: dict) -> str:
        doc_id = uuid4().hex
        try:
            await self.redis.hset(
                self._key(collection), doc_id, json.dumps(record, default=str)
            )
            await self._notify(collection, "create", doc_id)
        except RedisError as e:
            raise StoreUnavailable(f"create {collection}: {e}") from e
        return doc_id

    async def update(self, collection: str, doc_id: str, partial: dict) -> None:
        try:
            raw = await self.redis.hget(self._key(collection), doc_id)
            if raw is None:
                raise NotFound(collection, doc_id)
            doc = {**json.loads(raw), **partial}
            await self.redis.hset(
                self._key(collection), doc_id, json.dumps(doc, default=str)
            )
            await self._notify(collection, "update", doc_id)
        except RedisError as e:
            raise StoreUnavailable(f"update {collection}/{doc_id}: {e}") from e

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            removed = await self.redis.hdel(self._key(collection), doc_id)
            if not removed:
                raise NotFound(collection, doc_id)
            await self._notify(collection, "delete", doc_id)
        except RedisError as e:
            raise StoreUnavailable(f"delete {collection}/{doc_id}: {e}") from e

    # ── reads ─────────────────────────────────────

    async def snapshot(self, collection: str) -> Snapshot:
        raw = await self.redis.hgetall(self._key(collection))
        return [{"id": doc_id, **json.loads(doc)} for doc_id, doc in raw.items()]

    async def stream(self, collection: str) -> SnapshotStream:
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(self._channel(collection))
            initial = await self.snapshot(collection)
        except RedisError as e:
            await pubsub.aclose()
            raise StoreUnavailable(f"subscribe {collection}: {e}") from e
        logger.info("Subscribed to %s", self._channel(collection))

        async def close() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            try:
                await pubsub.unsubscribe(self._channel(collection))
            finally:
                await pubsub.aclose()

        stream = SnapshotStream(collection, on_close=close)
        stream.push(initial)
        task = asyncio.create_task(
            self._listen(collection, pubsub, stream), name=f"redis:{collection}"
        )
        return stream

    async def _listen(
        self, collection: str, pubsub: PubSub, stream: SnapshotStream
    ) -> None:
        while True:
            try:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if message and message["type"] == "message":
                    stream.push(await self.snapshot(collection))
            except RedisError as e:
                # the client reconnects on the next call
                logger.warning("Change feed for %s interrupted: %s", collection, e)
                stream.push_error(StoreUnavailable(f"{collection} feed: {e}"))
                await asyncio.sleep(self.retry_delay)

    async def aclose(self) -> None:
        await self.redis.aclose()
