"""
Synchronization layer

Keeps one in-process mirror per collection by attaching to the store's change
feed exactly once, and fans every replacement out to local consumers.

- Each snapshot replaces the mirrored collection wholesale (no merge).
- Readers get immutable tuples; replacement swaps the reference, so readers
  never see a half-applied snapshot.
- If no collection delivers a snapshot within ``init_timeout`` the mirror
  enters the terminal ``failed`` state. It never re-subscribes or retries.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .errors import InitializationFailed, StoreUnavailable
from .models import Booking, Order, Restaurant
from .store import COLLECTIONS, EntityStore, Snapshot, SnapshotStream

logger = logging.getLogger(__name__)

PARSERS = {
    "orders": Order,
    "bookings": Booking,
    "restaurants": Restaurant,
}

_CLOSED = object()


@dataclass(frozen=True)
class MirrorUpdate:
    collection: str
    records: tuple


class UpdateFeed:
    """
    One consumer's view of mirror replacements, in arrival order per
    collection. Registered on construction, so nothing is missed between
    creating the feed and iterating it.
    """

    def __init__(self, mirror: "EntityMirror") -> None:
        self._mirror = mirror
        self._queue: asyncio.Queue = asyncio.Queue()
        mirror._listeners.add(self._queue)
        if mirror.failure is not None:
            self._queue.put_nowait(mirror.failure)
        elif mirror.state == "closed":
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "UpdateFeed":
        return self

    async def __anext__(self) -> MirrorUpdate:
        item = await self._queue.get()
        if item is _CLOSED:
            self.close()
            raise StopAsyncIteration
        if isinstance(item, InitializationFailed):
            self.close()
            raise item
        return item

    def close(self) -> None:
        self._mirror._listeners.discard(self._queue)

    async def __aenter__(self) -> "UpdateFeed":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class EntityMirror:
    """
    Handle owning the mirrors of a set of collections.

    Construct, ``await start()`` (or ``async with``), read, then
    ``await close()``. start() and close() are both idempotent.
    """

    def __init__(
        self,
        store: EntityStore,
        collections: tuple[str, ...] = COLLECTIONS,
        init_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.collections = tuple(collections)
        self.init_timeout = init_timeout
        self.state = "idle"  # idle | connecting | ready | failed | closed
        self.failure: InitializationFailed | None = None
        self._data: dict[str, tuple] = {c: () for c in self.collections}
        self._index: dict[str, dict[str, Any]] = {c: {} for c in self.collections}
        self._pending: dict[str, dict[str, Any]] = {c: {} for c in self.collections}
        self._received: set[str] = set()
        self._expired: set[str] = set()
        self._streams: list[SnapshotStream] = []
        self._tasks: list[asyncio.Task] = []
        self._timer: asyncio.Task | None = None
        self._listeners: set[asyncio.Queue] = set()
        self._settled = asyncio.Event()

    # ── lifetime ──────────────────────────────────

    async def start(self) -> None:
        if self.state != "idle":
            return
        self.state = "connecting"
        self._timer = asyncio.create_task(self._init_timer(), name="mirror:init-timer")
        for collection in self.collections:
            try:
                stream = await self.store.stream(collection)
            except StoreUnavailable as e:
                logger.warning("Could not attach to %s: %s", collection, e)
                continue
            self._streams.append(stream)
            self._tasks.append(
                asyncio.create_task(self._pump(collection, stream), name=f"mirror:{collection}")
            )
            logger.info("Mirroring %s", collection)

    async def close(self) -> None:
        if self.state == "closed":
            return
        self.state = "closed"
        tasks = [t for t in [self._timer, *self._tasks] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for stream in self._streams:
            with contextlib.suppress(StoreUnavailable):
                await stream.aclose()
        self._streams.clear()
        self._tasks.clear()
        self._broadcast(_CLOSED)
        self._settled.set()
        logger.info("Mirror closed")

    async def __aenter__(self) -> "EntityMirror":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def wait_ready(self) -> None:
        """Block until every collection is populated or the timeout settles it."""
        await self._settled.wait()
        if self.failure is not None:
            raise self.failure

    # ── reads ─────────────────────────────────────

    def records(self, collection: str) -> tuple:
        if self.failure is not None:
            raise self.failure
        if collection in self._expired:
            raise InitializationFailed([collection], self.init_timeout)
        return self._data[collection]

    def get(self, collection: str, doc_id: str) -> Any | None:
        self.records(collection)
        return self._index[collection].get(doc_id)

    @property
    def orders(self) -> tuple[Order, ...]:
        return self.records("orders")

    @property
    def bookings(self) -> tuple[Booking, ...]:
        return self.records("bookings")

    @property
    def restaurants(self) -> tuple[Restaurant, ...]:
        return self.records("restaurants")

    @property
    def menu_items(self) -> tuple[dict, ...]:
        return self.records("menuItems")

    def listen(self) -> UpdateFeed:
        return UpdateFeed(self)

    def write_through(self, collection: str, record: Any) -> None:
        """
        Show a record the caller just wrote to the store before the store's
        own snapshot echoes it back. Older snapshots arriving meanwhile do not
        overwrite it.
        """
        if self.state in ("failed", "closed"):
            return
        self._pending[collection][record.id] = record
        current = self._data[collection]
        if record.id in self._index[collection]:
            records = [record if r.id == record.id else r for r in current]
        else:
            records = [*current, record]
        self._install(collection, records)
        self._broadcast(MirrorUpdate(collection, self._data[collection]))

    # ── internals ─────────────────────────────────

    async def _pump(self, collection: str, stream: SnapshotStream) -> None:
        while True:
            try:
                async for snapshot in stream:
                    self._replace(collection, snapshot)
                return
            except StoreUnavailable as e:
                # the adapter reconnects; keep the subscription open
                logger.warning("Subscription to %s reported an error: %s", collection, e)

    def _replace(self, collection: str, snapshot: Snapshot) -> None:
        if self.state in ("failed", "closed"):
            return
        parser = PARSERS.get(collection)
        records = []
        for raw in snapshot:
            if parser is None:
                records.append(raw)
                continue
            try:
                records.append(parser.model_validate(raw))
            except ValidationError as e:
                logger.warning(
                    "Skipping malformed %s record %s: %s", collection, raw.get("id"), e
                )
        self._install(collection, self._overlay(collection, records))
        self._received.add(collection)
        self._expired.discard(collection)
        if self.state == "connecting" and self._received == set(self.collections):
            self.state = "ready"
            self._settled.set()
            if self._timer is not None:
                self._timer.cancel()
        self._broadcast(MirrorUpdate(collection, self._data[collection]))

    def _install(self, collection: str, records: list) -> None:
        self._data[collection] = tuple(records)
        self._index[collection] = {
            (r["id"] if isinstance(r, dict) else r.id): r for r in records
        }

    def _overlay(self, collection: str, records: list) -> list:
        """
        Keep locally written records in place of older store images.

        A pending write is dropped once the store shows a status stamp at
        least as recent, or once the record is gone from the store.
        """
        pending = self._pending[collection]
        if not pending:
            return records
        seen = set()
        merged = []
        for record in records:
            local = pending.get(record.id)
            seen.add(record.id)
            if local is not None and not _acknowledges(record, local):
                merged.append(local)
                continue
            pending.pop(record.id, None)
            merged.append(record)
        for doc_id in set(pending) - seen:
            del pending[doc_id]
        return merged

    async def _init_timer(self) -> None:
        await asyncio.sleep(self.init_timeout)
        missing = [c for c in self.collections if c not in self._received]
        if not missing:
            return
        if len(missing) == len(self.collections):
            self.state = "failed"
            self.failure = InitializationFailed(missing, self.init_timeout)
            logger.error("Mirror initialization failed: %s", self.failure)
            self._broadcast(self.failure)
        else:
            self.state = "ready"
            self._expired.update(missing)
            logger.warning(
                "Mirror started without %s after %gs", ", ".join(missing), self.init_timeout
            )
        self._settled.set()

    def _broadcast(self, item: Any) -> None:
        for queue in list(self._listeners):
            queue.put_nowait(item)


def _acknowledges(stored: Any, local: Any) -> bool:
    if stored.status_updated_at is None or local.status_updated_at is None:
        return stored.status == local.status
    return stored.status_updated_at >= local.status_updated_at
