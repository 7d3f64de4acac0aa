"""
Entity store adapter

Abstract document collections keyed by name (orders, bookings, restaurants,
menuItems) supporting create, point update, delete and a change feed that
delivers the complete current record set on attach and after every change.

Two consumption styles are offered:
- stream(): a cancellable async iterator of snapshots (used by the mirror)
- subscribe(): callback style, returning an unsubscribe coroutine function
"""

import abc
import asyncio
import contextlib
import copy
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable
from uuid import uuid4

from .errors import NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

COLLECTIONS = ("orders", "bookings", "restaurants", "menuItems")

Snapshot = list[dict[str, Any]]

_CLOSED = object()


class SnapshotStream:
    """
    Snapshots of one collection in the order the store emitted them.

    A transport error is raised from the iterator without closing the stream;
    iterating again resumes with the next snapshot.
    """

    def __init__(
        self,
        collection: str,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.collection = collection
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    def push(self, snapshot: Snapshot) -> None:
        if not self.closed:
            self._queue.put_nowait(snapshot)

    def push_error(self, exc: StoreUnavailable) -> None:
        if not self.closed:
            self._queue.put_nowait(exc)

    def __aiter__(self) -> "SnapshotStream":
        return self

    async def __anext__(self) -> Snapshot:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, StoreUnavailable):
            raise item
        return item

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            await self._on_close()


class EntityStore(abc.ABC):
    """Contract consumed by the lifecycle manager and the mirror."""

    @abc.abstractmethod
    async def create(self, collection: str, record: dict) -> str:
        """Store a new document and return its assigned id."""

    @abc.abstractmethod
    async def update(self, collection: str, doc_id: str, partial: dict) -> None:
        """Merge ``partial`` into an existing document; NotFound if absent."""

    @abc.abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document; NotFound if absent."""

    @abc.abstractmethod
    async def stream(self, collection: str) -> SnapshotStream:
        """Attach a change feed; the first item is the current record set."""

    def subscribe(
        self,
        collection: str,
        on_snapshot: Callable[[Snapshot], None],
        on_error: Callable[[StoreUnavailable], None],
    ) -> Callable[[], Awaitable[None]]:
        """
        Callback-style change feed.

        on_snapshot gets the full record set on attach and after every change.
        on_error gets transport errors; the feed stays open afterwards.
        Exceptions raised by either callback are logged, never propagated.
        """

        async def run() -> None:
            try:
                stream = await self.stream(collection)
            except StoreUnavailable as exc:
                _safe_call(on_error, exc)
                return
            try:
                while True:
                    try:
                        async for snapshot in stream:
                            _safe_call(on_snapshot, snapshot)
                        return
                    except StoreUnavailable as exc:
                        _safe_call(on_error, exc)
            finally:
                await stream.aclose()

        task = asyncio.create_task(run(), name=f"subscribe:{collection}")

        async def unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        return unsubscribe

    async def aclose(self) -> None:
        """Release transport resources. Nothing to do by default."""


def _safe_call(callback: Callable, arg: Any) -> None:
    try:
        callback(arg)
    except Exception:
        logger.exception("Subscriber callback failed")


class MemoryStore(EntityStore):
    """
    In-process store. Ids are uuid4 hex strings.

    ``available`` toggles transport failure for every operation, and
    report_error() pushes a transport error to the open streams of a
    collection, as a dropped connection would.
    """

    def __init__(self, seed: dict[str, list[dict]] | None = None) -> None:
        self._docs: dict[str, dict[str, dict]] = defaultdict(dict)
        self._streams: dict[str, set[SnapshotStream]] = defaultdict(set)
        self.available = True
        for collection, records in (seed or {}).items():
            for record in records:
                record = dict(record)
                doc_id = record.pop("id", None) or uuid4().hex
                self._docs[collection][doc_id] = record

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailable("memory store is offline")

    async def create(self, collection: str, record: dict) -> str:
        self._check()
        doc_id = uuid4().hex
        self._docs[collection][doc_id] = copy.deepcopy(record)
        self._publish(collection)
        return doc_id

    async def update(self, collection: str, doc_id: str, partial: dict) -> None:
        self._check()
        doc = self._docs[collection].get(doc_id)
        if doc is None:
            raise NotFound(collection, doc_id)
        self._docs[collection][doc_id] = {**doc, **copy.deepcopy(partial)}
        self._publish(collection)

    async def delete(self, collection: str, doc_id: str) -> None:
        self._check()
        if self._docs[collection].pop(doc_id, None) is None:
            raise NotFound(collection, doc_id)
        self._publish(collection)

    async def stream(self, collection: str) -> SnapshotStream:
        self._check()

        async def detach() -> None:
            self._streams[collection].discard(stream)

        stream = SnapshotStream(collection, on_close=detach)
        self._streams[collection].add(stream)
        stream.push(self.snapshot(collection))
        return stream

    def snapshot(self, collection: str) -> Snapshot:
        return [
            {"id": doc_id, **copy.deepcopy(doc)}
            for doc_id, doc in self._docs[collection].items()
        ]

    def report_error(self, collection: str, exc: StoreUnavailable | None = None) -> None:
        exc = exc or StoreUnavailable(f"{collection} feed interrupted")
        for stream in list(self._streams[collection]):
            stream.push_error(exc)

    def _publish(self, collection: str) -> None:
        streams = self._streams[collection]
        if not streams:
            return
        snapshot = self.snapshot(collection)
        for stream in list(streams):
            stream.push(copy.deepcopy(snapshot))
