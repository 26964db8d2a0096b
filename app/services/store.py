"""Document store access: one-shot reads, writes and change subscriptions."""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from app.config import settings
from app.models.attendance import AttendanceSource

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class ChangeEvent:
    type: ChangeType
    doc_id: str
    document: Optional[dict] = None


@dataclass
class ChangeBatch:
    """Changes delivered by one notification.

    A snapshot batch lists every matching document and replaces whatever the
    receiver held for that collection.
    """

    events: list[ChangeEvent]
    snapshot: bool = False


ChangeHandler = Callable[[ChangeBatch], Awaitable[None]]
ErrorHandler = Callable[[Exception], Any]


async def call_handler(handler: Callable, *args) -> None:
    """Call a consumer callback that may be a plain function or a coroutine."""
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


@dataclass(frozen=True)
class SourceQuery:
    """Equality matches plus an optional inclusive date range.

    A document's date is the first non-empty field of ``date_fields``.
    Dates are ISO ``YYYY-MM-DD`` strings and compare lexicographically.
    """

    date_fields: tuple[str, ...] = ("meeting_date",)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    match: dict = field(default_factory=dict)

    @classmethod
    def for_source(
        cls,
        source: AttendanceSource,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        match: Optional[dict] = None,
    ) -> "SourceQuery":
        return cls(
            date_fields=source.date_fields,
            start_date=start_date or None,
            end_date=end_date or None,
            match=dict(match or {}),
        )

    @property
    def has_date_range(self) -> bool:
        return bool(self.start_date or self.end_date)

    def document_date(self, document: dict) -> Optional[str]:
        for name in self.date_fields:
            value = document.get(name)
            if value:
                return value if isinstance(value, str) else None
        return None

    def matches(self, document: dict) -> bool:
        for key, value in self.match.items():
            if document.get(key) != value:
                return False
        if not self.has_date_range:
            return True
        meeting_date = self.document_date(document)
        if meeting_date is None:
            return False
        if self.start_date and meeting_date < self.start_date:
            return False
        if self.end_date and meeting_date > self.end_date:
            return False
        return True

    def to_mongo(self) -> dict:
        query: dict = dict(self.match)
        if not self.has_date_range:
            return query
        bounds = {}
        if self.start_date:
            bounds["$gte"] = self.start_date
        if self.end_date:
            bounds["$lte"] = self.end_date
        if len(self.date_fields) == 1:
            query[self.date_fields[0]] = bounds
            return query
        # Later fields only count when every earlier one is missing or empty
        clauses = []
        empty_before: dict = {}
        for name in self.date_fields:
            clauses.append({**empty_before, name: bounds})
            empty_before[name] = {"$in": [None, ""]}
        query["$or"] = clauses
        return query


class Subscription:
    """Handle returned by ``subscribe``; ``cancel`` stops further notifications."""

    def __init__(self, on_cancel: Callable[[], Any]):
        self._on_cancel = on_cancel
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self._on_cancel()


class AttendanceStore(Protocol):
    def subscribe(
        self,
        collection: str,
        on_change: ChangeHandler,
        *,
        query: Optional[SourceQuery] = None,
        on_error: Optional[ErrorHandler] = None,
        include_initial: bool = True,
    ) -> Subscription:
        """Deliver a snapshot batch, then incremental changes until cancelled."""
        raise NotImplementedError

    async def get_all(self, collection: str, query: Optional[SourceQuery] = None) -> list[dict]:
        raise NotImplementedError

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        raise NotImplementedError

    async def create(self, collection: str, fields: dict) -> str:
        raise NotImplementedError

    async def update(self, collection: str, doc_id: str, fields: dict) -> bool:
        """Set ``fields`` on one document; False when it does not exist."""
        raise NotImplementedError

    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete one document; False when it does not exist, never raises for that."""
        raise NotImplementedError


def _object_id(doc_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        return None


def _with_str_id(document: dict) -> dict:
    data = dict(document)
    data["_id"] = str(data["_id"])
    return data


class MongoAttendanceStore:
    """AttendanceStore on MongoDB. Subscriptions use change streams."""

    def __init__(self, database, retry_seconds: Optional[float] = None):
        self._db = database
        self._retry_seconds = retry_seconds or settings.subscription_retry_seconds

    def subscribe(
        self,
        collection: str,
        on_change: ChangeHandler,
        *,
        query: Optional[SourceQuery] = None,
        on_error: Optional[ErrorHandler] = None,
        include_initial: bool = True,
    ) -> Subscription:
        task = asyncio.create_task(
            self._watch(collection, on_change, query or SourceQuery(), on_error, include_initial),
            name=f"watch:{collection}",
        )
        logger.info(f"Subscribed to {collection}")
        return Subscription(task.cancel)

    async def _watch(self, collection, on_change, query, on_error, include_initial):
        coll = self._db[collection]
        first_connect = True
        while True:
            try:
                # Open the stream before reading so nothing between the two is missed
                async with coll.watch(full_document="updateLookup") as stream:
                    docs = await coll.find(query.to_mongo()).to_list(length=None)
                    if include_initial or not first_connect:
                        events = [
                            ChangeEvent(ChangeType.ADDED, str(d["_id"]), _with_str_id(d))
                            for d in docs
                        ]
                        await on_change(ChangeBatch(events, snapshot=True))
                    first_connect = False
                    async for change in stream:
                        event = self._to_event(change, query)
                        if event is not None:
                            await on_change(ChangeBatch([event]))
                    # The stream only ends on invalidation (drop/rename); resync from scratch
                    logger.warning(f"Change stream on {collection} was invalidated, reopening")
            except asyncio.CancelledError:
                logger.info(f"Unsubscribed from {collection}")
                raise
            except PyMongoError as e:
                logger.error(f"Change stream on {collection} failed: {e}")
                await self._report(collection, on_error, e)
                await asyncio.sleep(self._retry_seconds)
            except Exception as e:
                logger.exception(f"Change handler for {collection} failed, subscription stopped")
                await self._report(collection, on_error, e)
                return

    @staticmethod
    async def _report(collection, on_error, error):
        if on_error is None:
            return
        try:
            await call_handler(on_error, error)
        except Exception:
            # A failing error handler must not end the watch loop
            logger.exception(f"Error handler for {collection} failed")

    @staticmethod
    def _to_event(change: dict, query: SourceQuery) -> Optional[ChangeEvent]:
        op = change.get("operationType")
        if op not in ("insert", "update", "replace", "delete"):
            return None
        doc_id = str(change["documentKey"]["_id"])
        if op == "delete":
            return ChangeEvent(ChangeType.REMOVED, doc_id)
        document = change.get("fullDocument")
        # Gone before the lookup, or moved out of the query's range
        if document is None or not query.matches(document):
            return ChangeEvent(ChangeType.REMOVED, doc_id)
        kind = ChangeType.ADDED if op == "insert" else ChangeType.MODIFIED
        return ChangeEvent(kind, doc_id, _with_str_id(document))

    async def get_all(self, collection: str, query: Optional[SourceQuery] = None) -> list[dict]:
        mongo_query = (query or SourceQuery()).to_mongo()
        docs = await self._db[collection].find(mongo_query).to_list(length=None)
        return [_with_str_id(d) for d in docs]

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        oid = _object_id(doc_id)
        if oid is None:
            return None
        doc = await self._db[collection].find_one({"_id": oid})
        return _with_str_id(doc) if doc else None

    async def create(self, collection: str, fields: dict) -> str:
        result = await self._db[collection].insert_one(dict(fields))
        return str(result.inserted_id)

    async def update(self, collection: str, doc_id: str, fields: dict) -> bool:
        oid = _object_id(doc_id)
        if oid is None:
            return False
        result = await self._db[collection].update_one({"_id": oid}, {"$set": fields})
        return result.matched_count > 0

    async def delete(self, collection: str, doc_id: str) -> bool:
        oid = _object_id(doc_id)
        if oid is None:
            return False
        result = await self._db[collection].delete_one({"_id": oid})
        return result.deleted_count > 0
