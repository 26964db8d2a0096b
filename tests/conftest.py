from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from typing import Optional

import pytest

from app.services.store import (
    ChangeBatch,
    ChangeEvent,
    ChangeType,
    SourceQuery,
    Subscription,
    call_handler,
)


class InMemoryAttendanceStore:
    """AttendanceStore kept in dicts; notifies subscribers inline on every write."""

    def __init__(self):
        self.collections: dict[str, dict[str, dict]] = defaultdict(dict)
        self._subscribers: dict[str, list] = defaultdict(list)
        self._pending: list[asyncio.Task] = []
        self._ids = itertools.count(1)
        self.read_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None
        self.delete_calls: list[tuple[str, str]] = []

    def seed(self, collection: str, doc_id: str, document: dict) -> None:
        self.collections[collection][doc_id] = {**document, "_id": doc_id}

    def subscriber_count(self, collection: Optional[str] = None) -> int:
        if collection:
            return len(self._subscribers[collection])
        return sum(len(v) for v in self._subscribers.values())

    def subscribe(self, collection, on_change, *, query=None, on_error=None, include_initial=True):
        entry = (on_change, query or SourceQuery(), on_error)
        self._subscribers[collection].append(entry)
        if include_initial:
            events = [
                ChangeEvent(ChangeType.ADDED, doc_id, dict(doc))
                for doc_id, doc in self.collections[collection].items()
                if entry[1].matches(doc)
            ]
            task = asyncio.get_running_loop().create_task(on_change(ChangeBatch(events, snapshot=True)))
            self._pending.append(task)
        return Subscription(lambda: self._subscribers[collection].remove(entry))

    async def settle(self) -> None:
        """Wait until initial snapshots have been delivered."""
        while self._pending:
            pending, self._pending = self._pending, []
            await asyncio.gather(*pending)

    async def fail_subscriptions(self, collection: str, exc: Exception) -> None:
        for _, _, on_error in list(self._subscribers[collection]):
            if on_error:
                await call_handler(on_error, exc)

    async def _notify(self, collection: str, doc_id: str, kind: ChangeType, document: Optional[dict]):
        for on_change, query, _ in list(self._subscribers[collection]):
            if document is None or not query.matches(document):
                event = ChangeEvent(ChangeType.REMOVED, doc_id)
            else:
                event = ChangeEvent(kind, doc_id, dict(document))
            await on_change(ChangeBatch([event]))

    async def get_all(self, collection, query=None):
        if self.read_error:
            raise self.read_error
        query = query or SourceQuery()
        return [dict(d) for d in self.collections[collection].values() if query.matches(d)]

    async def get(self, collection, doc_id):
        if self.read_error:
            raise self.read_error
        doc = self.collections[collection].get(doc_id)
        return dict(doc) if doc else None

    async def create(self, collection, fields):
        if self.write_error:
            raise self.write_error
        doc_id = f"doc{next(self._ids)}"
        self.collections[collection][doc_id] = {**fields, "_id": doc_id}
        await self._notify(collection, doc_id, ChangeType.ADDED, self.collections[collection][doc_id])
        return doc_id

    async def update(self, collection, doc_id, fields):
        if self.write_error:
            raise self.write_error
        doc = self.collections[collection].get(doc_id)
        if doc is None:
            return False
        doc.update(fields)
        await self._notify(collection, doc_id, ChangeType.MODIFIED, doc)
        return True

    async def delete(self, collection, doc_id):
        self.delete_calls.append((collection, doc_id))
        if self.write_error:
            raise self.write_error
        if self.collections[collection].pop(doc_id, None) is None:
            return False
        await self._notify(collection, doc_id, ChangeType.REMOVED, None)
        return True


def attendee(member_id: str, attended: bool, **extra) -> dict:
    return {"member_id": member_id, "full_name": f"Member {member_id}", "attended": attended, **extra}


def roster(attended: int, absent: int = 0, prefix: str = "m") -> list[dict]:
    return [attendee(f"{prefix}{i}", True) for i in range(attended)] + [
        attendee(f"{prefix}{attended + i}", False) for i in range(absent)
    ]


@pytest.fixture
def store():
    return InMemoryAttendanceStore()


@pytest.fixture
def church_store(store):
    """Youth ministry, Alpha cell group and a Sunday service, all on 2024-05-05."""
    store.seed(
        "ministry_attendance",
        "min-youth",
        {
            "ministry_id": "youth",
            "ministry_name": "Youth",
            "meeting_date": "2024-05-05",
            "attendees": roster(8, 2, prefix="y"),
            "total_members": 10,
        },
    )
    store.seed(
        "cell_group_attendance",
        "cell-alpha",
        {
            "cell_group_id": "alpha",
            "cell_group_name": "Alpha",
            "meeting_date": "2024-05-05",
            "attendees": roster(4, 2, prefix="a"),
            "total_members": 6,
        },
    )
    store.seed(
        "service_attendance",
        "svc-sunday",
        {
            "service_name": "Sunday Morning",
            "service_date": "2024-05-05",
            "attendees": roster(50, prefix="s"),
        },
    )
    return store
