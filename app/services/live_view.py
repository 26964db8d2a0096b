"""Live attendance views kept current by store subscriptions.

Each consumer owns its own view instance; nothing here is shared between
views. Every cache has a single writer (its collection's change handler) and
all handlers run on the event loop, so no locking is needed for the caches.
The three collections are watched independently, so a rebuilt list can mix
states from slightly different moments across collections.
"""
import asyncio
import logging
from typing import Callable, Optional

from app.models.attendance import (
    SOURCE_ORDER,
    AttendanceFilters,
    AttendanceRecord,
    AttendanceSource,
    AttendanceSummary,
)
from app.services.aggregator import build_attendance_list, summarize
from app.services.record_mapper import map_document
from app.services.store import (
    AttendanceStore,
    ChangeBatch,
    ChangeType,
    ErrorHandler,
    SourceQuery,
    Subscription,
    call_handler,
)

logger = logging.getLogger(__name__)


class _LiveView:
    def __init__(self, store: AttendanceStore, on_error: Optional[ErrorHandler] = None):
        self._store = store
        self._on_error = on_error
        self._subscriptions: list[Subscription] = []
        self.closed = False

    async def _report(self, exc: Exception) -> None:
        if self._on_error:
            await call_handler(self._on_error, exc)

    def close(self) -> None:
        """Cancel every subscription. Calling it again does nothing."""
        if self.closed:
            return
        self.closed = True
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions = []


class AttendanceListView(_LiveView):
    """Merged, filtered and sorted attendance list across all sources."""

    def __init__(
        self,
        store: AttendanceStore,
        filters: Optional[AttendanceFilters],
        on_records: Callable,
        on_error: Optional[ErrorHandler] = None,
    ):
        super().__init__(store, on_error)
        self.filters = filters or AttendanceFilters()
        self._on_records = on_records
        self._caches: dict[AttendanceSource, dict[str, AttendanceRecord]] = {
            source: {} for source in SOURCE_ORDER
        }

    def start(self) -> "AttendanceListView":
        for source in SOURCE_ORDER:
            query = SourceQuery.for_source(source, self.filters.start_date, self.filters.end_date)
            self._subscriptions.append(
                self._store.subscribe(
                    source.value,
                    self._handler_for(source),
                    query=query,
                    on_error=self._report,
                )
            )
        return self

    def _handler_for(self, source: AttendanceSource):
        async def handle(batch: ChangeBatch) -> None:
            self._apply(source, batch)
            await self._rebuild()

        return handle

    def _apply(self, source: AttendanceSource, batch: ChangeBatch) -> None:
        cache = self._caches[source]
        if batch.snapshot:
            cache.clear()
        for event in batch.events:
            if event.type is ChangeType.REMOVED:
                cache.pop(event.doc_id, None)
            else:
                cache[event.doc_id] = map_document(source, event.document, event.doc_id)

    @property
    def records(self) -> list[AttendanceRecord]:
        return build_attendance_list(
            (self._caches[source].values() for source in SOURCE_ORDER), self.filters
        )

    async def _rebuild(self) -> None:
        if self.closed:
            return
        await call_handler(self._on_records, self.records)


class AttendanceSummaryView(_LiveView):
    """Summary recomputed from a full fetch whenever any source changes."""

    def __init__(
        self,
        store: AttendanceStore,
        on_summary: Callable,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        on_error: Optional[ErrorHandler] = None,
    ):
        super().__init__(store, on_error)
        self.start_date = start_date
        self.end_date = end_date
        self._on_summary = on_summary
        self._lock = asyncio.Lock()

    async def start(self) -> "AttendanceSummaryView":
        for source in SOURCE_ORDER:
            self._subscriptions.append(
                self._store.subscribe(
                    source.value,
                    self._on_change,
                    on_error=self._report,
                    include_initial=False,
                )
            )
        await self.recompute()
        return self

    async def _on_change(self, batch: ChangeBatch) -> None:
        await self.recompute()

    async def recompute(self) -> None:
        # Serialized so a slow fetch cannot deliver after a newer one
        async with self._lock:
            if self.closed:
                return
            try:
                summary = await fetch_summary(self._store, self.start_date, self.end_date)
            except Exception as e:
                logger.error(f"Attendance summary refresh failed: {e}")
                await self._report(e)
                return
            if not self.closed:
                await call_handler(self._on_summary, summary)


async def fetch_records(
    store: AttendanceStore,
    source: AttendanceSource,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    match: Optional[dict] = None,
) -> list[AttendanceRecord]:
    query = SourceQuery.for_source(source, start_date, end_date, match)
    docs = await store.get_all(source.value, query)
    return [map_document(source, d, d["_id"]) for d in docs]


async def fetch_summary(
    store: AttendanceStore, start_date: Optional[str] = None, end_date: Optional[str] = None
) -> AttendanceSummary:
    groups = await asyncio.gather(
        *(fetch_records(store, source, start_date, end_date) for source in SOURCE_ORDER)
    )
    return summarize(record for group in groups for record in group)


def subscribe_to_attendance_list(
    store: AttendanceStore,
    filters: Optional[AttendanceFilters],
    on_records: Callable,
    on_error: Optional[ErrorHandler] = None,
) -> AttendanceListView:
    """Start a live attendance list; call ``close()`` on the result when done."""
    return AttendanceListView(store, filters, on_records, on_error).start()


async def subscribe_to_attendance_summary(
    store: AttendanceStore,
    on_summary: Callable,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    on_error: Optional[ErrorHandler] = None,
) -> AttendanceSummaryView:
    """Start a live summary; the first summary is delivered before this returns."""
    return await AttendanceSummaryView(store, on_summary, start_date, end_date, on_error).start()
