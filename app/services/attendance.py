"""Create, update and delete attendance sessions, plus one-shot reads."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError

from app.config import settings
from app.exceptions import (
    AmbiguousAttendanceIdError,
    AttendanceNotFoundError,
    AttendanceValidationError,
    DuplicateAttendanceError,
)
from app.models.attendance import (
    INPUT_MODELS,
    SOURCE_ORDER,
    AttendanceFilters,
    AttendanceRecord,
    AttendanceSource,
    AttendanceSummary,
    Attendee,
    EntityAttendanceStats,
    MemberAttendanceStats,
)
from app.services.aggregator import attendance_rate, build_attendance_list
from app.services.live_view import fetch_records, fetch_summary
from app.services.record_mapper import map_document
from app.services.store import AttendanceStore, SourceQuery

logger = logging.getLogger(__name__)


def count_attended(attendees: list[Attendee]) -> int:
    return sum(1 for a in attendees if a.attended)


async def create_attendance(store: AttendanceStore, kind: AttendanceSource, fields: dict) -> AttendanceRecord:
    """Validate and store a new session for one entity and meeting date.

    Derived totals are computed here; any ``total_attended`` or
    ``attendance_rate`` in ``fields`` is ignored. Ministry and cell group
    sessions are unique per entity and date.
    """
    try:
        data = INPUT_MODELS[kind].model_validate(fields)
    except ValidationError as e:
        raise AttendanceValidationError(str(e)) from e

    if kind is not AttendanceSource.SERVICE:
        entity_id = getattr(data, kind.entity_id_field)
        existing = await store.get_all(
            kind.value,
            SourceQuery(match={kind.entity_id_field: entity_id, "meeting_date": data.meeting_date}),
        )
        if existing:
            raise DuplicateAttendanceError("Attendance already recorded for this meeting date")

    document = data.model_dump()
    document["total_attended"] = count_attended(data.attendees)
    if data.total_members is not None:
        document["attendance_rate"] = attendance_rate(document["total_attended"], data.total_members)
    else:
        document.pop("total_members")
    document["created_at"] = datetime.now(timezone.utc)

    try:
        doc_id = await store.create(kind.value, document)
    except DuplicateKeyError as e:
        # Lost a race with a concurrent create; the unique index caught it
        raise DuplicateAttendanceError("Attendance already recorded for this meeting date") from e
    logger.info(f"Created {kind.value}/{doc_id} with {document['total_attended']} attended")
    return map_document(kind, document, doc_id)


async def _locate(store: AttendanceStore, record_id: str) -> tuple[AttendanceSource, dict]:
    docs = await asyncio.gather(*(store.get(source.value, record_id) for source in SOURCE_ORDER))
    found = [(source, doc) for source, doc in zip(SOURCE_ORDER, docs) if doc is not None]
    if not found:
        raise AttendanceNotFoundError(record_id)
    if len(found) > 1:
        raise AmbiguousAttendanceIdError(record_id, [source.value for source, _ in found])
    return found[0]


async def update_attendance_attendees(
    store: AttendanceStore,
    record_id: str,
    attendees: list[Attendee],
    source: Optional[AttendanceSource] = None,
) -> AttendanceRecord:
    """Replace the attendee list and recompute totals against the stored member count.

    Without ``source`` the id is looked up in every collection.
    """
    if source is None:
        source, current = await _locate(store, record_id)
    else:
        current = await store.get(source.value, record_id)
        if current is None:
            raise AttendanceNotFoundError(record_id, source.value)

    total_attended = count_attended(attendees)
    stored_members = current.get("total_members")
    if not isinstance(stored_members, int) or stored_members <= 0:
        stored_members = len(attendees)
    changes = {
        "attendees": [a.model_dump() for a in attendees],
        "total_attended": total_attended,
        "attendance_rate": attendance_rate(total_attended, stored_members),
        "updated_at": datetime.now(timezone.utc),
    }
    if not await store.update(source.value, record_id, changes):
        # Deleted between the read and the write
        raise AttendanceNotFoundError(record_id, source.value)
    return map_document(source, {**current, **changes}, record_id)


async def delete_attendance(store: AttendanceStore, record_id: str, source: AttendanceSource) -> None:
    if not await store.delete(source.value, record_id):
        raise AttendanceNotFoundError(record_id, source.value)
    logger.info(f"Deleted {source.value}/{record_id}")


async def delete_attendance_everywhere(store: AttendanceStore, record_id: str) -> list[str]:
    """Delete ``record_id`` from every attendance collection at once.

    For callers that do not know where a record lives. Not-found is not an
    error in any collection; returns the collections that held the id.
    """
    collections = [source.value for source in SOURCE_ORDER] + settings.legacy_collections
    results = await asyncio.gather(*(store.delete(c, record_id) for c in collections))
    deleted = [c for c, ok in zip(collections, results) if ok]
    if deleted:
        logger.info(f"Deleted attendance {record_id} from {', '.join(deleted)}")
    else:
        logger.warning(f"Attendance {record_id} was not found in any collection; nothing deleted")
    return deleted


async def get_attendance_records(
    store: AttendanceStore, filters: Optional[AttendanceFilters] = None
) -> list[AttendanceRecord]:
    filters = filters or AttendanceFilters()
    groups = await asyncio.gather(
        *(fetch_records(store, source, filters.start_date, filters.end_date) for source in SOURCE_ORDER)
    )
    return build_attendance_list(groups, filters)


async def get_attendance_summary(
    store: AttendanceStore, start_date: Optional[str] = None, end_date: Optional[str] = None
) -> AttendanceSummary:
    return await fetch_summary(store, start_date, end_date)


async def get_attendance_by_entity(store: AttendanceStore, entity_id: str) -> list[AttendanceRecord]:
    """Sessions of one ministry or cell group. Services have no entity of their own."""
    groups = await asyncio.gather(
        fetch_records(store, AttendanceSource.MINISTRY, match={"ministry_id": entity_id}),
        fetch_records(store, AttendanceSource.CELL_GROUP, match={"cell_group_id": entity_id}),
    )
    return build_attendance_list(groups)


async def get_member_attendance_stats(store: AttendanceStore, member_id: str) -> MemberAttendanceStats:
    groups = await asyncio.gather(*(fetch_records(store, source) for source in SOURCE_ORDER))
    stats = MemberAttendanceStats(member_id=member_id)
    for record in (r for group in groups for r in group):
        attendee = next((a for a in record.attendees if a.member_id == member_id), None)
        if attendee is None:
            continue
        stats.total_sessions += 1
        entity = stats.by_entity.setdefault(record.entity_name, EntityAttendanceStats())
        entity.total += 1
        if attendee.attended:
            stats.attended_sessions += 1
            entity.attended += 1

    for entity in stats.by_entity.values():
        entity.rate = attendance_rate(entity.attended, entity.total)
    stats.attendance_rate = attendance_rate(stats.attended_sessions, stats.total_sessions)
    return stats
