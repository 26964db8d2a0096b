"""Combine, sort, filter and summarize unified attendance records."""
from datetime import date
from itertools import chain
from typing import Iterable, Optional

from app.models.attendance import (
    SOURCE_ORDER,
    AttendanceFilters,
    AttendanceRecord,
    AttendanceSummary,
    EntityType,
    TypeBreakdown,
)

_SOURCE_RANK = {source: rank for rank, source in enumerate(SOURCE_ORDER)}


def attendance_rate(attended: int, members: Optional[int]) -> int:
    """Percentage rounded half up, 0 when there are no members, capped at 100."""
    if not members or members <= 0:
        return 0
    # Integer form of floor(100 * attended / members + 0.5)
    rate = (200 * attended + members) // (2 * members)
    return max(0, min(100, rate))


def merge_records(*groups: Iterable[AttendanceRecord]) -> list[AttendanceRecord]:
    return list(chain.from_iterable(groups))


def sort_records(records: Iterable[AttendanceRecord]) -> list[AttendanceRecord]:
    """Newest meeting first.

    Dates compare as plain strings, which is only correct for ISO YYYY-MM-DD.
    Equal dates order by source (ministry, service, cell group), then entity
    id, then record id, so the result does not depend on arrival order.
    """
    ordered = sorted(
        records,
        key=lambda r: (_SOURCE_RANK.get(r.source, len(_SOURCE_RANK)), r.entity_id or "", r.id),
    )
    ordered.sort(key=lambda r: r.meeting_date or "", reverse=True)
    return ordered


def filter_records(
    records: Iterable[AttendanceRecord], filters: Optional[AttendanceFilters]
) -> list[AttendanceRecord]:
    if filters is None:
        return list(records)

    def keep(r: AttendanceRecord) -> bool:
        if filters.entity_type and filters.entity_type != "all":
            if r.entity_type.value != filters.entity_type:
                return False
        if filters.entity_id and r.entity_id != filters.entity_id:
            return False
        if filters.start_date and r.meeting_date < filters.start_date:
            return False
        if filters.end_date and r.meeting_date > filters.end_date:
            return False
        return True

    return [r for r in records if keep(r)]


def build_attendance_list(
    groups: Iterable[Iterable[AttendanceRecord]], filters: Optional[AttendanceFilters] = None
) -> list[AttendanceRecord]:
    return filter_records(sort_records(merge_records(*groups)), filters)


def summarize(records: Iterable[AttendanceRecord], generated_on: Optional[str] = None) -> AttendanceSummary:
    summary = AttendanceSummary(generated_on=generated_on or date.today().isoformat())
    breakdown: dict[EntityType, TypeBreakdown] = {}

    for record in records:
        members = record.total_members or 0
        summary.total_events += 1
        summary.total_members += members
        summary.total_attended += record.total_attended

        b = breakdown.setdefault(record.entity_type, TypeBreakdown())
        b.count += 1
        b.members += members
        b.attended += record.total_attended

    # Rates only once the sums are final
    for b in breakdown.values():
        b.rate = attendance_rate(b.attended, b.members)
    summary.breakdown = breakdown
    summary.overall_rate = attendance_rate(summary.total_attended, summary.total_members)
    return summary
