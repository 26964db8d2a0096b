"""Normalize stored attendance documents into AttendanceRecord.

Stored documents come from three collections with different shapes and are
not trusted: every field is decoded on its own and falls back to a default
when it is missing or malformed, so one bad document never breaks a view.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from app.models.attendance import AttendanceRecord, AttendanceSource, Attendee
from app.services.aggregator import attendance_rate

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class DecodedRecord:
    record: AttendanceRecord
    defaulted: list[str] = field(default_factory=list)  # absent, default applied
    malformed: list[str] = field(default_factory=list)  # present but unusable, default applied

    @property
    def is_clean(self) -> bool:
        return not self.malformed


class _Decoder:
    """Reads fields off one mapping, noting every default it applies.

    ``prefix`` names the fields of a nested mapping (``attendees[2].email``);
    nested decoders share the parent's lists.
    """

    def __init__(self, raw: Any, prefix: str = "", parent: Optional["_Decoder"] = None):
        self.data = raw if isinstance(raw, dict) else {}
        self.prefix = prefix
        self.defaulted: list[str] = parent.defaulted if parent else []
        self.malformed: list[str] = parent.malformed if parent else []
        if not isinstance(raw, dict) and raw is not None:
            self.malformed.append("document")

    def _get(self, name: str, track_absent: bool = True):
        value = self.data.get(name, _MISSING)
        if value is _MISSING or value is None:
            if track_absent:
                self.defaulted.append(self.prefix + name)
            return _MISSING
        return value

    def string(self, name: str, default: Optional[str] = None, track_absent: bool = True) -> Optional[str]:
        value = self._get(name, track_absent)
        if value is _MISSING:
            return default
        if not isinstance(value, str):
            self.malformed.append(self.prefix + name)
            return default
        return value or default

    def flag(self, name: str) -> bool:
        """Only a real boolean counts; "yes" or 1 would otherwise coerce."""
        value = self._get(name, track_absent=False)
        if value is _MISSING:
            return False
        if not isinstance(value, bool):
            self.malformed.append(self.prefix + name)
            return False
        return value

    def count(self, name: str) -> int:
        """Non-negative whole number; 0 when absent or malformed."""
        value = self._get(name)
        if value is _MISSING:
            return 0
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            self.malformed.append(self.prefix + name)
            return 0
        return value

    def timestamp(self, name: str) -> Optional[datetime]:
        value = self._get(name)
        if value is _MISSING:
            return None
        if not isinstance(value, datetime):
            self.malformed.append(self.prefix + name)
            return None
        return value

    def attendees(self) -> list[Attendee]:
        value = self._get("attendees")
        if value is _MISSING:
            return []
        if not isinstance(value, list):
            self.malformed.append("attendees")
            return []
        attendees = []
        for index, entry in enumerate(value):
            attendee = self._attendee(index, entry)
            if attendee is not None:
                attendees.append(attendee)
        return attendees

    def _attendee(self, index: int, entry: Any) -> Optional[Attendee]:
        # Entries are dropped only when they cannot name a member
        label = f"attendees[{index}]"
        if not isinstance(entry, dict):
            self.malformed.append(label)
            return None
        member_id = entry.get("member_id")
        if isinstance(member_id, int) and not isinstance(member_id, bool):
            self.malformed.append(f"{label}.member_id")
            member_id = str(member_id)
        if not isinstance(member_id, str) or not member_id:
            self.malformed.append(label)
            return None

        # Display fields default quietly when absent; only bad values are reported
        d = _Decoder(entry, prefix=f"{label}.", parent=self)
        return Attendee(
            member_id=member_id,
            membership_number=d.string("membership_number", track_absent=False),
            full_name=d.string("full_name", "", track_absent=False),
            email=d.string("email", track_absent=False),
            phone=d.string("phone", track_absent=False),
            attended=d.flag("attended"),
            check_in_time=d.string("check_in_time", track_absent=False),
            notes=d.string("notes", track_absent=False),
        )


def decode_document(source: AttendanceSource, raw: Any, doc_id: str) -> DecodedRecord:
    """Decode one stored document, recording which fields were defaulted."""
    d = _Decoder(raw)
    attendees = d.attendees()
    total_attended = sum(1 for a in attendees if a.attended)

    if source is AttendanceSource.SERVICE:
        entity_id = doc_id
        meeting_date = d.string("service_date") or d.string("meeting_date", "")
    else:
        entity_id = d.string(source.entity_id_field)
        meeting_date = d.string("meeting_date", "")
    entity_name = d.string(source.entity_name_field, source.default_entity_name)

    # A stated count of 0 means "not tracked"
    total_members = d.count("total_members") or len(attendees)

    record = AttendanceRecord(
        id=doc_id,
        source=source,
        entity_id=entity_id,
        entity_name=entity_name,
        entity_type=source.entity_type,
        meeting_date=meeting_date,
        meeting_day=d.string("meeting_day") if source is AttendanceSource.MINISTRY else None,
        attendees=attendees,
        total_members=total_members,
        total_attended=total_attended,
        attendance_rate=attendance_rate(total_attended, total_members),
        created_at=d.timestamp("created_at"),
    )
    if d.malformed:
        logger.warning(f"{source.value}/{doc_id}: malformed fields defaulted: {', '.join(d.malformed)}")
    return DecodedRecord(record=record, defaulted=d.defaulted, malformed=d.malformed)


def map_document(source: AttendanceSource, raw: Any, doc_id: str) -> AttendanceRecord:
    return decode_document(source, raw, doc_id).record
