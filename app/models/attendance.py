"""Attendance source collections, inputs and the unified record shape."""
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Optional

from beanie import Document, Indexed
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pymongo import ASCENDING, IndexModel


class EntityType(str, Enum):
    MINISTRY = "ministry"
    SERVICE = "service"
    EVENT = "event"
    SMALL_GROUP = "small_group"
    CELL_GROUP = "cell_group"


class AttendanceSource(str, Enum):
    """The collections attendance sessions are stored in."""

    MINISTRY = "ministry_attendance"
    SERVICE = "service_attendance"
    CELL_GROUP = "cell_group_attendance"

    @property
    def entity_type(self) -> EntityType:
        return _SOURCE_ENTITY_TYPES[self]

    @property
    def date_fields(self) -> tuple[str, ...]:
        """Document fields holding the meeting date, first present wins."""
        if self is AttendanceSource.SERVICE:
            return ("service_date", "meeting_date")
        return ("meeting_date",)

    @property
    def entity_id_field(self) -> Optional[str]:
        return _SOURCE_ENTITY_FIELDS[self][0]

    @property
    def entity_name_field(self) -> str:
        return _SOURCE_ENTITY_FIELDS[self][1]

    @property
    def default_entity_name(self) -> str:
        return _SOURCE_ENTITY_FIELDS[self][2]


_SOURCE_ENTITY_TYPES = {
    AttendanceSource.MINISTRY: EntityType.MINISTRY,
    AttendanceSource.SERVICE: EntityType.SERVICE,
    AttendanceSource.CELL_GROUP: EntityType.CELL_GROUP,
}

# (entity id field, entity name field, name used when unset)
_SOURCE_ENTITY_FIELDS = {
    AttendanceSource.MINISTRY: ("ministry_id", "ministry_name", "Ministry"),
    AttendanceSource.SERVICE: (None, "service_name", "Service"),
    AttendanceSource.CELL_GROUP: ("cell_group_id", "cell_group_name", "Cell Group"),
}

# Merge order of the live list; also the tie-break between sources on equal dates
SOURCE_ORDER = [AttendanceSource.MINISTRY, AttendanceSource.SERVICE, AttendanceSource.CELL_GROUP]


class Attendee(BaseModel):
    model_config = ConfigDict(extra="ignore")

    member_id: str
    membership_number: Optional[str] = None
    full_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    attended: bool = False
    check_in_time: Optional[str] = None  # display only, never used for ordering
    notes: Optional[str] = None


# Stored documents. Registered with Beanie only for collection names and
# indexes; writes are plain dicts and reads go through the record mapper,
# since stored shapes are not trusted. Only indexed fields are declared.

class MinistryAttendance(Document):
    ministry_id: str
    meeting_date: Indexed(str)  # YYYY-MM-DD

    class Settings:
        name = AttendanceSource.MINISTRY.value
        indexes = [
            IndexModel(
                [("ministry_id", ASCENDING), ("meeting_date", ASCENDING)],
                name="ministry_session_unique",
                unique=True,
            ),
        ]


class ServiceAttendance(Document):
    service_date: Indexed(str)  # YYYY-MM-DD

    class Settings:
        name = AttendanceSource.SERVICE.value


class CellGroupAttendance(Document):
    cell_group_id: str
    meeting_date: Indexed(str)  # YYYY-MM-DD

    class Settings:
        name = AttendanceSource.CELL_GROUP.value
        indexes = [
            IndexModel(
                [("cell_group_id", ASCENDING), ("meeting_date", ASCENDING)],
                name="cell_group_session_unique",
                unique=True,
            ),
        ]


def _check_iso_date(value: str) -> str:
    # Dates are compared as strings, so only the canonical form is accepted
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        raise ValueError("Invalid date format (YYYY-MM-DD)")
    if parsed.isoformat() != value:
        raise ValueError("Invalid date format (YYYY-MM-DD)")
    return value


IsoDate = Annotated[str, AfterValidator(_check_iso_date)]


class MinistryAttendanceInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ministry_id: str = Field(min_length=1)
    ministry_name: str = Field(min_length=1)
    meeting_date: IsoDate
    meeting_day: Optional[str] = None
    attendees: list[Attendee]
    total_members: int = Field(ge=0)
    created_by: Optional[str] = None


class ServiceAttendanceInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    service_date: IsoDate
    service_name: Optional[str] = None
    location: Optional[str] = None
    attendees: list[Attendee]
    total_members: Optional[int] = Field(default=None, ge=0)  # drop-in services rarely know it
    created_by: Optional[str] = None


class CellGroupAttendanceInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cell_group_id: str = Field(min_length=1)
    cell_group_name: str = Field(min_length=1)
    meeting_date: IsoDate
    leader_name: Optional[str] = None
    location: Optional[str] = None
    attendees: list[Attendee]
    total_members: int = Field(ge=0)
    created_by: Optional[str] = None


INPUT_MODELS = {
    AttendanceSource.MINISTRY: MinistryAttendanceInput,
    AttendanceSource.SERVICE: ServiceAttendanceInput,
    AttendanceSource.CELL_GROUP: CellGroupAttendanceInput,
}


class AttendanceRecord(BaseModel):
    """One attendance session, normalized across the source collections."""

    id: str
    source: AttendanceSource
    entity_id: Optional[str] = None
    entity_name: str
    entity_type: EntityType
    meeting_date: str = ""
    meeting_day: Optional[str] = None
    attendees: list[Attendee] = Field(default_factory=list)
    total_members: Optional[int] = None
    total_attended: int = 0
    attendance_rate: int = 0
    created_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[AttendanceSource, str]:
        # Document ids are only unique within one collection
        return (self.source, self.id)


class TypeBreakdown(BaseModel):
    count: int = 0
    members: int = 0
    attended: int = 0
    rate: int = 0


class AttendanceSummary(BaseModel):
    generated_on: str
    total_events: int = 0
    total_members: int = 0
    total_attended: int = 0
    overall_rate: int = 0
    breakdown: dict[EntityType, TypeBreakdown] = Field(default_factory=dict)


class AttendanceFilters(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entity_type: Optional[str] = None  # an EntityType value or "all"
    entity_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    @field_validator("entity_type")
    @classmethod
    def _check_entity_type(cls, value):
        if value is None or value == "all":
            return value
        return EntityType(value).value


class EntityAttendanceStats(BaseModel):
    total: int = 0
    attended: int = 0
    rate: int = 0


class MemberAttendanceStats(BaseModel):
    member_id: str
    total_sessions: int = 0
    attended_sessions: int = 0
    attendance_rate: int = 0
    by_entity: dict[str, EntityAttendanceStats] = Field(default_factory=dict)
