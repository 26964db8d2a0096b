"""Beanie document models and Pydantic schemas."""
from app.models.attendance import (
    AttendanceFilters,
    AttendanceRecord,
    AttendanceSource,
    AttendanceSummary,
    Attendee,
    CellGroupAttendance,
    CellGroupAttendanceInput,
    EntityAttendanceStats,
    EntityType,
    MemberAttendanceStats,
    MinistryAttendance,
    MinistryAttendanceInput,
    ServiceAttendance,
    ServiceAttendanceInput,
    TypeBreakdown,
)

__all__ = [
    "AttendanceFilters",
    "AttendanceRecord",
    "AttendanceSource",
    "AttendanceSummary",
    "Attendee",
    "CellGroupAttendance",
    "CellGroupAttendanceInput",
    "EntityAttendanceStats",
    "EntityType",
    "MemberAttendanceStats",
    "MinistryAttendance",
    "MinistryAttendanceInput",
    "ServiceAttendance",
    "ServiceAttendanceInput",
    "TypeBreakdown",
]
