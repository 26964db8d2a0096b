"""Errors raised by the attendance services."""


class AttendanceError(Exception):
    """Base class for attendance service errors."""


class AttendanceValidationError(AttendanceError):
    """Input rejected before anything was written."""


class DuplicateAttendanceError(AttendanceError):
    """A session already exists for this entity and meeting date."""


class AttendanceNotFoundError(AttendanceError):
    def __init__(self, record_id: str, source: str | None = None):
        self.record_id = record_id
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(f"Attendance record {record_id} not found{where}")


class AmbiguousAttendanceIdError(AttendanceError):
    """The same document id exists in more than one source collection."""

    def __init__(self, record_id: str, sources: list[str]):
        self.record_id = record_id
        self.sources = sources
        super().__init__(
            f"Attendance record {record_id} exists in several collections: {', '.join(sources)}"
        )
