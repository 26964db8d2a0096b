"""Shared dependencies for the API routers."""
from typing import Annotated

from fastapi import Depends

from app.db import get_database
from app.services.store import AttendanceStore, MongoAttendanceStore

_store = None


def get_store() -> AttendanceStore:
    global _store
    if _store is None:
        _store = MongoAttendanceStore(get_database())
    return _store


def reset_store() -> None:
    global _store
    _store = None


# Type alias for route injection
Store = Annotated[AttendanceStore, Depends(get_store)]
