from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from app.api.deps import Store
from app.exceptions import (
    AmbiguousAttendanceIdError,
    AttendanceError,
    AttendanceNotFoundError,
    AttendanceValidationError,
    DuplicateAttendanceError,
)
from app.models.attendance import (
    AttendanceFilters,
    AttendanceRecord,
    AttendanceSource,
    AttendanceSummary,
    Attendee,
    MemberAttendanceStats,
)
from app.services import attendance as attendance_service
from app.services.live_view import subscribe_to_attendance_list, subscribe_to_attendance_summary

router = APIRouter()


def _http_error(e: AttendanceError) -> HTTPException:
    if isinstance(e, AttendanceNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (DuplicateAttendanceError, AmbiguousAttendanceIdError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, AttendanceValidationError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _filters(
    entity_type: Optional[str],
    entity_id: Optional[str],
    start_date: Optional[str],
    end_date: Optional[str],
) -> AttendanceFilters:
    try:
        return AttendanceFilters(
            entity_type=entity_type,
            entity_id=entity_id,
            start_date=start_date,
            end_date=end_date,
        )
    except ValidationError:
        raise HTTPException(status_code=400, detail=f"Unknown entity type: {entity_type}")


@router.get("/records", response_model=List[AttendanceRecord])
async def list_attendance(
    store: Store,
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
):
    """Attendance across all collections, newest meeting first."""
    filters = _filters(entity_type, entity_id, start_date, end_date)
    return await attendance_service.get_attendance_records(store, filters)


@router.get("/summary", response_model=AttendanceSummary)
async def attendance_summary(
    store: Store,
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
):
    return await attendance_service.get_attendance_summary(store, start_date, end_date)


@router.get("/entities/{entity_id}", response_model=List[AttendanceRecord])
async def attendance_for_entity(entity_id: str, store: Store):
    """Sessions recorded for one ministry or cell group."""
    return await attendance_service.get_attendance_by_entity(store, entity_id)


@router.get("/members/{member_id}/stats", response_model=MemberAttendanceStats)
async def member_attendance_stats(member_id: str, store: Store):
    return await attendance_service.get_member_attendance_stats(store, member_id)


@router.post("/{kind}", response_model=AttendanceRecord, status_code=status.HTTP_201_CREATED)
async def create_attendance(kind: AttendanceSource, store: Store, data: Dict[str, Any] = Body(...)):
    """Record a session. Totals and rate are computed server-side."""
    try:
        return await attendance_service.create_attendance(store, kind, data)
    except AttendanceError as e:
        raise _http_error(e) from e


@router.put("/{source}/{record_id}/attendees", response_model=AttendanceRecord)
async def update_attendees(source: AttendanceSource, record_id: str, store: Store, attendees: List[Attendee]):
    try:
        return await attendance_service.update_attendance_attendees(store, record_id, attendees, source)
    except AttendanceError as e:
        raise _http_error(e) from e


@router.put("/{record_id}/attendees", response_model=AttendanceRecord)
async def update_attendees_any_source(record_id: str, store: Store, attendees: List[Attendee]):
    """Update a session without knowing its collection; 409 if the id is ambiguous."""
    try:
        return await attendance_service.update_attendance_attendees(store, record_id, attendees)
    except AttendanceError as e:
        raise _http_error(e) from e


@router.delete("/{source}/{record_id}", status_code=204)
async def delete_attendance(source: AttendanceSource, record_id: str, store: Store):
    try:
        await attendance_service.delete_attendance(store, record_id, source)
    except AttendanceError as e:
        raise _http_error(e) from e
    return None


@router.delete("/{record_id}")
async def delete_attendance_any_source(record_id: str, store: Store):
    """Best-effort delete across every attendance collection.

    Succeeds even when nothing matched; ``deleted_from`` tells the caller
    whether anything was actually removed.
    """
    deleted_from = await attendance_service.delete_attendance_everywhere(store, record_id)
    return {"status": "success", "deleted_from": deleted_from}


@router.websocket("/live")
async def live_attendance(
    websocket: WebSocket,
    store: Store,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
):
    """Push the filtered attendance list on every change."""
    try:
        filters = _filters(entity_type, entity_id, start_date, end_date)
    except HTTPException:
        await websocket.close(code=1008)
        return
    await websocket.accept()

    async def push(records):
        await websocket.send_json(
            {"type": "records", "records": [r.model_dump(mode="json") for r in records]}
        )

    async def report(exc):
        await websocket.send_json({"type": "error", "detail": str(exc)})

    view = subscribe_to_attendance_list(store, filters, push, on_error=report)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        view.close()


@router.websocket("/summary/live")
async def live_attendance_summary(
    websocket: WebSocket,
    store: Store,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
):
    """Push the attendance summary now and after every change."""
    await websocket.accept()

    async def push(summary):
        await websocket.send_json({"type": "summary", "summary": summary.model_dump(mode="json")})

    async def report(exc):
        await websocket.send_json({"type": "error", "detail": str(exc)})

    view = await subscribe_to_attendance_summary(store, push, start_date, end_date, on_error=report)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        view.close()
