import pytest
from pymongo.errors import AutoReconnect

from app.models.attendance import AttendanceFilters, EntityType
from app.services.live_view import subscribe_to_attendance_list, subscribe_to_attendance_summary

from tests.conftest import roster


class Collector:
    def __init__(self):
        self.calls = []
        self.errors = []

    def __call__(self, value):
        self.calls.append(value)

    async def on_error(self, exc):
        self.errors.append(exc)

    @property
    def last(self):
        return self.calls[-1]


@pytest.mark.asyncio
async def test_initial_snapshots_build_the_combined_list(church_store):
    seen = Collector()

    view = subscribe_to_attendance_list(church_store, None, seen)
    await church_store.settle()

    # One delivery per collection snapshot
    assert len(seen.calls) == 3
    assert [r.entity_name for r in seen.last] == ["Youth", "Sunday Morning", "Alpha"]
    view.close()


@pytest.mark.asyncio
async def test_filter_by_type_yields_only_matching_entity(church_store):
    seen = Collector()

    view = subscribe_to_attendance_list(church_store, AttendanceFilters(entity_type="ministry"), seen)
    await church_store.settle()

    assert [(r.entity_name, r.total_attended, r.total_members) for r in seen.last] == [("Youth", 8, 10)]
    view.close()


@pytest.mark.asyncio
async def test_same_day_range_returns_everything_in_source_order(church_store):
    seen = Collector()
    filters = AttendanceFilters(start_date="2024-05-05", end_date="2024-05-05")

    view = subscribe_to_attendance_list(church_store, filters, seen)
    await church_store.settle()

    records = seen.last
    assert [r.entity_type for r in records] == [EntityType.MINISTRY, EntityType.SERVICE, EntityType.CELL_GROUP]
    assert records[1].total_members == 50
    assert records[1].attendance_rate == 100
    view.close()


@pytest.mark.asyncio
async def test_changes_are_pushed_to_the_consumer(store):
    seen = Collector()
    view = subscribe_to_attendance_list(store, None, seen)
    await store.settle()
    assert seen.last == []

    doc_id = await store.create(
        "ministry_attendance",
        {"ministry_id": "youth", "meeting_date": "2024-05-05", "attendees": roster(1, 1), "total_members": 2},
    )
    assert [r.id for r in seen.last] == [doc_id]
    assert seen.last[0].attendance_rate == 50

    await store.update("ministry_attendance", doc_id, {"attendees": roster(2)})
    assert seen.last[0].total_attended == 2
    assert seen.last[0].attendance_rate == 100
    view.close()


@pytest.mark.asyncio
async def test_removed_documents_leave_the_cache(church_store):
    seen = Collector()
    view = subscribe_to_attendance_list(church_store, None, seen)
    await church_store.settle()

    await church_store.delete("cell_group_attendance", "cell-alpha")

    assert "cell-alpha" not in [r.id for r in seen.last]
    assert len(seen.last) == 2
    assert "cell-alpha" not in [r.id for r in view.records]
    view.close()


@pytest.mark.asyncio
async def test_update_moving_out_of_date_range_is_removed(store):
    store.seed("service_attendance", "s1", {"service_date": "2024-05-05", "attendees": roster(3)})
    seen = Collector()
    view = subscribe_to_attendance_list(store, AttendanceFilters(start_date="2024-05-01"), seen)
    await store.settle()
    assert [r.id for r in seen.last] == ["s1"]

    await store.update("service_attendance", "s1", {"service_date": "2024-04-28"})

    assert seen.last == []
    view.close()


@pytest.mark.asyncio
async def test_same_id_in_two_collections_is_kept_apart(store):
    store.seed("ministry_attendance", "shared", {"ministry_id": "youth", "meeting_date": "2024-05-05"})
    store.seed("cell_group_attendance", "shared", {"cell_group_id": "alpha", "meeting_date": "2024-05-05"})
    seen = Collector()

    view = subscribe_to_attendance_list(store, None, seen)
    await store.settle()

    assert [(r.source.value, r.id) for r in seen.last] == [
        ("ministry_attendance", "shared"),
        ("cell_group_attendance", "shared"),
    ]
    view.close()


@pytest.mark.asyncio
async def test_close_cancels_every_subscription(church_store):
    seen = Collector()
    view = subscribe_to_attendance_list(church_store, None, seen)
    await church_store.settle()
    assert church_store.subscriber_count() == 3

    view.close()
    view.close()
    await church_store.create("service_attendance", {"service_date": "2024-06-02", "attendees": []})

    assert church_store.subscriber_count() == 0
    assert len(seen.calls) == 3


@pytest.mark.asyncio
async def test_views_do_not_share_state(church_store):
    ministries, cells = Collector(), Collector()
    first = subscribe_to_attendance_list(church_store, AttendanceFilters(entity_type="ministry"), ministries)
    second = subscribe_to_attendance_list(church_store, AttendanceFilters(entity_type="cell_group"), cells)
    await church_store.settle()

    first.close()
    await church_store.delete("cell_group_attendance", "cell-alpha")

    assert [r.entity_name for r in ministries.last] == ["Youth"]
    assert cells.last == []
    second.close()


@pytest.mark.asyncio
async def test_subscription_errors_reach_the_consumer(church_store):
    seen = Collector()
    view = subscribe_to_attendance_list(church_store, None, seen, on_error=seen.on_error)
    await church_store.settle()

    await church_store.fail_subscriptions("ministry_attendance", AutoReconnect("connection lost"))

    assert len(seen.errors) == 1
    assert isinstance(seen.errors[0], AutoReconnect)
    # The last good list is kept
    assert len(seen.last) == 3
    view.close()


@pytest.mark.asyncio
async def test_summary_is_computed_immediately(church_store):
    seen = Collector()

    view = await subscribe_to_attendance_summary(church_store, seen)

    assert len(seen.calls) == 1
    summary = seen.last
    assert summary.total_events == 3
    assert summary.total_members == 66
    assert summary.total_attended == 62
    assert summary.overall_rate == 94
    assert summary.breakdown[EntityType.CELL_GROUP].rate == 67
    view.close()


@pytest.mark.asyncio
async def test_summary_recomputes_on_any_change(church_store):
    seen = Collector()
    view = await subscribe_to_attendance_summary(church_store, seen, "2024-05-01", "2024-05-31")

    await church_store.create(
        "cell_group_attendance",
        {"cell_group_id": "beta", "meeting_date": "2024-05-12", "attendees": roster(0, 4), "total_members": 4},
    )
    await church_store.create(
        "ministry_attendance",
        {"ministry_id": "youth", "meeting_date": "2024-06-02", "attendees": roster(5), "total_members": 5},
    )

    assert len(seen.calls) == 3
    assert seen.calls[1].total_events == 4
    assert seen.calls[1].total_members == 70
    # Outside the range, so the totals do not move
    assert seen.last.total_events == 4
    view.close()


@pytest.mark.asyncio
async def test_summary_fetch_failure_is_reported(church_store):
    seen = Collector()
    view = await subscribe_to_attendance_summary(church_store, seen, on_error=seen.on_error)

    church_store.read_error = AutoReconnect("store unavailable")
    await church_store.create("service_attendance", {"service_date": "2024-05-12", "attendees": []})

    assert len(seen.calls) == 1
    assert len(seen.errors) == 1
    view.close()


@pytest.mark.asyncio
async def test_summary_close_stops_updates(church_store):
    seen = Collector()
    view = await subscribe_to_attendance_summary(church_store, seen)

    view.close()
    await church_store.create("service_attendance", {"service_date": "2024-05-12", "attendees": []})

    assert len(seen.calls) == 1
    assert church_store.subscriber_count() == 0
