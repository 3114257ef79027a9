from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from seva_engine.domain.models import (
    Assignment,
    AssignmentState,
    BookingStatus,
    LocationType,
    ProgramCategory,
    ProgramRequirement,
    TimeWindow,
)
from seva_engine.repository.data_repository import DataRepository
from seva_engine.utils.config import get_settings


START = datetime(2026, 6, 3, 14, 0, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str):
    return replace(get_settings(), database_path=tmp_path / filename)


def _repository(tmp_path, filename: str) -> DataRepository:
    repository = DataRepository(_build_test_settings(tmp_path, filename))
    repository.initialize_database()
    repository.seed_reference_data()
    return repository


def _booking(repository: DataRepository, hours: int = 1, program_id: str = "kirtan"):
    return repository.insert_booking(
        title="Kirtan at home",
        window=TimeWindow(START, START + timedelta(hours=hours)),
        location_type=LocationType.ON_SITE,
        program_ids=[program_id],
    )


def test_initialize_and_seed_are_idempotent(tmp_path):
    repository = _repository(tmp_path, "idempotent.db")
    repository.initialize_database()
    repository.seed_reference_data()

    assert [hall.name for hall in repository.list_halls()] == ["Main Hall", "Small Hall", "Upper Hall"]
    assert len(repository.list_staff()) == 9
    assert repository.get_program("akhand-path").rotation_minutes == 120


def test_booking_round_trip_keeps_items_and_utc_window(tmp_path):
    repository = _repository(tmp_path, "round_trip.db")
    booking = repository.insert_booking(
        title="Anand Karaj",
        window=TimeWindow(START, START + timedelta(hours=2)),
        location_type=LocationType.OFF_SITE,
        program_ids=["sukhmani-sahib", "kirtan"],
        attendees=80,
        address="12 Main St",
    )

    loaded = repository.get_booking(booking.id)

    assert loaded.status == BookingStatus.PENDING
    assert loaded.window.start == START
    assert [item.program.program_id for item in loaded.items] == ["sukhmani-sahib", "kirtan"]
    assert repository.get_booking("missing") is None


def test_transaction_rolls_back_every_write(tmp_path):
    repository = _repository(tmp_path, "rollback.db")
    booking = _booking(repository)

    with pytest.raises(RuntimeError):
        with repository.transaction():
            repository.insert_assignments(
                [Assignment(None, booking.id, booking.items[0].id, "staff-a1", "SING", booking.window)]
            )
            repository.update_booking_status(booking.id, BookingStatus.CANCELLED)
            raise RuntimeError("boom")

    assert repository.list_assignments(booking.id) == []
    assert repository.get_booking(booking.id).status == BookingStatus.PENDING


def test_nested_transaction_joins_outer(tmp_path):
    repository = _repository(tmp_path, "nested.db")
    booking = _booking(repository)

    with repository.transaction() as outer:
        with repository.transaction() as inner:
            assert inner is outer
            repository.update_booking_status(booking.id, BookingStatus.CONFIRMED)
        assert repository.get_booking(booking.id).status == BookingStatus.CONFIRMED

    assert repository.get_booking(booking.id).status == BookingStatus.CONFIRMED


def test_busy_intervals_fall_back_to_booking_window_and_skip_inactive(tmp_path):
    repository = _repository(tmp_path, "busy.db")
    live = _booking(repository)
    cancelled = _booking(repository)
    repository.insert_assignments(
        [
            Assignment(None, live.id, live.items[0].id, "staff-a1", "SING"),
            Assignment(None, cancelled.id, cancelled.items[0].id, "staff-a2", "SING"),
        ]
    )
    repository.update_booking_status(cancelled.id, BookingStatus.CANCELLED)

    busy = repository.list_busy_intervals(live.window)

    assert [(interval.staff_id, interval.window) for interval in busy] == [("staff-a1", live.window)]


def test_confirm_and_delete_only_touch_matching_state(tmp_path):
    repository = _repository(tmp_path, "states.db")
    booking = _booking(repository)
    item_id = booking.items[0].id
    repository.insert_assignments(
        [
            Assignment(None, booking.id, item_id, "staff-a1", "SING", booking.window),
            Assignment(None, booking.id, item_id, "staff-a2", "SING", booking.window),
        ]
    )

    assert repository.confirm_assignments(booking.id) == 2
    repository.insert_assignments([Assignment(None, booking.id, item_id, "staff-a3", "SING", booking.window)])
    assert repository.delete_proposed_assignments(booking.id) == 1

    remaining = repository.list_assignments(booking.id)
    assert {assignment.staff_id for assignment in remaining} == {"staff-a1", "staff-a2"}
    assert all(assignment.state == AssignmentState.CONFIRMED for assignment in remaining)


def test_expire_pending_created_before_cutoff(tmp_path):
    repository = _repository(tmp_path, "expire.db")
    old = repository.insert_booking(
        title="Old request",
        window=TimeWindow(START, START + timedelta(hours=1)),
        location_type=LocationType.ON_SITE,
        program_ids=["kirtan"],
        created_at=START - timedelta(days=3),
    )
    fresh = repository.insert_booking(
        title="Fresh request",
        window=TimeWindow(START, START + timedelta(hours=1)),
        location_type=LocationType.ON_SITE,
        program_ids=["kirtan"],
        created_at=START,
    )

    assert repository.expire_pending_created_before(START - timedelta(days=1)) == 1
    assert repository.get_booking(old.id).status == BookingStatus.EXPIRED
    assert repository.get_booking(fresh.id).status == BookingStatus.PENDING


def test_save_program_rejects_inconsistent_requirements(tmp_path):
    repository = _repository(tmp_path, "bad_program.db")

    with pytest.raises(ValueError):
        repository.save_program(
            ProgramRequirement("duet", "Duet", ProgramCategory.SINGING, 1, min_recitors=1, min_singers=2)
        )

    assert repository.get_program("duet") is None


def test_shift_assignment_windows_moves_explicit_windows_only(tmp_path):
    repository = _repository(tmp_path, "shift.db")
    booking = _booking(repository, hours=2)
    item_id = booking.items[0].id
    explicit = TimeWindow(START, START + timedelta(hours=1))
    repository.insert_assignments(
        [
            Assignment(None, booking.id, item_id, "staff-a1", "SING", explicit),
            Assignment(None, booking.id, item_id, "staff-a2", "SING", None),
        ]
    )

    assert repository.shift_assignment_windows(booking.id, timedelta(hours=3)) == 1
    assert repository.shift_assignment_windows(booking.id, timedelta(0)) == 0

    windows = {assignment.staff_id: assignment.window for assignment in repository.list_assignments(booking.id)}
    assert windows["staff-a1"] == TimeWindow(START + timedelta(hours=3), START + timedelta(hours=4))
    assert windows["staff-a2"] is None
