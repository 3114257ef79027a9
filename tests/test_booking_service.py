from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from seva_engine.domain.models import (
    AssignmentState,
    BookingStatus,
    LocationType,
    ProgramCategory,
    ProgramRequirement,
    TimeWindow,
)
from seva_engine.repository.data_repository import DataRepository
from seva_engine.services.allocation_service import BookingNotFoundError
from seva_engine.services.booking_service import (
    BookingDraft,
    BookingService,
    BookingValidationError,
    parse_draft,
)
from seva_engine.services.capacity_service import CapacityExceededError
from seva_engine.services.hall_service import HallUnavailableError, NoHallAvailableError
from seva_engine.utils.config import get_settings


START = datetime(2026, 6, 3, 14, 0, tzinfo=timezone.utc)
AS_OF = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str, **overrides):
    return replace(get_settings(), database_path=tmp_path / filename, **overrides)


def _setup(tmp_path, filename: str, **overrides):
    settings = _build_test_settings(tmp_path, filename, **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.seed_reference_data()
    return repository, BookingService(repository=repository, settings=settings)


def _draft(**overrides) -> BookingDraft:
    payload = {
        "title": "Sukhmani Sahib path",
        "start": START,
        "end": START + timedelta(hours=2),
        "location_type": "ON_SITE",
        "program_ids": ["kirtan"],
        "attendees": 60,
    }
    payload.update(overrides)
    return BookingDraft(**payload)


def test_create_on_site_booking_places_hall_and_allocates(tmp_path):
    repository, service = _setup(tmp_path, "create.db")

    booking, result = service.create_booking(_draft(), as_of=AS_OF)

    assert booking.status == BookingStatus.PENDING
    assert booking.hall_id == "hall-small"
    assert len(result.created) == 3
    assert len(repository.list_assignments(booking.id)) == 3


def test_create_off_site_booking_needs_no_hall(tmp_path):
    repository, service = _setup(tmp_path, "off_site.db")

    booking, result = service.create_booking(
        _draft(location_type="OFF_SITE", address=" 22 Maple Cres "),
        as_of=AS_OF,
    )

    assert booking.hall_id is None
    assert booking.address == "22 Maple Cres"
    assert result.team_used in {"A", "B"}


def test_draft_validation_rules():
    with pytest.raises(ValidationError):
        _draft(end=START)
    with pytest.raises(ValidationError):
        _draft(title="x")
    with pytest.raises(ValidationError):
        _draft(program_ids=[])
    with pytest.raises(ValidationError):
        _draft(attendees=0)
    with pytest.raises(BookingValidationError):
        parse_draft(
            {
                "title": "Home kirtan",
                "start": START.isoformat(),
                "end": (START + timedelta(hours=1)).isoformat(),
                "location_type": "OFF_SITE",
                "program_ids": ["kirtan"],
            }
        )


def test_naive_datetimes_are_treated_as_utc():
    draft = _draft(start=datetime(2026, 6, 3, 14, 0), end=datetime(2026, 6, 3, 15, 0))

    assert draft.window.start == START


def test_unknown_or_on_site_only_programs_are_rejected(tmp_path):
    repository, service = _setup(tmp_path, "programs.db")
    repository.save_program(
        ProgramRequirement(
            "akhand-on-site",
            "Akhand Path (venue only)",
            ProgramCategory.RECITATION,
            1,
            min_recitors=1,
            allowed_off_site=False,
        )
    )

    with pytest.raises(BookingValidationError):
        service.create_booking(_draft(program_ids=["nope"]), as_of=AS_OF)
    with pytest.raises(BookingValidationError):
        service.create_booking(
            _draft(program_ids=["akhand-on-site"], location_type="OFF_SITE", address="1 Pine St"),
            as_of=AS_OF,
        )


def test_capacity_failure_aborts_the_whole_creation(tmp_path):
    repository, service = _setup(tmp_path, "capacity.db", on_site_sing_cap=3)
    service.create_booking(_draft(), as_of=AS_OF)

    with pytest.raises(CapacityExceededError):
        service.create_booking(_draft(title="Second kirtan"), as_of=AS_OF)

    bookings = repository.list_active_bookings_overlapping(TimeWindow(START, START + timedelta(hours=2)))
    assert [booking.title for booking in bookings] == ["Sukhmani Sahib path"]


def test_missing_hall_aborts_creation(tmp_path):
    repository, service = _setup(tmp_path, "no_hall.db")

    with pytest.raises(NoHallAvailableError):
        service.create_booking(_draft(attendees=500), as_of=AS_OF)

    assert repository.list_active_bookings_overlapping(TimeWindow(START, START + timedelta(hours=2))) == []


def test_reschedule_keeps_hall_and_reallocates(tmp_path):
    repository, service = _setup(tmp_path, "reschedule.db")
    booking, _ = service.create_booking(_draft(), as_of=AS_OF)
    later = TimeWindow(START + timedelta(days=1), START + timedelta(days=1, hours=2))

    updated, result = service.reschedule_booking(booking.id, later, as_of=AS_OF)

    assert updated.window == later
    assert updated.hall_id == "hall-small"
    assert {assignment.window for assignment in repository.list_assignments(booking.id)} == {later}
    assert len(result.created) == 3


def test_reschedule_into_taken_hall_is_rejected_without_changes(tmp_path):
    repository, service = _setup(tmp_path, "taken.db")
    booking, _ = service.create_booking(_draft(), as_of=AS_OF)
    other_start = START + timedelta(days=1)
    service.create_booking(
        _draft(start=other_start, end=other_start + timedelta(hours=2), program_ids=["sukhmani-sahib"]),
        as_of=AS_OF,
    )

    with pytest.raises(HallUnavailableError):
        service.reschedule_booking(
            booking.id,
            TimeWindow(other_start, other_start + timedelta(hours=1)),
            as_of=AS_OF,
        )

    assert repository.get_booking(booking.id).window.start == START


def test_cancel_removes_proposals(tmp_path):
    repository, service = _setup(tmp_path, "cancel.db")
    booking, _ = service.create_booking(_draft(), as_of=AS_OF)

    cancelled = service.cancel_booking(booking.id)

    assert cancelled.status == BookingStatus.CANCELLED
    assert repository.list_assignments(booking.id) == []
    with pytest.raises(BookingNotFoundError):
        service.cancel_booking("missing")


def test_confirm_turns_proposals_into_confirmed_work(tmp_path):
    repository, service = _setup(tmp_path, "confirm.db")
    booking, _ = service.create_booking(_draft(), as_of=AS_OF)

    assert service.confirm_booking(booking.id) == 3

    assignments = repository.list_assignments(booking.id)
    assert all(assignment.state == AssignmentState.CONFIRMED for assignment in assignments)
    assert repository.get_booking(booking.id).status == BookingStatus.CONFIRMED


def test_auto_assign_can_be_switched_off(tmp_path):
    repository, service = _setup(tmp_path, "manual.db", auto_assign_enabled=False)

    booking, result = service.create_booking(_draft(), as_of=AS_OF)

    assert result is None
    assert repository.list_assignments(booking.id) == []


def test_expire_stale_pending(tmp_path):
    repository, service = _setup(tmp_path, "expire.db")
    stale, _ = service.create_booking(_draft(), as_of=AS_OF - timedelta(days=2))
    fresh, _ = service.create_booking(
        _draft(start=START + timedelta(days=2), end=START + timedelta(days=2, hours=1)),
        as_of=AS_OF,
    )

    assert service.expire_stale_pending(AS_OF) == 1
    assert repository.get_booking(stale.id).status == BookingStatus.EXPIRED
    assert repository.get_booking(fresh.id).status == BookingStatus.PENDING


def test_reschedule_moves_confirmed_duty_without_second_roster(tmp_path):
    repository, service = _setup(tmp_path, "move_confirmed.db")
    booking, _ = service.create_booking(_draft(), as_of=AS_OF)
    service.confirm_booking(booking.id)
    before = {assignment.staff_id for assignment in repository.list_assignments(booking.id)}
    later = TimeWindow(START + timedelta(hours=3), START + timedelta(hours=5))

    _, result = service.reschedule_booking(booking.id, later, as_of=AS_OF)

    assignments = repository.list_assignments(booking.id)
    assert result.created == []
    assert len(assignments) == 3
    assert {assignment.staff_id for assignment in assignments} == before
    assert all(assignment.state == AssignmentState.CONFIRMED for assignment in assignments)
    assert all(assignment.window == later for assignment in assignments)
