from __future__ import annotations

from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from itertools import combinations

import pytest

from seva_engine.domain.models import (
    FLEX_ROLE,
    Assignment,
    AssignmentState,
    Booking,
    BookingStatus,
    LocationType,
    ProgramCategory,
    ProgramRequirement,
    Role,
    StaffMember,
    TimeWindow,
)
from seva_engine.domain.windows import padded_for_location
from seva_engine.repository.data_repository import DataRepository
from seva_engine.services.allocation_service import AllocationService, BookingNotFoundError
from seva_engine.utils.config import get_settings


START = datetime(2026, 6, 3, 18, 0, tzinfo=timezone.utc)
AS_OF = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str):
    return replace(get_settings(), database_path=tmp_path / filename, off_site_buffer_minutes=15)


def _setup(tmp_path, filename: str, *, seed: bool = True):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    if seed:
        repository.seed_reference_data()
    return repository, AllocationService(repository=repository, settings=settings)


def _book(
    repository: DataRepository,
    program_id: str,
    start: datetime = START,
    hours: float = 1,
    location_type: LocationType = LocationType.ON_SITE,
    status: BookingStatus = BookingStatus.PENDING,
) -> Booking:
    return repository.insert_booking(
        title=f"{program_id} booking",
        window=TimeWindow(start, start + timedelta(hours=hours)),
        location_type=location_type,
        program_ids=[program_id],
        status=status,
        address="1 Temple Rd" if location_type == LocationType.OFF_SITE else None,
    )


def _occupy(
    repository: DataRepository,
    staff_ids: list[str],
    start: datetime,
    hours: float = 1,
    program_id: str = "sukhmani-sahib",
) -> Booking:
    booking = _book(repository, program_id, start=start, hours=hours)
    repository.insert_assignments(
        [
            Assignment(None, booking.id, booking.items[0].id, staff_id, "RECITE", booking.window)
            for staff_id in staff_ids
        ]
    )
    return booking


def _confirm_history(repository: DataRepository, staff_ids: list[str]) -> None:
    booking = _book(
        repository,
        "kirtan",
        start=AS_OF - timedelta(days=3),
        status=BookingStatus.CONFIRMED,
    )
    repository.insert_assignments(
        [
            Assignment(
                None,
                booking.id,
                booking.items[0].id,
                staff_id,
                "SING",
                booking.window,
                AssignmentState.CONFIRMED,
            )
            for staff_id in staff_ids
        ]
    )


def _assert_no_double_booking(repository: DataRepository, buffer_minutes: int = 15) -> None:
    bookings: dict[str, Booking] = {}
    spans: dict[str, list[TimeWindow]] = {}
    for assignment in repository.list_assignments():
        booking = bookings.setdefault(assignment.booking_id, repository.get_booking(assignment.booking_id))
        if not booking.is_active:
            continue
        window = assignment.window or booking.window
        spans.setdefault(assignment.staff_id, []).append(
            padded_for_location(window, booking.location_type, buffer_minutes)
        )
    for staff_id, windows in spans.items():
        for first, second in combinations(windows, 2):
            assert not first.overlaps(second), staff_id


def test_scenario_singing_booking_goes_to_lighter_team(tmp_path):
    repository, service = _setup(tmp_path, "scenario_a.db")
    _confirm_history(repository, ["staff-b1", "staff-b2", "staff-b3"])
    booking = _book(repository, "kirtan")

    result = service.run_allocation(booking.id, as_of=AS_OF)

    assert len(result.created) == 3
    assert {assignment.staff_id for assignment in result.created} == {"staff-a1", "staff-a2", "staff-a3"}
    assert all(assignment.role == Role.SING.value for assignment in result.created)
    assert result.team_used == "A"
    assert result.shortages == []


def test_scenario_long_form_without_whole_team_cycles_dedicated_recitors(tmp_path):
    repository, service = _setup(tmp_path, "scenario_b.db")
    _occupy(repository, ["staff-a1", "staff-b1"], START + timedelta(hours=20), hours=2)
    booking = _book(repository, "akhand-path", hours=48)

    result = service.run_allocation(booking.id, as_of=AS_OF)

    closing_start = booking.window.end - timedelta(hours=1)
    rotation = [a for a in result.created if a.window.end <= closing_start]
    closing = [a for a in result.created if a.window.start == closing_start]

    assert len(rotation) == 24
    assert all(a.window.duration <= timedelta(hours=2) for a in rotation)
    assert {a.staff_id for a in rotation} <= {"staff-r1", "staff-r2", "staff-r3"}
    assert [a.staff_id for a in rotation[:4]] == ["staff-r1", "staff-r2", "staff-r3", "staff-r1"]
    assert len(closing) == 2
    assert all(a.window.end == booking.window.end for a in closing)
    assert result.team_used is None
    assert result.shortages == []


def test_long_form_rotation_records_shortage_for_uncovered_slot(tmp_path):
    repository, service = _setup(tmp_path, "rotation_shortage.db", seed=False)
    repository.save_program(
        ProgramRequirement(
            program_id="akhand-path",
            name="Akhand Path",
            category=ProgramCategory.RECITATION,
            people_required=1,
            min_recitors=1,
            duration_minutes=6 * 60,
            rotation_minutes=120,
            closing_double_minutes=60,
        )
    )
    repository.save_staff(StaffMember("staff-r1", "Reader", frozenset({Role.RECITE})))
    _occupy(repository, ["staff-r1"], START + timedelta(hours=2), hours=2, program_id="akhand-path")
    booking = _book(repository, "akhand-path", hours=6)

    result = service.run_allocation(booking.id, as_of=AS_OF)

    assert [a.window.start for a in result.created][:2] == [START, START + timedelta(hours=4)]
    roles = Counter((shortage.role, shortage.needed) for shortage in result.shortages)
    assert roles == Counter({("RECITE", 1): 2})


def test_long_form_with_whole_team_uses_fixed_roster(tmp_path):
    repository, service = _setup(tmp_path, "fixed_roster.db")
    booking = _book(repository, "akhand-path", hours=48)

    result = service.run_allocation(booking.id, as_of=AS_OF)

    closing_start = booking.window.end - timedelta(hours=1)
    rotation = [a.staff_id for a in result.created if a.window.end <= closing_start]
    closing = sorted(a.staff_id for a in result.created if a.window.start == closing_start)

    roster = ["staff-r1", "staff-a1", "staff-a2", "staff-a3"]
    assert rotation == [roster[index % len(roster)] for index in range(24)]
    assert Counter(rotation)["staff-r1"] == Counter(rotation)["staff-a3"] == 6
    assert closing == ["staff-a1", "staff-r1"]
    assert result.team_used == "A"


def test_rerun_replaces_proposed_rows_with_identical_set(tmp_path):
    repository, service = _setup(tmp_path, "idempotent.db")
    booking = _book(repository, "akhand-path-kirtan", hours=49)

    first = service.run_allocation(booking.id, as_of=AS_OF)
    second = service.run_allocation(booking.id, as_of=AS_OF)

    def signature(assignments):
        return sorted((a.staff_id, a.role, a.window.start, a.window.end) for a in assignments)

    assert signature(first.created) == signature(second.created)
    assert signature(repository.list_assignments(booking.id)) == signature(second.created)
    assert first.team_used == second.team_used


def test_concurrent_singing_bookings_never_share_staff(tmp_path):
    repository, service = _setup(tmp_path, "no_double.db")
    first = _book(repository, "kirtan")
    second = _book(repository, "kirtan", start=START + timedelta(minutes=30))

    first_result = service.run_allocation(first.id, as_of=AS_OF)
    second_result = service.run_allocation(second.id, as_of=AS_OF)

    assert first_result.team_used != second_result.team_used
    assert not {a.staff_id for a in first_result.created} & {a.staff_id for a in second_result.created}
    _assert_no_double_booking(repository)


def test_off_site_travel_buffer_blocks_back_to_back_duty(tmp_path):
    repository, service = _setup(tmp_path, "travel.db")
    on_site = _book(repository, "kirtan")
    off_site = _book(
        repository,
        "kirtan",
        start=START + timedelta(hours=1, minutes=10),
        location_type=LocationType.OFF_SITE,
    )

    first = service.run_allocation(on_site.id, as_of=AS_OF)
    second = service.run_allocation(off_site.id, as_of=AS_OF)

    assert first.team_used == "A"
    assert second.team_used == "B"
    _assert_no_double_booking(repository)


def test_shortage_is_reported_instead_of_raising(tmp_path):
    repository, service = _setup(tmp_path, "shortage.db", seed=False)
    repository.save_program(
        ProgramRequirement("kirtan", "Kirtan", ProgramCategory.SINGING, 3, min_singers=3, fairness_weight=2)
    )
    repository.save_staff(StaffMember("staff-s1", "Singer One", frozenset({Role.SING}), "A"))
    repository.save_staff(StaffMember("staff-s2", "Singer Two", frozenset({Role.SING}), "A"))
    booking = _book(repository, "kirtan")

    result = service.run_allocation(booking.id, as_of=AS_OF)

    assert sorted(a.staff_id for a in result.created) == ["staff-s1", "staff-s2"]
    assert [(s.role, s.needed) for s in result.shortages] == [("SING", 1)]
    assert result.team_used is None


def test_flex_top_up_fills_from_dedicated_recitors(tmp_path):
    repository, service = _setup(tmp_path, "flex.db")
    repository.save_program(
        ProgramRequirement("kirtan-plus", "Kirtan Plus", ProgramCategory.SINGING, 5, min_singers=3)
    )
    booking = _book(repository, "kirtan-plus")

    result = service.run_allocation(booking.id, as_of=AS_OF)

    flex = sorted(a.staff_id for a in result.created if a.role == FLEX_ROLE)
    singers = [a for a in result.created if a.role == Role.SING.value]
    assert len(singers) == 3
    assert flex == ["staff-r1", "staff-r2"]
    assert result.shortages == []


def test_unmet_flex_is_recorded_as_flex_shortage(tmp_path):
    repository, service = _setup(tmp_path, "flex_short.db")
    repository.save_program(
        ProgramRequirement("kirtan-plus", "Kirtan Plus", ProgramCategory.SINGING, 5, min_singers=3)
    )
    _occupy(repository, ["staff-r1", "staff-r2"], START)
    booking = _book(repository, "kirtan-plus")

    result = service.run_allocation(booking.id, as_of=AS_OF)

    flex = [a.staff_id for a in result.created if a.role == FLEX_ROLE]
    assert flex == ["staff-r3"]
    assert len([a for a in result.created if a.role == Role.SING.value]) == 3
    assert [(s.role, s.needed) for s in result.shortages] == [(FLEX_ROLE, 1)]


def test_rerun_leaves_confirmed_items_alone(tmp_path):
    repository, service = _setup(tmp_path, "confirmed_rerun.db")
    booking = _book(repository, "kirtan")
    first = service.run_allocation(booking.id, as_of=AS_OF)
    repository.confirm_assignments(booking.id)

    second = service.run_allocation(booking.id, as_of=AS_OF)

    assert second.created == []
    stored = repository.list_assignments(booking.id)
    assert sorted(a.staff_id for a in stored) == sorted(a.staff_id for a in first.created)
    assert all(a.state == AssignmentState.CONFIRMED for a in stored)


def test_combined_window_keeps_singers_and_recitors_distinct(tmp_path):
    repository, service = _setup(tmp_path, "combined.db")
    repository.save_program(
        ProgramRequirement(
            "path-with-kirtan",
            "Path with Kirtan",
            ProgramCategory.RECITATION,
            3,
            min_recitors=1,
            min_singers=2,
        )
    )
    booking = _book(repository, "path-with-kirtan", hours=2)

    result = service.run_allocation(booking.id, as_of=AS_OF)

    by_role = Counter(a.role for a in result.created)
    assert by_role == Counter({"SING": 2, "RECITE": 1})
    assert len({a.staff_id for a in result.created}) == 3
    assert [a.staff_id for a in result.created if a.role == "RECITE"] == ["staff-r1"]


def test_recitation_borrows_one_team_when_dedicated_recitors_are_busy(tmp_path):
    repository, service = _setup(tmp_path, "borrow.db")
    _occupy(repository, ["staff-r1", "staff-r2", "staff-r3", "staff-a1"], START)
    booking = _book(repository, "sukhmani-sahib")

    result = service.run_allocation(booking.id, as_of=AS_OF)

    # Team B has more free members than team A.
    assert [a.staff_id for a in result.created] == ["staff-b1"]


def test_inactive_booking_clears_proposals_only(tmp_path):
    repository, service = _setup(tmp_path, "inactive.db")
    booking = _book(repository, "kirtan")
    service.run_allocation(booking.id, as_of=AS_OF)
    repository.update_booking_status(booking.id, BookingStatus.CANCELLED)

    result = service.run_allocation(booking.id, as_of=AS_OF)

    assert result.created == []
    assert repository.list_assignments(booking.id) == []


def test_missing_booking_raises(tmp_path):
    _, service = _setup(tmp_path, "missing.db")

    with pytest.raises(BookingNotFoundError):
        service.run_allocation("does-not-exist", as_of=AS_OF)
