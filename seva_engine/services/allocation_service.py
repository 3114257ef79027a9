"""Greedy, fairness-aware duty allocation for a single booking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence

from seva_engine.domain.constraints import AllocationConfig, validate_allocation_config
from seva_engine.domain.models import (
    FLEX_ROLE,
    AllocationResult,
    Assignment,
    AssignmentState,
    Booking,
    BookingItem,
    Role,
    Shortage,
    SlotKind,
    StaffMember,
    SubWindow,
    TimeWindow,
)
from seva_engine.domain.windows import ProgramShape, decompose, program_shape
from seva_engine.repository.data_repository import DataRepository
from seva_engine.services.availability_service import AvailabilityIndex
from seva_engine.services.candidate_pools import (
    borrowed_team_recitors,
    dedicated_recitors,
    fill,
    ranked_free,
    team_members,
)
from seva_engine.services.fairness_service import FairnessRanker
from seva_engine.services.jatha_service import JathaSelector
from seva_engine.utils.config import Settings, get_settings
from seva_engine.utils.logger import get_logger


logger = get_logger(__name__)


class AllocationError(Exception):
    """Raised when an allocation run cannot start."""


class BookingNotFoundError(AllocationError):
    """Raised when the referenced booking does not exist."""


@dataclass
class ItemOutcome:
    assignments: list[Assignment] = field(default_factory=list)
    shortages: list[Shortage] = field(default_factory=list)
    team_used: Optional[str] = None


class RoleAllocator:
    """Fills every decomposed sub-window of a booking's items.

    Staff planned earlier in the run are fed back into the availability
    index, so overlapping windows of the same booking never share a person.
    """

    def __init__(
        self,
        booking: Booking,
        staff: Sequence[StaffMember],
        availability: AvailabilityIndex,
        ranker: FairnessRanker,
        selector: JathaSelector,
        config: AllocationConfig,
        covered_items: frozenset[str] = frozenset(),
    ) -> None:
        self._booking = booking
        self._staff = list(staff)
        self._availability = availability
        self._ranker = ranker
        self._selector = selector
        self._config = config
        self._covered_items = covered_items

    def allocate(self) -> AllocationResult:
        created: list[Assignment] = []
        shortages: list[Shortage] = []
        team_used: Optional[str] = None
        for item in self._booking.items:
            if item.id in self._covered_items:
                # Confirmed duty stands; the item is not re-staffed.
                continue
            outcome = self.allocate_item(item)
            created.extend(outcome.assignments)
            shortages.extend(outcome.shortages)
            team_used = team_used or outcome.team_used
        return AllocationResult(
            booking_id=self._booking.id,
            created=created,
            shortages=shortages,
            team_used=team_used,
        )

    def allocate_item(self, item: BookingItem) -> ItemOutcome:
        slots = decompose(
            item,
            self._booking.window,
            jatha_size=self._config.jatha_size,
            first_stage_minutes=self._config.first_stage_minutes,
        )
        shape = program_shape(item.program)
        if shape == ProgramShape.LONG_FORM:
            return self._allocate_long_form(item, slots)

        outcome = ItemOutcome()
        for slot in slots:
            reserved: frozenset[str] = frozenset()
            if slot.singers:
                picked, reserved, team = self._pick_singers(
                    slot.window, slot.singers, reserved, outcome.team_used
                )
                outcome.team_used = outcome.team_used or team
                self._record(outcome, item, picked, Role.SING.value, slot.window, slot.singers)
            if slot.recitors:
                picked, reserved = self._pick_recitors(
                    slot.window, slot.recitors, reserved, outcome.team_used
                )
                self._record(outcome, item, picked, Role.RECITE.value, slot.window, slot.recitors)

        if (
            shape == ProgramShape.SINGLE
            and self._sings_full_duration(slots)
            and item.program.people_required > sum(slot.people_needed for slot in slots)
        ):
            self._flex_top_up(item, outcome)
        return outcome

    # --- pickers --------------------------------------------------------

    def _pick_singers(
        self,
        window: TimeWindow,
        need: int,
        reserved: frozenset[str],
        preferred_team: Optional[str],
    ) -> tuple[list[str], frozenset[str], Optional[str]]:
        if preferred_team and self._selector.is_whole(preferred_team, window, self._availability, reserved):
            team: Optional[str] = preferred_team
        else:
            team = self._selector.pick_team(window, self._availability, self._booking, reserved)

        providers = []
        if team:
            providers.append(
                team_members(self._selector, team, self._availability, self._ranker, Role.SING)
            )
        providers.append(ranked_free(self._staff, self._availability, self._ranker, Role.SING))
        picked, reserved = fill(need, providers, window, reserved)
        return picked, reserved, team

    def _pick_recitors(
        self,
        window: TimeWindow,
        need: int,
        reserved: frozenset[str],
        preferred_team: Optional[str],
    ) -> tuple[list[str], frozenset[str]]:
        providers = [
            dedicated_recitors(self._staff, self._availability, self._ranker),
            borrowed_team_recitors(self._selector, self._availability, self._ranker, preferred_team),
        ]
        return fill(need, providers, window, reserved)

    # --- shapes ---------------------------------------------------------

    def _allocate_long_form(self, item: BookingItem, slots: Sequence[SubWindow]) -> ItemOutcome:
        outcome = ItemOutcome()
        span = self._booking.window
        team = self._selector.pick_team(span, self._availability, self._booking)

        roster: list[str] = []
        if team:
            lead = dedicated_recitors(self._staff, self._availability, self._ranker)(span, frozenset())[:1]
            members = team_members(
                self._selector, team, self._availability, self._ranker, Role.RECITE
            )(span, frozenset(lead))
            roster = lead + members
            outcome.team_used = team

        rotation = [slot for slot in slots if slot.kind == SlotKind.ROTATION]
        if roster:
            self._rotate_fixed_roster(item, rotation, roster, outcome)
        else:
            self._rotate_fallback(item, rotation, outcome)

        for slot in slots:
            if slot.kind == SlotKind.CLOSING:
                preferred = [
                    staff_id
                    for staff_id in roster
                    if self._availability.is_free(staff_id, slot.window)
                ][: slot.recitors]
                picked, _ = self._pick_recitors(
                    slot.window,
                    slot.recitors - len(preferred),
                    frozenset(preferred),
                    outcome.team_used,
                )
                self._record(
                    outcome, item, preferred + picked, Role.RECITE.value, slot.window, slot.recitors
                )
            elif slot.kind == SlotKind.SINGING:
                picked, _, chosen = self._pick_singers(
                    slot.window, slot.singers, frozenset(), outcome.team_used
                )
                outcome.team_used = outcome.team_used or chosen
                self._record(outcome, item, picked, Role.SING.value, slot.window, slot.singers)
        return outcome

    def _rotate_fixed_roster(
        self,
        item: BookingItem,
        rotation: Sequence[SubWindow],
        roster: Sequence[str],
        outcome: ItemOutcome,
    ) -> None:
        for index, slot in enumerate(rotation):
            staff_id = roster[index % len(roster)]
            if self._availability.is_free(staff_id, slot.window):
                picked = [staff_id]
            else:
                picked, _ = self._pick_recitors(slot.window, 1, frozenset(), outcome.team_used)
            self._record(outcome, item, picked, Role.RECITE.value, slot.window, 1)

    def _rotate_fallback(
        self,
        item: BookingItem,
        rotation: Sequence[SubWindow],
        outcome: ItemOutcome,
    ) -> None:
        local: frozenset[str] = frozenset()
        for slot in rotation:
            picked, local = self._pick_recitors(slot.window, 1, local, outcome.team_used)
            if not picked and local:
                # Only recently used readers are free; start a new cycle.
                picked, local = self._pick_recitors(slot.window, 1, frozenset(), outcome.team_used)
            self._record(outcome, item, picked, Role.RECITE.value, slot.window, 1)
            if len(local) >= self._config.jatha_size:
                local = frozenset()

    def _sings_full_duration(self, slots: Sequence[SubWindow]) -> bool:
        return any(slot.singers > 0 and slot.window == self._booking.window for slot in slots)

    def _flex_top_up(self, item: BookingItem, outcome: ItemOutcome) -> None:
        remaining = item.program.people_required - len(outcome.assignments)
        if remaining <= 0:
            return
        window = self._booking.window
        providers = [dedicated_recitors(self._staff, self._availability, self._ranker)]
        if outcome.team_used:
            providers.append(
                team_members(self._selector, outcome.team_used, self._availability, self._ranker, Role.SING)
            )
        picked, _ = fill(remaining, providers, window, frozenset())
        self._record(outcome, item, picked, FLEX_ROLE, window, remaining)

    # --- bookkeeping ----------------------------------------------------

    def _record(
        self,
        outcome: ItemOutcome,
        item: BookingItem,
        staff_ids: Sequence[str],
        role: str,
        window: TimeWindow,
        needed: int,
    ) -> None:
        for staff_id in staff_ids:
            self._availability = self._availability.with_planned(staff_id, window)
            outcome.assignments.append(
                Assignment(
                    id=None,
                    booking_id=self._booking.id,
                    booking_item_id=item.id,
                    staff_id=staff_id,
                    role=role,
                    window=window,
                )
            )
        missing = needed - len(staff_ids)
        if missing > 0:
            outcome.shortages.append(Shortage(item_id=item.id, role=role, needed=missing))
            logger.warning(
                "Shortage recorded | booking_id=%s | item_id=%s | role=%s | missing=%s | window_start=%s",
                self._booking.id,
                item.id,
                role,
                missing,
                window.start.isoformat(),
            )


class AllocationService:
    """Recomputes a booking's PROPOSED assignments in one transaction."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._config = AllocationConfig.from_settings(self._settings)
        validate_allocation_config(self._config)

    def run_allocation(self, booking_id: str, *, as_of: Optional[datetime] = None) -> AllocationResult:
        as_of = as_of or datetime.now(timezone.utc)
        with self._repository.transaction():
            booking = self._repository.get_booking(booking_id)
            if booking is None:
                raise BookingNotFoundError(f"Booking {booking_id} does not exist")

            removed = self._repository.delete_proposed_assignments(booking_id)
            if not booking.is_active:
                logger.info(
                    "Skipping allocation for inactive booking | booking_id=%s | status=%s",
                    booking_id,
                    booking.status.value,
                )
                return AllocationResult(booking_id=booking_id)

            covered = frozenset(
                assignment.booking_item_id
                for assignment in self._repository.list_assignments(
                    booking_id, state=AssignmentState.CONFIRMED
                )
            )
            staff = self._repository.list_staff()
            availability = AvailabilityIndex.for_booking(
                self._repository,
                booking,
                self._config.off_site_buffer_minutes,
            )
            ranker = FairnessRanker(
                self._repository,
                as_of=as_of,
                lookback_weeks=self._config.fairness_lookback_weeks,
                timezone_name=self._config.venue_timezone,
            )
            selector = JathaSelector(
                self._repository,
                staff,
                ranker,
                jatha_size=self._config.jatha_size,
                timezone_name=self._config.venue_timezone,
            )
            planned = RoleAllocator(
                booking, staff, availability, ranker, selector, self._config, covered
            ).allocate()
            created = self._repository.insert_assignments(planned.created)

        logger.info(
            (
                "Allocation completed | booking_id=%s | removed_proposed=%s | "
                "created=%s | shortages=%s | team_used=%s"
            ),
            booking_id,
            removed,
            len(created),
            len(planned.shortages),
            planned.team_used,
        )
        return AllocationResult(
            booking_id=booking_id,
            created=created,
            shortages=planned.shortages,
            team_used=planned.team_used,
        )
