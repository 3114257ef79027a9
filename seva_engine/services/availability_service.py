"""Staff availability lookups over stored and in-run assignments."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from seva_engine.domain.models import (
    Booking,
    BusyInterval,
    LocationType,
    Role,
    StaffMember,
    TimeWindow,
)
from seva_engine.domain.windows import padded_for_location
from seva_engine.repository.data_repository import DataRepository
from seva_engine.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class PlannedSlot:
    staff_id: str
    window: TimeWindow


class AvailabilityIndex:
    """Answers "who is busy during this window" for one booking run.

    Stored assignments of off-site bookings are padded by the travel buffer,
    and so is the queried window when the booking being staffed is off-site.
    Slots planned earlier in the same run are compared without padding.
    """

    def __init__(
        self,
        busy: Sequence[BusyInterval],
        *,
        location_type: LocationType,
        buffer_minutes: int,
        planned: Sequence[PlannedSlot] = (),
    ) -> None:
        self._busy = tuple(busy)
        self._location_type = location_type
        self._buffer_minutes = buffer_minutes
        self._planned = tuple(planned)
        self._by_staff: dict[str, list[TimeWindow]] = {}
        for interval in self._busy:
            self._by_staff.setdefault(interval.staff_id, []).append(
                padded_for_location(interval.window, interval.location_type, buffer_minutes)
            )

    @classmethod
    def for_booking(
        cls,
        repository: DataRepository,
        booking: Booking,
        buffer_minutes: int,
    ) -> AvailabilityIndex:
        # Both sides may carry padding, so widen the fetch range twice over.
        fetch_range = booking.window.padded(2 * buffer_minutes)
        busy = repository.list_busy_intervals(fetch_range)
        logger.debug(
            "Availability loaded | booking_id=%s | busy_intervals=%s",
            booking.id,
            len(busy),
        )
        return cls(busy, location_type=booking.location_type, buffer_minutes=buffer_minutes)

    def with_planned(self, staff_id: str, window: TimeWindow) -> AvailabilityIndex:
        return AvailabilityIndex(
            self._busy,
            location_type=self._location_type,
            buffer_minutes=self._buffer_minutes,
            planned=self._planned + (PlannedSlot(staff_id, window),),
        )

    def is_free(self, staff_id: str, window: TimeWindow) -> bool:
        query = padded_for_location(window, self._location_type, self._buffer_minutes)
        for busy_window in self._by_staff.get(staff_id, ()):
            if busy_window.overlaps(query):
                return False
        for slot in self._planned:
            if slot.staff_id == staff_id and slot.window.overlaps(window):
                return False
        return True

    def busy_staff(self, window: TimeWindow) -> set[str]:
        staff_ids = set(self._by_staff) | {slot.staff_id for slot in self._planned}
        return {staff_id for staff_id in staff_ids if not self.is_free(staff_id, window)}

    def free_staff(
        self,
        staff: Iterable[StaffMember],
        window: TimeWindow,
        *,
        role: Optional[Role] = None,
        reserved: frozenset[str] = frozenset(),
    ) -> list[StaffMember]:
        return [
            member
            for member in staff
            if member.active
            and member.id not in reserved
            and (role is None or member.can(role))
            and self.is_free(member.id, window)
        ]
