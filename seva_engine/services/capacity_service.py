"""Cross-location capacity validation over the shared staff pool.

ON_SITE and OFF_SITE bookings draw from one pool of people. Usage is
tallied per UTC hour over every overlapping active booking, and a new or
moved booking is rejected when any hour it touches would need more people
than remain.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Mapping, Optional, Sequence

from seva_engine.domain.models import (
    BookingItem,
    LocationType,
    ProgramRequirement,
    Role,
    TimeWindow,
)
from seva_engine.domain.windows import hall_usage_windows, hour_buckets, padded_for_location
from seva_engine.repository.data_repository import DataRepository, to_utc
from seva_engine.utils.config import Settings, get_settings
from seva_engine.utils.logger import get_logger


logger = get_logger(__name__)

HEADCOUNT = "HEADCOUNT"


class CapacityExceededError(Exception):
    """Raised when the shared staff pool cannot cover a booking."""

    def __init__(self, message: str, *, role: str, hour: datetime) -> None:
        super().__init__(message)
        self.role = role
        self.hour = hour


def role_needs(items: Sequence[BookingItem]) -> dict[Role, int]:
    return {
        Role.RECITE: sum(item.program.min_recitors for item in items),
        Role.SING: sum(item.program.min_singers for item in items),
    }


def item_headcount(program: ProgramRequirement, long_form_threshold_minutes: int) -> int:
    # A long pure-recitation program rotates one reader at a time.
    if program.duration_minutes >= long_form_threshold_minutes and program.min_singers == 0:
        return max(program.min_recitors, 1)
    return max(program.people_required, program.role_minimum)


def headcount_need(items: Sequence[BookingItem], long_form_threshold_minutes: int) -> int:
    return sum(item_headcount(item.program, long_form_threshold_minutes) for item in items)


def _opposite(location_type: LocationType) -> LocationType:
    if location_type == LocationType.ON_SITE:
        return LocationType.OFF_SITE
    return LocationType.ON_SITE


class CapacityService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def location_cap(self, location_type: LocationType, role: Role) -> Optional[int]:
        if location_type == LocationType.ON_SITE:
            caps = {Role.RECITE: self._settings.on_site_recite_cap, Role.SING: self._settings.on_site_sing_cap}
        else:
            caps = {Role.RECITE: self._settings.off_site_recite_cap, Role.SING: self._settings.off_site_sing_cap}
        return caps[role]

    def _usage_by_hour(
        self,
        window: TimeWindow,
        exclude_booking_id: Optional[str],
    ) -> dict[LocationType, dict[datetime, dict[str, int]]]:
        buffer_minutes = self._settings.off_site_buffer_minutes
        usage: dict[LocationType, dict[datetime, dict[str, int]]] = {
            LocationType.ON_SITE: defaultdict(lambda: defaultdict(int)),
            LocationType.OFF_SITE: defaultdict(lambda: defaultdict(int)),
        }
        overlapping = self._repository.list_active_bookings_overlapping(
            window.padded(buffer_minutes),
            exclude_booking_id=exclude_booking_id,
        )
        for booking in overlapping:
            needs = role_needs(booking.items)
            heads = headcount_need(booking.items, self._settings.long_form_threshold_minutes)
            buckets: set[datetime] = set()
            for used in hall_usage_windows(
                booking.items,
                booking.window,
                jatha_size=self._settings.jatha_size,
                first_stage_minutes=self._settings.first_stage_minutes,
            ):
                padded = padded_for_location(used, booking.location_type, buffer_minutes)
                buckets.update(hour_buckets(padded))
            for bucket in buckets:
                tally = usage[booking.location_type][bucket]
                tally[Role.RECITE.value] += needs[Role.RECITE]
                tally[Role.SING.value] += needs[Role.SING]
                tally[HEADCOUNT] += heads
        return usage

    def check_capacity(
        self,
        window: TimeWindow,
        location_type: LocationType,
        needs: Mapping[Role, int],
        headcount: int,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> None:
        """Raise ``CapacityExceededError`` when any touched hour cannot be staffed."""
        staff = self._repository.list_staff()
        pool = {role: sum(1 for member in staff if member.can(role)) for role in Role}
        total_active = len(staff)

        window = TimeWindow(to_utc(window.start), to_utc(window.end))
        candidate = padded_for_location(window, location_type, self._settings.off_site_buffer_minutes)
        usage = self._usage_by_hour(candidate, exclude_booking_id)
        here = usage[location_type]
        opposite = usage[_opposite(location_type)]

        for bucket in hour_buckets(candidate):
            for role in Role:
                need = needs.get(role, 0)
                if need <= 0:
                    continue
                available = pool[role] - opposite[bucket][role.value]
                cap = self.location_cap(location_type, role)
                if cap is not None:
                    available = min(available, cap)
                remaining = available - here[bucket][role.value]
                if need > remaining:
                    logger.warning(
                        "Capacity exceeded | role=%s | hour=%s | need=%s | remaining=%s | location=%s",
                        role.value,
                        bucket.isoformat(),
                        need,
                        remaining,
                        location_type.value,
                    )
                    raise CapacityExceededError(
                        f"Not enough {role.value} staff at {bucket.isoformat()}: "
                        f"need {need}, remaining {max(remaining, 0)}",
                        role=role.value,
                        hour=bucket,
                    )

            remaining_heads = total_active - opposite[bucket][HEADCOUNT] - here[bucket][HEADCOUNT]
            if remaining_heads < headcount:
                logger.warning(
                    "Headcount exceeded | hour=%s | need=%s | remaining=%s | location=%s",
                    bucket.isoformat(),
                    headcount,
                    remaining_heads,
                    location_type.value,
                )
                raise CapacityExceededError(
                    f"Not enough staff at {bucket.isoformat()}: need {headcount}, "
                    f"remaining {max(remaining_heads, 0)}",
                    role=HEADCOUNT,
                    hour=bucket,
                )
