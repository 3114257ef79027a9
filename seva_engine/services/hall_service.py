"""Hall selection and occupancy checks."""

from __future__ import annotations

import re
from typing import Optional, Sequence

from seva_engine.domain.models import Hall, LocationType, TimeWindow
from seva_engine.domain.recurrence import reservation_overlaps
from seva_engine.domain.windows import hall_usage_windows
from seva_engine.repository.data_repository import DataRepository
from seva_engine.utils.config import Settings, get_settings
from seva_engine.utils.logger import get_logger


logger = get_logger(__name__)

SMALL_HALL_PATTERN = re.compile(r"(^|\b)(small\s*hall|hall\s*2)(\b|$)", re.IGNORECASE)
MAIN_HALL_PATTERN = re.compile(r"(^|\b)(main\s*hall|hall\s*1)(\b|$)", re.IGNORECASE)
UPPER_HALL_PATTERN = re.compile(r"(^|\b)(upper\s*hall)(\b|$)", re.IGNORECASE)


class HallUnavailableError(Exception):
    """Raised when a booking's current hall is taken for its new schedule."""


class NoHallAvailableError(Exception):
    """Raised when no hall fits the attendees and is free."""


def _declared(hall: Hall) -> int:
    return hall.capacity or 0


class HallAllocator:
    """Spatial/temporal resource check; never looks at staff."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def capacity_of(self, hall: Hall) -> Optional[int]:
        """Explicit capacity, else the default for a recognised name; ``None`` is unlimited."""
        if hall.capacity is not None:
            return hall.capacity
        if SMALL_HALL_PATTERN.search(hall.name):
            return self._settings.small_hall_capacity
        if MAIN_HALL_PATTERN.search(hall.name):
            return self._settings.main_hall_capacity
        if UPPER_HALL_PATTERN.search(hall.name):
            return self._settings.upper_hall_capacity
        return None

    @staticmethod
    def prioritized(halls: Sequence[Hall]) -> list[Hall]:
        """Small, main and upper hall first, then the rest by capacity."""

        def first(pattern: re.Pattern[str], lower: int, upper: Optional[int]) -> Optional[Hall]:
            for hall in halls:
                if pattern.search(hall.name):
                    return hall
            for hall in halls:
                if _declared(hall) > lower and (upper is None or _declared(hall) <= upper):
                    return hall
            return None

        ordered: list[Hall] = []
        for candidate in (
            first(SMALL_HALL_PATTERN, 100, 125),
            first(MAIN_HALL_PATTERN, 125, None),
            first(UPPER_HALL_PATTERN, 0, 100),
        ):
            if candidate is not None and candidate not in ordered:
                ordered.append(candidate)
        remaining = sorted(
            (hall for hall in halls if hall not in ordered),
            key=lambda hall: (hall.capacity is None, _declared(hall), hall.name),
        )
        return ordered + remaining

    def is_hall_free(
        self,
        hall_id: str,
        windows: Sequence[TimeWindow],
        ignore_booking_id: Optional[str] = None,
    ) -> bool:
        if not windows:
            return True
        bounds = TimeWindow(min(w.start for w in windows), max(w.end for w in windows))
        holders = self._repository.list_active_bookings_overlapping(
            bounds,
            exclude_booking_id=ignore_booking_id,
            location_type=LocationType.ON_SITE,
            hall_id=hall_id,
        )
        for holder in holders:
            usage = hall_usage_windows(
                holder.items,
                holder.window,
                jatha_size=self._settings.jatha_size,
                first_stage_minutes=self._settings.first_stage_minutes,
            )
            if any(used.overlaps(window) for used in usage for window in windows):
                logger.debug("Hall busy | hall_id=%s | holder=%s", hall_id, holder.id)
                return False

        for reservation in self._repository.list_space_reservations():
            if not reservation.blocks_hall or reservation.hall_id != hall_id:
                continue
            if any(reservation_overlaps(reservation, window) for window in windows):
                logger.debug("Hall reserved | hall_id=%s | reservation=%s", hall_id, reservation.id)
                return False
        return True

    def pick_hall(
        self,
        window: TimeWindow,
        attendee_count: int,
        windows: Optional[Sequence[TimeWindow]] = None,
        ignore_booking_id: Optional[str] = None,
    ) -> Optional[str]:
        """First free hall in priority order that seats ``attendee_count``."""
        usage = list(windows) if windows else [window]
        attendees = max(1, attendee_count)
        for hall in self.prioritized(self._repository.list_halls()):
            capacity = self.capacity_of(hall)
            if capacity is not None and capacity < attendees:
                continue
            if self.is_hall_free(hall.id, usage, ignore_booking_id=ignore_booking_id):
                logger.info(
                    "Hall picked | hall_id=%s | attendees=%s | window_start=%s",
                    hall.id,
                    attendees,
                    window.start.isoformat(),
                )
                return hall.id
        logger.info("No hall available | attendees=%s | window_start=%s", attendees, window.start.isoformat())
        return None
