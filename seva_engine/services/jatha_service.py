"""Selection of an intact singing team (jatha) for a window."""

from __future__ import annotations

from datetime import datetime, time
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from seva_engine.domain.models import Booking, Role, StaffMember, TimeWindow
from seva_engine.repository.data_repository import DataRepository, to_utc
from seva_engine.services.availability_service import AvailabilityIndex
from seva_engine.services.fairness_service import FairnessRanker
from seva_engine.utils.logger import get_logger


logger = get_logger(__name__)


def group_teams(staff: Sequence[StaffMember]) -> dict[str, list[StaffMember]]:
    teams: dict[str, list[StaffMember]] = {}
    for member in staff:
        if member.team_tag and member.active:
            teams.setdefault(member.team_tag, []).append(member)
    return {tag: teams[tag] for tag in sorted(teams)}


def venue_day_start(instant: datetime, timezone_name: str) -> datetime:
    zone = ZoneInfo(timezone_name)
    local = to_utc(instant).astimezone(zone)
    return to_utc(datetime.combine(local.date(), time(), tzinfo=zone))


class JathaSelector:
    """Picks which team sings, preferring whole teams with the lighter load."""

    def __init__(
        self,
        repository: DataRepository,
        staff: Sequence[StaffMember],
        ranker: FairnessRanker,
        *,
        jatha_size: int,
        timezone_name: str,
    ) -> None:
        self._repository = repository
        self._ranker = ranker
        self._jatha_size = jatha_size
        self._timezone_name = timezone_name
        self._teams = group_teams(staff)

    @property
    def team_tags(self) -> list[str]:
        return list(self._teams)

    def members(self, team_tag: str) -> list[StaffMember]:
        return list(self._teams.get(team_tag, []))

    def free_members(
        self,
        team_tag: str,
        window: TimeWindow,
        availability: AvailabilityIndex,
        *,
        role: Role = Role.SING,
        reserved: frozenset[str] = frozenset(),
    ) -> list[StaffMember]:
        return availability.free_staff(
            self._teams.get(team_tag, []),
            window,
            role=role,
            reserved=reserved,
        )

    def is_whole(
        self,
        team_tag: str,
        window: TimeWindow,
        availability: AvailabilityIndex,
        reserved: frozenset[str] = frozenset(),
    ) -> bool:
        free = self.free_members(team_tag, window, availability, reserved=reserved)
        return len(free) >= self._jatha_size

    def pick_team(
        self,
        window: TimeWindow,
        availability: AvailabilityIndex,
        booking: Booking,
        reserved: frozenset[str] = frozenset(),
    ) -> Optional[str]:
        """Return the tag of the whole team to use, or ``None`` when none is whole."""
        candidates: dict[str, list[str]] = {}
        for tag in self._teams:
            free = self.free_members(tag, window, availability, reserved=reserved)
            if len(free) >= self._jatha_size:
                candidates[tag] = [member.id for member in free]

        if not candidates:
            logger.debug("No whole team free | booking_id=%s", booking.id)
            return None
        if len(candidates) == 1:
            return next(iter(candidates))

        scored = {
            tag: (
                self._ranker.total_load(ids, Role.SING, limit=self._jatha_size),
                -len(ids),
            )
            for tag, ids in candidates.items()
        }
        best = min(scored.values())
        tied = sorted(tag for tag, score in scored.items() if score == best)
        if len(tied) == 1:
            return tied[0]

        earlier = self._repository.count_singing_bookings_between(
            venue_day_start(booking.window.start, self._timezone_name),
            booking.window.start,
            exclude_booking_id=booking.id,
        )
        chosen = tied[earlier % len(tied)]
        logger.info(
            "Team chosen by day parity | booking_id=%s | earlier_singing=%s | team=%s",
            booking.id,
            earlier,
            chosen,
        )
        return chosen
