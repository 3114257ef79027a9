"""Ordered candidate-pool providers used by the role allocator.

A provider is a pure function ``(window, reserved) -> ranked staff ids``.
Fallback chains are expressed as a list of providers tried in order until
the need is met.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

from seva_engine.domain.models import Role, StaffMember, TimeWindow
from seva_engine.services.availability_service import AvailabilityIndex
from seva_engine.services.fairness_service import FairnessRanker
from seva_engine.services.jatha_service import JathaSelector


PoolProvider = Callable[[TimeWindow, frozenset[str]], list[str]]


def ranked_free(
    staff: Sequence[StaffMember],
    availability: AvailabilityIndex,
    ranker: FairnessRanker,
    role: Role,
) -> PoolProvider:
    def provider(window: TimeWindow, reserved: frozenset[str]) -> list[str]:
        free = availability.free_staff(staff, window, role=role, reserved=reserved)
        return ranker.rank([member.id for member in free], role)

    return provider


def dedicated_recitors(
    staff: Sequence[StaffMember],
    availability: AvailabilityIndex,
    ranker: FairnessRanker,
) -> PoolProvider:
    return ranked_free(
        [member for member in staff if member.is_dedicated_recitor],
        availability,
        ranker,
        Role.RECITE,
    )


def team_members(
    selector: JathaSelector,
    team_tag: str,
    availability: AvailabilityIndex,
    ranker: FairnessRanker,
    role: Role,
) -> PoolProvider:
    return ranked_free(selector.members(team_tag), availability, ranker, role)


def borrowed_team_recitors(
    selector: JathaSelector,
    availability: AvailabilityIndex,
    ranker: FairnessRanker,
    preferred_team: Optional[str] = None,
) -> PoolProvider:
    """RECITE-capable members of exactly one team.

    The preferred team is used when it has anyone free; otherwise the team
    with the most free RECITE-capable members, ties going to the lower tag.
    """

    def provider(window: TimeWindow, reserved: frozenset[str]) -> list[str]:
        free_by_team = {
            tag: selector.free_members(tag, window, availability, role=Role.RECITE, reserved=reserved)
            for tag in selector.team_tags
        }
        if preferred_team and free_by_team.get(preferred_team):
            chosen = preferred_team
        else:
            populated = [tag for tag, free in free_by_team.items() if free]
            if not populated:
                return []
            chosen = min(populated, key=lambda tag: (-len(free_by_team[tag]), tag))
        return ranker.rank([member.id for member in free_by_team[chosen]], Role.RECITE)

    return provider


def fill(
    need: int,
    providers: Sequence[PoolProvider],
    window: TimeWindow,
    reserved: frozenset[str],
) -> tuple[list[str], frozenset[str]]:
    """Take up to ``need`` staff from providers in order.

    Returns the picks and the reserved set extended with them.
    """
    picked: list[str] = []
    for provider in providers:
        if len(picked) >= need:
            break
        for staff_id in provider(window, reserved):
            if len(picked) >= need:
                break
            if staff_id in reserved:
                continue
            picked.append(staff_id)
            reserved = reserved | {staff_id}
    return picked, reserved
