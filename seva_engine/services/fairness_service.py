"""Weighted-load ranking so duty spreads evenly across staff."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, time, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from seva_engine.domain.models import ProgramCategory, Role, TimeWindow
from seva_engine.repository.data_repository import DataRepository, to_utc
from seva_engine.utils.logger import get_logger


logger = get_logger(__name__)

CATEGORY_FOR_ROLE = {
    Role.RECITE: ProgramCategory.RECITATION,
    Role.SING: ProgramCategory.SINGING,
}


def lookback_period(as_of: datetime, lookback_weeks: int, timezone_name: str) -> TimeWindow:
    """Full Monday-start weeks ending with the week that contains ``as_of``."""
    if lookback_weeks <= 0:
        raise ValueError("lookback_weeks must be > 0")
    zone = ZoneInfo(timezone_name)
    local = to_utc(as_of).astimezone(zone)
    week_start = datetime.combine(local.date() - timedelta(days=local.weekday()), time(), tzinfo=zone)
    period_start = week_start - timedelta(weeks=lookback_weeks - 1)
    period_end = week_start + timedelta(weeks=1)
    return TimeWindow(to_utc(period_start), to_utc(period_end))


class FairnessRanker:
    """Ranks staff by confirmed, weighted work within the lookback period.

    Loads are fetched once per role and cached for the lifetime of the
    ranker, which is one allocation run.
    """

    def __init__(
        self,
        repository: DataRepository,
        *,
        as_of: datetime,
        lookback_weeks: int,
        timezone_name: str,
    ) -> None:
        self._repository = repository
        self._period = lookback_period(as_of, lookback_weeks, timezone_name)
        self._loads: dict[Role, dict[str, int]] = {}

    @property
    def period(self) -> TimeWindow:
        return self._period

    def _role_loads(self, role: Role) -> dict[str, int]:
        if role not in self._loads:
            totals: dict[str, int] = defaultdict(int)
            for record in self._repository.list_confirmed_credits(
                category=CATEGORY_FOR_ROLE[role],
                window=self._period,
            ):
                totals[record.staff_id] += record.weight
            self._loads[role] = dict(totals)
            logger.debug(
                "Fairness loads cached | role=%s | staff_with_load=%s",
                role.value,
                len(totals),
            )
        return self._loads[role]

    def weighted_load(self, staff_id: str, role: Role) -> int:
        return self._role_loads(role).get(staff_id, 0)

    def rank(self, staff_ids: Iterable[str], role: Role) -> list[str]:
        """Least-loaded first; ties broken by staff id."""
        loads = self._role_loads(role)
        return sorted(set(staff_ids), key=lambda staff_id: (loads.get(staff_id, 0), staff_id))

    def total_load(self, staff_ids: Iterable[str], role: Role, limit: Optional[int] = None) -> int:
        ranked = self.rank(staff_ids, role)
        if limit is not None:
            ranked = ranked[:limit]
        return sum(self.weighted_load(staff_id, role) for staff_id in ranked)
