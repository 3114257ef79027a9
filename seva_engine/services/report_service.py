"""Fairness reporting over confirmed duty credits."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import pandas as pd

from seva_engine.domain.models import Role
from seva_engine.repository.data_repository import DataRepository, to_utc
from seva_engine.services.fairness_service import CATEGORY_FOR_ROLE, lookback_period
from seva_engine.utils.config import Settings, get_settings
from seva_engine.utils.logger import get_logger


logger = get_logger(__name__)


class ReportValidationError(Exception):
    """Raised when report parameters are invalid."""


@dataclass(frozen=True)
class FairnessReportRow:
    staff_id: str
    name: str
    team_tag: Optional[str]
    lifetime_credits: int
    window_credits: int
    window_assignments: int
    last_assigned_at: Optional[datetime]
    by_program: dict[str, int] = field(default_factory=dict)


class FairnessReportService:
    """Summarises who has carried how much confirmed duty."""

    _COLUMNS = ["staff_id", "program_name", "weight", "start", "end"]

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def build_report(
        self,
        as_of: datetime,
        lookback_weeks: Optional[int] = None,
        role: Optional[Role] = None,
        team: Optional[str] = None,
    ) -> list[FairnessReportRow]:
        weeks = lookback_weeks if lookback_weeks is not None else self._settings.fairness_lookback_weeks
        if weeks <= 0:
            raise ReportValidationError("lookback_weeks must be > 0")
        as_of = to_utc(as_of)
        period = lookback_period(as_of, weeks, self._settings.venue_timezone)

        staff = [
            member
            for member in self._repository.list_staff()
            if (team is None or member.team_tag == team) and (role is None or member.can(role))
        ]
        if not staff:
            return []

        credits = self._repository.list_confirmed_credits(
            [member.id for member in staff],
            category=CATEGORY_FOR_ROLE[role] if role is not None else None,
        )
        frame = pd.DataFrame(
            [
                {
                    "staff_id": record.staff_id,
                    "program_name": record.program_name,
                    "weight": record.weight,
                    "start": record.window.start,
                    "end": record.window.end,
                }
                for record in credits
            ],
            columns=self._COLUMNS,
        )

        lifetime: dict[str, int] = {}
        in_window_credits: dict[str, int] = {}
        in_window_counts: dict[str, int] = {}
        last_assigned: dict[str, datetime] = {}
        breakdown: dict[str, dict[str, int]] = {}
        if not frame.empty:
            frame["start"] = pd.to_datetime(frame["start"], utc=True)
            frame["end"] = pd.to_datetime(frame["end"], utc=True)
            period_start = pd.Timestamp(period.start)
            period_end = pd.Timestamp(period.end)
            in_window = frame[(frame["start"] < period_end) & (frame["end"] > period_start)]
            started = frame[frame["start"] <= pd.Timestamp(as_of)]

            lifetime = {key: int(value) for key, value in frame.groupby("staff_id")["weight"].sum().items()}
            in_window_credits = {
                key: int(value) for key, value in in_window.groupby("staff_id")["weight"].sum().items()
            }
            in_window_counts = {key: int(value) for key, value in in_window.groupby("staff_id").size().items()}
            last_assigned = {
                key: value.to_pydatetime() for key, value in started.groupby("staff_id")["start"].max().items()
            }
            for (staff_id, program_name), value in (
                in_window.groupby(["staff_id", "program_name"])["weight"].sum().items()
            ):
                breakdown.setdefault(staff_id, {})[program_name] = int(value)

        rows = [
            FairnessReportRow(
                staff_id=member.id,
                name=member.name,
                team_tag=member.team_tag,
                lifetime_credits=lifetime.get(member.id, 0),
                window_credits=in_window_credits.get(member.id, 0),
                window_assignments=in_window_counts.get(member.id, 0),
                last_assigned_at=last_assigned.get(member.id),
                by_program=breakdown.get(member.id, {}),
            )
            for member in staff
        ]
        rows.sort(key=lambda row: (-row.window_credits, -row.lifetime_credits, row.name))
        logger.info(
            "Fairness report built | staff=%s | credits=%s | period_start=%s | period_end=%s",
            len(rows),
            len(credits),
            period.start.isoformat(),
            period.end.isoformat(),
        )
        return rows
