"""Domain-level validation rules for the allocation engine."""

from __future__ import annotations

from dataclasses import dataclass

from seva_engine.domain.models import ProgramRequirement
from seva_engine.utils.config import Settings


@dataclass(frozen=True)
class AllocationConfig:
    jatha_size: int
    off_site_buffer_minutes: int
    fairness_lookback_weeks: int
    first_stage_minutes: int
    long_form_threshold_minutes: int
    venue_timezone: str

    @classmethod
    def from_settings(cls, settings: Settings) -> AllocationConfig:
        return cls(
            jatha_size=settings.jatha_size,
            off_site_buffer_minutes=settings.off_site_buffer_minutes,
            fairness_lookback_weeks=settings.fairness_lookback_weeks,
            first_stage_minutes=settings.first_stage_minutes,
            long_form_threshold_minutes=settings.long_form_threshold_minutes,
            venue_timezone=settings.venue_timezone,
        )


def validate_allocation_config(config: AllocationConfig) -> None:
    if config.jatha_size <= 0:
        raise ValueError("jatha_size must be > 0")
    if config.off_site_buffer_minutes < 0:
        raise ValueError("off_site_buffer_minutes must be >= 0")
    if config.fairness_lookback_weeks <= 0:
        raise ValueError("fairness_lookback_weeks must be > 0")
    if config.first_stage_minutes <= 0:
        raise ValueError("first_stage_minutes must be > 0")
    if config.long_form_threshold_minutes <= 0:
        raise ValueError("long_form_threshold_minutes must be > 0")
    if not config.venue_timezone.strip():
        raise ValueError("venue_timezone must be non-empty")


def validate_program_requirement(program: ProgramRequirement) -> None:
    counts = {
        "people_required": program.people_required,
        "min_recitors": program.min_recitors,
        "min_singers": program.min_singers,
        "trailing_singing_minutes": program.trailing_singing_minutes,
        "rotation_minutes": program.rotation_minutes,
        "closing_double_minutes": program.closing_double_minutes,
        "fairness_weight": program.fairness_weight,
    }
    for name, value in counts.items():
        if value < 0:
            raise ValueError(f"{name} must be >= 0")
    if program.duration_minutes <= 0:
        raise ValueError("duration_minutes must be > 0")
    if program.people_required < program.role_minimum:
        raise ValueError("people_required must cover min_recitors + min_singers")
