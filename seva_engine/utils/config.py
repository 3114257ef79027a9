"""Runtime configuration resolved from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_level_overrides(name: str) -> tuple[tuple[str, str], ...]:
    """Parse ``module=LEVEL`` pairs, e.g. ``seva_engine.services=DEBUG,seva_engine.repository=WARNING``."""
    raw = os.getenv(name) or ""
    pairs = []
    for chunk in raw.split(","):
        logger_name, _, level = chunk.partition("=")
        if logger_name.strip() and level.strip():
            pairs.append((logger_name.strip(), level.strip().upper()))
    return tuple(pairs)


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    log_level_overrides: tuple[tuple[str, str], ...]
    database_path: Path
    venue_timezone: str

    jatha_size: int
    off_site_buffer_minutes: int
    fairness_lookback_weeks: int
    first_stage_minutes: int
    long_form_threshold_minutes: int

    small_hall_capacity: int
    main_hall_capacity: int
    upper_hall_capacity: int

    on_site_recite_cap: Optional[int]
    on_site_sing_cap: Optional[int]
    off_site_recite_cap: Optional[int]
    off_site_sing_cap: Optional[int]

    auto_assign_enabled: bool
    pending_expiry_hours: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; tests clear the cache or use replace()."""
    return Settings(
        app_name=os.getenv("SEVA_APP_NAME", "Seva Allocation Engine"),
        app_version=os.getenv("SEVA_APP_VERSION", "0.1.0"),
        log_level=os.getenv("SEVA_LOG_LEVEL", "INFO"),
        log_level_overrides=_env_level_overrides("SEVA_LOG_LEVELS"),
        database_path=Path(os.getenv("SEVA_DB_PATH", "data/seva.db")),
        venue_timezone=os.getenv("SEVA_VENUE_TZ", "America/Toronto"),
        jatha_size=_env_int("SEVA_JATHA_SIZE", 3),
        off_site_buffer_minutes=_env_int("SEVA_OFF_SITE_BUFFER_MINUTES", 15),
        fairness_lookback_weeks=_env_int("SEVA_FAIRNESS_LOOKBACK_WEEKS", 8),
        first_stage_minutes=_env_int("SEVA_FIRST_STAGE_MINUTES", 60),
        long_form_threshold_minutes=_env_int("SEVA_LONG_FORM_THRESHOLD_MINUTES", 36 * 60),
        small_hall_capacity=_env_int("SEVA_SMALL_HALL_CAPACITY", 125),
        main_hall_capacity=_env_int("SEVA_MAIN_HALL_CAPACITY", 325),
        upper_hall_capacity=_env_int("SEVA_UPPER_HALL_CAPACITY", 100),
        on_site_recite_cap=_env_optional_int("SEVA_ON_SITE_RECITE_CAP"),
        on_site_sing_cap=_env_optional_int("SEVA_ON_SITE_SING_CAP"),
        off_site_recite_cap=_env_optional_int("SEVA_OFF_SITE_RECITE_CAP"),
        off_site_sing_cap=_env_optional_int("SEVA_OFF_SITE_SING_CAP"),
        auto_assign_enabled=_env_bool("SEVA_AUTO_ASSIGN_ENABLED", True),
        pending_expiry_hours=_env_int("SEVA_PENDING_EXPIRY_HOURS", 24),
    )
