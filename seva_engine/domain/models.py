"""Domain models for seva duty allocation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class Role(str, Enum):
    RECITE = "RECITE"
    SING = "SING"


class ProgramCategory(str, Enum):
    RECITATION = "RECITATION"
    SINGING = "SINGING"
    OTHER = "OTHER"


class LocationType(str, Enum):
    ON_SITE = "ON_SITE"
    OFF_SITE = "OFF_SITE"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class AssignmentState(str, Enum):
    PROPOSED = "PROPOSED"
    CONFIRMED = "CONFIRMED"


class SlotKind(str, Enum):
    STANDARD = "STANDARD"
    ROTATION = "ROTATION"
    CLOSING = "CLOSING"
    SINGING = "SINGING"


class Recurrence(str, Enum):
    ONCE = "ONCE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)
FLEX_ROLE = "FLEX"

ROLE_FOR_CATEGORY = {
    ProgramCategory.RECITATION: Role.RECITE,
    ProgramCategory.SINGING: Role.SING,
}


@dataclass(frozen=True, order=True)
class TimeWindow:
    """Half-open UTC interval ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError("TimeWindow end must be after start")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: TimeWindow) -> bool:
        return self.start < other.end and other.start < self.end

    def padded(self, minutes: int) -> TimeWindow:
        if minutes <= 0:
            return self
        delta = timedelta(minutes=minutes)
        return TimeWindow(self.start - delta, self.end + delta)

    def clip(self, bounds: TimeWindow) -> Optional[TimeWindow]:
        """Intersect with ``bounds``; an empty result is ``None``, not an error."""
        return make_window(max(self.start, bounds.start), min(self.end, bounds.end))


def make_window(start: datetime, end: datetime) -> Optional[TimeWindow]:
    if end <= start:
        return None
    return TimeWindow(start, end)


@dataclass(frozen=True)
class ProgramRequirement:
    program_id: str
    name: str
    category: ProgramCategory
    people_required: int
    min_recitors: int = 0
    min_singers: int = 0
    duration_minutes: int = 60
    trailing_singing_minutes: int = 0
    rotation_minutes: int = 0
    closing_double_minutes: int = 0
    two_stage: bool = False
    requires_hall: bool = True
    allowed_off_site: bool = True
    fairness_weight: int = 1

    @property
    def role_minimum(self) -> int:
        return self.min_recitors + self.min_singers

    @property
    def has_singing(self) -> bool:
        return (
            self.min_singers > 0
            or self.trailing_singing_minutes > 0
            or self.category == ProgramCategory.SINGING
        )


@dataclass(frozen=True)
class BookingItem:
    id: str
    booking_id: str
    program: ProgramRequirement


@dataclass(frozen=True)
class Booking:
    id: str
    title: str
    window: TimeWindow
    location_type: LocationType
    status: BookingStatus
    attendees: int = 1
    hall_id: Optional[str] = None
    address: Optional[str] = None
    items: tuple[BookingItem, ...] = ()
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATUSES

    @property
    def has_singing(self) -> bool:
        return any(item.program.has_singing for item in self.items)


@dataclass(frozen=True)
class StaffMember:
    id: str
    name: str
    skills: frozenset[Role]
    team_tag: Optional[str] = None
    active: bool = True

    def can(self, role: Role) -> bool:
        return role in self.skills

    @property
    def is_dedicated_recitor(self) -> bool:
        return Role.RECITE in self.skills and Role.SING not in self.skills


@dataclass(frozen=True)
class Assignment:
    id: Optional[int]
    booking_id: str
    booking_item_id: str
    staff_id: str
    role: str
    window: Optional[TimeWindow] = None
    state: AssignmentState = AssignmentState.PROPOSED


@dataclass(frozen=True)
class BusyInterval:
    """Assignment projection used for availability checks."""

    staff_id: str
    booking_id: str
    window: TimeWindow
    location_type: LocationType


@dataclass(frozen=True)
class CreditRecord:
    """Confirmed work projection used for fairness accounting."""

    staff_id: str
    program_id: str
    program_name: str
    category: ProgramCategory
    weight: int
    window: TimeWindow


@dataclass(frozen=True)
class Hall:
    id: str
    name: str
    capacity: Optional[int] = None
    active: bool = True


@dataclass(frozen=True)
class SpaceReservation:
    id: str
    title: str
    window: TimeWindow
    hall_id: Optional[str] = None
    blocks_hall: bool = True
    recurrence: Recurrence = Recurrence.ONCE
    interval: int = 1
    until: Optional[datetime] = None
    active: bool = True


@dataclass(frozen=True)
class SubWindow:
    window: TimeWindow
    kind: SlotKind
    recitors: int = 0
    singers: int = 0

    @property
    def people_needed(self) -> int:
        return self.recitors + self.singers

    @property
    def is_combined(self) -> bool:
        return self.recitors > 0 and self.singers > 0


@dataclass(frozen=True)
class Shortage:
    item_id: str
    role: str
    needed: int


@dataclass(frozen=True)
class AllocationResult:
    booking_id: str
    created: list[Assignment] = field(default_factory=list)
    shortages: list[Shortage] = field(default_factory=list)
    team_used: Optional[str] = None
