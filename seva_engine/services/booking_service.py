"""Booking lifecycle: creation, rescheduling, cancellation and expiry."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from seva_engine.domain.models import (
    AllocationResult,
    Booking,
    BookingItem,
    BookingStatus,
    LocationType,
    TimeWindow,
)
from seva_engine.domain.windows import hall_usage_windows
from seva_engine.repository.data_repository import DataRepository, to_utc
from seva_engine.services.allocation_service import AllocationService, BookingNotFoundError
from seva_engine.services.capacity_service import CapacityService, headcount_need, role_needs
from seva_engine.services.hall_service import (
    HallAllocator,
    HallUnavailableError,
    NoHallAvailableError,
)
from seva_engine.utils.config import Settings, get_settings
from seva_engine.utils.logger import get_logger


logger = get_logger(__name__)


class BookingValidationError(Exception):
    """Raised when a booking request is malformed or not bookable."""


class BookingDraft(BaseModel):
    """Input DTO validated before entering the booking workflow."""

    title: str = Field(min_length=2)
    start: datetime
    end: datetime
    location_type: LocationType
    program_ids: list[str] = Field(min_length=1)
    attendees: int = Field(default=1, ge=1, le=10000)
    address: Optional[str] = None

    @field_validator("title", "address")
    @classmethod
    def strip_text(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("start", "end")
    @classmethod
    def normalize_to_utc(cls, value: datetime) -> datetime:
        return to_utc(value)

    @model_validator(mode="after")
    def validate_schedule(self) -> BookingDraft:
        if self.title is None or len(self.title) < 2:
            raise ValueError("title must have at least 2 characters")
        if self.end <= self.start:
            raise ValueError("end must be after start")
        if self.location_type == LocationType.OFF_SITE and not self.address:
            raise ValueError("address is required for off-site bookings")
        return self

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start, self.end)


def parse_draft(payload: dict) -> BookingDraft:
    try:
        return BookingDraft.model_validate(payload)
    except ValidationError as exc:
        raise BookingValidationError(str(exc)) from exc


class BookingService:
    """Runs every booking mutation together with its capacity check and allocation."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._capacity = CapacityService(self._repository, self._settings)
        self._halls = HallAllocator(self._repository, self._settings)
        self._allocation = AllocationService(self._repository, self._settings)

    def _hall_windows(self, items: tuple[BookingItem, ...] | list[BookingItem], window: TimeWindow) -> list[TimeWindow]:
        return hall_usage_windows(
            items,
            window,
            jatha_size=self._settings.jatha_size,
            first_stage_minutes=self._settings.first_stage_minutes,
        )

    def _check_capacity(
        self,
        items: tuple[BookingItem, ...] | list[BookingItem],
        window: TimeWindow,
        location_type: LocationType,
        exclude_booking_id: Optional[str] = None,
    ) -> None:
        self._capacity.check_capacity(
            window,
            location_type,
            role_needs(items),
            headcount_need(items, self._settings.long_form_threshold_minutes),
            exclude_booking_id=exclude_booking_id,
        )

    def _run_allocation(self, booking_id: str, as_of: Optional[datetime]) -> Optional[AllocationResult]:
        if not self._settings.auto_assign_enabled:
            return None
        return self._allocation.run_allocation(booking_id, as_of=as_of)

    def create_booking(
        self,
        draft: BookingDraft,
        *,
        as_of: Optional[datetime] = None,
    ) -> tuple[Booking, Optional[AllocationResult]]:
        """Validate, check capacity, place in a hall and allocate, atomically."""
        with self._repository.transaction():
            programs = self._repository.list_programs(draft.program_ids)
            known = {program.program_id for program in programs}
            missing = [program_id for program_id in draft.program_ids if program_id not in known]
            if missing:
                raise BookingValidationError(f"Unknown program(s): {', '.join(missing)}")
            by_id = {program.program_id: program for program in programs}
            ordered = [by_id[program_id] for program_id in draft.program_ids]

            if draft.location_type == LocationType.OFF_SITE:
                blocked = [program.name for program in ordered if not program.allowed_off_site]
                if blocked:
                    raise BookingValidationError(
                        f"Program(s) not available off-site: {', '.join(blocked)}"
                    )

            # Items only exist once inserted; a provisional tuple drives the checks.
            provisional = tuple(
                BookingItem(id=f"draft-{index}", booking_id="draft", program=program)
                for index, program in enumerate(ordered)
            )
            self._check_capacity(provisional, draft.window, draft.location_type)

            hall_id: Optional[str] = None
            if draft.location_type == LocationType.ON_SITE and any(
                program.requires_hall for program in ordered
            ):
                hall_id = self._halls.pick_hall(
                    draft.window,
                    draft.attendees,
                    windows=self._hall_windows(provisional, draft.window),
                )
                if hall_id is None:
                    raise NoHallAvailableError(
                        f"No hall fits {draft.attendees} attendees at {draft.start.isoformat()}"
                    )

            booking = self._repository.insert_booking(
                title=draft.title,
                window=draft.window,
                location_type=draft.location_type,
                program_ids=draft.program_ids,
                attendees=draft.attendees,
                hall_id=hall_id,
                address=draft.address,
                created_at=as_of,
            )
            result = self._run_allocation(booking.id, as_of)

        logger.info(
            "Booking created | booking_id=%s | location=%s | hall_id=%s | items=%s",
            booking.id,
            booking.location_type.value,
            booking.hall_id,
            len(booking.items),
        )
        return booking, result

    def reschedule_booking(
        self,
        booking_id: str,
        window: TimeWindow,
        *,
        as_of: Optional[datetime] = None,
    ) -> tuple[Booking, Optional[AllocationResult]]:
        window = TimeWindow(to_utc(window.start), to_utc(window.end))
        with self._repository.transaction():
            booking = self._repository.get_booking(booking_id)
            if booking is None:
                raise BookingNotFoundError(f"Booking {booking_id} does not exist")
            if not booking.is_active:
                raise BookingValidationError(
                    f"Booking {booking_id} is {booking.status.value} and cannot be rescheduled"
                )

            self._check_capacity(
                booking.items,
                window,
                booking.location_type,
                exclude_booking_id=booking_id,
            )

            hall_id = booking.hall_id
            needs_hall = booking.location_type == LocationType.ON_SITE and any(
                item.program.requires_hall for item in booking.items
            )
            usage = self._hall_windows(booking.items, window)
            if hall_id is not None:
                if not self._halls.is_hall_free(hall_id, usage, ignore_booking_id=booking_id):
                    raise HallUnavailableError(
                        f"Hall {hall_id} is not free for the new schedule of booking {booking_id}"
                    )
            elif needs_hall:
                hall_id = self._halls.pick_hall(
                    window,
                    booking.attendees,
                    windows=usage,
                    ignore_booking_id=booking_id,
                )
                if hall_id is None:
                    raise NoHallAvailableError(
                        f"No hall fits {booking.attendees} attendees at {window.start.isoformat()}"
                    )

            self._repository.update_booking_schedule(booking_id, window, hall_id)
            # Accepted duty moves with the booking instead of being re-picked.
            shifted = self._repository.shift_assignment_windows(
                booking_id, window.start - booking.window.start
            )
            result = self._run_allocation(booking_id, as_of)
            updated = self._repository.get_booking(booking_id)

        logger.info(
            "Booking rescheduled | booking_id=%s | start=%s | end=%s | hall_id=%s | shifted=%s",
            booking_id,
            window.start.isoformat(),
            window.end.isoformat(),
            hall_id,
            shifted,
        )
        return updated, result

    def cancel_booking(self, booking_id: str) -> Booking:
        with self._repository.transaction():
            booking = self._repository.get_booking(booking_id)
            if booking is None:
                raise BookingNotFoundError(f"Booking {booking_id} does not exist")
            self._repository.update_booking_status(booking_id, BookingStatus.CANCELLED)
            removed = self._repository.delete_proposed_assignments(booking_id)
            cancelled = self._repository.get_booking(booking_id)
        logger.info("Booking cancelled | booking_id=%s | removed_proposed=%s", booking_id, removed)
        return cancelled

    def confirm_booking(self, booking_id: str) -> int:
        """Mark the booking CONFIRMED and accept its proposed roster."""
        with self._repository.transaction():
            booking = self._repository.get_booking(booking_id)
            if booking is None:
                raise BookingNotFoundError(f"Booking {booking_id} does not exist")
            if not booking.is_active:
                raise BookingValidationError(
                    f"Booking {booking_id} is {booking.status.value} and cannot be confirmed"
                )
            self._repository.update_booking_status(booking_id, BookingStatus.CONFIRMED)
            confirmed = self._repository.confirm_assignments(booking_id)
        logger.info("Booking confirmed | booking_id=%s | assignments=%s", booking_id, confirmed)
        return confirmed

    def expire_stale_pending(self, now: Optional[datetime] = None) -> int:
        now = to_utc(now or datetime.now(timezone.utc))
        cutoff = now - timedelta(hours=self._settings.pending_expiry_hours)
        expired = self._repository.expire_pending_created_before(cutoff)
        logger.info("Expired stale pending bookings | cutoff=%s | expired=%s", cutoff.isoformat(), expired)
        return expired
