"""Time-window decomposition for booking items.

A booking item's duty is not always one uniform block. Depending on the
program shape the booking window is sliced into role-tagged sub-windows:

* SINGLE: one window, recitation, singing or both concurrently.
* TRAILING_SINGING: recitation, then singing confined to the tail.
* LONG_FORM: fixed-cadence recitation rotation, a reinforced closing stretch
  with two recitors, then an optional singing tail.
* TWO_STAGE: a blocked first hour plus closing hour(s); the middle of the
  booking needs neither staff nor hall.

The same slicing drives the hall footprint so a booking's hall usage always
matches its staffing.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional, Sequence

from seva_engine.domain.models import (
    BookingItem,
    LocationType,
    ProgramCategory,
    ProgramRequirement,
    SlotKind,
    SubWindow,
    TimeWindow,
    make_window,
)


DEFAULT_JATHA_SIZE = 3
DEFAULT_FIRST_STAGE_MINUTES = 60
CLOSING_DOUBLE_RECITORS = 2
FIRST_STAGE_RECITORS = 2


class ProgramShape(str, Enum):
    SINGLE = "SINGLE"
    TRAILING_SINGING = "TRAILING_SINGING"
    LONG_FORM = "LONG_FORM"
    TWO_STAGE = "TWO_STAGE"


def program_shape(program: ProgramRequirement) -> ProgramShape:
    if program.two_stage:
        return ProgramShape.TWO_STAGE
    if program.rotation_minutes > 0:
        return ProgramShape.LONG_FORM
    if program.trailing_singing_minutes > 0:
        return ProgramShape.TRAILING_SINGING
    return ProgramShape.SINGLE


def _singing_need(program: ProgramRequirement, jatha_size: int) -> int:
    return max(program.min_singers, jatha_size)


def _recitation_need(program: ProgramRequirement) -> int:
    return max(program.min_recitors, 1)


def _slot(
    start: datetime,
    end: datetime,
    bounds: TimeWindow,
    kind: SlotKind,
    *,
    recitors: int = 0,
    singers: int = 0,
) -> Optional[SubWindow]:
    window = make_window(start, end)
    if window is None:
        return None
    clipped = window.clip(bounds)
    if clipped is None or recitors + singers <= 0:
        return None
    return SubWindow(window=clipped, kind=kind, recitors=recitors, singers=singers)


def _single(program: ProgramRequirement, bounds: TimeWindow, jatha_size: int) -> list[Optional[SubWindow]]:
    if program.min_recitors > 0 and program.min_singers > 0:
        return [
            _slot(
                bounds.start,
                bounds.end,
                bounds,
                SlotKind.STANDARD,
                recitors=program.min_recitors,
                singers=program.min_singers,
            )
        ]
    if program.min_singers > 0 or program.category == ProgramCategory.SINGING:
        return [
            _slot(
                bounds.start,
                bounds.end,
                bounds,
                SlotKind.SINGING,
                singers=_singing_need(program, jatha_size),
            )
        ]
    recitors = program.min_recitors or min(program.people_required, 1)
    return [_slot(bounds.start, bounds.end, bounds, SlotKind.STANDARD, recitors=recitors)]


def _trailing_singing(
    program: ProgramRequirement,
    bounds: TimeWindow,
    jatha_size: int,
) -> list[Optional[SubWindow]]:
    singing_start = bounds.end - timedelta(minutes=program.trailing_singing_minutes)
    return [
        _slot(
            bounds.start,
            singing_start,
            bounds,
            SlotKind.STANDARD,
            recitors=_recitation_need(program),
        ),
        _slot(
            max(singing_start, bounds.start),
            bounds.end,
            bounds,
            SlotKind.SINGING,
            singers=_singing_need(program, jatha_size),
        ),
    ]


def _long_form(program: ProgramRequirement, bounds: TimeWindow, jatha_size: int) -> list[Optional[SubWindow]]:
    path_end = max(bounds.start, bounds.end - timedelta(minutes=program.trailing_singing_minutes))
    closing_start = max(bounds.start, path_end - timedelta(minutes=program.closing_double_minutes))
    rotation = timedelta(minutes=program.rotation_minutes)

    slots: list[Optional[SubWindow]] = []
    cursor = bounds.start
    while cursor < closing_start:
        slot_end = min(cursor + rotation, closing_start)
        slots.append(_slot(cursor, slot_end, bounds, SlotKind.ROTATION, recitors=1))
        cursor = slot_end

    slots.append(
        _slot(
            closing_start,
            path_end,
            bounds,
            SlotKind.CLOSING,
            recitors=CLOSING_DOUBLE_RECITORS,
        )
    )
    if program.trailing_singing_minutes > 0:
        slots.append(
            _slot(
                path_end,
                bounds.end,
                bounds,
                SlotKind.SINGING,
                singers=_singing_need(program, jatha_size),
            )
        )
    return slots


def _two_stage(
    program: ProgramRequirement,
    bounds: TimeWindow,
    jatha_size: int,
    first_stage_minutes: int,
) -> list[Optional[SubWindow]]:
    stage = timedelta(minutes=first_stage_minutes)
    first_end = min(bounds.start + stage, bounds.end)
    slots = [
        _slot(
            bounds.start,
            first_end,
            bounds,
            SlotKind.STANDARD,
            recitors=FIRST_STAGE_RECITORS,
        )
    ]
    if bounds.duration <= stage:
        return slots

    final_start = max(first_end, bounds.end - stage)
    if program.has_singing:
        penultimate_start = max(first_end, bounds.end - 2 * stage)
        slots.append(
            _slot(
                penultimate_start,
                final_start,
                bounds,
                SlotKind.CLOSING,
                recitors=_recitation_need(program),
            )
        )
        slots.append(
            _slot(
                final_start,
                bounds.end,
                bounds,
                SlotKind.SINGING,
                singers=_singing_need(program, jatha_size),
            )
        )
    else:
        slots.append(
            _slot(
                final_start,
                bounds.end,
                bounds,
                SlotKind.CLOSING,
                recitors=_recitation_need(program),
            )
        )
    return slots


def decompose(
    item: BookingItem,
    booking_window: TimeWindow,
    *,
    jatha_size: int = DEFAULT_JATHA_SIZE,
    first_stage_minutes: int = DEFAULT_FIRST_STAGE_MINUTES,
) -> list[SubWindow]:
    """Return the ordered, role-tagged sub-windows an item must staff."""
    program = item.program
    shape = program_shape(program)
    if shape == ProgramShape.TWO_STAGE:
        slots = _two_stage(program, booking_window, jatha_size, first_stage_minutes)
    elif shape == ProgramShape.LONG_FORM:
        slots = _long_form(program, booking_window, jatha_size)
    elif shape == ProgramShape.TRAILING_SINGING:
        slots = _trailing_singing(program, booking_window, jatha_size)
    else:
        slots = _single(program, booking_window, jatha_size)
    return [slot for slot in slots if slot is not None]


def merge_windows(windows: Iterable[TimeWindow]) -> list[TimeWindow]:
    """Union of windows; touching windows are merged too."""
    merged: list[TimeWindow] = []
    for window in sorted(windows):
        if merged and window.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = TimeWindow(last.start, max(last.end, window.end))
        else:
            merged.append(window)
    return merged


def hall_usage_windows(
    items: Sequence[BookingItem],
    booking_window: TimeWindow,
    *,
    jatha_size: int = DEFAULT_JATHA_SIZE,
    first_stage_minutes: int = DEFAULT_FIRST_STAGE_MINUTES,
) -> list[TimeWindow]:
    """Windows during which a booking actually occupies its hall.

    Only a booking made up entirely of two-stage items releases the hall in
    the middle; any other mix blocks the whole booking window.
    """
    if not items or not all(item.program.two_stage for item in items):
        return [booking_window]
    windows = [
        slot.window
        for item in items
        for slot in decompose(
            item,
            booking_window,
            jatha_size=jatha_size,
            first_stage_minutes=first_stage_minutes,
        )
    ]
    return merge_windows(windows) or [booking_window]


def travel_padding(location_type: LocationType, buffer_minutes: int) -> int:
    if location_type == LocationType.OFF_SITE:
        return buffer_minutes
    return 0


def padded_for_location(
    window: TimeWindow,
    location_type: LocationType,
    buffer_minutes: int,
) -> TimeWindow:
    return window.padded(travel_padding(location_type, buffer_minutes))


def hour_buckets(window: TimeWindow) -> list[datetime]:
    """Hour-floored instants of every clock hour the window touches."""
    cursor = window.start.replace(minute=0, second=0, microsecond=0)
    buckets: list[datetime] = []
    while cursor < window.end:
        buckets.append(cursor)
        cursor += timedelta(hours=1)
    return buckets
