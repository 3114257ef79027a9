"""On-demand expansion of recurring space reservation templates."""

from __future__ import annotations

from datetime import datetime, timedelta
from itertools import count
from typing import Iterator

from dateutil.relativedelta import relativedelta

from seva_engine.domain.models import Recurrence, SpaceReservation, TimeWindow


def _step(recurrence: Recurrence, interval: int) -> relativedelta:
    size = max(interval, 1)
    if recurrence == Recurrence.DAILY:
        return relativedelta(days=size)
    if recurrence == Recurrence.WEEKLY:
        return relativedelta(weeks=size)
    if recurrence == Recurrence.MONTHLY:
        return relativedelta(months=size)
    if recurrence == Recurrence.YEARLY:
        return relativedelta(years=size)
    raise ValueError(f"{recurrence} does not repeat")


def _first_candidate(template: SpaceReservation, step: relativedelta, range_start: datetime) -> int:
    """Index of an occurrence ending at or before ``range_start``, or 0."""
    anchor_end = template.window.end
    if range_start <= anchor_end:
        return 0
    if template.recurrence in (Recurrence.DAILY, Recurrence.WEEKLY):
        length = timedelta(days=step.days)
        return max(0, (range_start - anchor_end) // length)
    elapsed = relativedelta(range_start, anchor_end)
    if template.recurrence == Recurrence.MONTHLY:
        periods = (elapsed.years * 12 + elapsed.months) // step.months
    else:
        periods = elapsed.years // step.years
    # Month-end clamping can land one step late; back off to stay safe.
    return max(0, periods - 1)


def occurrences(
    template: SpaceReservation,
    range_start: datetime,
    range_end: datetime,
) -> Iterator[TimeWindow]:
    """Yield occurrences of ``template`` overlapping ``[range_start, range_end)``.

    Each occurrence is derived from the template anchor (anchor + n * step)
    so month-end anchors do not drift. The walk starts just before
    ``range_start`` rather than at the anchor.
    """
    if not template.active:
        return
    if template.recurrence == Recurrence.ONCE:
        if template.window.start < range_end and template.window.end > range_start:
            yield template.window
        return

    step = _step(template.recurrence, template.interval)
    for index in count(_first_candidate(template, step, range_start)):
        offset = step * index
        start = template.window.start + offset
        end = template.window.end + offset
        if template.until is not None and start > template.until:
            return
        if start >= range_end:
            return
        if end > range_start:
            yield TimeWindow(start, end)


def reservation_overlaps(template: SpaceReservation, window: TimeWindow) -> bool:
    return next(occurrences(template, window.start, window.end), None) is not None
