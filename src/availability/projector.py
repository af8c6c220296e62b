from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Iterable, List, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import MINUTES_PER_DAY, BusyBlock, CanonicalRange

logger = logging.getLogger(__name__)

SLOT_MINUTES = 15
SLOTS_PER_DAY = MINUTES_PER_DAY // SLOT_MINUTES
SLOTS_PER_WEEK = 7 * SLOTS_PER_DAY
DEFAULT_MIN_WEEKS = 2

WeekId = tuple[int, int]


def resolve_timezone(name: str | None) -> tzinfo:
    """Return the tzinfo for an IANA name, falling back to UTC for unknown names."""

    if not name or name.upper() in {"UTC", "Z", "GMT"}:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        logger.warning("Unknown timezone %r, using UTC", name)
        return timezone.utc


def project_to_canonical_week(
    blocks: Iterable[BusyBlock],
    timezone_name: str | None,
    *,
    min_weeks: int = DEFAULT_MIN_WEEKS,
) -> List[CanonicalRange]:
    """Project dated busy blocks onto the canonical Monday-Sunday week.

    Every block is walked in 15-minute steps in the owner's local wall-clock
    time. A slot is kept only when it was busy in at least ``min_weeks``
    distinct ISO weeks, so one-off events do not show up as recurring
    commitments. Kept slots are merged into ranges that never cross midnight.
    """

    if min_weeks < 1:
        raise ValueError("min_weeks must be at least 1")

    tz = resolve_timezone(timezone_name)
    observations = _observe_slots(blocks, tz, min_weeks)
    recurring = sorted(slot for slot, weeks in observations.items() if len(weeks) >= min_weeks)
    ranges = _merge_slots(recurring)
    logger.debug(
        "Projected %s observed slots into %s canonical ranges (min_weeks=%s, tz=%s)",
        len(observations),
        len(ranges),
        min_weeks,
        timezone_name,
    )
    return ranges


def format_ranges(ranges: Sequence[CanonicalRange]) -> List[str]:
    return [str(canonical_range) for canonical_range in ranges]


def parse_ranges(values: Iterable[str] | None) -> List[CanonicalRange]:
    if not values:
        return []
    return sorted(CanonicalRange.parse(value) for value in values)


def _observe_slots(blocks: Iterable[BusyBlock], tz: tzinfo, min_weeks: int) -> dict[int, set[WeekId]]:
    step = timedelta(minutes=SLOT_MINUTES)
    observations: dict[int, set[WeekId]] = defaultdict(set)
    for block in blocks:
        cursor = block.start
        end = _walk_end(block, min_weeks)
        while cursor < end:
            try:
                local = cursor.astimezone(tz)
            except OverflowError:
                logger.debug("Stopping walk of block at %s, outside the representable range", cursor)
                break
            observations[_slot_index(local)].add(_week_id(local))
            try:
                cursor += step
            except OverflowError:
                break
    return observations


def _walk_end(block: BusyBlock, min_weeks: int) -> datetime:
    # Past min_weeks + 1 continuous weeks every slot already recurs.
    try:
        horizon = block.start + timedelta(weeks=min_weeks + 1)
    except OverflowError:
        return block.end
    return min(block.end, horizon)


def _slot_index(local: datetime) -> int:
    minute_of_day = local.hour * 60 + local.minute
    return local.weekday() * SLOTS_PER_DAY + minute_of_day // SLOT_MINUTES


def _week_id(local: datetime) -> WeekId:
    iso = local.isocalendar()
    return iso.year, iso.week


def _merge_slots(slots: Sequence[int]) -> List[CanonicalRange]:
    ranges: List[CanonicalRange] = []
    range_start: int | None = None
    range_end = 0

    for slot in slots:
        day, quarter = divmod(slot, SLOTS_PER_DAY)
        start = day * MINUTES_PER_DAY + quarter * SLOT_MINUTES
        end = start + SLOT_MINUTES

        if range_start is not None and start == range_end and day == range_start // MINUTES_PER_DAY:
            range_end = end
            continue

        if range_start is not None:
            ranges.append(CanonicalRange(range_start, range_end))
        range_start, range_end = start, end

    if range_start is not None:
        ranges.append(CanonicalRange(range_start, range_end))
    return ranges
