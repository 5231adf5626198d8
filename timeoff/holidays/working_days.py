"""Working-day calculator.

The counting functions are pure: callers load the public holidays for the
applicable region first (``get_holiday_dates``) and pass them in, so the
same inputs always give the same answer and nothing here needs a
transaction.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import AbstractSet, Iterator

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timeoff.common.constants import DEFAULT_WORKING_WEEKDAYS
from timeoff.holidays.models import PublicHoliday


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every calendar day in ``[start, end]`` inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def is_working_day(
    day: date,
    holidays: AbstractSet[date],
    working_weekdays: AbstractSet[int] = DEFAULT_WORKING_WEEKDAYS,
) -> bool:
    """A day counts when it is a working weekday and not a public holiday.

    ``working_weekdays`` uses ISO numbering (Mon=1 … Sun=7).
    """
    return day.isoweekday() in working_weekdays and day not in holidays


def working_days(
    start: date,
    end: date,
    holidays: AbstractSet[date],
    working_weekdays: AbstractSet[int] = DEFAULT_WORKING_WEEKDAYS,
) -> int:
    """Number of working days in ``[start, end]``; 0 when ``end < start``."""
    return sum(
        1 for day in iter_days(start, end)
        if is_working_day(day, holidays, working_weekdays)
    )


# ── Holiday calendar lookups ────────────────────────────────────────

async def get_holiday_dates(
    db: AsyncSession,
    region: str,
    from_date: date,
    to_date: date,
) -> set[date]:
    """Return public holiday dates for ``region`` within the range."""
    result = await db.execute(
        select(PublicHoliday.date).where(
            PublicHoliday.region == region,
            PublicHoliday.date >= from_date,
            PublicHoliday.date <= to_date,
        )
    )
    return {row[0] for row in result.all()}


async def is_public_holiday(db: AsyncSession, day: date, region: str) -> bool:
    return day in await get_holiday_dates(db, region, day, day)


async def count_working_days(
    db: AsyncSession,
    start: date,
    end: date,
    region: str,
    working_weekdays: AbstractSet[int] = DEFAULT_WORKING_WEEKDAYS,
) -> int:
    """Load the region's holidays for the range and count working days."""
    if end < start:
        return 0
    holidays = await get_holiday_dates(db, region, start, end)
    return working_days(start, end, holidays, working_weekdays)
