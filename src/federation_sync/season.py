"""federation_sync.season

Membership season arithmetic and age categories.

A season rolls over on August 1st and is numbered by the calendar year
in which it ends: September 2021 belongs to season 2022. Years are
measured from the 2020-01-01 epoch using an averaged 365.25-day year;
the leap-year parity of that approximate offset selects the August and
May thresholds. The approximation can be a day off
near a boundary and is kept as is: downstream prices and eligibility are
computed against these exact thresholds.
"""

from __future__ import annotations

import time
from enum import IntEnum

from federation_sync.normalize import dob_year

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EPOCH_2020 = 1_577_836_800
AVERAGE_YEAR_SECONDS = 31_557_600

# Seconds from Jan 1st to Aug 1st / May 1st, leap and common years.
AUG_1_LEAP = 18_316_800
AUG_1 = 18_230_400
MAY_1_LEAP = 10_540_800
MAY_1 = 10_454_400


def _offset_and_remainder(timestamp: int | None) -> tuple[int, int]:
    if timestamp is None:
        timestamp = int(time.time())
    elapsed = timestamp - EPOCH_2020
    years = elapsed // AVERAGE_YEAR_SECONDS
    return years, elapsed - years * AVERAGE_YEAR_SECONDS


def season(timestamp: int | None = None) -> int:
    """Return the membership season for a Unix timestamp (default: now)."""
    years, rem = _offset_and_remainder(timestamp)
    aug_1 = AUG_1_LEAP if years % 4 == 0 else AUG_1
    if rem > aug_1:
        return 2020 + years + 1
    return 2020 + years


def is_discount_period(timestamp: int | None = None) -> bool:
    """True strictly between May 1st and Aug 1st of the approximate year."""
    years, rem = _offset_and_remainder(timestamp)
    if years % 4 == 0:
        may_1, aug_1 = MAY_1_LEAP, AUG_1_LEAP
    else:
        may_1, aug_1 = MAY_1, AUG_1
    return may_1 < rem < aug_1


# ---------------------------------------------------------------------------
# Age categories
# ---------------------------------------------------------------------------

class Category(IntEnum):
    Baby = 0
    U8 = 1
    U10 = 2
    U12 = 3
    U14 = 4
    U16 = 5
    U18 = 6
    U20 = 7
    Seniors = 8
    Veterans = 9


_BANDS: tuple[tuple[int, Category], ...] = (
    (6, Category.Baby),
    (8, Category.U8),
    (10, Category.U10),
    (12, Category.U12),
    (14, Category.U14),
    (16, Category.U16),
    (18, Category.U18),
    (20, Category.U20),
    (40, Category.Seniors),
)


def category(date_of_birth: int, season_year: int) -> Category:
    """Age category of a member born on date_of_birth (YYYYMMDD) for a season.

    The age is season minus birth year; the birthday itself is ignored.
    """
    age = season_year - dob_year(date_of_birth)
    for upper, cat in _BANDS:
        if age < upper:
            return cat
    return Category.Veterans
