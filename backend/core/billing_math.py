"""
Billing arithmetic for plan changes.

Every function here is pure: amounts are integers in minor currency units
(paise), and the current time is always passed in explicitly.
"""

import math
from datetime import datetime

from .domain.subscription import RenewalPeriod

# Smallest refund issued whenever any unused day remains
MIN_REFUND_MINOR = 100

MONTHLY_CYCLE_DAYS = 30
ANNUAL_CYCLE_DAYS = 365

# Cycle counts sent to the gateway when no usable period end is known
DEFAULT_MONTHLY_CYCLES = 12
DEFAULT_ANNUAL_CYCLES = 5

MAX_MONTHLY_CYCLES = 36
MAX_ANNUAL_CYCLES = 10

SECONDS_PER_DAY = 86400


def _round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up."""
    return int(math.floor(value + 0.5))


def cycle_length_days(renewal_period: RenewalPeriod | str) -> int:
    """Return the length of one billing cycle in days (30 or 365)."""
    if RenewalPeriod(renewal_period) == RenewalPeriod.ANNUAL:
        return ANNUAL_CYCLE_DAYS
    return MONTHLY_CYCLE_DAYS


def prorate(
    old_price_minor: int,
    new_price_minor: int,
    days_remaining: int,
    cycle_length: int,
) -> int:
    """
    Charge for moving to a new price for the rest of the current cycle.

    Downgrades never produce a negative charge; credit is handled by
    refund_for_unused_period instead.

    Example:
        >>> prorate(8900, 12900, 15, 30)
        2000
    """
    if cycle_length <= 0:
        raise ValueError("cycle_length must be positive")
    amount = _round_half_up((new_price_minor - old_price_minor) / cycle_length * days_remaining)
    return max(0, amount)


def refund_for_unused_period(
    paid_amount_minor: int,
    days_used: int,
    cycle_length: int,
) -> int:
    """
    Credit owed for the unused part of a paid cycle.

    Returns at least MIN_REFUND_MINOR whenever unused days remain (but never
    more than was paid), and 0 once the cycle is fully used.

    Example:
        >>> refund_for_unused_period(8900, 29, 30)
        297
        >>> refund_for_unused_period(8900, 30, 30)
        0
    """
    if cycle_length <= 0:
        raise ValueError("cycle_length must be positive")
    unused_days = cycle_length - max(0, days_used)
    if unused_days <= 0 or paid_amount_minor <= 0:
        return 0
    amount = _round_half_up(paid_amount_minor / cycle_length * unused_days)
    return min(paid_amount_minor, max(MIN_REFUND_MINOR, amount))


def days_remaining(period_end: datetime, now: datetime) -> int:
    """Whole days left until period_end, rounded up, never negative."""
    seconds = (period_end - now).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def days_used(period_start: datetime, now: datetime) -> int:
    """Whole days elapsed since period_start, rounded down, never negative."""
    seconds = (now - period_start).total_seconds()
    return max(0, math.floor(seconds / SECONDS_PER_DAY))


def remaining_billing_cycles(
    period_end: datetime | None,
    now: datetime,
    target_renewal_period: RenewalPeriod | str,
) -> int:
    """
    Number of target-period cycles needed to cover the time left on the
    current period.

    The result is always positive so the gateway receives a usable count:
    an already-passed period yields 1, and a missing period end falls back
    to the default total count for the target period.
    """
    target = RenewalPeriod(target_renewal_period)
    if target == RenewalPeriod.ANNUAL:
        default, upper, unit = DEFAULT_ANNUAL_CYCLES, MAX_ANNUAL_CYCLES, ANNUAL_CYCLE_DAYS
    else:
        default, upper, unit = DEFAULT_MONTHLY_CYCLES, MAX_MONTHLY_CYCLES, MONTHLY_CYCLE_DAYS

    if period_end is None:
        return default

    try:
        remaining = days_remaining(period_end, now)
    except (TypeError, ValueError, OverflowError):
        return default

    if remaining <= 0:
        return 1

    return min(upper, max(1, math.ceil(remaining / unit)))


def default_total_count(renewal_period: RenewalPeriod | str) -> int:
    """Total cycle count for a brand-new subscription."""
    if RenewalPeriod(renewal_period) == RenewalPeriod.ANNUAL:
        return DEFAULT_ANNUAL_CYCLES
    return DEFAULT_MONTHLY_CYCLES


def to_major_units(amount_minor: int) -> float:
    """Convert minor currency units to major units for display."""
    return round(amount_minor / 100, 2)
