"""Billing duration helpers for pricing plans.

A plan's entitlement window is its explicit duration_days when set, otherwise
derived from the billing period. Dates are shifted in whatever timezone they
arrive in; nothing here converts.
"""
import math
from datetime import datetime, timedelta
from typing import Optional, Union

from models import BillingPeriod

YEARLY_DAYS = 365
MONTHLY_DAYS = 30

PeriodLike = Union[BillingPeriod, str, None]


def _coerce_period(period: PeriodLike) -> Optional[BillingPeriod]:
    if not period:
        return None
    if isinstance(period, BillingPeriod):
        return period
    try:
        return BillingPeriod(str(period).strip().lower())
    except ValueError:
        return BillingPeriod.MONTHLY


def duration_days(period: PeriodLike = None, explicit_days: Optional[float] = None) -> int:
    """Entitlement length in days; explicit_days wins over the period."""
    if (
        isinstance(explicit_days, (int, float))
        and not isinstance(explicit_days, bool)
        and math.isfinite(explicit_days)
        and explicit_days > 0
    ):
        return int(math.floor(explicit_days))

    resolved = _coerce_period(period)
    if resolved is None:
        return 0
    return YEARLY_DAYS if resolved == BillingPeriod.YEARLY else MONTHLY_DAYS


def expiry_date(
    start: datetime,
    period: PeriodLike = None,
    explicit_days: Optional[float] = None,
) -> datetime:
    """start + duration_days(); a zero duration returns start unchanged."""
    days = duration_days(period, explicit_days)
    if days <= 0:
        return start
    return start + timedelta(days=days)


def period_from_days(explicit_days: Optional[float] = None) -> BillingPeriod:
    return BillingPeriod.YEARLY if duration_days(None, explicit_days) >= YEARLY_DAYS else BillingPeriod.MONTHLY


def duration_label(period: PeriodLike = None, explicit_days: Optional[float] = None) -> str:
    days = duration_days(period, explicit_days)
    return f"{days} days" if days > 0 else ""
