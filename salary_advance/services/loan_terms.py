"""Interest and repayment arithmetic.

Everything here is pure: no database, no clock unless ``now`` is omitted.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from zoneinfo import ZoneInfo

from salary_advance.core.errors import ValidationError
from salary_advance.schemas.loan import InterestRateType

TWOPLACES = Decimal("0.01")
RATEPLACES = Decimal("0.0001")


def as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value) -> Decimal:
    return as_decimal(value).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RateInputs:
    rate_type: InterestRateType
    monthly_rate: Decimal | None = None
    daily_rate: Decimal | None = None
    base_rate_floor: Decimal | None = None

    @classmethod
    def from_organization(cls, organization) -> "RateInputs":
        return cls(
            rate_type=InterestRateType(organization.interest_rate_type or InterestRateType.MONTHLY.value),
            monthly_rate=_optional_decimal(organization.interest_rate),
            daily_rate=_optional_decimal(organization.daily_interest_rate),
            base_rate_floor=_optional_decimal(organization.base_interest_rate),
        )


@dataclass(frozen=True)
class LoanTerms:
    due_date: datetime
    total_repayable: Decimal
    applied_rate: Decimal
    duration_days: int


def _optional_decimal(value) -> Decimal | None:
    if value is None:
        return None
    return as_decimal(value)


def _require_positive_rate(rate: Decimal | None, label: str) -> Decimal:
    if rate is None or rate <= 0:
        raise ValidationError(
            f"A positive {label} is required for this interest regime",
            code="invalid_rate",
            details={"rate": str(rate) if rate is not None else None},
        )
    return rate


def effective_rate(rate_inputs: RateInputs, duration_days: int) -> Decimal:
    if rate_inputs.rate_type == InterestRateType.DAILY:
        daily = _require_positive_rate(rate_inputs.daily_rate, "daily interest rate")
        accrued = daily * duration_days
        floor = rate_inputs.base_rate_floor
        if floor is not None and floor > accrued:
            return floor
        return accrued
    return _require_positive_rate(rate_inputs.monthly_rate, "monthly interest rate")


def compute_loan_terms(
    amount,
    rate_inputs: RateInputs,
    duration_days: int = 30,
    *,
    now: datetime | None = None,
) -> LoanTerms:
    principal = as_decimal(amount)
    if principal <= 0:
        raise ValidationError("Loan amount must be greater than zero", code="invalid_amount")
    if duration_days <= 0:
        raise ValidationError("Loan duration must be at least one day", code="invalid_duration")

    rate = effective_rate(rate_inputs, duration_days)
    total = money(principal * (Decimal("1") + rate))
    start = now or datetime.now(timezone.utc)
    return LoanTerms(
        due_date=start + timedelta(days=duration_days),
        total_repayable=total,
        applied_rate=rate.quantize(RATEPLACES, rounding=ROUND_HALF_UP),
        duration_days=duration_days,
    )


def days_until_month_end(now: datetime, tz_name: str) -> int:
    """Calendar days from ``now`` to the last day of its tenant-local month, at least one."""
    local = now.astimezone(ZoneInfo(tz_name))
    last_day = calendar.monthrange(local.year, local.month)[1]
    return max(1, last_day - local.day)


def month_bounds(now: datetime, tz_name: str) -> tuple[datetime, datetime]:
    """Start (inclusive) and end (exclusive) of the tenant-local calendar month, in UTC."""
    tz = ZoneInfo(tz_name)
    local = now.astimezone(tz)
    start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def describe_interest(rate_inputs: RateInputs, applied_rate: Decimal) -> str:
    if rate_inputs.rate_type == InterestRateType.DAILY and rate_inputs.daily_rate is not None:
        percent = (rate_inputs.daily_rate * 100).quantize(TWOPLACES)
        return f"at a daily interest of {percent}% per day"
    percent = (as_decimal(applied_rate) * 100).quantize(TWOPLACES)
    return f"at a monthly interest of {percent}%"
