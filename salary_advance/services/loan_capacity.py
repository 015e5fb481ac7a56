from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.core.errors import NotFoundError, ValidationError
from salary_advance.core.roles import Caller
from salary_advance.core.settings import settings
from salary_advance.models.employee import Employee
from salary_advance.models.loan import Loan
from salary_advance.models.organization import Organization
from salary_advance.schemas.loan import LoanStatus
from salary_advance.services.loan_terms import as_decimal, money, month_bounds

# Everything the borrower has asked for this month except rejected requests
COUNTED_STATUSES = (
    LoanStatus.PENDING.value,
    LoanStatus.APPROVED.value,
    LoanStatus.DISBURSED.value,
    LoanStatus.PARTIALLY_PAID.value,
    LoanStatus.REPAID.value,
)


@dataclass(frozen=True)
class BorrowingCapacity:
    monthly_cap: Decimal
    taken_so_far: Decimal

    @property
    def remaining(self) -> Decimal:
        return max(Decimal("0.00"), money(self.monthly_cap - self.taken_so_far))

    @property
    def can_borrow(self) -> bool:
        return self.remaining > 0

    def allows(self, amount) -> bool:
        return self.taken_so_far + as_decimal(amount) <= self.monthly_cap


def monthly_cap(employee: Employee, organization: Organization) -> Decimal:
    return money(as_decimal(employee.gross_salary or 0) * as_decimal(organization.loan_limit_multiplier or 0))


async def amount_taken_this_month(
    db: AsyncSession,
    *,
    tenant_id: int,
    user_id: int,
    now: datetime | None = None,
) -> Decimal:
    start, end = month_bounds(now or datetime.now(timezone.utc), settings.tenant_timezone)
    stmt = select(func.coalesce(func.sum(Loan.amount), 0)).where(
        Loan.tenant_id == tenant_id,
        Loan.user_id == user_id,
        Loan.status.in_(COUNTED_STATUSES),
        Loan.created_at >= start,
        Loan.created_at < end,
    )
    return money((await db.execute(stmt)).scalar_one())


async def borrowing_capacity(
    db: AsyncSession,
    *,
    employee: Employee,
    organization: Organization,
    user_id: int,
    now: datetime | None = None,
) -> BorrowingCapacity:
    taken = await amount_taken_this_month(
        db, tenant_id=employee.tenant_id, user_id=user_id, now=now
    )
    return BorrowingCapacity(monthly_cap=monthly_cap(employee, organization), taken_so_far=taken)


async def capacity_for_caller(db: AsyncSession, caller: Caller) -> BorrowingCapacity:
    if caller.employee_id is None:
        raise ValidationError("No employee profile linked to this user", code="no_employee_profile")
    employee = await db.get(Employee, caller.employee_id)
    if employee is None or employee.tenant_id != caller.tenant_id:
        raise NotFoundError("Employee record not found")
    organization = await db.get(Organization, employee.organization_id)
    if organization is None:
        raise NotFoundError("Organization not found")
    return await borrowing_capacity(
        db, employee=employee, organization=organization, user_id=caller.user_id
    )
