"""Loan approval state machine.

``PENDING -> APPROVED -> DISBURSED -> PARTIALLY_PAID -> REPAID`` with
``PENDING -> REJECTED`` as the only other edge. Each transition locks the loan
row, re-reads its status and writes in the same transaction; two concurrent
final approvals therefore serialize and the second sees APPROVED.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.core.errors import (
    AuthorizationError,
    CapacityError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from salary_advance.core.roles import (
    Caller,
    Role,
    can_manage_organization,
    has_any_role,
    require,
    same_tenant,
)
from salary_advance.core.settings import settings
from salary_advance.models.employee import Employee
from salary_advance.models.loan import Loan
from salary_advance.models.organization import Organization
from salary_advance.models.user import User
from salary_advance.schemas.audit import (
    LoanApprovalRecorded,
    LoanAutoApproved,
    LoanCreated,
    LoanRejected,
)
from salary_advance.schemas.loan import LoanStatus
from salary_advance.services import disbursement, notifications
from salary_advance.services.audit import record_audit_event
from salary_advance.services.loan_capacity import BorrowingCapacity, borrowing_capacity
from salary_advance.services.loan_terms import (
    RateInputs,
    as_decimal,
    compute_loan_terms,
    days_until_month_end,
    describe_interest,
    money,
)
from salary_advance.services.transaction_fees import resolve_fee

logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset({Role.ADMIN, Role.ORG_ADMIN})


@dataclass
class LoanActionResult:
    loan: Loan
    message: str
    disbursement: disbursement.DisbursementOutcome | None = None


def loan_duration_days(now: datetime) -> int:
    if settings.loan_duration_policy == "end_of_month":
        return days_until_month_end(now, settings.tenant_timezone)
    return settings.default_loan_duration_days


async def _lock_loan(db: AsyncSession, caller: Caller, loan_id: int) -> Loan:
    stmt = (
        select(Loan)
        .where(Loan.id == loan_id, Loan.tenant_id == caller.tenant_id)
        .with_for_update()
    )
    loan = (await db.execute(stmt)).scalar_one_or_none()
    if loan is None:
        raise NotFoundError("Loan not found", details={"loan_id": loan_id})
    return loan


def _require_pending(loan: Loan, action: str) -> None:
    if loan.status != LoanStatus.PENDING.value:
        raise ConflictError(
            f"Only pending loans can be {action}",
            code="invalid_status",
            details={"loan_id": loan.id, "status": loan.status},
        )


async def _notify_approved(
    db: AsyncSession,
    loan: Loan,
    borrower: User | None,
    organization: Organization,
    *,
    auto_approved: bool,
) -> None:
    if borrower is None:
        return
    lender = await notifications.tenant_name(db, loan.tenant_id)
    message = notifications.loan_approved_message(
        borrower.first_name,
        loan.amount,
        lender,
        interest_description=describe_interest(RateInputs.from_organization(organization), loan.interest_rate),
        transaction_charge=loan.transaction_charge,
        due_date=loan.due_date,
        total_repayable=loan.total_repayable,
        auto_approved=auto_approved,
    )
    await notifications.send_sms(loan.tenant_id, borrower.phone_number, message)


async def _notify_pending(db: AsyncSession, loan: Loan, borrower: User | None) -> None:
    lender = await notifications.tenant_name(db, loan.tenant_id)
    applicant = borrower.full_name if borrower else f"user #{loan.user_id}"
    reviewers = await notifications.find_loan_reviewers(db, loan.tenant_id, loan.organization_id)
    messages = [
        (
            reviewer.phone_number,
            notifications.loan_review_request_message(reviewer.first_name, loan.id, loan.amount, applicant),
        )
        for reviewer in reviewers
    ]
    if borrower is not None:
        messages.append(
            (borrower.phone_number, notifications.loan_pending_message(borrower.first_name, loan.amount, lender))
        )
    await notifications.send_many(loan.tenant_id, messages)


async def apply_for_loan(
    db: AsyncSession,
    caller: Caller,
    amount,
    *,
    now: datetime | None = None,
    client: httpx.AsyncClient | None = None,
) -> LoanActionResult:
    require(has_any_role(caller, {Role.EMPLOYEE}), "Only employees can apply for loans")
    requested = money(amount)
    if requested <= 0:
        raise ValidationError("Valid loan amount is required", code="invalid_amount")
    if caller.employee_id is None:
        raise NotFoundError("Employee or organization not found")

    # Locking the employee row serializes concurrent applications by one borrower
    employee_stmt = (
        select(Employee)
        .where(Employee.id == caller.employee_id, Employee.tenant_id == caller.tenant_id)
        .with_for_update()
    )
    employee = (await db.execute(employee_stmt)).scalar_one_or_none()
    if employee is None:
        raise NotFoundError("Employee or organization not found")
    organization = await db.get(Organization, employee.organization_id)
    if organization is None or not same_tenant(caller, organization.tenant_id):
        raise NotFoundError("Employee or organization not found")
    if organization.status != "ACTIVE":
        raise AuthorizationError(
            "Loan requests are disabled. Your organization is not active.",
            code="organization_inactive",
        )

    now = now or datetime.now(timezone.utc)
    capacity = await borrowing_capacity(
        db, employee=employee, organization=organization, user_id=caller.user_id, now=now
    )
    if not capacity.allows(requested):
        raise CapacityError(
            f"Cap exceeded. Borrowed KES {capacity.taken_so_far} of KES {capacity.monthly_cap}.",
            details={
                "monthly_cap": str(capacity.monthly_cap),
                "taken_so_far": str(capacity.taken_so_far),
                "requested": str(requested),
            },
        )

    rate_inputs = RateInputs.from_organization(organization)
    terms = compute_loan_terms(requested, rate_inputs, loan_duration_days(now), now=now)
    fee = await resolve_fee(db, requested, caller.tenant_id)
    auto_approve = organization.approval_steps == 0

    loan = Loan(
        tenant_id=caller.tenant_id,
        organization_id=organization.id,
        user_id=caller.user_id,
        employee_id=employee.id,
        amount=requested,
        interest_rate_type=rate_inputs.rate_type.value,
        interest_rate=terms.applied_rate,
        transaction_charge=fee,
        total_repayable=terms.total_repayable,
        due_date=terms.due_date,
        duration_days=terms.duration_days,
        status=LoanStatus.APPROVED.value if auto_approve else LoanStatus.PENDING.value,
        approval_count=0,
        repaid_amount=Decimal("0.00"),
        created_at=now,
    )
    db.add(loan)
    await db.flush()
    record_audit_event(
        db,
        caller.tenant_id,
        LoanCreated(
            loan_id=loan.id,
            amount=loan.amount,
            status=loan.status,
            interest_rate=loan.interest_rate,
            transaction_charge=loan.transaction_charge,
            total_repayable=loan.total_repayable,
            duration_days=loan.duration_days,
        ),
        actor_id=caller.user_id,
    )
    borrower = await db.get(User, caller.user_id)

    if not auto_approve:
        await db.commit()
        logger.info("Loan %s created pending approval", loan.id)
        await notifications.deliver_quietly(_notify_pending(db, loan, borrower), f"loan {loan.id} pending")
        return LoanActionResult(loan=loan, message="Loan created and pending approval")

    record_audit_event(
        db,
        caller.tenant_id,
        LoanAutoApproved(
            loan_id=loan.id,
            amount=loan.amount,
            message=f"Loan {loan.id} auto-approved (0 approval steps required)",
        ),
        actor_id=caller.user_id,
    )
    outcome = await disbursement.disburse_loan(
        db, loan, borrower=borrower, approver_id=None, client=client
    )
    if not outcome.disbursed:
        return LoanActionResult(
            loan=loan,
            message="Loan auto-approved but disbursement failed",
            disbursement=outcome,
        )
    await notifications.deliver_quietly(
        _notify_approved(db, loan, borrower, organization, auto_approved=True), f"loan {loan.id} approved"
    )
    return LoanActionResult(
        loan=loan,
        message="Loan auto-approved and disbursement initiated",
        disbursement=outcome,
    )


async def approve_loan(
    db: AsyncSession,
    caller: Caller,
    loan_id: int,
    *,
    client: httpx.AsyncClient | None = None,
) -> LoanActionResult:
    require(has_any_role(caller, ADMIN_ROLES), "Only administrators can approve loans")
    loan = await _lock_loan(db, caller, loan_id)
    require(
        can_manage_organization(caller, tenant_id=loan.tenant_id, organization_id=loan.organization_id),
        "Loan belongs to another organization",
    )
    _require_pending(loan, "approved")

    organization = await db.get(Organization, loan.organization_id)
    if organization is None:
        raise NotFoundError("Organization not found")
    required_steps = max(1, organization.approval_steps or 0)

    if required_steps > 1 and caller.user_id in (loan.first_approver_id, loan.second_approver_id):
        raise ConflictError(
            "You have already approved this loan",
            code="duplicate_approval",
            details={"loan_id": loan.id, "approval_count": loan.approval_count},
        )

    loan.approval_count = (loan.approval_count or 0) + 1
    if loan.approval_count == 1:
        loan.first_approver_id = caller.user_id
    elif loan.approval_count == 2:
        loan.second_approver_id = caller.user_id

    final = loan.approval_count >= required_steps
    if final:
        loan.status = LoanStatus.APPROVED.value
    db.add(loan)
    record_audit_event(
        db,
        loan.tenant_id,
        LoanApprovalRecorded(
            loan_id=loan.id,
            approval_count=loan.approval_count,
            approval_steps=required_steps,
            status=loan.status,
        ),
        actor_id=caller.user_id,
    )

    if not final:
        await db.commit()
        logger.info("Loan %s approval %s of %s recorded", loan.id, loan.approval_count, required_steps)
        return LoanActionResult(
            loan=loan,
            message=f"Approval {loan.approval_count} of {required_steps} recorded",
        )

    borrower = await db.get(User, loan.user_id)
    outcome = await disbursement.disburse_loan(
        db, loan, borrower=borrower, approver_id=caller.user_id, client=client
    )
    if not outcome.disbursed:
        return LoanActionResult(
            loan=loan,
            message="Loan approved but disbursement failed",
            disbursement=outcome,
        )
    await notifications.deliver_quietly(
        _notify_approved(db, loan, borrower, organization, auto_approved=False), f"loan {loan.id} approved"
    )
    return LoanActionResult(
        loan=loan,
        message="Loan approved and disbursement initiated",
        disbursement=outcome,
    )


async def _notify_rejected(db: AsyncSession, loan: Loan) -> None:
    borrower = await db.get(User, loan.user_id)
    if borrower is None:
        return
    lender = await notifications.tenant_name(db, loan.tenant_id)
    await notifications.send_sms(
        loan.tenant_id,
        borrower.phone_number,
        notifications.loan_rejected_message(borrower.first_name, as_decimal(loan.amount), lender),
    )


async def _capacity_after_rejection(db: AsyncSession, loan: Loan) -> BorrowingCapacity | None:
    if loan.employee_id is None:
        return None
    employee = await db.get(Employee, loan.employee_id)
    organization = await db.get(Organization, loan.organization_id)
    if employee is None or organization is None:
        return None
    return await borrowing_capacity(db, employee=employee, organization=organization, user_id=loan.user_id)


async def reject_loan(
    db: AsyncSession,
    caller: Caller,
    loan_id: int,
    *,
    reason: str | None = None,
) -> LoanActionResult:
    require(has_any_role(caller, ADMIN_ROLES), "Only administrators can reject loans")
    loan = await _lock_loan(db, caller, loan_id)
    require(
        can_manage_organization(caller, tenant_id=loan.tenant_id, organization_id=loan.organization_id),
        "Loan belongs to another organization",
    )
    _require_pending(loan, "rejected")

    loan.status = LoanStatus.REJECTED.value
    db.add(loan)
    await db.flush()

    capacity = await _capacity_after_rejection(db, loan)
    zero = Decimal("0.00")
    record_audit_event(
        db,
        loan.tenant_id,
        LoanRejected(
            loan_id=loan.id,
            reason=reason,
            monthly_cap=capacity.monthly_cap if capacity else zero,
            taken_so_far=capacity.taken_so_far if capacity else zero,
            remaining=capacity.remaining if capacity else zero,
        ),
        actor_id=caller.user_id,
    )
    await db.commit()
    if capacity is not None:
        logger.info(
            "Loan %s rejected; borrower headroom now %s of %s",
            loan.id,
            capacity.remaining,
            capacity.monthly_cap,
        )

    await notifications.deliver_quietly(_notify_rejected(db, loan), f"loan {loan.id} rejected")
    return LoanActionResult(loan=loan, message="Loan rejected successfully")


async def list_pending_loans(db: AsyncSession, caller: Caller) -> list[Loan]:
    """Pending loans visible to the caller: tenant-wide, organization-wide or own."""
    stmt = select(Loan).where(
        Loan.tenant_id == caller.tenant_id,
        Loan.status == LoanStatus.PENDING.value,
    )
    if not has_any_role(caller, {Role.ADMIN}):
        if has_any_role(caller, {Role.ORG_ADMIN}):
            stmt = stmt.where(Loan.organization_id == caller.organization_id)
        elif has_any_role(caller, {Role.EMPLOYEE}):
            stmt = stmt.where(Loan.user_id == caller.user_id)
        else:
            raise AuthorizationError("Insufficient role to list loans")
    stmt = stmt.order_by(Loan.created_at.asc(), Loan.id.asc())
    return list((await db.execute(stmt)).scalars().all())
