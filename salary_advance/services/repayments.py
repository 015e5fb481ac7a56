"""Repayment reconciliation.

Incoming money is spread over a payer's outstanding payouts, oldest loan
first, until it runs out (the waterfall). Anything left over becomes credit on
the organization. Two entry points share :func:`allocate_payment`:

* :func:`reconcile_transaction` attributes a queued M-Pesa C2B payment using
  its bill reference (a phone number for one borrower, a short numeric id for
  a whole organization);
* :func:`record_organization_payment` records a bulk payment an administrator
  entered by hand.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import contains_eager

from salary_advance.core.context import set_tenant_id
from salary_advance.core.errors import (
    ConflictError,
    NotFoundError,
    ReconciliationSkip,
    ValidationError,
)
from salary_advance.core.roles import Caller, Role, can_manage_organization, has_any_role, require
from salary_advance.core.settings import settings
from salary_advance.models.c2b_transaction import C2BTransaction
from salary_advance.models.loan import Loan
from salary_advance.models.loan_payout import LoanPayout
from salary_advance.models.organization import Organization
from salary_advance.models.payment_batch import PaymentBatch
from salary_advance.models.payment_confirmation import PaymentConfirmation
from salary_advance.models.user import User
from salary_advance.schemas.audit import OrganizationCredited, RepaymentAllocated
from salary_advance.schemas.loan import OUTSTANDING_STATUSES, LoanStatus, PayoutStatus
from salary_advance.schemas.repayment import (
    OrganizationPaymentRequest,
    PayerType,
    PaymentMethod,
    ReconciliationRunDTO,
)
from salary_advance.services import notifications
from salary_advance.services.audit import record_audit_event
from salary_advance.services.loan_terms import as_decimal, money
from salary_advance.utils.phone import InvalidPhoneNumber, looks_like_phone, phone_variants

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class AllocationLine:
    loan_id: int
    payout_id: int
    amount_settled: Decimal
    payout_status: str
    loan_status: str
    outstanding_after: Decimal


@dataclass
class AllocationResult:
    batch: PaymentBatch
    organization: Organization
    payer_type: PayerType
    total_amount: Decimal
    allocated: Decimal = ZERO
    surplus: Decimal = ZERO
    lines: list[AllocationLine] = field(default_factory=list)
    outstanding_after: Decimal = ZERO


@dataclass
class ResolvedPayer:
    payer_type: PayerType
    organization: Organization
    payouts: list[LoanPayout]
    borrower: User | None = None
    contacts: list[User] = field(default_factory=list)


def outstanding_on(loan: Loan) -> Decimal:
    return max(ZERO, money(as_decimal(loan.total_repayable) - as_decimal(loan.repaid_amount or 0)))


async def outstanding_payouts(
    db: AsyncSession,
    *,
    tenant_id: int,
    user_id: int | None = None,
    organization_id: int | None = None,
) -> list[LoanPayout]:
    """Payouts still owed on, oldest loan first, each with its loan loaded and locked."""
    stmt = (
        select(LoanPayout)
        .join(Loan, LoanPayout.loan_id == Loan.id)
        .options(contains_eager(LoanPayout.loan))
        .where(
            LoanPayout.tenant_id == tenant_id,
            LoanPayout.status.in_(sorted(OUTSTANDING_STATUSES)),
            Loan.status.in_(sorted(OUTSTANDING_STATUSES)),
        )
        .order_by(Loan.created_at.asc(), LoanPayout.id.asc())
        .with_for_update(of=[LoanPayout, Loan])
    )
    if user_id is not None:
        stmt = stmt.where(Loan.user_id == user_id)
    if organization_id is not None:
        stmt = stmt.where(Loan.organization_id == organization_id)
    return list((await db.execute(stmt)).scalars().all())


async def allocate_payment(
    db: AsyncSession,
    *,
    organization: Organization,
    payouts: list[LoanPayout],
    amount,
    reference: str,
    payer_type: PayerType,
    method: PaymentMethod = PaymentMethod.MPESA,
    remarks: str | None = None,
    actor_id: int | None = None,
    received_at: datetime | None = None,
) -> AllocationResult:
    """Waterfall ``amount`` over ``payouts`` in order; the remainder credits the organization.

    Stages every write on the session without committing. ``allocated + surplus``
    always equals ``amount`` and no loan is ever paid past its total repayable.
    """
    total = money(amount)
    if total <= 0:
        raise ValidationError("Payment amount must be positive", code="invalid_amount")

    now = datetime.now(timezone.utc)
    batch = PaymentBatch(
        tenant_id=organization.tenant_id,
        organization_id=organization.id,
        total_amount=total,
        payment_method=method.value,
        reference=reference,
        remarks=remarks,
        received_at=received_at or now,
        created_by_id=actor_id,
    )
    db.add(batch)
    await db.flush()

    result = AllocationResult(batch=batch, organization=organization, payer_type=payer_type, total_amount=total)
    remaining = total
    touched: set[int] = set()
    for payout in payouts:
        if remaining <= 0:
            break
        if payout.id in touched:
            continue
        touched.add(payout.id)

        loan = payout.loan
        outstanding = outstanding_on(loan)
        if outstanding <= 0:
            continue
        pay_amount = min(outstanding, remaining)

        db.add(
            PaymentConfirmation(
                tenant_id=organization.tenant_id,
                payment_batch_id=batch.id,
                loan_payout_id=payout.id,
                amount_settled=pay_amount,
                settled_at=now,
            )
        )
        payout.amount_repaid = money(as_decimal(payout.amount_repaid or 0) + pay_amount)
        loan.repaid_amount = money(as_decimal(loan.repaid_amount or 0) + pay_amount)
        settled = outstanding_on(loan) == 0
        payout.status = (PayoutStatus.REPAID if settled else PayoutStatus.PARTIALLY_PAID).value
        loan.status = (LoanStatus.REPAID if settled else LoanStatus.PARTIALLY_PAID).value
        db.add(payout)
        db.add(loan)

        remaining = money(remaining - pay_amount)
        result.lines.append(
            AllocationLine(
                loan_id=loan.id,
                payout_id=payout.id,
                amount_settled=pay_amount,
                payout_status=payout.status,
                loan_status=loan.status,
                outstanding_after=outstanding_on(loan),
            )
        )

    result.allocated = money(total - remaining)
    result.surplus = remaining
    seen_loans: set[int] = set()
    for payout in payouts:
        if payout.loan.id not in seen_loans:
            seen_loans.add(payout.loan.id)
            result.outstanding_after += outstanding_on(payout.loan)

    if remaining > 0:
        organization.credit_balance = money(as_decimal(organization.credit_balance or 0) + remaining)
        db.add(organization)
        record_audit_event(
            db,
            organization.tenant_id,
            OrganizationCredited(
                organization_id=organization.id,
                amount=remaining,
                credit_balance=organization.credit_balance,
                reference=reference,
            ),
            actor_id=actor_id,
        )

    record_audit_event(
        db,
        organization.tenant_id,
        RepaymentAllocated(
            payment_batch_id=batch.id,
            reference=reference,
            payer_type=payer_type.value,
            total_amount=total,
            allocated=result.allocated,
            surplus=result.surplus,
            payout_ids=[line.payout_id for line in result.lines],
        ),
        actor_id=actor_id,
    )
    return result


def classify_reference(reference: str | None) -> tuple[PayerType, str]:
    """Phone numbers pay for one borrower; short positive integers for an organization."""
    value = (reference or "").strip()
    if looks_like_phone(value):
        return PayerType.INDIVIDUAL, value
    if value.isdigit() and len(value) <= settings.org_reference_max_digits and int(value) > 0:
        return PayerType.ORGANIZATION, value
    raise ReconciliationSkip(
        f"Unrecognized bill reference {value!r}",
        code="unrecognized_reference",
        details={"reference": value},
    )


async def _resolve_individual(db: AsyncSession, tenant_id: int, phone: str) -> ResolvedPayer:
    try:
        variants = phone_variants(phone)
    except InvalidPhoneNumber as exc:
        raise ReconciliationSkip(str(exc), code="unrecognized_reference") from exc
    stmt = select(User).where(User.tenant_id == tenant_id, User.phone_number.in_(variants))
    borrower = (await db.execute(stmt)).scalars().first()
    if borrower is None:
        raise ReconciliationSkip(f"No user found for phone number {phone}", code="payer_not_found")
    if borrower.organization_id is None:
        raise ReconciliationSkip(f"User {borrower.id} has no organization", code="payer_not_found")
    organization = await db.get(Organization, borrower.organization_id)
    if organization is None or organization.tenant_id != tenant_id:
        raise ReconciliationSkip(
            f"Organization {borrower.organization_id} not found", code="payer_not_found"
        )
    payouts = await outstanding_payouts(db, tenant_id=tenant_id, user_id=borrower.id)
    return ResolvedPayer(
        payer_type=PayerType.INDIVIDUAL,
        organization=organization,
        payouts=payouts,
        borrower=borrower,
        contacts=[borrower],
    )


async def _resolve_organization(db: AsyncSession, tenant_id: int, reference: str) -> ResolvedPayer:
    stmt = select(Organization).where(Organization.id == int(reference), Organization.tenant_id == tenant_id)
    organization = (await db.execute(stmt)).scalar_one_or_none()
    if organization is None:
        raise ReconciliationSkip(f"No organization found for ID {reference}", code="payer_not_found")
    payouts = await outstanding_payouts(db, tenant_id=tenant_id, organization_id=organization.id)
    contacts = await notifications.find_loan_reviewers(db, tenant_id, organization.id)
    return ResolvedPayer(
        payer_type=PayerType.ORGANIZATION,
        organization=organization,
        payouts=payouts,
        contacts=contacts,
    )


async def reconcile_transaction(db: AsyncSession, transaction: C2BTransaction) -> tuple[AllocationResult, ResolvedPayer]:
    """Allocate one queued C2B payment and mark it processed. Does not commit.

    Raises ``ReconciliationSkip`` when the payment cannot be attributed; nothing
    is written in that case and the transaction stays queued.
    """
    payer_type, reference = classify_reference(transaction.bill_ref_number)
    if payer_type == PayerType.INDIVIDUAL:
        payer = await _resolve_individual(db, transaction.tenant_id, reference)
        remarks = f"Automated repayment for {payer.borrower.full_name} ({reference}) via M-Pesa transaction {transaction.trans_id}"
    else:
        payer = await _resolve_organization(db, transaction.tenant_id, reference)
        remarks = f"Automated repayment for organization {payer.organization.name} via M-Pesa transaction {transaction.trans_id}"

    if not payer.payouts:
        raise ReconciliationSkip(
            f"No outstanding loan payouts for reference {reference}",
            code="no_outstanding_payouts",
        )

    result = await allocate_payment(
        db,
        organization=payer.organization,
        payouts=payer.payouts,
        amount=transaction.trans_amount,
        reference=transaction.trans_id,
        payer_type=payer_type,
        method=PaymentMethod.MPESA,
        remarks=remarks,
        received_at=transaction.trans_time,
    )
    transaction.processed = True
    transaction.processed_at = datetime.now(timezone.utc)
    db.add(transaction)
    return result, payer


async def notify_repayment(db: AsyncSession, result: AllocationResult, payer: ResolvedPayer) -> None:
    """Best effort. Call only after the allocation is committed."""
    tenant_id = result.organization.tenant_id
    lender = await notifications.tenant_name(db, tenant_id)
    if payer.payer_type == PayerType.INDIVIDUAL and payer.borrower is not None:
        await notifications.send_sms(
            tenant_id,
            payer.borrower.phone_number,
            notifications.repayment_received_message(
                payer.borrower.first_name, result.total_amount, result.outstanding_after, lender
            ),
        )
        return
    await notifications.send_many(
        tenant_id,
        [
            (
                contact.phone_number,
                notifications.organization_repayment_message(
                    contact.first_name,
                    result.organization.name,
                    result.total_amount,
                    result.outstanding_after,
                    result.surplus,
                    lender,
                ),
            )
            for contact in payer.contacts
        ],
    )


async def record_organization_payment(
    db: AsyncSession, caller: Caller, payload: OrganizationPaymentRequest
) -> AllocationResult:
    require(
        has_any_role(caller, {Role.ADMIN, Role.ORG_ADMIN}),
        "Only administrators can record organization payments",
    )
    stmt = select(Organization).where(
        Organization.id == payload.organization_id,
        Organization.tenant_id == caller.tenant_id,
    )
    organization = (await db.execute(stmt)).scalar_one_or_none()
    if organization is None:
        raise NotFoundError("Organization not found", details={"organization_id": payload.organization_id})
    require(
        can_manage_organization(caller, tenant_id=organization.tenant_id, organization_id=organization.id),
        "Organization admins can only record payments for their own organization",
    )

    payouts = await outstanding_payouts(db, tenant_id=caller.tenant_id, organization_id=organization.id)
    if not payouts:
        raise ConflictError(
            "No outstanding loans found for this organization",
            code="no_outstanding_loans",
            details={"organization_id": organization.id},
        )

    result = await allocate_payment(
        db,
        organization=organization,
        payouts=payouts,
        amount=payload.total_amount,
        reference=payload.reference or f"BATCH-{int(time.time() * 1000)}",
        payer_type=PayerType.ORGANIZATION,
        method=payload.method,
        remarks=payload.remarks,
        actor_id=caller.user_id,
    )
    await db.commit()
    logger.info(
        "Organization %s payment %s allocated=%s surplus=%s",
        organization.id,
        result.batch.reference,
        result.allocated,
        result.surplus,
    )
    return result


async def _pending_transaction_ids(
    db: AsyncSession, *, tenant_id: int | None, after_id: int, limit: int
) -> list[int]:
    stmt = select(C2BTransaction.id).where(
        C2BTransaction.processed.is_(False), C2BTransaction.id > after_id
    )
    if tenant_id is not None:
        stmt = stmt.where(C2BTransaction.tenant_id == tenant_id)
    stmt = stmt.order_by(C2BTransaction.id.asc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())


async def _claim_transaction(db: AsyncSession, transaction_id: int) -> C2BTransaction | None:
    # SKIP LOCKED lets an overlapping run pass over rows already being allocated
    stmt = (
        select(C2BTransaction)
        .where(C2BTransaction.id == transaction_id, C2BTransaction.processed.is_(False))
        .with_for_update(skip_locked=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def run_reconciliation(
    db: AsyncSession,
    *,
    tenant_id: int | None = None,
    batch_size: int | None = None,
) -> ReconciliationRunDTO:
    """Work through every queued C2B payment one transaction at a time.

    Each payment commits or rolls back on its own, so one bad record never
    aborts the run. The queue is read in pages keyed on id; skipped rows stay
    unprocessed but are paged past, so they never hide newer payments.
    """
    summary = ReconciliationRunDTO(started_at=datetime.now(timezone.utc))
    page_size = batch_size or settings.reconciliation_batch_size
    last_seen = 0
    while True:
        ids = await _pending_transaction_ids(db, tenant_id=tenant_id, after_id=last_seen, limit=page_size)
        if not ids:
            break
        last_seen = ids[-1]
        for transaction_id in ids:
            await _reconcile_queued(db, transaction_id, summary)

    if summary.examined == 0:
        logger.info("No unprocessed M-Pesa transactions found")
    return summary


async def _reconcile_queued(db: AsyncSession, transaction_id: int, summary: ReconciliationRunDTO) -> None:
    transaction = await _claim_transaction(db, transaction_id)
    if transaction is None:
        return
    summary.examined += 1
    set_tenant_id(transaction.tenant_id)
    trans_id = transaction.trans_id
    try:
        result, payer = await reconcile_transaction(db, transaction)
        await db.commit()
    except ReconciliationSkip as exc:
        await db.rollback()
        summary.skipped += 1
        logger.warning("Skipping M-Pesa transaction %s: %s", trans_id, exc.message)
        return
    except Exception:
        await db.rollback()
        summary.failed += 1
        logger.exception("Failed to reconcile M-Pesa transaction %s", trans_id)
        return

    summary.processed += 1
    logger.info(
        "Processed M-Pesa transaction %s allocated=%s surplus=%s",
        trans_id,
        result.allocated,
        result.surplus,
    )
    if not await notifications.deliver_quietly(
        notify_repayment(db, result, payer), f"repayment {trans_id}"
    ):
        await db.rollback()
