"""Disbursement orchestration.

A disbursement runs in two transactions around the gateway call:

1. the approval (already staged by the caller), a PENDING payout and a fresh
   originator conversation id are committed before any network I/O, so a
   late or duplicate callback can always be matched;
2. the outcome (loan/payout status, balance snapshot, audit entry) is
   committed once the gateway answers.

Gateway failures never propagate past this module. They become a FAILED
payout, a ``DISBURSEMENT_FAILED`` audit entry and a borrower SMS while the
loan stays APPROVED and retryable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.core.errors import ConflictError, NotFoundError
from salary_advance.core.roles import Caller, Role, can_manage_organization, has_any_role, require
from salary_advance.core.settings import settings
from salary_advance.models.loan import Loan
from salary_advance.models.loan_payout import LoanPayout
from salary_advance.models.mpesa_balance import MpesaBalance
from salary_advance.models.user import User
from salary_advance.schemas.audit import DisbursementFailed, DisbursementSucceeded
from salary_advance.schemas.loan import GatewayStatus, LoanStatus, PayoutStatus
from salary_advance.services import mpesa_client, mpesa_config, notifications
from salary_advance.services.audit import record_audit_event
from salary_advance.services.loan_terms import as_decimal
from salary_advance.utils.phone import InvalidPhoneNumber, normalize_msisdn

logger = logging.getLogger(__name__)

PAYOUT_METHOD = "MPESA"
INSUFFICIENT_FUNDS = "Insufficient balance"


@dataclass
class DisbursementOutcome:
    disbursed: bool
    payout: LoanPayout | None = None
    reason: str | None = None
    gateway: mpesa_client.GatewayResult | None = None


async def _check_balance(db: AsyncSession, loan: Loan) -> str | None:
    """Best-effort guard against the last reported utility balance.

    The snapshot only reflects the most recent callback, so this cannot prevent
    over-disbursement under concurrent approvals; the gateway remains the
    authority.
    """
    snapshot = await mpesa_config.latest_balance(db, loan.tenant_id)
    if snapshot is None:
        if settings.require_balance_snapshot:
            return "No account balance snapshot available"
        logger.warning("No balance snapshot for tenant=%s; skipping balance check", loan.tenant_id)
        return None
    available = as_decimal(snapshot.utility_account_balance)
    if available < as_decimal(loan.amount):
        logger.warning(
            "Insufficient utility balance for loan=%s: available=%s requested=%s",
            loan.id,
            available,
            loan.amount,
        )
        return INSUFFICIENT_FUNDS
    return None


def _stage_failure(
    db: AsyncSession,
    loan: Loan,
    payout: LoanPayout,
    reason: str,
    *,
    actor_id: int | None,
    gateway: mpesa_client.GatewayResult | None = None,
) -> None:
    payout.status = PayoutStatus.FAILED.value
    db.add(payout)
    record_audit_event(
        db,
        loan.tenant_id,
        DisbursementFailed(
            loan_id=loan.id,
            payout_id=payout.id,
            amount=loan.amount,
            reason=reason,
            originator_conversation_id=loan.originator_conversation_id,
            gateway_response=gateway.as_dict() if gateway else {},
        ),
        actor_id=actor_id,
    )


async def _notify_failure(db: AsyncSession, loan: Loan, borrower: User | None, reason: str) -> None:
    if borrower is None:
        return
    lender = await notifications.tenant_name(db, loan.tenant_id)
    detail = "due to insufficient funds" if reason == INSUFFICIENT_FUNDS else "due to an error"
    await notifications.send_sms(
        loan.tenant_id,
        borrower.phone_number,
        notifications.disbursement_failed_message(borrower.first_name, loan.amount, lender, detail),
    )


def _stage_success(
    db: AsyncSession,
    loan: Loan,
    payout: LoanPayout,
    result: mpesa_client.GatewayResult,
    *,
    actor_id: int | None,
) -> None:
    now = datetime.now(timezone.utc)
    loan.disbursed_at = now
    loan.status = LoanStatus.DISBURSED.value
    loan.mpesa_transaction_id = result.conversation_id
    loan.mpesa_status = GatewayStatus.PENDING.value
    payout.status = PayoutStatus.DISBURSED.value
    payout.transaction_id = result.conversation_id
    db.add(loan)
    db.add(payout)

    payload = result.payload
    db.add(
        MpesaBalance(
            tenant_id=loan.tenant_id,
            originator_conversation_id=result.originator_conversation_id,
            conversation_id=result.conversation_id,
            result_code=_int_or_none(payload.get("ResponseCode")),
            result_desc=payload.get("ResponseDescription"),
            utility_account_balance=_decimal_or_none(payload.get("B2CUtilityAccountAvailableFunds")),
            working_account_balance=_decimal_or_none(payload.get("B2CWorkingAccountAvailableFunds")),
        )
    )
    record_audit_event(
        db,
        loan.tenant_id,
        DisbursementSucceeded(
            loan_id=loan.id,
            payout_id=payout.id,
            amount=loan.amount,
            originator_conversation_id=result.originator_conversation_id,
            conversation_id=result.conversation_id,
            response_description=result.description,
        ),
        actor_id=actor_id,
    )


def _int_or_none(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _decimal_or_none(value):
    if value in (None, ""):
        return None
    try:
        return as_decimal(value)
    except ArithmeticError:
        return None


async def disburse_loan(
    db: AsyncSession,
    loan: Loan,
    *,
    borrower: User | None,
    approver_id: int | None,
    client: httpx.AsyncClient | None = None,
) -> DisbursementOutcome:
    """Pay out an APPROVED loan whose row the caller holds locked.

    Commits the session (at least once). Never raises for gateway problems.
    """
    payout = LoanPayout(
        tenant_id=loan.tenant_id,
        loan_id=loan.id,
        amount=loan.amount,
        method=PAYOUT_METHOD,
        status=PayoutStatus.PENDING.value,
        approved_by_id=approver_id,
        amount_repaid=0,
    )
    db.add(payout)
    await db.flush()

    shortfall = await _check_balance(db, loan)
    if shortfall:
        _stage_failure(db, loan, payout, shortfall, actor_id=approver_id)
        await db.commit()
        await notifications.deliver_quietly(
            _notify_failure(db, loan, borrower, shortfall), f"loan {loan.id} disbursement failure"
        )
        return DisbursementOutcome(disbursed=False, payout=payout, reason=shortfall)

    try:
        msisdn = normalize_msisdn(borrower.phone_number if borrower else None)
    except InvalidPhoneNumber as exc:
        _stage_failure(db, loan, payout, str(exc), actor_id=approver_id)
        await db.commit()
        await notifications.deliver_quietly(
            _notify_failure(db, loan, borrower, str(exc)), f"loan {loan.id} disbursement failure"
        )
        return DisbursementOutcome(disbursed=False, payout=payout, reason=str(exc))

    loan.originator_conversation_id = mpesa_client.generate_conversation_id()
    loan.mpesa_status = GatewayStatus.PENDING.value
    db.add(loan)
    credentials = await mpesa_config.load_credentials(db, loan.tenant_id)
    await db.commit()

    result = await mpesa_client.disburse(
        msisdn,
        loan.amount,
        loan.originator_conversation_id,
        credentials,
        remarks=f"Loan {loan.id} disbursement",
        client=client,
    )

    if result.accepted:
        _stage_success(db, loan, payout, result, actor_id=approver_id)
        await db.commit()
        logger.info(
            "Loan %s disbursement accepted conversation_id=%s", loan.id, result.conversation_id
        )
        return DisbursementOutcome(disbursed=True, payout=payout, gateway=result)

    reason = result.description or "Unrecognized gateway response"
    logger.error("Loan %s disbursement failed: %s", loan.id, reason)
    _stage_failure(db, loan, payout, reason, actor_id=approver_id, gateway=result)
    await db.commit()
    await notifications.deliver_quietly(
        _notify_failure(db, loan, borrower, reason), f"loan {loan.id} disbursement failure"
    )
    return DisbursementOutcome(disbursed=False, payout=payout, reason=reason, gateway=result)


async def _has_attempt_in_flight(db: AsyncSession, loan: Loan) -> bool:
    stmt = select(LoanPayout).where(
        LoanPayout.loan_id == loan.id,
        LoanPayout.status == PayoutStatus.PENDING.value,
    )
    return (await db.execute(stmt)).scalars().first() is not None


async def disburse_approved_loan(
    db: AsyncSession,
    caller: Caller,
    loan_id: int,
    *,
    client: httpx.AsyncClient | None = None,
) -> tuple[Loan, DisbursementOutcome]:
    """Retry payout of a loan that was approved but never disbursed."""
    require(
        has_any_role(caller, {Role.ADMIN, Role.ORG_ADMIN}),
        "Only administrators can disburse loans",
    )
    stmt = (
        select(Loan)
        .where(Loan.id == loan_id, Loan.tenant_id == caller.tenant_id)
        .with_for_update()
    )
    loan = (await db.execute(stmt)).scalar_one_or_none()
    if loan is None:
        raise NotFoundError("Loan not found")
    require(
        can_manage_organization(caller, tenant_id=loan.tenant_id, organization_id=loan.organization_id),
        "Loan belongs to another organization",
    )
    if loan.status != LoanStatus.APPROVED.value or loan.disbursed_at is not None:
        raise ConflictError(
            "Only approved, undisbursed loans can be disbursed",
            code="invalid_status",
            details={"status": loan.status},
        )
    if await _has_attempt_in_flight(db, loan):
        raise ConflictError("A disbursement attempt is already in progress", code="disbursement_in_progress")

    borrower = await db.get(User, loan.user_id)
    outcome = await disburse_loan(db, loan, borrower=borrower, approver_id=caller.user_id, client=client)
    return loan, outcome
