"""Asynchronous gateway callbacks: B2C result, B2C timeout and account balance.

Handlers return a short human-readable outcome. They raise only for malformed
bodies; the webhook layer turns every outcome, error included, into a 200
acknowledgement because the gateway retries on anything else.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.core.settings import settings
from salary_advance.models.loan import Loan
from salary_advance.models.loan_payout import LoanPayout
from salary_advance.models.mpesa_balance import MpesaBalance
from salary_advance.schemas.audit import (
    AccountBalanceUpdated,
    B2CResultReceived,
    B2CTimeoutReceived,
)
from salary_advance.schemas.loan import (
    TERMINAL_GATEWAY_STATUSES,
    GatewayStatus,
    LoanStatus,
    PayoutStatus,
)
from salary_advance.schemas.mpesa import (
    AccountBalances,
    B2CResultParameters,
    CallbackResult,
    ResultCallback,
)
from salary_advance.services.audit import record_audit_event
from salary_advance.services.loan_terms import as_decimal

logger = logging.getLogger(__name__)

ALREADY_PROCESSED = "Result already processed"
LOAN_NOT_FOUND = "Loan not found"

_B2C_KEYS = {
    "TransactionAmount": "transaction_amount",
    "TransactionReceipt": "receipt_number",
    "ReceiverPartyPublicName": "receiver_name",
    "TransactionCompletedDateTime": "completed_at",
    "B2CUtilityAccountAvailableFunds": "utility_account_balance",
    "B2CWorkingAccountAvailableFunds": "working_account_balance",
}


def parse_gateway_timestamp(value: Any) -> datetime | None:
    """Gateway timestamps come as ``yyyyMMddHHmmss`` (or ``dd.MM.yyyy HH:mm:ss``) in local time."""
    if value in (None, ""):
        return None
    text = str(value).strip()
    for fmt in ("%Y%m%d%H%M%S", "%d.%m.%Y %H:%M:%S"):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=ZoneInfo(settings.tenant_timezone)).astimezone(timezone.utc)
    return None


def _decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return as_decimal(value)
    except ArithmeticError:
        return None


def parse_b2c_parameters(result: CallbackResult) -> B2CResultParameters:
    raw = result.parameters()
    values = {field: raw.get(key) for key, field in _B2C_KEYS.items() if key in raw}
    for field in ("transaction_amount", "utility_account_balance", "working_account_balance"):
        if field in values:
            values[field] = _decimal(values[field])
    for field in ("receipt_number", "receiver_name", "completed_at"):
        if values.get(field) is not None:
            values[field] = str(values[field])
    return B2CResultParameters(**values)


def parse_account_balance(raw: str | None) -> AccountBalances:
    """Parse ``Name|Currency|Available|Current|Reserved|Uncleared&...``."""
    balances = AccountBalances()
    if not raw:
        return balances
    for entry in str(raw).split("&"):
        parts = [part.strip() for part in entry.split("|")]
        if len(parts) < 3:
            continue
        name = parts[0].lower()
        available = _decimal(parts[2])
        if name.startswith("working account"):
            balances.working_account = available
        elif name.startswith("utility account"):
            balances.utility_account = available
    return balances


async def _find_loan(db: AsyncSession, result: CallbackResult) -> Loan | None:
    """Locate by our own conversation id first; gateway ids are fallbacks only."""
    if result.OriginatorConversationID:
        stmt = (
            select(Loan)
            .where(Loan.originator_conversation_id == result.OriginatorConversationID)
            .with_for_update()
        )
        loan = (await db.execute(stmt)).scalar_one_or_none()
        if loan is not None:
            return loan
    secondary = [value for value in (result.ConversationID, result.TransactionID) if value]
    if not secondary:
        return None
    stmt = select(Loan).where(Loan.mpesa_transaction_id.in_(secondary)).with_for_update()
    return (await db.execute(stmt)).scalars().first()


async def _latest_payout(db: AsyncSession, loan: Loan) -> LoanPayout | None:
    stmt = (
        select(LoanPayout)
        .where(LoanPayout.loan_id == loan.id)
        .order_by(LoanPayout.created_at.desc(), LoanPayout.id.desc())
        .limit(1)
        .with_for_update()
    )
    return (await db.execute(stmt)).scalars().first()


async def _upsert_snapshot(
    db: AsyncSession,
    tenant_id: int,
    result: CallbackResult,
    *,
    utility: Decimal | None,
    working: Decimal | None,
    completed_at: datetime | None,
) -> int | None:
    values = {
        "tenant_id": tenant_id,
        "originator_conversation_id": result.OriginatorConversationID,
        "conversation_id": result.ConversationID,
        "transaction_id": result.TransactionID,
        "result_type": result.ResultType,
        "result_code": int(result.ResultCode) if str(result.ResultCode or "").lstrip("-").isdigit() else None,
        "result_desc": result.ResultDesc,
        "utility_account_balance": utility,
        "working_account_balance": working,
        "completed_at": completed_at,
    }
    stmt = insert(MpesaBalance).values(**values)
    if result.OriginatorConversationID:
        updates = {key: stmt.excluded[key] for key in values if key not in {"tenant_id", "originator_conversation_id"}}
        # Keep figures from an earlier write when this callback omits them
        for key in ("utility_account_balance", "working_account_balance"):
            if values[key] is None:
                updates.pop(key)
        stmt = stmt.on_conflict_do_update(
            index_elements=[MpesaBalance.originator_conversation_id],
            set_=updates,
        )
    stmt = stmt.returning(MpesaBalance.id)
    return (await db.execute(stmt)).scalar_one_or_none()


def _apply_success(loan: Loan, payout: LoanPayout | None, params: B2CResultParameters, receipt: str | None) -> None:
    if loan.status == LoanStatus.APPROVED.value:
        loan.status = LoanStatus.DISBURSED.value
    if loan.disbursed_at is None:
        loan.disbursed_at = datetime.now(timezone.utc)
    if payout is not None and payout.status in {PayoutStatus.PENDING.value, PayoutStatus.FAILED.value}:
        payout.status = PayoutStatus.DISBURSED.value
    if payout is not None and receipt:
        payout.transaction_id = receipt


def _apply_failure(loan: Loan, payout: LoanPayout | None) -> None:
    # Money never left; put the loan back in the queue for another attempt
    if loan.status == LoanStatus.DISBURSED.value and as_decimal(loan.repaid_amount or 0) == 0:
        loan.status = LoanStatus.APPROVED.value
        loan.disbursed_at = None
    if payout is not None and payout.status in {PayoutStatus.PENDING.value, PayoutStatus.DISBURSED.value}:
        if as_decimal(payout.amount_repaid or 0) == 0:
            payout.status = PayoutStatus.FAILED.value


async def handle_b2c_result(db: AsyncSession, body: dict[str, Any]) -> str:
    result = ResultCallback.model_validate(body).Result
    loan = await _find_loan(db, result)
    if loan is None:
        logger.warning(
            "B2C result for unknown loan originator_conversation_id=%s conversation_id=%s",
            result.OriginatorConversationID,
            result.ConversationID,
        )
        return LOAN_NOT_FOUND
    if loan.mpesa_status in TERMINAL_GATEWAY_STATUSES:
        logger.info("Duplicate B2C result for loan %s ignored", loan.id)
        return ALREADY_PROCESSED

    params = parse_b2c_parameters(result)
    gateway_status = GatewayStatus.SUCCESS if result.succeeded else GatewayStatus.FAILED
    payout = await _latest_payout(db, loan)
    loan.mpesa_status = gateway_status.value
    if gateway_status == GatewayStatus.SUCCESS:
        _apply_success(loan, payout, params, params.receipt_number or result.TransactionID)
    else:
        _apply_failure(loan, payout)
    db.add(loan)
    if payout is not None:
        db.add(payout)

    await _upsert_snapshot(
        db,
        loan.tenant_id,
        result,
        utility=params.utility_account_balance,
        working=params.working_account_balance,
        completed_at=parse_gateway_timestamp(params.completed_at),
    )
    record_audit_event(
        db,
        loan.tenant_id,
        B2CResultReceived(
            loan_id=loan.id,
            status=gateway_status.value,
            result_code=str(result.ResultCode) if result.ResultCode is not None else None,
            result_desc=result.ResultDesc,
            originator_conversation_id=result.OriginatorConversationID,
            conversation_id=result.ConversationID,
            transaction_id=result.TransactionID,
            transaction_amount=params.transaction_amount,
            receipt_number=params.receipt_number,
            receiver_name=params.receiver_name,
            completed_at=params.completed_at,
        ),
    )
    await db.commit()
    logger.info("B2C result for loan %s recorded as %s", loan.id, gateway_status.value)
    return f"Result processed: {gateway_status.value}"


async def handle_b2c_timeout(db: AsyncSession, body: dict[str, Any]) -> str:
    result = ResultCallback.model_validate(body).Result
    loan = await _find_loan(db, result)
    if loan is None:
        logger.warning("B2C timeout for unknown loan originator_conversation_id=%s", result.OriginatorConversationID)
        return LOAN_NOT_FOUND
    if loan.mpesa_status in TERMINAL_GATEWAY_STATUSES:
        return ALREADY_PROCESSED

    loan.mpesa_status = GatewayStatus.TIMEOUT.value
    db.add(loan)
    record_audit_event(
        db,
        loan.tenant_id,
        B2CTimeoutReceived(
            loan_id=loan.id,
            originator_conversation_id=result.OriginatorConversationID,
            conversation_id=result.ConversationID,
            result_desc=result.ResultDesc,
        ),
    )
    await db.commit()
    logger.warning("B2C timeout recorded for loan %s", loan.id)
    return "Timeout recorded"


async def _tenant_for_balance(db: AsyncSession, result: CallbackResult, tenant_id: int | None) -> int | None:
    if tenant_id is not None:
        return tenant_id
    if not result.OriginatorConversationID:
        return None
    stmt = select(MpesaBalance).where(
        MpesaBalance.originator_conversation_id == result.OriginatorConversationID
    )
    existing = (await db.execute(stmt)).scalar_one_or_none()
    return existing.tenant_id if existing is not None else None


async def handle_account_balance(
    db: AsyncSession, body: dict[str, Any], *, tenant_id: int | None = None
) -> str:
    result = ResultCallback.model_validate(body).Result
    resolved_tenant = await _tenant_for_balance(db, result, tenant_id)
    if resolved_tenant is None:
        logger.warning("Account balance result without a resolvable tenant; ignored")
        return "Tenant could not be resolved"

    params = result.parameters()
    balances = parse_account_balance(params.get("AccountBalance"))
    balances.completed_at = parse_gateway_timestamp(params.get("BOCompletedTime"))
    if not result.succeeded:
        logger.warning("Account balance query failed: %s", result.ResultDesc)

    balance_id = await _upsert_snapshot(
        db,
        resolved_tenant,
        result,
        utility=balances.utility_account,
        working=balances.working_account,
        completed_at=balances.completed_at,
    )
    if balance_id is not None:
        record_audit_event(
            db,
            resolved_tenant,
            AccountBalanceUpdated(
                balance_id=balance_id,
                utility_account_balance=balances.utility_account,
                working_account_balance=balances.working_account,
            ),
        )
    await db.commit()
    return "Balance recorded"


async def handle_account_balance_timeout(body: dict[str, Any]) -> str:
    result = ResultCallback.model_validate(body).Result
    logger.warning(
        "Account balance query timed out originator_conversation_id=%s", result.OriginatorConversationID
    )
    return "Timeout acknowledged"
