from decimal import Decimal

import pytest

from conftest import (
    FakeResult,
    entity_handler,
    make_caller,
    make_loan,
    make_payout,
    make_tenant,
    make_user,
)
from salary_advance.core.errors import AuthorizationError, ConflictError
from salary_advance.core.roles import Role
from salary_advance.models.audit_log import AuditLog
from salary_advance.models.loan import Loan
from salary_advance.models.loan_payout import LoanPayout
from salary_advance.models.mpesa_balance import MpesaBalance
from salary_advance.models.tenant import Tenant
from salary_advance.models.user import User
from salary_advance.services import disbursement, mpesa_client


def _approved_loan(**overrides):
    return make_loan(status="APPROVED", approval_count=1, first_approver_id=31, **overrides)


@pytest.mark.asyncio
async def test_malformed_gateway_response_fails_payout_but_keeps_loan_approved(fake_db, gateway, sent_sms):
    gateway.payload = {"requestId": "abc", "unexpected": True}
    loan = _approved_loan()
    fake_db.on_get(Tenant, 1, make_tenant())

    outcome = await disbursement.disburse_loan(fake_db, loan, borrower=make_user(), approver_id=31)

    assert not outcome.disbursed
    assert outcome.reason == "Unrecognized gateway response"
    assert loan.status == "APPROVED"
    assert loan.disbursed_at is None
    assert outcome.payout.status == "FAILED"
    (entry,) = fake_db.added_of(AuditLog)
    assert entry.action == "DISBURSEMENT_FAILED"
    assert entry.details["reason"] == "Unrecognized gateway response"
    assert entry.details["originator_conversation_id"] == loan.originator_conversation_id
    assert fake_db.added_of(MpesaBalance) == []
    assert fake_db.commits == 2
    (sms,) = sent_sms
    assert sms[1] == "0722123456"
    assert "could not be disbursed due to an error" in sms[2]


@pytest.mark.asyncio
async def test_conversation_id_is_committed_before_gateway_call(fake_db, gateway, monkeypatch):
    loan = _approved_loan()
    commits_at_call = []

    async def _spy(*args, **kwargs):
        commits_at_call.append(fake_db.commits)
        return await gateway.disburse(*args, **kwargs)

    monkeypatch.setattr(mpesa_client, "disburse", _spy)
    await disbursement.disburse_loan(fake_db, loan, borrower=make_user(), approver_id=31)

    assert commits_at_call == [1]
    assert gateway.calls[0]["originator_conversation_id"] == loan.originator_conversation_id
    assert loan.originator_conversation_id


@pytest.mark.asyncio
async def test_success_records_payout_snapshot_and_audit(fake_db, gateway):
    gateway.payload["B2CUtilityAccountAvailableFunds"] = "90000.00"
    loan = _approved_loan()

    outcome = await disbursement.disburse_loan(fake_db, loan, borrower=make_user(), approver_id=31)

    assert outcome.disbursed
    assert loan.status == "DISBURSED"
    assert loan.disbursed_at is not None
    assert loan.mpesa_status == "PENDING"
    assert outcome.payout.status == "DISBURSED"
    assert outcome.payout.transaction_id == "AG_20260315_0001"
    (snapshot,) = fake_db.added_of(MpesaBalance)
    assert snapshot.originator_conversation_id == loan.originator_conversation_id
    assert snapshot.utility_account_balance == Decimal("90000.00")
    assert [entry.action for entry in fake_db.added_of(AuditLog)] == ["DISBURSE"]


@pytest.mark.asyncio
async def test_insufficient_balance_skips_gateway(fake_db, gateway, sent_sms):
    snapshot = MpesaBalance(id=5, tenant_id=1, utility_account_balance=Decimal("500.00"))
    fake_db.on_execute(entity_handler(MpesaBalance, FakeResult(scalar=snapshot)))
    loan = _approved_loan()

    outcome = await disbursement.disburse_loan(fake_db, loan, borrower=make_user(), approver_id=31)

    assert outcome.reason == disbursement.INSUFFICIENT_FUNDS
    assert gateway.calls == []
    assert loan.status == "APPROVED"
    assert outcome.payout.status == "FAILED"
    assert "insufficient funds" in sent_sms[0][2]


@pytest.mark.asyncio
async def test_invalid_borrower_phone_fails_without_gateway_call(fake_db, gateway, sent_sms):
    loan = _approved_loan()
    outcome = await disbursement.disburse_loan(
        fake_db, loan, borrower=make_user(phone_number="12345"), approver_id=31
    )
    assert not outcome.disbursed
    assert "Invalid phone number" in outcome.reason
    assert gateway.calls == []
    assert loan.originator_conversation_id is None


@pytest.mark.asyncio
async def test_manual_disburse_retries_approved_loan(fake_db, gateway):
    loan = _approved_loan()
    fake_db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))
    fake_db.on_get(User, 30, make_user())

    returned, outcome = await disbursement.disburse_approved_loan(
        fake_db, make_caller(Role.ADMIN, user_id=31), loan.id
    )

    assert returned is loan
    assert outcome.disbursed
    assert loan.status == "DISBURSED"


@pytest.mark.asyncio
async def test_manual_disburse_conflicts(fake_db, gateway):
    disbursed = make_loan(status="DISBURSED")
    fake_db.on_execute(entity_handler(Loan, FakeResult(scalar=disbursed)))
    with pytest.raises(ConflictError) as excinfo:
        await disbursement.disburse_approved_loan(fake_db, make_caller(Role.ADMIN), disbursed.id)
    assert excinfo.value.code == "invalid_status"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_manual_disburse_refuses_while_attempt_in_flight(fake_db, gateway):
    loan = _approved_loan()
    fake_db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))
    fake_db.on_execute(
        entity_handler(LoanPayout, FakeResult(items=[make_payout(loan=loan, status="PENDING")]))
    )
    with pytest.raises(ConflictError) as excinfo:
        await disbursement.disburse_approved_loan(fake_db, make_caller(Role.ADMIN), loan.id)
    assert excinfo.value.code == "disbursement_in_progress"


@pytest.mark.asyncio
async def test_employee_cannot_disburse(fake_db):
    with pytest.raises(AuthorizationError):
        await disbursement.disburse_approved_loan(fake_db, make_caller(Role.EMPLOYEE), 40)
