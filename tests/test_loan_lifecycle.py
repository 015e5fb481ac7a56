from decimal import Decimal

import pytest

from conftest import (
    NOW,
    FakeResult,
    entity_handler,
    make_caller,
    make_employee,
    make_loan,
    make_organization,
    make_tenant,
    make_user,
    taken_handler,
)
from salary_advance.core.errors import AuthorizationError, CapacityError, ConflictError, NotFoundError, ValidationError
from salary_advance.core.roles import Role
from salary_advance.models.audit_log import AuditLog
from salary_advance.models.employee import Employee
from salary_advance.models.loan import Loan
from salary_advance.models.loan_payout import LoanPayout
from salary_advance.models.organization import Organization
from salary_advance.models.tenant import Tenant
from salary_advance.models.user import User
from salary_advance.services import loan_lifecycle


def _seed_borrower(fake_db, organization, taken):
    employee = make_employee()
    fake_db.on_execute(entity_handler(Employee, FakeResult(scalar=employee)))
    fake_db.on_execute(taken_handler(taken))
    fake_db.on_get(Organization, organization.id, organization)
    fake_db.on_get(User, 30, make_user())
    fake_db.on_get(Tenant, 1, make_tenant())
    return employee


def _actions(fake_db) -> list[str]:
    return [entry.action for entry in fake_db.added_of(AuditLog)]


@pytest.mark.asyncio
async def test_auto_approved_loan_is_disbursed_then_capacity_blocks_next(fake_db, gateway, sent_sms):
    organization = make_organization(approval_steps=0)
    taken = {"taken": Decimal("0.00")}
    _seed_borrower(fake_db, organization, taken)

    result = await loan_lifecycle.apply_for_loan(fake_db, make_caller(Role.EMPLOYEE), 20000, now=NOW)

    loan = result.loan
    assert loan.status == "DISBURSED"
    assert loan.amount == Decimal("20000.00")
    assert loan.total_repayable == Decimal("22000.00")
    assert loan.mpesa_transaction_id == "AG_20260315_0001"
    assert result.message == "Loan auto-approved and disbursement initiated"
    assert len(gateway.calls) == 1
    assert gateway.calls[0]["phone_number"] == "254722123456"
    (payout,) = fake_db.added_of(LoanPayout)
    assert payout.status == "DISBURSED"
    assert _actions(fake_db) == ["CREATE", "AUTO_APPROVE", "DISBURSE"]
    assert "auto-approved" in sent_sms[-1][2]

    taken["taken"] = Decimal("20000.00")
    with pytest.raises(CapacityError) as excinfo:
        await loan_lifecycle.apply_for_loan(fake_db, make_caller(Role.EMPLOYEE), 10000, now=NOW)
    assert excinfo.value.details["monthly_cap"] == "25000.00"
    assert len(fake_db.added_of(Loan)) == 1
    assert len(gateway.calls) == 1


@pytest.mark.asyncio
async def test_loan_needing_review_stays_pending_and_notifies_reviewers(fake_db, gateway, sent_sms):
    organization = make_organization(approval_steps=1)
    _seed_borrower(fake_db, organization, {"taken": Decimal("0.00")})
    reviewer = make_user(id=31, first_name="Otieno", phone_number="0711000111", roles=[Role.ORG_ADMIN.value])
    fake_db.on_execute(entity_handler(User, FakeResult(items=[reviewer])))

    result = await loan_lifecycle.apply_for_loan(fake_db, make_caller(Role.EMPLOYEE), 5000, now=NOW)

    assert result.loan.status == "PENDING"
    assert result.message == "Loan created and pending approval"
    assert gateway.calls == []
    assert fake_db.commits == 1
    recipients = [phone for _, phone, _ in sent_sms]
    assert recipients == ["0711000111", "0722123456"]


@pytest.mark.asyncio
async def test_application_rejections(fake_db):
    with pytest.raises(AuthorizationError):
        await loan_lifecycle.apply_for_loan(fake_db, make_caller(Role.ORG_ADMIN), 1000)
    with pytest.raises(ValidationError):
        await loan_lifecycle.apply_for_loan(fake_db, make_caller(Role.EMPLOYEE), 0)
    with pytest.raises(NotFoundError):
        await loan_lifecycle.apply_for_loan(fake_db, make_caller(Role.EMPLOYEE), 1000)


@pytest.mark.asyncio
async def test_inactive_organization_cannot_borrow(fake_db):
    _seed_borrower(fake_db, make_organization(status="SUSPENDED"), {"taken": Decimal("0.00")})
    with pytest.raises(AuthorizationError) as excinfo:
        await loan_lifecycle.apply_for_loan(fake_db, make_caller(Role.EMPLOYEE), 1000, now=NOW)
    assert excinfo.value.code == "organization_inactive"


@pytest.mark.asyncio
async def test_two_step_approval_rejects_repeat_approver(fake_db, gateway, sent_sms):
    loan = make_loan(amount="8000.00")
    fake_db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))
    fake_db.on_get(Organization, 10, make_organization(approval_steps=2))
    fake_db.on_get(User, 30, make_user())
    fake_db.on_get(Tenant, 1, make_tenant())
    admin_a = make_caller(Role.ORG_ADMIN, user_id=31)
    admin_b = make_caller(Role.ORG_ADMIN, user_id=32)

    first = await loan_lifecycle.approve_loan(fake_db, admin_a, loan.id)
    assert first.message == "Approval 1 of 2 recorded"
    assert loan.status == "PENDING"
    assert loan.approval_count == 1
    assert loan.first_approver_id == 31

    with pytest.raises(ConflictError) as excinfo:
        await loan_lifecycle.approve_loan(fake_db, admin_a, loan.id)
    assert excinfo.value.code == "duplicate_approval"
    assert loan.approval_count == 1
    assert loan.second_approver_id is None
    assert gateway.calls == []

    final = await loan_lifecycle.approve_loan(fake_db, admin_b, loan.id)
    assert final.message == "Loan approved and disbursement initiated"
    assert loan.approval_count == 2
    assert loan.second_approver_id == 32
    assert loan.status == "DISBURSED"
    assert len(gateway.calls) == 1
    (payout,) = fake_db.added_of(LoanPayout)
    assert payout.approved_by_id == 32


@pytest.mark.asyncio
async def test_single_step_approval_is_final(fake_db, gateway, sent_sms):
    loan = make_loan()
    fake_db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))
    fake_db.on_get(Organization, 10, make_organization(approval_steps=1))
    fake_db.on_get(User, 30, make_user())

    result = await loan_lifecycle.approve_loan(fake_db, make_caller(Role.ADMIN, user_id=31), loan.id)

    assert loan.status == "DISBURSED"
    assert loan.first_approver_id == 31
    assert result.disbursement.disbursed


@pytest.mark.asyncio
async def test_approval_requires_pending_status(fake_db, gateway):
    loan = make_loan(status="REJECTED")
    fake_db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))
    with pytest.raises(ConflictError) as excinfo:
        await loan_lifecycle.approve_loan(fake_db, make_caller(Role.ADMIN, user_id=31), loan.id)
    assert excinfo.value.code == "invalid_status"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_org_admin_cannot_touch_other_organizations_loans(fake_db):
    loan = make_loan(organization_id=11)
    fake_db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))
    with pytest.raises(AuthorizationError):
        await loan_lifecycle.approve_loan(fake_db, make_caller(Role.ORG_ADMIN, user_id=31), loan.id)
    with pytest.raises(AuthorizationError):
        await loan_lifecycle.reject_loan(fake_db, make_caller(Role.ORG_ADMIN, user_id=31), loan.id)
    assert loan.status == "PENDING"


@pytest.mark.asyncio
async def test_employee_cannot_approve(fake_db):
    with pytest.raises(AuthorizationError):
        await loan_lifecycle.approve_loan(fake_db, make_caller(Role.EMPLOYEE), 40)
    assert fake_db.executed == []


@pytest.mark.asyncio
async def test_missing_loan_is_not_found(fake_db):
    with pytest.raises(NotFoundError):
        await loan_lifecycle.reject_loan(fake_db, make_caller(Role.ADMIN), 999)


@pytest.mark.asyncio
async def test_reject_restores_capacity_and_notifies(fake_db, sent_sms):
    loan = make_loan(amount="6000.00")
    fake_db.on_execute(taken_handler({"taken": Decimal("4000.00")}))
    fake_db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))
    fake_db.on_get(Employee, 20, make_employee())
    fake_db.on_get(Organization, 10, make_organization())
    fake_db.on_get(User, 30, make_user())
    fake_db.on_get(Tenant, 1, make_tenant())

    result = await loan_lifecycle.reject_loan(
        fake_db, make_caller(Role.ADMIN, user_id=31), loan.id, reason="Incomplete documents"
    )

    assert result.message == "Loan rejected successfully"
    assert loan.status == "REJECTED"
    assert fake_db.commits == 1
    (entry,) = fake_db.added_of(AuditLog)
    assert entry.action == "REJECT"
    assert entry.details["reason"] == "Incomplete documents"
    assert entry.details["remaining"] == "21000.00"
    assert "rejected" in sent_sms[0][2]


@pytest.mark.asyncio
async def test_rejecting_twice_conflicts(fake_db):
    loan = make_loan(status="REJECTED")
    fake_db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))
    with pytest.raises(ConflictError):
        await loan_lifecycle.reject_loan(fake_db, make_caller(Role.ADMIN), loan.id)


@pytest.mark.asyncio
async def test_pending_listing_scopes_by_role(fake_db):
    fake_db.on_execute(entity_handler(Loan, FakeResult(items=[make_loan()])))

    await loan_lifecycle.list_pending_loans(fake_db, make_caller(Role.ADMIN))
    await loan_lifecycle.list_pending_loans(fake_db, make_caller(Role.ORG_ADMIN))
    loans = await loan_lifecycle.list_pending_loans(fake_db, make_caller(Role.EMPLOYEE))

    admin_sql, org_sql, own_sql = (str(stmt) for stmt in fake_db.executed)
    assert "organization_id" not in admin_sql.split("WHERE", 1)[1]
    assert "loans.organization_id" in org_sql.split("WHERE", 1)[1]
    assert "loans.user_id" in own_sql.split("WHERE", 1)[1]
    assert [loan.id for loan in loans] == [40]


@pytest.mark.asyncio
async def test_rejection_stands_when_notification_fails(fake_db, monkeypatch):
    loan = make_loan(amount="6000.00")
    fake_db.on_execute(taken_handler({"taken": Decimal("0.00")}))
    fake_db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))
    fake_db.on_get(Employee, 20, make_employee())
    fake_db.on_get(Organization, 10, make_organization())
    fake_db.on_get(User, 30, make_user())

    async def _tenant_lookup_fails(db, tenant_id):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(loan_lifecycle.notifications, "tenant_name", _tenant_lookup_fails)

    result = await loan_lifecycle.reject_loan(fake_db, make_caller(Role.ADMIN, user_id=31), loan.id)

    assert result.message == "Loan rejected successfully"
    assert loan.status == "REJECTED"
    assert fake_db.commits == 1
