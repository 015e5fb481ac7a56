"""One typed event per audit action.

Every event serializes through ``model_dump(mode="json")`` so the stored
``details`` column has a single, queryable shape per action.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, ClassVar

from pydantic import BaseModel, Field


class AuditEvent(BaseModel):
    action: ClassVar[str]
    resource_type: ClassVar[str] = "LOAN"
    resource_key: ClassVar[str] = "loan_id"

    def action_name(self) -> str:
        return self.action

    def resource_id(self) -> str:
        return str(getattr(self, self.resource_key))

    def details(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class LoanCreated(AuditEvent):
    action: ClassVar[str] = "CREATE"

    loan_id: int
    amount: Decimal
    status: str
    interest_rate: Decimal
    transaction_charge: Decimal
    total_repayable: Decimal
    duration_days: int


class LoanAutoApproved(AuditEvent):
    action: ClassVar[str] = "AUTO_APPROVE"

    loan_id: int
    amount: Decimal
    message: str


class LoanApprovalRecorded(AuditEvent):
    action: ClassVar[str] = "APPROVE"

    loan_id: int
    approval_count: int
    approval_steps: int
    status: str


class LoanRejected(AuditEvent):
    action: ClassVar[str] = "REJECT"

    loan_id: int
    reason: str | None = None
    monthly_cap: Decimal
    taken_so_far: Decimal
    remaining: Decimal


class DisbursementSucceeded(AuditEvent):
    action: ClassVar[str] = "DISBURSE"

    loan_id: int
    payout_id: int
    amount: Decimal
    originator_conversation_id: str
    conversation_id: str | None = None
    response_description: str | None = None


class DisbursementFailed(AuditEvent):
    action: ClassVar[str] = "DISBURSEMENT_FAILED"

    loan_id: int
    payout_id: int | None = None
    amount: Decimal
    reason: str
    originator_conversation_id: str | None = None
    gateway_response: dict[str, Any] = Field(default_factory=dict)


class B2CResultReceived(AuditEvent):
    resource_type: ClassVar[str] = "MPESA_TRANSACTION"

    loan_id: int
    status: str
    result_code: str | None = None
    result_desc: str | None = None
    originator_conversation_id: str | None = None
    conversation_id: str | None = None
    transaction_id: str | None = None
    transaction_amount: Decimal | None = None
    receipt_number: str | None = None
    receiver_name: str | None = None
    completed_at: str | None = None

    def action_name(self) -> str:
        return f"MPESA_B2C_RESULT_{self.status}"


class B2CTimeoutReceived(AuditEvent):
    action: ClassVar[str] = "MPESA_B2C_TIMEOUT"
    resource_type: ClassVar[str] = "MPESA_TRANSACTION"

    loan_id: int
    originator_conversation_id: str | None = None
    conversation_id: str | None = None
    result_desc: str | None = None


class AccountBalanceUpdated(AuditEvent):
    action: ClassVar[str] = "MPESA_ACCOUNT_BALANCE"
    resource_type: ClassVar[str] = "MPESA_BALANCE"
    resource_key: ClassVar[str] = "balance_id"

    balance_id: int
    utility_account_balance: Decimal | None = None
    working_account_balance: Decimal | None = None


class RepaymentAllocated(AuditEvent):
    action: ClassVar[str] = "REPAYMENT"
    resource_type: ClassVar[str] = "PAYMENT_BATCH"
    resource_key: ClassVar[str] = "payment_batch_id"

    payment_batch_id: int
    reference: str
    payer_type: str
    total_amount: Decimal
    allocated: Decimal
    surplus: Decimal
    payout_ids: list[int] = Field(default_factory=list)


class OrganizationCredited(AuditEvent):
    action: ClassVar[str] = "ORGANIZATION_CREDIT"
    resource_type: ClassVar[str] = "ORGANIZATION"
    resource_key: ClassVar[str] = "organization_id"

    organization_id: int
    amount: Decimal
    credit_balance: Decimal
    reference: str
