from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class LoanStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DISBURSED = "DISBURSED"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    REPAID = "REPAID"
    REJECTED = "REJECTED"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    DISBURSED = "DISBURSED"
    FAILED = "FAILED"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    REPAID = "REPAID"


class InterestRateType(str, Enum):
    MONTHLY = "MONTHLY"
    DAILY = "DAILY"


class GatewayStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


TERMINAL_GATEWAY_STATUSES = frozenset({GatewayStatus.SUCCESS.value, GatewayStatus.FAILED.value})
OUTSTANDING_STATUSES = frozenset({LoanStatus.DISBURSED.value, LoanStatus.PARTIALLY_PAID.value})


class LoanApplyRequest(BaseModel):
    amount: Decimal = Field(gt=0, decimal_places=2)


class LoanRejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class LoanDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: int
    organization_id: int
    user_id: int
    amount: Decimal
    interest_rate_type: InterestRateType
    interest_rate: Decimal
    transaction_charge: Decimal
    total_repayable: Decimal
    due_date: datetime
    duration_days: int
    status: LoanStatus
    approval_count: int
    first_approver_id: int | None = None
    second_approver_id: int | None = None
    disbursed_at: datetime | None = None
    mpesa_transaction_id: str | None = None
    mpesa_status: str | None = None
    originator_conversation_id: str | None = None
    repaid_amount: Decimal
    created_at: datetime | None = None


class LoanPayoutDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    loan_id: int
    amount: Decimal
    method: str
    status: PayoutStatus
    approved_by_id: int | None = None
    transaction_id: str | None = None
    amount_repaid: Decimal


class DisbursementOutcomeDTO(BaseModel):
    disbursed: bool
    reason: str | None = None
    payout: LoanPayoutDTO | None = None


class LoanActionResponse(BaseModel):
    message: str
    loan: LoanDTO
    disbursement: DisbursementOutcomeDTO | None = None


class LoanListResponse(BaseModel):
    items: list[LoanDTO]
    total: int


class BorrowingCapacityDTO(BaseModel):
    can_borrow: bool
    monthly_cap: Decimal
    taken_so_far: Decimal
    remaining: Decimal
