from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class PaymentMethod(str, Enum):
    MPESA = "MPESA"
    BANK = "BANK"
    CASH = "CASH"
    CHEQUE = "CHEQUE"


class PayerType(str, Enum):
    INDIVIDUAL = "INDIVIDUAL"
    ORGANIZATION = "ORGANIZATION"


class OrganizationPaymentRequest(BaseModel):
    organization_id: int = Field(gt=0)
    total_amount: Decimal = Field(gt=0, decimal_places=2)
    method: PaymentMethod = PaymentMethod.MPESA
    reference: str | None = Field(default=None, max_length=128)
    remarks: str | None = Field(default=None, max_length=500)


class AllocationLineDTO(BaseModel):
    loan_id: int
    payout_id: int
    amount_settled: Decimal
    payout_status: str
    loan_status: str
    outstanding_after: Decimal


class AllocationResultDTO(BaseModel):
    payment_batch_id: int | None = None
    total_amount: Decimal
    allocated: Decimal
    surplus: Decimal
    lines: list[AllocationLineDTO] = Field(default_factory=list)


class ReconciliationRunDTO(BaseModel):
    started_at: datetime
    examined: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
