"""Gateway callback payloads.

The gateway posts PascalCase JSON; models keep those names so they validate the
raw body directly. Unknown keys are tolerated because the gateway adds fields
without notice.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ResultParameterItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    Key: str
    Value: Any = None


class ResultParameterList(BaseModel):
    model_config = ConfigDict(extra="allow")

    ResultParameter: list[ResultParameterItem] = Field(default_factory=list)

    @field_validator("ResultParameter", mode="before")
    @classmethod
    def _single_item_as_list(cls, value):
        # A lone parameter arrives as an object rather than a one-element list
        if isinstance(value, dict):
            return [value]
        return value or []


class CallbackResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    ResultType: int | None = None
    ResultCode: int | str | None = None
    ResultDesc: str | None = None
    OriginatorConversationID: str | None = None
    ConversationID: str | None = None
    TransactionID: str | None = None
    ResultParameters: ResultParameterList | None = None

    @property
    def succeeded(self) -> bool:
        return str(self.ResultCode) == "0"

    def parameters(self) -> dict[str, Any]:
        if not self.ResultParameters:
            return {}
        return {item.Key: item.Value for item in self.ResultParameters.ResultParameter}


class ResultCallback(BaseModel):
    model_config = ConfigDict(extra="allow")

    Result: CallbackResult


class C2BConfirmation(BaseModel):
    model_config = ConfigDict(extra="allow")

    TransID: str = Field(min_length=1)
    TransTime: str | None = None
    TransAmount: Decimal = Field(gt=0)
    BillRefNumber: str | None = None
    MSISDN: str | None = None
    FirstName: str | None = None


class B2CResultParameters(BaseModel):
    """Typed view of the result parameters echoed on a disbursement result."""

    transaction_amount: Decimal | None = None
    receipt_number: str | None = None
    receiver_name: str | None = None
    completed_at: str | None = None
    utility_account_balance: Decimal | None = None
    working_account_balance: Decimal | None = None


class AccountBalances(BaseModel):
    working_account: Decimal | None = None
    utility_account: Decimal | None = None
    completed_at: datetime | None = None


class BalanceSnapshotDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    utility_account_balance: Decimal | None = None
    working_account_balance: Decimal | None = None
    result_desc: str | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


class GatewayAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"
