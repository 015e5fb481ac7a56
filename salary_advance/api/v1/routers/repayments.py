from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.api import deps
from salary_advance.core.roles import Caller, Role, has_any_role, require
from salary_advance.schemas.repayment import (
    AllocationLineDTO,
    AllocationResultDTO,
    OrganizationPaymentRequest,
    ReconciliationRunDTO,
)
from salary_advance.services import repayments

router = APIRouter(prefix="/repayments", tags=["repayments"])


def _allocation_dto(result: repayments.AllocationResult) -> AllocationResultDTO:
    return AllocationResultDTO(
        payment_batch_id=result.batch.id,
        total_amount=result.total_amount,
        allocated=result.allocated,
        surplus=result.surplus,
        lines=[
            AllocationLineDTO(
                loan_id=line.loan_id,
                payout_id=line.payout_id,
                amount_settled=line.amount_settled,
                payout_status=line.payout_status,
                loan_status=line.loan_status,
                outstanding_after=line.outstanding_after,
            )
            for line in result.lines
        ],
    )


@router.post(
    "/organization",
    response_model=AllocationResultDTO,
    status_code=status.HTTP_201_CREATED,
    summary="Record a bulk repayment from an organization",
)
async def record_organization_payment(
    payload: OrganizationPaymentRequest,
    caller: Caller = Depends(deps.get_caller),
    db: AsyncSession = Depends(deps.get_db_session),
) -> AllocationResultDTO:
    result = await repayments.record_organization_payment(db, caller, payload)
    return _allocation_dto(result)


@router.post(
    "/reconcile",
    response_model=ReconciliationRunDTO,
    summary="Reconcile queued M-Pesa payments for the caller's tenant",
)
async def reconcile_payments(
    caller: Caller = Depends(deps.get_caller),
    db: AsyncSession = Depends(deps.get_db_session),
) -> ReconciliationRunDTO:
    require(has_any_role(caller, {Role.ADMIN}), "Only tenant administrators can run reconciliation")
    return await repayments.run_reconciliation(db, tenant_id=caller.tenant_id)
