from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.api import deps
from salary_advance.core.limiter import limiter, loan_apply_limit
from salary_advance.core.roles import Caller
from salary_advance.schemas.loan import (
    BorrowingCapacityDTO,
    DisbursementOutcomeDTO,
    LoanActionResponse,
    LoanApplyRequest,
    LoanDTO,
    LoanListResponse,
    LoanPayoutDTO,
    LoanRejectRequest,
)
from salary_advance.services import disbursement, loan_capacity, loan_lifecycle

router = APIRouter(prefix="/loans", tags=["loans"])


def _outcome_dto(outcome: disbursement.DisbursementOutcome | None) -> DisbursementOutcomeDTO | None:
    if outcome is None:
        return None
    return DisbursementOutcomeDTO(
        disbursed=outcome.disbursed,
        reason=outcome.reason,
        payout=LoanPayoutDTO.model_validate(outcome.payout) if outcome.payout is not None else None,
    )


def _action_response(result: loan_lifecycle.LoanActionResult) -> LoanActionResponse:
    return LoanActionResponse(
        message=result.message,
        loan=LoanDTO.model_validate(result.loan),
        disbursement=_outcome_dto(result.disbursement),
    )


@router.post(
    "",
    response_model=LoanActionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Apply for a salary advance",
)
@limiter.limit(loan_apply_limit)
async def apply_for_loan(
    request: Request,
    payload: LoanApplyRequest,
    caller: Caller = Depends(deps.get_caller),
    db: AsyncSession = Depends(deps.get_db_session),
) -> LoanActionResponse:
    result = await loan_lifecycle.apply_for_loan(db, caller, payload.amount)
    return _action_response(result)


@router.get("/pending", response_model=LoanListResponse, summary="List pending loans in scope")
async def list_pending_loans(
    caller: Caller = Depends(deps.get_caller),
    db: AsyncSession = Depends(deps.get_db_session),
) -> LoanListResponse:
    loans = await loan_lifecycle.list_pending_loans(db, caller)
    return LoanListResponse(items=[LoanDTO.model_validate(loan) for loan in loans], total=len(loans))


@router.get("/capacity", response_model=BorrowingCapacityDTO, summary="Current monthly borrowing headroom")
async def get_borrowing_capacity(
    caller: Caller = Depends(deps.get_caller),
    db: AsyncSession = Depends(deps.get_db_session),
) -> BorrowingCapacityDTO:
    capacity = await loan_capacity.capacity_for_caller(db, caller)
    return BorrowingCapacityDTO(
        can_borrow=capacity.can_borrow,
        monthly_cap=capacity.monthly_cap,
        taken_so_far=capacity.taken_so_far,
        remaining=capacity.remaining,
    )


@router.post("/{loan_id}/approve", response_model=LoanActionResponse, summary="Approve a pending loan")
async def approve_loan(
    loan_id: int,
    caller: Caller = Depends(deps.get_caller),
    db: AsyncSession = Depends(deps.get_db_session),
) -> LoanActionResponse:
    result = await loan_lifecycle.approve_loan(db, caller, loan_id)
    return _action_response(result)


@router.post("/{loan_id}/reject", response_model=LoanActionResponse, summary="Reject a pending loan")
async def reject_loan(
    loan_id: int,
    payload: LoanRejectRequest | None = None,
    caller: Caller = Depends(deps.get_caller),
    db: AsyncSession = Depends(deps.get_db_session),
) -> LoanActionResponse:
    result = await loan_lifecycle.reject_loan(
        db, caller, loan_id, reason=payload.reason if payload else None
    )
    return _action_response(result)


@router.post(
    "/{loan_id}/disburse",
    response_model=LoanActionResponse,
    summary="Retry disbursement of an approved loan",
)
async def disburse_loan(
    loan_id: int,
    caller: Caller = Depends(deps.get_caller),
    db: AsyncSession = Depends(deps.get_db_session),
) -> LoanActionResponse:
    loan, outcome = await disbursement.disburse_approved_loan(db, caller, loan_id)
    message = "Disbursement initiated" if outcome.disbursed else "Disbursement failed"
    return LoanActionResponse(
        message=message,
        loan=LoanDTO.model_validate(loan),
        disbursement=_outcome_dto(outcome),
    )
