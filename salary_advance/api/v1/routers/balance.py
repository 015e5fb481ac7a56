from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.api import deps
from salary_advance.core.errors import NotFoundError, UpstreamGatewayError
from salary_advance.core.roles import Caller, Role, has_any_role, require
from salary_advance.schemas.mpesa import BalanceSnapshotDTO
from salary_advance.services import mpesa_client, mpesa_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/balance", tags=["mpesa"])

ADMIN_ROLES = {Role.ADMIN, Role.ORG_ADMIN}


@router.get("", response_model=BalanceSnapshotDTO, summary="Latest reported M-Pesa account balance")
async def get_latest_balance(
    caller: Caller = Depends(deps.get_caller),
    db: AsyncSession = Depends(deps.get_db_session),
) -> BalanceSnapshotDTO:
    require(has_any_role(caller, ADMIN_ROLES), "Only administrators can view the account balance")
    snapshot = await mpesa_config.latest_balance(db, caller.tenant_id)
    if snapshot is None:
        raise NotFoundError("No account balance has been reported yet")
    return BalanceSnapshotDTO.model_validate(snapshot)


@router.post(
    "/refresh",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ask the gateway to report the current account balance",
)
async def refresh_balance(
    caller: Caller = Depends(deps.get_caller),
    db: AsyncSession = Depends(deps.get_db_session),
) -> dict:
    require(has_any_role(caller, {Role.ADMIN}), "Only tenant administrators can query the account balance")
    credentials = await mpesa_config.load_credentials(db, caller.tenant_id)
    if credentials is None:
        raise NotFoundError("M-Pesa configuration not found")
    result = await mpesa_client.query_account_balance(credentials)
    if not result.accepted:
        logger.error("Account balance query rejected: %s", result.description)
        raise UpstreamGatewayError(
            result.description or "Account balance query failed",
            details={"originator_conversation_id": result.originator_conversation_id},
        )
    return {
        "message": "Balance query accepted; the result will arrive by callback",
        "originator_conversation_id": result.originator_conversation_id,
        "conversation_id": result.conversation_id,
    }
