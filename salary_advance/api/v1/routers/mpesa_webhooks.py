"""Inbound M-Pesa callbacks.

Every route answers 200 with the gateway's own ``{ResultCode, ResultDesc}``
shape whatever happens inside; the gateway retries anything else, which
would replay the processing.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.api import deps
from salary_advance.core.context import set_tenant_id
from salary_advance.core.limiter import limiter
from salary_advance.schemas.mpesa import C2BConfirmation, GatewayAck
from salary_advance.services import c2b_intake, gateway_results

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mpesa", tags=["mpesa-webhooks"])


async def _acknowledge(
    request: Request,
    db: AsyncSession | None,
    label: str,
    handler: Callable[[dict], Awaitable[str]],
) -> GatewayAck:
    try:
        body = await request.json()
        if not isinstance(body, dict):
            raise ValueError("Callback body must be a JSON object")
        message = await handler(body)
    except Exception:
        logger.exception("Failed to process M-Pesa %s callback", label)
        if db is not None:
            await db.rollback()
        return GatewayAck(ResultDesc="Received")
    return GatewayAck(ResultDesc=message)


@router.post("/b2c-result", response_model=GatewayAck, summary="B2C payment result callback")
@limiter.exempt
async def b2c_result(request: Request, db: AsyncSession = Depends(deps.get_db_session)) -> GatewayAck:
    return await _acknowledge(
        request, db, "B2C result", lambda body: gateway_results.handle_b2c_result(db, body)
    )


@router.post("/b2c-timeout", response_model=GatewayAck, summary="B2C queue timeout callback")
@limiter.exempt
async def b2c_timeout(request: Request, db: AsyncSession = Depends(deps.get_db_session)) -> GatewayAck:
    return await _acknowledge(
        request, db, "B2C timeout", lambda body: gateway_results.handle_b2c_timeout(db, body)
    )


@router.post(
    "/{tenant_id}/accountbalance-result",
    response_model=GatewayAck,
    summary="Account balance result callback",
)
@limiter.exempt
async def account_balance_result(
    tenant_id: int,
    request: Request,
    db: AsyncSession = Depends(deps.get_db_session),
) -> GatewayAck:
    set_tenant_id(tenant_id)
    return await _acknowledge(
        request,
        db,
        "account balance",
        lambda body: gateway_results.handle_account_balance(db, body, tenant_id=tenant_id),
    )


@router.post("/accountbalance-timeout", response_model=GatewayAck, summary="Account balance timeout callback")
@limiter.exempt
async def account_balance_timeout(request: Request) -> GatewayAck:
    return await _acknowledge(
        request, None, "account balance timeout", gateway_results.handle_account_balance_timeout
    )


@router.post(
    "/{tenant_id}/c2b-confirmation",
    response_model=GatewayAck,
    summary="C2B payment confirmation",
)
@limiter.exempt
async def c2b_confirmation(
    tenant_id: int,
    request: Request,
    db: AsyncSession = Depends(deps.get_db_session),
) -> GatewayAck:
    set_tenant_id(tenant_id)

    async def _record(body: dict) -> str:
        confirmation = C2BConfirmation.model_validate(body)
        created = await c2b_intake.record_c2b_confirmation(db, tenant_id, confirmation)
        return "Accepted" if created else "Duplicate ignored"

    return await _acknowledge(request, db, "C2B confirmation", _record)
