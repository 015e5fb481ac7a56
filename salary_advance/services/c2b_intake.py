from __future__ import annotations

import logging

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.models.c2b_transaction import C2BTransaction
from salary_advance.schemas.mpesa import C2BConfirmation
from salary_advance.services.gateway_results import parse_gateway_timestamp
from salary_advance.services.loan_terms import money

logger = logging.getLogger(__name__)


async def record_c2b_confirmation(
    db: AsyncSession, tenant_id: int, confirmation: C2BConfirmation
) -> bool:
    """Queue an incoming payment for reconciliation. Redelivered TransIDs are ignored."""
    stmt = (
        insert(C2BTransaction)
        .values(
            tenant_id=tenant_id,
            trans_id=confirmation.TransID.strip(),
            trans_time=parse_gateway_timestamp(confirmation.TransTime),
            trans_amount=money(confirmation.TransAmount),
            bill_ref_number=(confirmation.BillRefNumber or "").strip() or None,
            msisdn=confirmation.MSISDN,
            first_name=confirmation.FirstName,
            processed=False,
        )
        .on_conflict_do_nothing(index_elements=[C2BTransaction.trans_id])
        .returning(C2BTransaction.id)
    )
    inserted = (await db.execute(stmt)).scalar_one_or_none()
    await db.commit()
    if inserted is None:
        logger.info("C2B transaction %s already recorded", confirmation.TransID)
        return False
    logger.info("C2B transaction %s queued for reconciliation", confirmation.TransID)
    return True
