from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.models.transaction_cost_band import TransactionCostBand
from salary_advance.services.loan_terms import as_decimal, money


def select_fee_band(bands: Iterable[TransactionCostBand], amount) -> TransactionCostBand | None:
    """First band whose inclusive ``[min_amount, max_amount]`` range holds ``amount``."""
    value = as_decimal(amount)
    for band in bands:
        if as_decimal(band.min_amount) <= value <= as_decimal(band.max_amount):
            return band
    return None


async def resolve_fee(db: AsyncSession, amount, tenant_id: int) -> Decimal:
    stmt = (
        select(TransactionCostBand)
        .where(TransactionCostBand.tenant_id == tenant_id)
        .order_by(TransactionCostBand.min_amount.asc())
    )
    bands = (await db.execute(stmt)).scalars().all()
    band = select_fee_band(bands, amount)
    if band is None:
        return Decimal("0.00")
    return money(band.cost)
