from decimal import Decimal

import pytest

from salary_advance.models.transaction_cost_band import TransactionCostBand
from salary_advance.services.transaction_fees import resolve_fee, select_fee_band

from conftest import FakeAsyncSession, FakeResult, entity_handler


def _band(low, high, cost, band_id=1):
    return TransactionCostBand(
        id=band_id, tenant_id=1, min_amount=Decimal(low), max_amount=Decimal(high), cost=Decimal(cost)
    )


BANDS = [
    _band("1", "1000", "15", 1),
    _band("1001", "10000", "30.5", 2),
    _band("10001", "150000", "55", 3),
]


@pytest.mark.parametrize(
    ("amount", "expected_id"),
    [("1", 1), ("1000", 1), ("1001", 2), ("10000", 2), ("150000", 3)],
)
def test_band_bounds_are_inclusive(amount, expected_id):
    assert select_fee_band(BANDS, Decimal(amount)).id == expected_id


def test_amount_outside_every_band_has_no_band():
    assert select_fee_band(BANDS, Decimal("150001")) is None
    assert select_fee_band([], Decimal("500")) is None


@pytest.mark.asyncio
async def test_resolve_fee_uses_tenant_bands():
    db = FakeAsyncSession()
    db.on_execute(entity_handler(TransactionCostBand, FakeResult(items=BANDS)))
    assert await resolve_fee(db, Decimal("5000"), 1) == Decimal("30.50")


@pytest.mark.asyncio
async def test_resolve_fee_defaults_to_zero_without_a_band():
    db = FakeAsyncSession()
    assert await resolve_fee(db, Decimal("5000"), 1) == Decimal("0.00")
