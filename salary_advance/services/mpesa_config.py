from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.models.mpesa_balance import MpesaBalance
from salary_advance.models.mpesa_config import MpesaConfig


@dataclass(frozen=True)
class MpesaCredentials:
    tenant_id: int
    short_code: str
    initiator_name: str
    security_credential: str
    consumer_key: str
    consumer_secret: str

    def missing_fields(self) -> list[str]:
        return [
            name
            for name in ("short_code", "initiator_name", "security_credential", "consumer_key", "consumer_secret")
            if not getattr(self, name)
        ]


async def load_credentials(db: AsyncSession, tenant_id: int) -> MpesaCredentials | None:
    stmt = select(MpesaConfig).where(
        MpesaConfig.tenant_id == tenant_id,
        MpesaConfig.status == "ACTIVE",
    )
    config = (await db.execute(stmt)).scalar_one_or_none()
    if config is None:
        return None
    return MpesaCredentials(
        tenant_id=tenant_id,
        short_code=config.b2c_short_code,
        initiator_name=config.initiator_name,
        security_credential=config.security_credential,
        consumer_key=config.consumer_key,
        consumer_secret=config.consumer_secret,
    )


async def latest_balance(db: AsyncSession, tenant_id: int) -> MpesaBalance | None:
    """Newest balance snapshot that actually carries a utility-account figure."""
    stmt = (
        select(MpesaBalance)
        .where(
            MpesaBalance.tenant_id == tenant_id,
            MpesaBalance.utility_account_balance.is_not(None),
        )
        .order_by(MpesaBalance.created_at.desc(), MpesaBalance.id.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()
