from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
)

from salary_advance.db.base import Base


class C2BTransaction(Base):
    """Raw incoming M-Pesa payment awaiting attribution to a payer."""

    __tablename__ = "mpesa_c2b_transactions"
    __table_args__ = (Index("ix_c2b_tenant_processed", "tenant_id", "processed"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    trans_id = Column(String(64), nullable=False, unique=True)
    trans_time = Column(DateTime(timezone=True), nullable=True)
    trans_amount = Column(Numeric(18, 2), nullable=False)
    bill_ref_number = Column(String(128), nullable=True)
    msisdn = Column(String(64), nullable=True)
    first_name = Column(String(100), nullable=True)
    processed = Column(Boolean, nullable=False, default=False, server_default="false")
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
