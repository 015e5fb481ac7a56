from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from salary_advance.db.base import Base


class PaymentBatch(Base):
    """One incoming settlement, split across payouts by its confirmations."""

    __tablename__ = "payment_batches"
    __table_args__ = (
        CheckConstraint("total_amount > 0", name="total_positive"),
        Index("ix_payment_batches_tenant_reference", "tenant_id", "reference"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True
    )
    total_amount = Column(Numeric(18, 2), nullable=False)
    payment_method = Column(String(32), nullable=False, default="MPESA")
    reference = Column(String(128), nullable=False)
    remarks = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    confirmations = relationship(
        "PaymentConfirmation", back_populates="payment_batch", cascade="all, delete-orphan"
    )
