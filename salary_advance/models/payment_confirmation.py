from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from salary_advance.db.base import Base


class PaymentConfirmation(Base):
    __tablename__ = "payment_confirmations"
    __table_args__ = (
        UniqueConstraint("payment_batch_id", "loan_payout_id", name="uq_payment_confirmation_batch_payout"),
        CheckConstraint("amount_settled > 0", name="amount_positive"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    payment_batch_id = Column(
        Integer, ForeignKey("payment_batches.id", ondelete="CASCADE"), nullable=False
    )
    loan_payout_id = Column(
        Integer, ForeignKey("loan_payouts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount_settled = Column(Numeric(18, 2), nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    payment_batch = relationship("PaymentBatch", back_populates="confirmations")
