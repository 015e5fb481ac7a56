from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import relationship

from salary_advance.db.base import Base


class LoanPayout(Base):
    """One disbursement attempt for a loan. Failed attempts are kept."""

    __tablename__ = "loan_payouts"
    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint("amount_repaid >= 0", name="amount_repaid_nonneg"),
        CheckConstraint(
            "status IN ('PENDING', 'DISBURSED', 'FAILED', 'PARTIALLY_PAID', 'REPAID')",
            name="status",
        ),
        Index("ix_loan_payouts_tenant_status", "tenant_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    loan_id = Column(
        Integer, ForeignKey("loans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount = Column(Numeric(18, 2), nullable=False)
    method = Column(String(32), nullable=False, default="MPESA")
    status = Column(String(32), nullable=False, default="PENDING")
    approved_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    transaction_id = Column(String(128), nullable=True)
    amount_repaid = Column(Numeric(18, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    loan = relationship("Loan", back_populates="payouts")
