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


class Loan(Base):
    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint("repaid_amount >= 0", name="repaid_nonneg"),
        CheckConstraint("approval_count >= 0 AND approval_count <= 2", name="approval_count_range"),
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'DISBURSED', 'PARTIALLY_PAID', 'REPAID', 'REJECTED')",
            name="status",
        ),
        Index("ix_loans_tenant_status", "tenant_id", "status"),
        Index("ix_loans_user_created", "user_id", "created_at"),
        Index("ix_loans_mpesa_transaction", "mpesa_transaction_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="RESTRICT"), nullable=False
    )
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    employee_id = Column(Integer, ForeignKey("employees.id", ondelete="SET NULL"), nullable=True)

    amount = Column(Numeric(18, 2), nullable=False)
    interest_rate_type = Column(String(16), nullable=False, default="MONTHLY")
    interest_rate = Column(Numeric(8, 4), nullable=False)
    transaction_charge = Column(Numeric(18, 2), nullable=False, default=0)
    total_repayable = Column(Numeric(18, 2), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False)
    duration_days = Column(Integer, nullable=False, default=30)

    status = Column(String(32), nullable=False, default="PENDING")
    approval_count = Column(Integer, nullable=False, default=0)
    first_approver_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    second_approver_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    third_approver_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    disbursed_at = Column(DateTime(timezone=True), nullable=True)
    mpesa_transaction_id = Column(String(128), nullable=True)
    mpesa_status = Column(String(32), nullable=True)
    originator_conversation_id = Column(String(128), nullable=True, unique=True)
    repaid_amount = Column(Numeric(18, 2), nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    payouts = relationship("LoanPayout", back_populates="loan", cascade="all, delete-orphan")
