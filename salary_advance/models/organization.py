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

from salary_advance.db.base import Base


class Organization(Base):
    """Borrower organization and its lending policy knobs."""

    __tablename__ = "organizations"
    __table_args__ = (
        CheckConstraint("approval_steps BETWEEN 0 AND 2", name="approval_steps_range"),
        CheckConstraint("loan_limit_multiplier >= 0", name="limit_multiplier_nonneg"),
        CheckConstraint("credit_balance >= 0", name="credit_balance_nonneg"),
        CheckConstraint("interest_rate_type IN ('MONTHLY', 'DAILY')", name="interest_rate_type"),
        Index("ix_organizations_tenant", "tenant_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False, default="ACTIVE")
    approval_steps = Column(Integer, nullable=False, default=1)
    loan_limit_multiplier = Column(Numeric(8, 4), nullable=False, default=1)
    interest_rate_type = Column(String(16), nullable=False, default="MONTHLY")
    interest_rate = Column(Numeric(8, 4), nullable=True)
    daily_interest_rate = Column(Numeric(8, 4), nullable=True)
    base_interest_rate = Column(Numeric(8, 4), nullable=True)
    credit_balance = Column(Numeric(18, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
