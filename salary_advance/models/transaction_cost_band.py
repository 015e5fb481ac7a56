from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Integer, Numeric

from salary_advance.db.base import Base


class TransactionCostBand(Base):
    __tablename__ = "transaction_cost_bands"
    __table_args__ = (
        CheckConstraint("min_amount <= max_amount", name="band_order"),
        CheckConstraint("cost >= 0", name="cost_nonneg"),
        Index("ix_cost_bands_tenant_min", "tenant_id", "min_amount"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    min_amount = Column(Numeric(18, 2), nullable=False)
    max_amount = Column(Numeric(18, 2), nullable=False)
    cost = Column(Numeric(18, 2), nullable=False)
