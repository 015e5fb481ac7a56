from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func

from salary_advance.db.base import Base


class MpesaBalance(Base):
    """Gateway account balance snapshot.

    Written from disbursement results and account-balance callbacks; the newest
    row per tenant feeds the pre-disbursement balance check.
    """

    __tablename__ = "mpesa_balances"
    __table_args__ = (Index("ix_mpesa_balances_tenant_created", "tenant_id", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    originator_conversation_id = Column(String(128), nullable=True, unique=True)
    conversation_id = Column(String(128), nullable=True)
    transaction_id = Column(String(128), nullable=True)
    result_type = Column(Integer, nullable=True)
    result_code = Column(Integer, nullable=True)
    result_desc = Column(Text, nullable=True)
    utility_account_balance = Column(Numeric(18, 2), nullable=True)
    working_account_balance = Column(Numeric(18, 2), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
