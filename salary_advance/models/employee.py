from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, func

from salary_advance.db.base import Base


class Employee(Base):
    __tablename__ = "employees"
    __table_args__ = (
        Index("ix_employees_tenant_org", "tenant_id", "organization_id"),
        Index("ix_employees_phone", "tenant_id", "phone_number"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=True)
    phone_number = Column(String(32), nullable=False)
    gross_salary = Column(Numeric(18, 2), nullable=False, default=0)
    status = Column(String(32), nullable=False, default="ACTIVE")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
