from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, func

from salary_advance.db.base import Base
from salary_advance.models.types import EncryptedString


class MpesaConfig(Base):
    __tablename__ = "mpesa_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(
        Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    b2c_short_code = Column(String(32), nullable=False)
    initiator_name = Column(String(128), nullable=False)
    security_credential = Column(EncryptedString(), nullable=False)
    consumer_key = Column(EncryptedString(), nullable=False)
    consumer_secret = Column(EncryptedString(), nullable=False)
    status = Column(String(32), nullable=False, default="ACTIVE")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
