from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from app.models.database import Base


class VerificationCache(Base):
    __tablename__ = "verification_caches"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    transaction_signature = Column(String(128), unique=True, index=True, nullable=False)
    verification_status = Column(String(16), nullable=False, default="pending")  # pending | verified | failed
    confirmations = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    last_verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
