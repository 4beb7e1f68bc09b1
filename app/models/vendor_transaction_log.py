from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.models.database import Base


class VendorTransactionLog(Base):
    """Append-only record of one vendor interaction for an order."""

    __tablename__ = "vendor_transaction_logs"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    vendor_name = Column(String(64), nullable=False)  # create_order | status_check | callback
    request_body = Column(Text, nullable=True)
    response_body = Column(Text, nullable=True)
    status = Column(String(32), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="vendor_transaction_logs")
