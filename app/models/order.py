from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.models.database import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(64), unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_type = Column(String(32), nullable=False, default="topup")  # topup | purchase
    status = Column(String(32), nullable=False, default="pending", index=True)

    amount = Column(Numeric(18, 2), nullable=False)
    original_amount = Column(Numeric(18, 2), nullable=True)
    currency = Column(String(8), nullable=False, default="USD")
    crypto_amount = Column(Numeric(24, 9), nullable=True)
    crypto_currency = Column(String(16), nullable=False, default="SOL")

    product_id = Column(String(64), nullable=True)
    product_item_id = Column(String(64), nullable=True)
    product_title = Column(String(255), nullable=True)
    user_data = Column(JSON, nullable=True)

    tracking_number = Column(String(128), nullable=True, index=True)
    invoice_id = Column(String(128), nullable=True)
    needs_reconciliation = Column(Boolean, nullable=False, default=False)
    vendor_attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    order_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="orders")
    crypto_transaction = relationship("CryptoTransaction", back_populates="order", uselist=False)
    vendor_transaction_logs = relationship(
        "VendorTransactionLog",
        back_populates="order",
        order_by="VendorTransactionLog.id",
    )

    @property
    def vendor_reference(self) -> str | None:
        return self.tracking_number or self.invoice_id
