from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.models.database import Base


class CryptoTransaction(Base):
    __tablename__ = "crypto_transactions"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    transaction_signature = Column(String(128), unique=True, index=True, nullable=False)
    wallet_from = Column(String(64), nullable=True)
    wallet_to = Column(String(64), nullable=True)
    amount = Column(Numeric(24, 9), nullable=True)
    token = Column(String(16), nullable=False, default="SOL")
    network = Column(String(32), nullable=False, default="solana")
    decimals = Column(Integer, nullable=False, default=9)
    transaction_type = Column(String(16), nullable=False, default="payment")  # payment | refund
    direction = Column(String(16), nullable=False, default="inbound")  # inbound | outbound
    state = Column(String(16), nullable=False, default="pending")  # pending | confirmed | failed | expired
    confirmations = Column(Integer, nullable=False, default=0)
    block_number = Column(BigInteger, nullable=True)
    block_timestamp = Column(DateTime(timezone=True), nullable=True)
    gas_fee = Column(Numeric(24, 9), nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    tx_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="crypto_transaction")
