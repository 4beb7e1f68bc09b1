from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class PaymentToken(str, Enum):
    SOL = "SOL"
    USDC = "USDC"
    USDT = "USDT"


class OrderCreateRequest(BaseModel):
    transaction_signature: str = Field(min_length=32, max_length=128)
    amount: Decimal = Field(gt=0)
    crypto_amount: Decimal = Field(gt=0)
    crypto_currency: PaymentToken = PaymentToken.SOL
    currency: str = Field(default="USD", max_length=8)
    original_amount: Decimal | None = None
    product_id: str
    product_item_id: str
    product_title: str | None = None
    user_data: dict[str, Any]

    @field_validator("transaction_signature", "product_id", "product_item_id")
    @classmethod
    def strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "transaction_signature": "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW",
                    "amount": "4.99",
                    "crypto_amount": "0.025",
                    "crypto_currency": "SOL",
                    "currency": "USD",
                    "product_id": "12",
                    "product_item_id": "345",
                    "product_title": "Mobile Legends (Global) Diamonds",
                    "user_data": {"userId": "123456789", "zoneId": "2001"},
                }
            ]
        }
    }


class OrderCreateResponse(BaseModel):
    order_number: str
    status: str
    crypto_amount: Decimal
    crypto_currency: str


class CryptoTransactionSummary(BaseModel):
    transaction_signature: str
    state: str
    token: str
    amount: Decimal | None = None
    confirmations: int
    wallet_from: str | None = None
    wallet_to: str | None = None
    block_number: int | None = None
    verified_at: datetime | None = None

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    order_number: str
    order_type: str
    status: str
    amount: Decimal
    currency: str
    crypto_amount: Decimal | None = None
    crypto_currency: str
    product_id: str | None = None
    product_item_id: str | None = None
    product_title: str | None = None
    tracking_number: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class OrderDetailResponse(OrderResponse):
    user_data: dict[str, Any] | None = None
    updated_at: datetime | None = None
    crypto_transaction: CryptoTransactionSummary | None = None


class ValidateAccountRequest(BaseModel):
    product_id: str
    user_data: dict[str, Any]


class ValidateAccountResponse(BaseModel):
    valid: bool
    message: str | None = None
    data: dict[str, Any] | None = None
