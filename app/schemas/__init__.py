from app.schemas.orders import (
    OrderCreateRequest,
    OrderCreateResponse,
    OrderDetailResponse,
    OrderResponse,
    ValidateAccountRequest,
    ValidateAccountResponse,
)

__all__ = [
    "OrderCreateRequest",
    "OrderCreateResponse",
    "OrderDetailResponse",
    "OrderResponse",
    "ValidateAccountRequest",
    "ValidateAccountResponse",
]
