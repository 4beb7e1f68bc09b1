import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.dependencies import get_current_user
from app.models import Order, User, get_db
from app.schemas.orders import (
    OrderCreateRequest,
    OrderCreateResponse,
    OrderDetailResponse,
    OrderResponse,
    ValidateAccountRequest,
    ValidateAccountResponse,
)
from app.services import order_service
from app.services.order_lifecycle import InvalidTransition
from app.services.vendor_client import (
    VendorConfigurationError,
    VendorFailure,
    VendorMaintenance,
    VendorNetworkError,
    VendorSuccess,
    get_vendor_client,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _get_user_order(db: Session, user: User, order_number: str) -> Order:
    order = (
        db.query(Order)
        .filter(Order.order_number == order_number, Order.user_id == user.id)
        .first()
    )
    if not order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return order


@router.post(
    "",
    response_model=OrderCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a top-up order for a submitted payment",
)
def create_order(
    body: OrderCreateRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    """
    Create an order bound to the Solana transaction the user already sent.
    Payment is verified in the background; poll the order for its status.
    """
    try:
        order = order_service.create_order(
            db,
            current_user,
            amount=body.amount,
            crypto_amount=body.crypto_amount,
            transaction_signature=body.transaction_signature,
            crypto_currency=body.crypto_currency.value,
            currency=body.currency,
            original_amount=body.original_amount,
            product_id=body.product_id,
            product_item_id=body.product_item_id,
            product_title=body.product_title,
            user_data=body.user_data,
        )
    except order_service.ActiveOrderExists as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except order_service.SignatureAlreadyUsed as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return OrderCreateResponse(
        order_number=order.order_number,
        status=order.status,
        crypto_amount=order.crypto_amount,
        crypto_currency=order.crypto_currency,
    )


@router.get(
    "/me",
    response_model=list[OrderResponse],
    summary="List my orders",
)
def my_orders(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    """Returns the list of orders for the current user, newest first."""
    orders = (
        db.query(Order)
        .filter(Order.user_id == current_user.id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )
    return [OrderResponse.model_validate(o) for o in orders]


@router.post(
    "/validate-account",
    response_model=ValidateAccountResponse,
    summary="Validate a game account with the vendor",
)
def validate_account(
    body: ValidateAccountRequest,
    current_user: Annotated[User, Depends(get_current_user)],
):
    try:
        with get_vendor_client() as vendor:
            result = vendor.validate_game_account(body.product_id, body.user_data)
    except VendorConfigurationError as e:
        logger.error("Vendor is not configured: %s", e)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Vendor is not configured")
    except VendorNetworkError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Vendor is unreachable")

    if isinstance(result, VendorMaintenance):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.message)
    if isinstance(result, VendorSuccess):
        return ValidateAccountResponse(valid=True, data=result.data)
    message = result.reason if isinstance(result, VendorFailure) else result.message
    return ValidateAccountResponse(valid=False, message=message)


@router.get(
    "/{order_number}",
    response_model=OrderDetailResponse,
    summary="Get order with payment details",
)
def order_detail(
    order_number: str,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    """Returns an order of the current user including its crypto transaction."""
    return OrderDetailResponse.model_validate(_get_user_order(db, current_user, order_number))


@router.post(
    "/{order_number}/cancel",
    response_model=OrderResponse,
    summary="Cancel a pending order",
)
def cancel_order(
    order_number: str,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    order = _get_user_order(db, current_user, order_number)
    try:
        order = order_service.cancel_order(db, order)
    except InvalidTransition:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Order cannot be cancelled while {order.status}",
        )
    return OrderResponse.model_validate(order)
