import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.config import settings
from app.models import Order, get_db
from app.services import order_service
from app.services.order_lifecycle import InvalidTransition, is_terminal

router = APIRouter()
logger = logging.getLogger(__name__)

CALLBACK_STATUSES = {"succeeded", "failed", "processing", "pending"}


def _verify_callback_key(callback_key: str | None) -> None:
    """Compare X-Callback-Key with VENDOR_CALLBACK_KEY when it is configured."""
    if not settings.VENDOR_CALLBACK_KEY:
        logger.warning("VENDOR_CALLBACK_KEY is not set, skipping callback verification")
        return

    if not callback_key or not hmac.compare_digest(callback_key, settings.VENDOR_CALLBACK_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid callback key")


@router.post(
    "/vendor/callback",
    summary="Vendor order status callback",
)
async def vendor_callback(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Vendor notification about a placed order.
    Body: reference (our order number), status, invoiceId, trxDate, sn.
    Repeated callbacks for an order that already reached the reported outcome are acknowledged.
    """
    _verify_callback_key(request.headers.get("x-callback-key"))

    raw_body = await request.body()
    try:
        body = json.loads(raw_body)
    except ValueError as e:
        logger.error("Invalid JSON in vendor callback: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="JSON object expected")

    reference = body.get("reference")
    if not reference:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="reference required")

    order = db.query(Order).filter(Order.order_number == str(reference)).with_for_update().first()
    if not order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    callback_status = str(body.get("status") or "").strip().lower()
    order_service.log_vendor_interaction(
        db,
        order,
        "callback",
        request_body=raw_body.decode("utf-8", errors="replace"),
        status=callback_status or None,
    )
    # The raw callback is kept even when applying it fails below.
    db.commit()

    if callback_status not in CALLBACK_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unsupported status: {callback_status or '<missing>'}",
        )

    # The log commit above released the row lock.
    order = order_service.lock_order(db, order)
    try:
        order_service.apply_vendor_status(
            db,
            order,
            callback_status,
            tracking_number=body.get("invoiceId"),
            message=body.get("message"),
            metadata={
                "vendor_callback": {
                    "invoiceId": body.get("invoiceId"),
                    "trxDate": body.get("trxDate"),
                    "sn": body.get("sn"),
                }
            },
        )
        db.commit()
    except InvalidTransition as e:
        db.rollback()
        if is_terminal(order):
            logger.info("Vendor callback for order %s ignored: %s", reference, e)
            return {"success": True, "message": "Order already in final state"}
        logger.warning("Vendor callback for order %s rejected: %s", reference, e)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except Exception as e:
        db.rollback()
        logger.error("Error applying vendor callback for order %s: %s", reference, e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    logger.info("Vendor callback applied to order %s: %s", reference, callback_status)
    return {"success": True, "order_number": order.order_number, "status": order.status}
