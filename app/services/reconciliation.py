import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models import Order
from app.services.order_lifecycle import InvalidTransition, OrderStatus
from app.services.order_service import apply_vendor_status, log_vendor_interaction
from app.services.timeutils import db_datetime, utcnow
from app.services.vendor_client import VendorClient

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationSummary:
    checked: int = 0
    updated: int = 0
    errors: int = 0


def select_orders_for_reconciliation(db: Session, min_age_minutes: int, batch_size: int) -> list[Order]:
    cutoff = db_datetime(db, utcnow() - timedelta(minutes=min_age_minutes))
    return (
        db.query(Order)
        .filter(
            Order.status == OrderStatus.PROCESSING.value,
            or_(Order.tracking_number.isnot(None), Order.needs_reconciliation.is_(True)),
            Order.updated_at < cutoff,
        )
        .order_by(Order.updated_at.asc(), Order.id.asc())
        .limit(batch_size)
        .all()
    )


def reconcile_order(db: Session, order: Order, vendor: VendorClient) -> bool:
    status = vendor.check_order_status(order.order_number, order.vendor_reference)
    log_vendor_interaction(
        db,
        order,
        "status_check",
        request_body={"order_number": order.order_number, "tracking_number": order.vendor_reference},
        response_body=status.raw,
        status=status.status,
    )
    changed = apply_vendor_status(db, order, status)
    db.commit()
    if changed:
        logger.info("Order %s reconciled to %s (vendor status %s)", order.order_number, order.status, status.status)
    return changed


def reconcile_processing_orders(
    db: Session,
    vendor: VendorClient,
    *,
    batch_size: int = 50,
    min_age_minutes: int = 5,
    throttle_seconds: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconciliationSummary:
    """Poll the vendor for processing orders whose outcome never arrived.

    Each order is handled in its own transaction; one failure is logged and
    the sweep moves on.
    """
    summary = ReconciliationSummary()
    orders = select_orders_for_reconciliation(db, min_age_minutes, batch_size)
    logger.info("Reconciling %s processing orders", len(orders))

    for index, order in enumerate(orders):
        if index:
            sleep(throttle_seconds)
        summary.checked += 1
        order_number = order.order_number
        try:
            if reconcile_order(db, order, vendor):
                summary.updated += 1
        except InvalidTransition as exc:
            db.rollback()
            logger.info("Order %s left unchanged: %s", order_number, exc)
        except Exception:
            db.rollback()
            summary.errors += 1
            logger.exception("Failed to reconcile order %s", order_number)

    logger.info(
        "Reconciliation finished: checked=%s updated=%s errors=%s",
        summary.checked,
        summary.updated,
        summary.errors,
    )
    return summary
