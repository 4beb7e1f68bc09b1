"""Order orchestration: creation, payment verification and vendor fulfillment.

Components below this layer raise typed errors or return typed results; this
module turns them into lifecycle transitions plus stored ``error_message`` so
nothing escapes into the worker or the API as an unhandled failure.
"""

import json
import logging
import re
import secrets
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models import AuditLog, CryptoTransaction, Order, User, VendorTransactionLog, VerificationCache
from app.services.order_lifecycle import (
    ACTIVE_STATUSES,
    PURCHASE_GAME_CREDIT,
    CryptoState,
    InvalidTransition,
    OrderEvent,
    OrderStatus,
    confirm_crypto_transaction,
    expire_crypto_transaction,
    fail_crypto_transaction,
    fire,
)
from app.services.payment_verifier import (
    InvalidTransaction,
    PaymentVerifier,
    TransactionNotFound,
    VerifiedTransaction,
)
from app.services.solana_tokens import get_token
from app.services.timeutils import as_utc, from_unix, utcnow
from app.services.vendor_client import (
    VendorClient,
    VendorDuplicate,
    VendorFailure,
    VendorMaintenance,
    VendorNetworkError,
    VendorOrderStatus,
    VendorSuccess,
)
from app.worker.queue import enqueue

logger = logging.getLogger(__name__)

DEFAULT_ORDER_PREFIX = "KMY"
DEFAULT_TITLE_INITIALS = "TOPUP"
VENDOR_CALLBACK_PATH = "/webhooks/vendor/callback"


class OrderServiceError(Exception):
    pass


class ActiveOrderExists(OrderServiceError):
    pass


class SignatureAlreadyUsed(OrderServiceError):
    pass


class VerificationDeferred(OrderServiceError):
    """The signature was checked moments ago and is still pending."""

    def __init__(self, signature: str, retry_in: float):
        super().__init__(f"Transaction {signature} was checked recently, retry in {retry_in:.0f}s")
        self.retry_in = retry_in


def _order_prefix(name: str | None) -> str:
    if not name:
        return DEFAULT_ORDER_PREFIX
    compact = re.sub(r"\s+", "", name)
    return compact[:5].upper() or DEFAULT_ORDER_PREFIX


def _title_initials(title: str | None) -> str:
    if not title:
        return DEFAULT_TITLE_INITIALS
    cleaned = re.sub(r"\(.*?\)", "", title)
    initials = "".join(word[0] for word in cleaned.split() if word[0].isalnum())
    return initials.upper() or DEFAULT_TITLE_INITIALS


def generate_order_number(db: Session, title: str | None = None, name: str | None = None) -> str:
    """``<NAME5><TITLE INITIALS><12 hex>``, regenerated until unused."""
    stem = f"{_order_prefix(name)}{_title_initials(title)}"
    while True:
        candidate = f"{stem}{secrets.token_hex(6).upper()}"
        if not db.query(Order.id).filter(Order.order_number == candidate).first():
            return candidate


def vendor_callback_url() -> str:
    return f"{settings.BASE_URL.rstrip('/')}{VENDOR_CALLBACK_PATH}"


def requires_vendor_purchase(order: Order) -> bool:
    return order.order_type == "topup"


def log_audit(
    db: Session,
    action: str,
    order: Order,
    *,
    old_values: dict | None = None,
    new_values: dict | None = None,
    metadata: dict | None = None,
) -> AuditLog:
    entry = AuditLog(
        user_id=order.user_id,
        action=action,
        auditable_type="Order",
        auditable_id=order.id,
        old_values=old_values,
        new_values=new_values,
        log_metadata={"order_number": order.order_number, **(metadata or {})},
    )
    db.add(entry)
    return entry


def _dump(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def log_vendor_interaction(
    db: Session,
    order: Order,
    vendor_name: str,
    *,
    request_body: Any = None,
    response_body: Any = None,
    status: str | None = None,
    retry_count: int = 0,
) -> VendorTransactionLog:
    entry = VendorTransactionLog(
        order_id=order.id,
        vendor_name=vendor_name,
        request_body=_dump(request_body),
        response_body=_dump(response_body),
        status=status,
        retry_count=retry_count,
        executed_at=utcnow(),
    )
    db.add(entry)
    return entry


def _merge_metadata(order: Order, extra: dict | None) -> None:
    if extra:
        order.order_metadata = {**(order.order_metadata or {}), **extra}


def has_active_order(db: Session, user: User) -> bool:
    return (
        db.query(Order.id)
        .filter(Order.user_id == user.id, Order.status.in_([s.value for s in ACTIVE_STATUSES]))
        .first()
        is not None
    )


def create_order(
    db: Session,
    user: User,
    *,
    amount: Decimal,
    crypto_amount: Decimal,
    transaction_signature: str,
    crypto_currency: str = "SOL",
    currency: str = "USD",
    original_amount: Decimal | None = None,
    product_id: str | None = None,
    product_item_id: str | None = None,
    product_title: str | None = None,
    user_data: dict | None = None,
    order_type: str = "topup",
) -> Order:
    """Create a pending order bound to ``transaction_signature`` and queue its verification."""
    signature = transaction_signature.strip()
    token = get_token(crypto_currency)

    if has_active_order(db, user):
        raise ActiveOrderExists("You already have an order in progress")
    if db.query(CryptoTransaction.id).filter(CryptoTransaction.transaction_signature == signature).first():
        raise SignatureAlreadyUsed("Transaction signature has already been used")

    order = Order(
        order_number=generate_order_number(db, title=product_title, name=user.display_name),
        user_id=user.id,
        order_type=order_type,
        status=OrderStatus.PENDING.value,
        amount=amount,
        original_amount=original_amount if original_amount is not None else amount,
        currency=currency,
        crypto_amount=crypto_amount,
        crypto_currency=token.symbol,
        product_id=product_id,
        product_item_id=product_item_id,
        product_title=product_title,
        user_data=user_data,
    )
    db.add(order)
    db.flush()

    db.add(
        CryptoTransaction(
            order_id=order.id,
            transaction_signature=signature,
            wallet_from=user.wallet_address,
            wallet_to=settings.PLATFORM_WALLET_ADDRESS,
            amount=crypto_amount,
            token=token.symbol,
            decimals=token.decimals,
            state=CryptoState.PENDING.value,
        )
    )
    log_audit(
        db,
        "order_created",
        order,
        new_values={"status": order.status, "amount": str(amount), "crypto_amount": str(crypto_amount)},
        metadata={"transaction_signature": signature, "token": token.symbol},
    )
    enqueue(db, "verify_payment", {"order_id": order.id}, delay_seconds=settings.VERIFY_INITIAL_DELAY_SECONDS)

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise SignatureAlreadyUsed("Transaction signature has already been used") from exc
    db.refresh(order)
    logger.info("Order %s created for user %s (signature %s)", order.order_number, user.id, signature)
    return order


def fail_order(db: Session, order: Order, message: str) -> bool:
    """Fail ``order`` with ``message`` unless it is already past failing."""
    try:
        return fire(db, order, OrderEvent.FAIL, error_message=message).changed
    except InvalidTransition as exc:
        logger.warning("Could not fail order %s: %s", order.order_number, exc)
        return False


def record_verification(
    db: Session,
    order: Order,
    signature: str,
    status: str,
    *,
    confirmations: int = 0,
    error: str | None = None,
) -> VerificationCache:
    entry = (
        db.query(VerificationCache)
        .filter(VerificationCache.transaction_signature == signature)
        .first()
    )
    if entry is None:
        entry = VerificationCache(order_id=order.id, transaction_signature=signature)
        db.add(entry)
    entry.verification_status = status
    entry.confirmations = confirmations
    entry.last_error = error
    entry.last_verified_at = utcnow()
    return entry


def verification_retry_in(db: Session, signature: str) -> float | None:
    """Seconds until ``signature`` may hit the RPC again, or None when it may now."""
    entry = (
        db.query(VerificationCache)
        .filter(VerificationCache.transaction_signature == signature)
        .first()
    )
    if entry is None or entry.verification_status != "pending" or entry.last_verified_at is None:
        return None
    elapsed = (utcnow() - as_utc(entry.last_verified_at)).total_seconds()
    remaining = settings.VERIFY_RECHECK_INTERVAL_SECONDS - elapsed
    return remaining if remaining > 0 else None


def _apply_verified_details(crypto_tx: CryptoTransaction, verified: VerifiedTransaction) -> None:
    crypto_tx.wallet_from = verified.from_address
    crypto_tx.wallet_to = verified.to_address
    crypto_tx.amount = verified.amount
    crypto_tx.confirmations = verified.confirmations
    crypto_tx.block_number = verified.block_number
    crypto_tx.block_timestamp = from_unix(verified.block_timestamp)
    crypto_tx.gas_fee = verified.fee_sol
    crypto_tx.tx_metadata = {
        **(crypto_tx.tx_metadata or {}),
        "confirmation_status": verified.confirmation_status,
        "is_spl_token": verified.is_spl_token,
        "mint": verified.mint,
    }


def verify_order_payment(db: Session, order: Order, verifier: PaymentVerifier, vendor_factory=None) -> str:
    """Verify the order's payment on chain and start fulfillment.

    ``InsufficientConfirmations`` and ``ChainRpcError`` propagate so the caller
    can retry later, as does ``VerificationDeferred`` when the signature was
    found pending moments ago. Terminal verification errors fail the order here.
    """
    crypto_tx = order.crypto_transaction
    if crypto_tx is None:
        fail_order(db, order, "No crypto transaction found for this order")
        db.commit()
        return "failed"

    if crypto_tx.state == CryptoState.CONFIRMED.value:
        if order.status == OrderStatus.PAID.value:
            return start_fulfillment(db, order, vendor_factory)
        if purchase_interrupted(order):
            logger.warning("Order %s stopped before its vendor purchase, resuming", order.order_number)
            return _run_purchase(db, order, vendor_factory)
        logger.info("Order %s payment already verified", order.order_number)
        return "already_verified"
    if order.status != OrderStatus.PENDING.value:
        logger.info("Order %s is %s, skipping verification", order.order_number, order.status)
        return "skipped"

    signature = crypto_tx.transaction_signature
    retry_in = verification_retry_in(db, signature)
    if retry_in is not None:
        raise VerificationDeferred(signature, retry_in)
    try:
        verified = verifier.verify(
            signature,
            expected_amount=order.crypto_amount,
            expected_receiver=settings.PLATFORM_WALLET_ADDRESS,
            expected_sender=order.user.wallet_address if order.user else None,
            token=order.crypto_currency,
        )
    except (TransactionNotFound, InvalidTransaction) as exc:
        logger.warning("Payment verification failed for order %s: %s", order.order_number, exc)
        record_verification(db, order, signature, "failed", error=str(exc))
        fail_crypto_transaction(crypto_tx)
        fail_order(db, order, f"Transaction validation failed: {exc}")
        db.commit()
        return "failed"
    except Exception as exc:
        db.rollback()
        record_verification(db, order, signature, "pending", error=str(exc))
        db.commit()
        raise

    record_verification(db, order, signature, "verified", confirmations=verified.confirmations)
    _apply_verified_details(crypto_tx, verified)
    old_crypto_amount = order.crypto_amount
    order.crypto_amount = verified.amount
    confirm_crypto_transaction(db, crypto_tx)
    log_audit(
        db,
        "payment_verified",
        order,
        old_values={"crypto_amount": str(old_crypto_amount)},
        new_values={"crypto_amount": str(verified.amount), "status": order.status},
        metadata={"transaction_signature": signature, "token": verified.token},
    )
    db.commit()
    logger.info("Payment verified for order %s: %s %s", order.order_number, verified.amount, verified.token)
    return start_fulfillment(db, order, vendor_factory)


def start_fulfillment(db: Session, order: Order, vendor_factory=None) -> str:
    """Fire ``process`` and run its purchase effect after the transition commits."""
    result = fire(db, order, OrderEvent.PROCESS)
    db.commit()
    if not result.changed or result.effect != PURCHASE_GAME_CREDIT:
        return "skipped"
    return _run_purchase(db, order, vendor_factory)


def purchase_interrupted(order: Order) -> bool:
    """``processing`` with nothing recorded about the vendor purchase yet."""
    return (
        order.status == OrderStatus.PROCESSING.value
        and not order.vendor_reference
        and not order.needs_reconciliation
    )


def _run_purchase(db: Session, order: Order, vendor_factory=None) -> str:
    if vendor_factory is None:
        enqueue(db, "fulfill_order", {"order_id": order.id})
        db.commit()
        return "queued"
    with vendor_factory() as vendor:
        return purchase_game_credit(db, order, vendor)


def lock_order(db: Session, order: Order) -> Order:
    return (
        db.query(Order)
        .filter(Order.id == order.id)
        .populate_existing()
        .with_for_update()
        .one()
    )


def purchase_game_credit(db: Session, order: Order, vendor: VendorClient) -> str:
    """Buy the game credit for a ``processing`` order at most once.

    The row is locked while the order is checked. ``needs_reconciliation`` is
    committed before the vendor call and only cleared once the outcome is
    known, so an order with a reference or an unresolved attempt never
    reaches the vendor again from here.
    """
    order = lock_order(db, order)

    if order.status != OrderStatus.PROCESSING.value:
        db.rollback()
        logger.info("Order %s is %s, skipping vendor purchase", order.order_number, order.status)
        return "skipped"
    if order.vendor_reference:
        db.rollback()
        logger.info("Order %s already purchased (%s), skipping vendor call", order.order_number, order.vendor_reference)
        return "already_purchased"
    if order.needs_reconciliation:
        db.rollback()
        logger.info("Order %s awaits reconciliation, skipping vendor call", order.order_number)
        return "awaiting_reconciliation"

    if not requires_vendor_purchase(order):
        fire(db, order, OrderEvent.SUCCESS)
        db.commit()
        return "succeeded"

    if not order.product_id or not order.product_item_id or not order.user_data:
        fail_order(db, order, "Order is missing product or game account details")
        db.commit()
        return "failed"

    crypto_tx = order.crypto_transaction
    if crypto_tx is None or crypto_tx.state != CryptoState.CONFIRMED.value:
        fail_order(db, order, "Transaction validation failed: payment is not confirmed")
        db.commit()
        return "failed"

    if order.vendor_attempts >= settings.VENDOR_MAX_ATTEMPTS:
        last_error = order.error_message or "unknown error"
        fail_order(db, order, f"Vendor purchase failed after {order.vendor_attempts} attempts: {last_error}")
        db.commit()
        return "failed"

    # Stays set until the outcome is known, so a crash mid-call leaves the
    # order for reconciliation instead of a second purchase.
    order.vendor_attempts += 1
    order.needs_reconciliation = True
    db.commit()

    request_body = {
        "product_id": order.product_id,
        "product_item_id": order.product_item_id,
        "user_data": order.user_data,
        "reference": order.order_number,
        "price": str(order.amount),
    }
    try:
        result = vendor.create_order(
            product_id=order.product_id,
            item_id=order.product_item_id,
            user_input=order.user_data,
            partner_order_id=order.order_number,
            callback_url=vendor_callback_url(),
            price=order.amount,
        )
    except VendorNetworkError as exc:
        logger.warning("Vendor unreachable for order %s, leaving it for reconciliation: %s", order.order_number, exc)
        log_vendor_interaction(
            db, order, "create_order", request_body=request_body, response_body=str(exc),
            status="error", retry_count=order.vendor_attempts - 1,
        )
        order.needs_reconciliation = True
        order.error_message = f"Vendor request failed: {exc}"
        db.commit()
        return "awaiting_reconciliation"

    log_vendor_interaction(
        db,
        order,
        "create_order",
        request_body=request_body,
        response_body=result.raw,
        status=type(result).__name__.removeprefix("Vendor").lower(),
        retry_count=order.vendor_attempts - 1,
    )

    if isinstance(result, VendorSuccess):
        tracking_number = result.tracking_number
        order.tracking_number = tracking_number
        order.invoice_id = tracking_number
        order.error_message = None
        _merge_metadata(order, {"vendor_response": result.raw})
        order.needs_reconciliation = not tracking_number
        if not tracking_number:
            logger.warning("Vendor accepted order %s without a reference", order.order_number)
        db.commit()
        logger.info("Vendor purchase placed for order %s (tracking %s)", order.order_number, tracking_number)
        return "purchased"

    if isinstance(result, VendorMaintenance):
        order.needs_reconciliation = False
        order.error_message = result.message
        enqueue(
            db,
            "fulfill_order",
            {"order_id": order.id},
            delay_seconds=settings.VENDOR_MAINTENANCE_RETRY_DELAY_SECONDS,
        )
        db.commit()
        logger.warning("Vendor maintenance for order %s, retry scheduled", order.order_number)
        return "maintenance"

    if isinstance(result, VendorDuplicate):
        order.needs_reconciliation = True
        order.error_message = result.message
        _merge_metadata(order, {"vendor_response": result.raw})
        db.commit()
        logger.warning("Vendor reports order %s already exists, awaiting reconciliation", order.order_number)
        return "awaiting_reconciliation"

    reason = result.reason if isinstance(result, VendorFailure) else "Order creation failed"
    order.needs_reconciliation = False
    fail_order(db, order, reason)
    db.commit()
    return "failed"


def apply_vendor_status(
    db: Session,
    order: Order,
    status: VendorOrderStatus | str,
    *,
    tracking_number: str | None = None,
    message: str | None = None,
    metadata: dict | None = None,
) -> bool:
    """Map a vendor status onto the order. Returns True when the order changed.

    Raises :class:`InvalidTransition` when the vendor reports an outcome the
    order can no longer take (e.g. success on a failed order). The caller commits.
    """
    if isinstance(status, VendorOrderStatus):
        message = message or status.message
        tracking_number = tracking_number or status.data.get("invoiceId")
        vendor_status = status.status
    else:
        vendor_status = (status or "").strip().lower()

    changed = False
    if tracking_number and not order.tracking_number:
        order.tracking_number = str(tracking_number)
        order.invoice_id = order.invoice_id or str(tracking_number)
        changed = True
    _merge_metadata(order, metadata)

    if vendor_status in {"succeeded", "success", "completed"}:
        order.needs_reconciliation = False
        return fire(db, order, OrderEvent.SUCCESS).changed or changed

    if vendor_status in {"failed", "cancelled", "canceled"}:
        order.needs_reconciliation = False
        error = f"Vendor order {vendor_status}: {message or 'Unknown error'}"
        return fire(db, order, OrderEvent.FAIL, error_message=error).changed or changed

    if vendor_status == "not_found" and order.needs_reconciliation and not order.tracking_number:
        # The vendor never recorded the order; purchase again within the attempt budget.
        order.needs_reconciliation = False
        enqueue(db, "fulfill_order", {"order_id": order.id})
        logger.info("Order %s not found at vendor, purchase re-queued", order.order_number)
        return True

    if vendor_status not in {"processing", "pending"}:
        logger.warning("Order %s: unhandled vendor status %r (%s)", order.order_number, vendor_status, message)
    return changed


def cancel_order(db: Session, order: Order) -> Order:
    fire(db, order, OrderEvent.CANCEL, actor="user")
    crypto_tx = order.crypto_transaction
    if crypto_tx is not None and crypto_tx.state == CryptoState.PENDING.value:
        expire_crypto_transaction(crypto_tx)
    db.commit()
    db.refresh(order)
    return order


def complete_order(db: Session, order: Order) -> Order:
    fire(db, order, OrderEvent.COMPLETE, actor="admin")
    db.commit()
    db.refresh(order)
    return order
