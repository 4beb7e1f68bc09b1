import re
from contextlib import nullcontext
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update

from app.models import AuditLog, BackgroundJob, CryptoTransaction, Order, VendorTransactionLog, VerificationCache
from app.services import order_service
from app.services.order_lifecycle import InvalidTransition
from app.services.payment_verifier import AmountMismatch, InsufficientConfirmations, TransactionNotFound, VerifiedTransaction
from app.services.reconciliation import select_orders_for_reconciliation
from app.services.timeutils import db_datetime, utcnow
from app.services.vendor_client import (
    MAINTENANCE_MESSAGE,
    VendorDuplicate,
    VendorFailure,
    VendorMaintenance,
    VendorNetworkError,
    VendorOrderStatus,
    VendorSuccess,
)

from conftest import PLATFORM_WALLET, USER_WALLET

SIGNATURE = "3xKz9fW2vQ7nT4pL8mR6sY1uH5jD0cB2aE9gF7iK3oN6qS8tV1wX4yZ7bC0dE2fG"


def verified(amount="0.025", signature=SIGNATURE):
    return VerifiedTransaction(
        signature=signature,
        from_address=USER_WALLET,
        to_address=PLATFORM_WALLET,
        amount=Decimal(amount),
        raw_amount=Decimal(amount) * 1_000_000_000,
        token="SOL",
        is_spl_token=False,
        confirmations=1,
        confirmation_status="finalized",
        block_number=123,
        block_timestamp=1_700_000_000,
        fee_lamports=5000,
    )


def vendor_returning(result):
    vendor = MagicMock()
    vendor.create_order.return_value = result
    return vendor


def create(db, user, **overrides):
    values = {
        "amount": Decimal("4.99"),
        "crypto_amount": Decimal("0.02"),
        "transaction_signature": SIGNATURE,
        "product_id": "12",
        "product_item_id": "345",
        "product_title": "Mobile Legends (Global) Diamonds",
        "user_data": {"userId": "1", "zoneId": "2"},
    }
    values.update(overrides)
    return order_service.create_order(db, user, **values)


def test_generate_order_number_format(db):
    number = order_service.generate_order_number(db, title="Mobile Legends (Global) Diamonds", name="Test User")
    assert re.fullmatch(r"TESTUMLD[0-9A-F]{12}", number)


def test_generate_order_number_defaults(db):
    number = order_service.generate_order_number(db)
    assert re.fullmatch(r"KMYTOPUP[0-9A-F]{12}", number)


def test_generate_order_number_skips_used_numbers(db, make_order, monkeypatch):
    make_order(order_number="TESTMLD000000000001")
    tokens = iter(["000000000001", "abcdefabcdef"])
    monkeypatch.setattr(order_service.secrets, "token_hex", lambda n: next(tokens))

    number = order_service.generate_order_number(db, title="Mobile Legends Diamonds", name="test")

    assert number == "TESTMLDABCDEFABCDEF"


def test_create_order_binds_signature_and_queues_verification(db, test_user):
    order = create(db, test_user, transaction_signature=f"  {SIGNATURE} ")

    assert order.status == "pending"
    assert order.order_number.startswith("TESTUMLD")
    crypto_tx = order.crypto_transaction
    assert crypto_tx.transaction_signature == SIGNATURE
    assert crypto_tx.state == "pending"
    assert crypto_tx.wallet_to == PLATFORM_WALLET
    job = db.query(BackgroundJob).one()
    assert job.name == "verify_payment"
    assert job.payload == {"order_id": order.id}
    assert db.query(AuditLog).filter(AuditLog.action == "order_created").count() == 1


def test_create_order_rejects_second_active_order(db, test_user):
    create(db, test_user)

    with pytest.raises(order_service.ActiveOrderExists):
        create(db, test_user, transaction_signature="another-signature-000000000000000000")


def test_signature_can_bind_only_one_order(db, test_user, test_user2):
    create(db, test_user)

    with pytest.raises(order_service.SignatureAlreadyUsed):
        create(db, test_user2)
    assert db.query(Order).count() == 1


def test_verify_payment_success_runs_purchase(db, make_order):
    order = make_order(crypto_amount=Decimal("0.02"))
    verifier = MagicMock()
    verifier.verify.return_value = verified("0.025", order.crypto_transaction.transaction_signature)
    vendor = vendor_returning(VendorSuccess(data={"invoiceId": "INV-1"}, raw={"success": True}))

    outcome = order_service.verify_order_payment(db, order, verifier, vendor_factory=lambda: nullcontext(vendor))

    assert outcome == "purchased"
    db.refresh(order)
    assert order.status == "processing"
    assert order.tracking_number == "INV-1"
    assert order.crypto_amount == Decimal("0.025")
    assert order.crypto_transaction.state == "confirmed"
    assert order.crypto_transaction.block_number == 123
    kwargs = verifier.verify.call_args.kwargs
    assert kwargs["expected_receiver"] == PLATFORM_WALLET
    assert kwargs["expected_sender"] == USER_WALLET
    assert db.query(AuditLog).filter(AuditLog.action == "payment_verified").count() == 1
    assert db.query(VerificationCache).one().verification_status == "verified"
    assert db.query(VendorTransactionLog).filter(VendorTransactionLog.vendor_name == "create_order").count() == 1


def test_verify_payment_without_vendor_factory_queues_fulfillment(db, make_order):
    order = make_order()
    verifier = MagicMock()
    verifier.verify.return_value = verified("0.02", order.crypto_transaction.transaction_signature)

    assert order_service.verify_order_payment(db, order, verifier) == "queued"
    assert db.query(BackgroundJob).filter(BackgroundJob.name == "fulfill_order").count() == 1


def test_amount_mismatch_fails_order(db, make_order):
    order = make_order()
    verifier = MagicMock()
    verifier.verify.side_effect = AmountMismatch("Transaction amount 0.01 SOL is less than expected 0.02 SOL")

    assert order_service.verify_order_payment(db, order, verifier) == "failed"

    db.refresh(order)
    assert order.status == "failed"
    assert "less than expected" in order.error_message
    assert order.crypto_transaction.state == "failed"
    assert db.query(VerificationCache).one().verification_status == "failed"


def test_transaction_not_found_fails_order(db, make_order):
    order = make_order()
    verifier = MagicMock()
    verifier.verify.side_effect = TransactionNotFound("not found")

    assert order_service.verify_order_payment(db, order, verifier) == "failed"
    db.refresh(order)
    assert order.status == "failed"


def test_insufficient_confirmations_propagates_for_retry(db, make_order):
    order = make_order()
    verifier = MagicMock()
    verifier.verify.side_effect = InsufficientConfirmations("processed")

    with pytest.raises(InsufficientConfirmations):
        order_service.verify_order_payment(db, order, verifier)

    db.refresh(order)
    assert order.status == "pending"
    assert db.query(VerificationCache).one().last_error == "processed"


def test_verify_skips_orders_no_longer_pending(db, make_order):
    order = make_order(status="cancelled")
    verifier = MagicMock()

    assert order_service.verify_order_payment(db, order, verifier) == "skipped"
    verifier.verify.assert_not_called()


def test_purchase_skipped_when_tracking_number_present(db, make_order):
    order = make_order(status="processing", tx_state="confirmed", tracking_number="INV-1")
    vendor = MagicMock()

    assert order_service.purchase_game_credit(db, order, vendor) == "already_purchased"
    assert order_service.purchase_game_credit(db, order, vendor) == "already_purchased"
    assert vendor.method_calls == []


def test_purchase_maintenance_keeps_order_processing(db, make_order):
    order = make_order(status="processing", tx_state="confirmed")
    vendor = vendor_returning(VendorMaintenance(raw={"statusCode": 422, "error": "Maintenance"}))

    assert order_service.purchase_game_credit(db, order, vendor) == "maintenance"

    db.refresh(order)
    assert order.status == "processing"
    assert order.error_message == MAINTENANCE_MESSAGE
    retry = db.query(BackgroundJob).filter(BackgroundJob.name == "fulfill_order").one()
    assert retry.payload == {"order_id": order.id}


def test_purchase_fails_after_max_vendor_attempts(db, make_order):
    order = make_order(status="processing", tx_state="confirmed", vendor_attempts=3, error_message=MAINTENANCE_MESSAGE)
    vendor = MagicMock()

    assert order_service.purchase_game_credit(db, order, vendor) == "failed"
    vendor.create_order.assert_not_called()
    db.refresh(order)
    assert order.status == "failed"
    assert "after 3 attempts" in order.error_message


@pytest.mark.parametrize(
    "result",
    [
        VendorDuplicate(message="Order already exists"),
        VendorNetworkError("read timeout"),
    ],
)
def test_ambiguous_vendor_outcome_awaits_reconciliation(db, make_order, result):
    order = make_order(status="processing", tx_state="confirmed")
    vendor = MagicMock()
    if isinstance(result, Exception):
        vendor.create_order.side_effect = result
    else:
        vendor.create_order.return_value = result

    assert order_service.purchase_game_credit(db, order, vendor) == "awaiting_reconciliation"

    db.refresh(order)
    assert order.status == "processing"
    assert order.needs_reconciliation is True
    # a flagged order is not purchased again until reconciliation clears it
    assert order_service.purchase_game_credit(db, order, vendor) == "awaiting_reconciliation"
    assert vendor.create_order.call_count == 1


def test_purchase_failure_fails_order(db, make_order):
    order = make_order(status="processing", tx_state="confirmed")
    vendor = vendor_returning(VendorFailure(reason="Invalid game id"))

    assert order_service.purchase_game_credit(db, order, vendor) == "failed"
    db.refresh(order)
    assert order.status == "failed"
    assert order.error_message == "Invalid game id"


def test_purchase_requires_confirmed_payment(db, make_order):
    order = make_order(status="processing", tx_state="pending")
    vendor = MagicMock()

    assert order_service.purchase_game_credit(db, order, vendor) == "failed"
    vendor.create_order.assert_not_called()


def test_purchase_sends_order_details(db, make_order):
    order = make_order(status="processing", tx_state="confirmed")
    vendor = vendor_returning(VendorSuccess(data={"invoiceId": "INV-9"}))

    order_service.purchase_game_credit(db, order, vendor)

    kwargs = vendor.create_order.call_args.kwargs
    assert kwargs["product_id"] == "12"
    assert kwargs["item_id"] == "345"
    assert kwargs["partner_order_id"] == order.order_number
    assert kwargs["callback_url"] == "https://api.example.com/webhooks/vendor/callback"
    assert kwargs["price"] == Decimal("4.99")


def test_apply_vendor_status_success(db, make_order):
    order = make_order(status="processing", tracking_number="INV-1")

    assert order_service.apply_vendor_status(db, order, "succeeded") is True
    db.commit()
    db.refresh(order)
    assert order.status == "succeeded"


def test_apply_vendor_status_failure_stores_message(db, make_order):
    order = make_order(status="processing", tracking_number="INV-1")

    order_service.apply_vendor_status(db, order, VendorOrderStatus(status="cancelled", message="Out of stock"))
    db.commit()
    db.refresh(order)
    assert order.status == "failed"
    assert order.error_message == "Vendor order cancelled: Out of stock"


def test_apply_vendor_status_in_flight_is_noop(db, make_order):
    order = make_order(status="processing", tracking_number="INV-1")

    assert order_service.apply_vendor_status(db, order, "processing") is False
    assert order.status == "processing"


def test_apply_vendor_status_records_tracking_number(db, make_order):
    order = make_order(status="processing", needs_reconciliation=True)

    assert order_service.apply_vendor_status(db, order, "pending", tracking_number="INV-5") is True
    assert order.tracking_number == "INV-5"


def test_apply_vendor_status_not_found_requeues_purchase(db, make_order):
    order = make_order(status="processing", needs_reconciliation=True)

    assert order_service.apply_vendor_status(db, order, VendorOrderStatus(status="not_found", message="")) is True
    db.commit()
    assert order.needs_reconciliation is False
    assert db.query(BackgroundJob).filter(BackgroundJob.name == "fulfill_order").count() == 1


def test_apply_vendor_success_on_failed_order_is_rejected(db, make_order):
    order = make_order(status="failed", error_message="boom")

    with pytest.raises(InvalidTransition):
        order_service.apply_vendor_status(db, order, "succeeded")


def test_cancel_order_expires_payment(db, make_order):
    order = make_order()

    order_service.cancel_order(db, order)

    assert order.status == "cancelled"
    assert db.query(CryptoTransaction).one().state == "expired"


def test_complete_order(db, make_order):
    order = make_order(status="succeeded")

    assert order_service.complete_order(db, order).status == "completed"


def test_vendor_crash_leaves_order_for_reconciliation(db, make_order):
    order = make_order(status="processing", tx_state="confirmed")
    vendor = MagicMock()
    vendor.create_order.side_effect = RuntimeError("connection reset mid-response")

    with pytest.raises(RuntimeError):
        order_service.purchase_game_credit(db, order, vendor)
    db.rollback()

    db.refresh(order)
    assert order.status == "processing"
    assert order.needs_reconciliation is True
    assert order.vendor_attempts == 1
    db.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(updated_at=db_datetime(db, utcnow() - timedelta(minutes=10)))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    assert select_orders_for_reconciliation(db, min_age_minutes=5, batch_size=10) == [order]
    assert order_service.purchase_game_credit(db, order, vendor) == "awaiting_reconciliation"
    assert vendor.create_order.call_count == 1


def test_verify_resumes_purchase_that_never_started(db, make_order):
    order = make_order(status="processing", tx_state="confirmed")
    verifier = MagicMock()
    vendor = vendor_returning(VendorSuccess(data={"invoiceId": "INV-7"}))

    outcome = order_service.verify_order_payment(db, order, verifier, vendor_factory=lambda: nullcontext(vendor))

    assert outcome == "purchased"
    verifier.verify.assert_not_called()
    db.refresh(order)
    assert order.tracking_number == "INV-7"
    assert order.needs_reconciliation is False


def test_verify_leaves_unresolved_purchase_to_reconciliation(db, make_order):
    order = make_order(status="processing", tx_state="confirmed", needs_reconciliation=True, vendor_attempts=1)
    vendor = MagicMock()

    outcome = order_service.verify_order_payment(db, order, MagicMock(), vendor_factory=lambda: nullcontext(vendor))

    assert outcome == "already_verified"
    assert vendor.method_calls == []


def test_recently_pending_signature_is_not_looked_up_again(db, make_order):
    order = make_order()
    signature = order.crypto_transaction.transaction_signature
    order_service.record_verification(db, order, signature, "pending", error="processed")
    db.commit()
    verifier = MagicMock()

    with pytest.raises(order_service.VerificationDeferred) as excinfo:
        order_service.verify_order_payment(db, order, verifier)

    verifier.verify.assert_not_called()
    assert 0 < excinfo.value.retry_in <= 10
    db.refresh(order)
    assert order.status == "pending"


def test_pending_signature_is_looked_up_after_recheck_interval(db, make_order, monkeypatch):
    monkeypatch.setenv("VERIFY_RECHECK_INTERVAL_SECONDS", "0")
    order = make_order()
    signature = order.crypto_transaction.transaction_signature
    order_service.record_verification(db, order, signature, "pending", error="processed")
    db.commit()
    verifier = MagicMock()
    verifier.verify.return_value = verified("0.02", signature)

    assert order_service.verify_order_payment(db, order, verifier) == "queued"
    verifier.verify.assert_called_once()
