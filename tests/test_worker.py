import asyncio
from contextlib import nullcontext
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update

from app.models import BackgroundJob
from app.services import order_service
from app.services.payment_verifier import InsufficientConfirmations, VerifiedTransaction
from app.services.timeutils import as_utc, db_datetime, utcnow
from app.services.vendor_client import VendorSuccess
from app.worker import pool as pool_module
from app.worker import tasks
from app.worker.pool import WorkerPool
from app.worker.queue import RetryJob, claim_next_job, enqueue, retry_delay_seconds

from conftest import PLATFORM_WALLET, USER_WALLET, TestSessionLocal


def queued(db, name, payload=None, **kwargs):
    job = enqueue(db, name, payload, **kwargs)
    db.commit()
    return job


def test_claim_marks_job_running(db):
    job = queued(db, "verify_payment", {"order_id": 1})

    claimed = claim_next_job(db)

    assert claimed.id == job.id
    assert claimed.status == "running"
    assert claimed.attempts == 1
    assert claimed.locked_at is not None
    assert claim_next_job(db) is None


def test_delayed_job_is_not_claimed_early(db):
    queued(db, "verify_payment", {"order_id": 1}, delay_seconds=300)

    assert claim_next_job(db) is None


def test_job_with_expired_lease_is_reclaimed(db):
    job = queued(db, "fulfill_order", {"order_id": 1})
    db.execute(
        update(BackgroundJob)
        .where(BackgroundJob.id == job.id)
        .values(status="running", attempts=1, locked_at=db_datetime(db, utcnow() - timedelta(hours=1)))
        .execution_options(synchronize_session=False)
    )
    db.commit()

    claimed = claim_next_job(db)

    assert claimed.id == job.id
    assert claimed.attempts == 2


def test_retry_delay_backs_off_exponentially():
    assert retry_delay_seconds(1) == 15
    assert retry_delay_seconds(2) == 30
    assert retry_delay_seconds(4) == 120


def test_retry_job_is_rescheduled(db, monkeypatch):
    def flaky(db, payload):
        raise RetryJob("not yet", delay_seconds=60)

    monkeypatch.setitem(tasks.HANDLERS, "flaky", tasks.JobHandler(run=flaky))
    queued(db, "flaky")
    job = claim_next_job(db)

    tasks.execute_job(db, job)

    db.refresh(job)
    assert job.status == "queued"
    assert job.last_error == "not yet"
    assert as_utc(job.run_at) > utcnow() + timedelta(seconds=30)


def test_exhausted_job_fails_and_runs_hook(db, monkeypatch):
    hook = MagicMock()

    def broken(db, payload):
        raise RuntimeError("boom")

    monkeypatch.setitem(tasks.HANDLERS, "broken", tasks.JobHandler(run=broken, on_exhausted=hook))
    queued(db, "broken", {"order_id": 7}, max_attempts=1)
    job = claim_next_job(db)

    tasks.execute_job(db, job)

    db.refresh(job)
    assert job.status == "failed"
    assert job.last_error == "RuntimeError: boom"
    hook.assert_called_once_with(db, {"order_id": 7}, "RuntimeError: boom")


def test_unknown_job_fails(db):
    queued(db, "no_such_job")

    assert tasks.run_next_job(TestSessionLocal) is True

    db.expire_all()
    job = db.query(BackgroundJob).one()
    assert job.status == "failed"
    assert job.last_error == "Unknown job: no_such_job"


def test_run_next_job_without_jobs(db):
    assert tasks.run_next_job(TestSessionLocal) is False


def patch_integrations(monkeypatch, verifier, vendor=None):
    monkeypatch.setattr(tasks, "get_solana_client", lambda: nullcontext(MagicMock()))
    monkeypatch.setattr(tasks, "get_payment_verifier", lambda chain: verifier)
    monkeypatch.setattr(tasks, "get_vendor_client", lambda: nullcontext(vendor or MagicMock()))


def confirmed_payment(order):
    return VerifiedTransaction(
        signature=order.crypto_transaction.transaction_signature,
        from_address=USER_WALLET,
        to_address=PLATFORM_WALLET,
        amount=Decimal("0.02"),
        raw_amount=Decimal("20000000"),
        token="SOL",
        is_spl_token=False,
        confirmations=1,
        confirmation_status="finalized",
        block_number=10,
        block_timestamp=1_700_000_000,
        fee_lamports=5000,
    )


def test_verify_payment_job_pays_and_purchases(db, make_order, monkeypatch):
    order = make_order()
    verifier = MagicMock()
    verifier.verify.return_value = confirmed_payment(order)
    vendor = MagicMock()
    vendor.create_order.return_value = VendorSuccess(data={"invoiceId": "INV-1"})
    patch_integrations(monkeypatch, verifier, vendor)
    queued(db, "verify_payment", {"order_id": order.id})

    assert tasks.run_next_job(TestSessionLocal) is True

    db.expire_all()
    assert order.status == "processing"
    assert order.tracking_number == "INV-1"
    assert db.query(BackgroundJob).one().status == "done"


def test_unconfirmed_payment_is_retried(db, make_order, monkeypatch):
    order = make_order()
    verifier = MagicMock()
    verifier.verify.side_effect = InsufficientConfirmations("Transaction not yet confirmed (status: processed)")
    patch_integrations(monkeypatch, verifier)
    queued(db, "verify_payment", {"order_id": order.id})

    tasks.run_next_job(TestSessionLocal)

    db.expire_all()
    job = db.query(BackgroundJob).one()
    assert job.status == "queued"
    assert "not yet confirmed" in job.last_error
    assert order.status == "pending"


def test_verification_gives_up_after_max_attempts(db, make_order, monkeypatch):
    order = make_order()
    verifier = MagicMock()
    verifier.verify.side_effect = InsufficientConfirmations("processed")
    patch_integrations(monkeypatch, verifier)
    queued(db, "verify_payment", {"order_id": order.id}, max_attempts=1)

    tasks.run_next_job(TestSessionLocal)

    db.expire_all()
    assert db.query(BackgroundJob).one().status == "failed"
    assert order.status == "failed"
    assert order.error_message == "Transaction could not be verified: processed"


def test_fulfill_job_processes_paid_order(db, make_order, monkeypatch):
    order = make_order(status="paid", tx_state="confirmed")
    vendor = MagicMock()
    vendor.create_order.return_value = VendorSuccess(data={"invoiceId": "INV-2"})
    patch_integrations(monkeypatch, MagicMock(), vendor)
    queued(db, "fulfill_order", {"order_id": order.id})

    tasks.run_next_job(TestSessionLocal)

    db.expire_all()
    assert order.status == "processing"
    assert order.tracking_number == "INV-2"


def test_exhausted_fulfillment_flags_order_for_reconciliation(db, make_order, monkeypatch):
    order = make_order(status="processing", tx_state="confirmed")
    vendor = MagicMock()
    vendor.create_order.side_effect = RuntimeError("unexpected payload")
    patch_integrations(monkeypatch, MagicMock(), vendor)
    queued(db, "fulfill_order", {"order_id": order.id}, max_attempts=1)

    tasks.run_next_job(TestSessionLocal)

    db.expire_all()
    assert order.status == "processing"
    assert order.needs_reconciliation is True
    assert order.error_message == "RuntimeError: unexpected payload"


def test_schedule_reconciliation_is_deduplicated(db):
    assert tasks.schedule_reconciliation(TestSessionLocal) is True
    assert tasks.schedule_reconciliation(TestSessionLocal) is False

    job = db.query(BackgroundJob).one()
    assert job.name == "reconcile_orders"
    assert job.max_attempts == 1


@pytest.fixture
def fake_pool_runtime(monkeypatch):
    calls = {"run": 0, "schedule": 0}

    def fake_run(session_factory):
        calls["run"] += 1
        if calls["run"] == 1:
            raise RuntimeError("database went away")
        return False

    def fake_schedule(session_factory):
        calls["schedule"] += 1
        return True

    monkeypatch.setattr(pool_module, "run_next_job", fake_run)
    monkeypatch.setattr(pool_module, "schedule_reconciliation", fake_schedule)
    return calls


def test_worker_pool_survives_errors_and_stops(fake_pool_runtime):
    async def scenario():
        pool = WorkerPool(concurrency=1, poll_interval=0.01, reconcile_interval=60, session_factory=TestSessionLocal)
        await pool.start()
        assert pool.running
        await asyncio.sleep(0.1)
        await pool.stop()
        return pool

    pool = asyncio.run(scenario())

    assert pool.running is False
    assert fake_pool_runtime["run"] > 1
    assert fake_pool_runtime["schedule"] == 1


def test_vendor_crash_during_verification_is_not_purchased_twice(db, make_order, monkeypatch):
    order = make_order()
    verifier = MagicMock()
    verifier.verify.return_value = confirmed_payment(order)
    vendor = MagicMock()
    vendor.create_order.side_effect = RuntimeError("connection reset mid-response")
    patch_integrations(monkeypatch, verifier, vendor)
    queued(db, "verify_payment", {"order_id": order.id})

    tasks.run_next_job(TestSessionLocal)

    db.expire_all()
    assert order.status == "processing"
    assert order.needs_reconciliation is True
    assert order.vendor_attempts == 1

    queued(db, "verify_payment", {"order_id": order.id})
    queued(db, "fulfill_order", {"order_id": order.id})
    assert tasks.run_next_job(TestSessionLocal) is True
    assert tasks.run_next_job(TestSessionLocal) is True

    assert vendor.create_order.call_count == 1
    verifier.verify.assert_called_once()


def test_recently_pending_signature_requeues_verification(db, make_order, monkeypatch):
    order = make_order()
    order_service.record_verification(db, order, order.crypto_transaction.transaction_signature, "pending")
    db.commit()
    verifier = MagicMock()
    patch_integrations(monkeypatch, verifier)
    queued(db, "verify_payment", {"order_id": order.id})

    tasks.run_next_job(TestSessionLocal)

    db.expire_all()
    job = db.query(BackgroundJob).one()
    assert job.status == "queued"
    assert "checked recently" in job.last_error
    assert as_utc(job.run_at) > utcnow()
    verifier.verify.assert_not_called()
