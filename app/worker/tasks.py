import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from app.config import settings
from app.models import BackgroundJob, Order
from app.models.database import SessionLocal
from app.services import order_service
from app.services.cache import get_cache
from app.services.order_lifecycle import OrderStatus
from app.services.payment_verifier import InsufficientConfirmations, get_payment_verifier
from app.services.reconciliation import reconcile_processing_orders
from app.services.solana_rpc import ChainRpcError, get_solana_client
from app.services.vendor_client import VendorConfigurationError, get_vendor_client
from app.worker.queue import (
    RetryJob,
    claim_next_job,
    complete_job,
    enqueue,
    fail_job,
    has_pending_job,
    reschedule_job,
    retry_delay_seconds,
)

logger = logging.getLogger(__name__)

VERIFICATION_LOCK_KEY = "verification-lock:{signature}"


@dataclass(frozen=True)
class JobHandler:
    run: Callable[[Session, dict], None]
    on_exhausted: Callable[[Session, dict, str], None] | None = None


HANDLERS: dict[str, JobHandler] = {}


def job_handler(name: str, on_exhausted: Callable[[Session, dict, str], None] | None = None):
    def register(func: Callable[[Session, dict], None]):
        HANDLERS[name] = JobHandler(run=func, on_exhausted=on_exhausted)
        return func

    return register


def _load_order(db: Session, payload: dict) -> Order | None:
    order_id = payload.get("order_id")
    order = db.query(Order).filter(Order.id == order_id).first() if order_id is not None else None
    if order is None:
        logger.warning("Job payload %s references no existing order", payload)
    return order


def _fail_unverified_order(db: Session, payload: dict, error: str) -> None:
    order = _load_order(db, payload)
    if order is None or order.status != OrderStatus.PENDING.value:
        return
    order_service.fail_order(db, order, f"Transaction could not be verified: {error}")
    db.commit()


def _flag_for_reconciliation(db: Session, payload: dict, error: str) -> None:
    order = _load_order(db, payload)
    if order is None or order.status != OrderStatus.PROCESSING.value:
        return
    order.needs_reconciliation = True
    order.error_message = error
    db.commit()


@job_handler("verify_payment", on_exhausted=_fail_unverified_order)
def verify_payment(db: Session, payload: dict) -> None:
    order = _load_order(db, payload)
    if order is None:
        return
    crypto_tx = order.crypto_transaction
    cache = get_cache()
    lock_key = None
    if crypto_tx is not None:
        lock_key = VERIFICATION_LOCK_KEY.format(signature=crypto_tx.transaction_signature)
        if not cache.add(lock_key, str(order.id), settings.VERIFICATION_CACHE_TTL_SECONDS):
            raise RetryJob("verification already in progress", delay_seconds=settings.VERIFY_INITIAL_DELAY_SECONDS)

    try:
        with get_solana_client() as chain:
            outcome = order_service.verify_order_payment(
                db,
                order,
                get_payment_verifier(chain),
                vendor_factory=get_vendor_client,
            )
        logger.info("Verification of order %s finished: %s", order.order_number, outcome)
    except order_service.VerificationDeferred as exc:
        raise RetryJob(str(exc), delay_seconds=exc.retry_in) from exc
    except (InsufficientConfirmations, ChainRpcError) as exc:
        raise RetryJob(str(exc)) from exc
    except VendorConfigurationError as exc:
        logger.error("Vendor is not configured, failing order %s: %s", order.order_number, exc)
        db.rollback()
        order_service.fail_order(db, order, f"Vendor configuration error: {exc}")
        db.commit()
    finally:
        if lock_key:
            cache.delete(lock_key)


@job_handler("fulfill_order", on_exhausted=_flag_for_reconciliation)
def fulfill_order(db: Session, payload: dict) -> None:
    order = _load_order(db, payload)
    if order is None:
        return
    try:
        if order.status == OrderStatus.PAID.value:
            outcome = order_service.start_fulfillment(db, order, vendor_factory=get_vendor_client)
        else:
            with get_vendor_client() as vendor:
                outcome = order_service.purchase_game_credit(db, order, vendor)
    except VendorConfigurationError as exc:
        logger.error("Vendor is not configured, failing order %s: %s", order.order_number, exc)
        db.rollback()
        order_service.fail_order(db, order, f"Vendor configuration error: {exc}")
        db.commit()
        return
    logger.info("Fulfillment of order %s finished: %s", order.order_number, outcome)


@job_handler("reconcile_orders")
def reconcile_orders(db: Session, payload: dict) -> None:
    with get_vendor_client() as vendor:
        reconcile_processing_orders(
            db,
            vendor,
            batch_size=payload.get("batch_size", settings.RECONCILE_BATCH_SIZE),
            min_age_minutes=payload.get("min_age_minutes", settings.RECONCILE_MIN_AGE_MINUTES),
            throttle_seconds=settings.RECONCILE_THROTTLE_SECONDS,
        )


def _retry_or_exhaust(db: Session, job: BackgroundJob, handler: JobHandler | None, error: str, delay: float | None):
    if handler is None or job.attempts >= job.max_attempts:
        payload = dict(job.payload or {})
        fail_job(db, job, error)
        if handler is not None and handler.on_exhausted is not None:
            try:
                handler.on_exhausted(db, payload, error)
            except Exception:
                db.rollback()
                logger.exception("on_exhausted hook for job %s (%s) failed", job.id, job.name)
        return
    reschedule_job(db, job, error, delay if delay is not None else retry_delay_seconds(job.attempts))


def execute_job(db: Session, job: BackgroundJob) -> None:
    handler = HANDLERS.get(job.name)
    if handler is None:
        logger.error("No handler registered for job %s (%s)", job.id, job.name)
        _retry_or_exhaust(db, job, None, f"Unknown job: {job.name}", None)
        return

    payload = dict(job.payload or {})
    logger.info("Running job %s (%s) attempt %s/%s", job.id, job.name, job.attempts, job.max_attempts)
    try:
        handler.run(db, payload)
    except RetryJob as exc:
        db.rollback()
        _retry_or_exhaust(db, job, handler, exc.reason or "retry requested", exc.delay_seconds)
    except Exception as exc:
        db.rollback()
        logger.exception("Job %s (%s) raised", job.id, job.name)
        _retry_or_exhaust(db, job, handler, f"{type(exc).__name__}: {exc}", None)
    else:
        complete_job(db, job)


def run_next_job(session_factory=SessionLocal) -> bool:
    """Claim and run one due job. Returns False when nothing was due."""
    db = session_factory()
    try:
        job = claim_next_job(db)
        if job is None:
            return False
        execute_job(db, job)
        return True
    finally:
        db.close()


def schedule_reconciliation(session_factory=SessionLocal) -> bool:
    db = session_factory()
    try:
        if has_pending_job(db, "reconcile_orders"):
            return False
        enqueue(db, "reconcile_orders", {}, max_attempts=1)
        db.commit()
        return True
    finally:
        db.close()
