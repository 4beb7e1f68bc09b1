"""Order and crypto-transaction state machines.

Every status change goes through :func:`fire`, which validates the event
against the transition table and then writes the new status with a
conditional ``UPDATE ... WHERE status = <current>``. Two workers racing on the
same order cannot both win a transition, so side effects bound to a
transition run at most once. Side effects are not executed here: ``fire``
reports the effect name and the orchestrator runs it after committing.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from app.models import AuditLog, CryptoTransaction, Order
from app.services.timeutils import utcnow

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OrderEvent(str, Enum):
    PAY = "pay"
    PROCESS = "process"
    SUCCESS = "success"
    COMPLETE = "complete"
    FAIL = "fail"
    CANCEL = "cancel"


ACTIVE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.PROCESSING})
TERMINAL_STATUSES = frozenset(
    {OrderStatus.SUCCEEDED, OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELLED}
)

PURCHASE_GAME_CREDIT = "purchase_game_credit"


class InvalidTransition(Exception):
    def __init__(self, order_number: str | None, status: str, event: "OrderEvent | str"):
        event_name = event.value if isinstance(event, Enum) else event
        super().__init__(f"Order {order_number}: cannot {event_name} from {status}")
        self.order_number = order_number
        self.status = status
        self.event = event_name


class StaleOrderState(InvalidTransition):
    """Another writer changed the order status between read and update."""


def _requires_error_message(order: Order, error_message: str | None) -> str | None:
    if not (error_message or order.error_message):
        return "fail requires an error message"
    return None


@dataclass(frozen=True)
class Transition:
    target: OrderStatus
    guard: Callable[[Order, str | None], str | None] | None = None
    effect: str | None = None


_EVENT_RULES: dict[OrderEvent, tuple[frozenset, Transition]] = {
    OrderEvent.PAY: (frozenset({OrderStatus.PENDING}), Transition(OrderStatus.PAID)),
    OrderEvent.PROCESS: (
        frozenset({OrderStatus.PENDING, OrderStatus.PAID}),
        Transition(OrderStatus.PROCESSING, effect=PURCHASE_GAME_CREDIT),
    ),
    OrderEvent.SUCCESS: (
        frozenset({OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.PROCESSING}),
        Transition(OrderStatus.SUCCEEDED),
    ),
    OrderEvent.COMPLETE: (frozenset({OrderStatus.SUCCEEDED}), Transition(OrderStatus.COMPLETED)),
    OrderEvent.FAIL: (
        frozenset({OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.PROCESSING}),
        Transition(OrderStatus.FAILED, guard=_requires_error_message),
    ),
    OrderEvent.CANCEL: (frozenset({OrderStatus.PENDING}), Transition(OrderStatus.CANCELLED)),
}

# (state, event) -> transition
TRANSITIONS: dict[tuple[OrderStatus, OrderEvent], Transition] = {
    (source, event): transition
    for event, (sources, transition) in _EVENT_RULES.items()
    for source in sources
}

EVENT_TARGETS: dict[OrderEvent, OrderStatus] = {
    event: transition.target for event, (_, transition) in _EVENT_RULES.items()
}


@dataclass(frozen=True)
class TransitionResult:
    changed: bool
    from_status: OrderStatus
    to_status: OrderStatus
    effect: str | None = None


def may_fire(order: Order, event: OrderEvent) -> bool:
    return (OrderStatus(order.status), OrderEvent(event)) in TRANSITIONS


def is_terminal(order: Order) -> bool:
    return OrderStatus(order.status) in TERMINAL_STATUSES


def fire(
    db: Session,
    order: Order,
    event: OrderEvent,
    *,
    error_message: str | None = None,
    actor: str = "system",
) -> TransitionResult:
    """Apply ``event`` to ``order`` inside the caller's transaction.

    An event whose target equals the current status is a no-op (duplicate
    callbacks, repeated triggers). Any other illegal event raises
    :class:`InvalidTransition`. The caller commits.
    """
    event = OrderEvent(event)
    current = OrderStatus(order.status)
    transition = TRANSITIONS.get((current, event))

    if transition is None:
        if EVENT_TARGETS[event] == current:
            logger.info("Order %s already %s, ignoring %s", order.order_number, current.value, event.value)
            return TransitionResult(changed=False, from_status=current, to_status=current)
        raise InvalidTransition(order.order_number, current.value, event)

    if transition.guard is not None:
        problem = transition.guard(order, error_message)
        if problem:
            raise ValueError(f"Order {order.order_number}: {problem}")

    values = {Order.status: transition.target.value, Order.updated_at: func.now()}
    if error_message is not None:
        values[Order.error_message] = error_message

    # Push pending attribute changes first so the conditional update sees them.
    db.flush()
    updated = (
        db.query(Order)
        .filter(Order.id == order.id, Order.status == current.value)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        db.expire(order, ["status"])
        raise StaleOrderState(order.order_number, order.status, event)

    order.status = transition.target.value
    if error_message is not None:
        order.error_message = error_message
    db.expire(order, ["updated_at"])

    db.add(
        AuditLog(
            user_id=order.user_id,
            action=f"order_{event.value}",
            auditable_type="Order",
            auditable_id=order.id,
            old_values={"status": current.value},
            new_values={"status": transition.target.value},
            log_metadata={"order_number": order.order_number, "actor": actor, "error_message": error_message},
        )
    )
    logger.info(
        "Order %s: %s -> %s (%s)",
        order.order_number,
        current.value,
        transition.target.value,
        event.value,
    )
    return TransitionResult(
        changed=True,
        from_status=current,
        to_status=transition.target,
        effect=transition.effect,
    )


class CryptoState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"


def _move_crypto_transaction(crypto_tx: CryptoTransaction, target: CryptoState) -> bool:
    current = CryptoState(crypto_tx.state)
    if current == target:
        return False
    if current != CryptoState.PENDING:
        raise InvalidTransition(crypto_tx.transaction_signature, current.value, target.value)
    crypto_tx.state = target.value
    return True


def confirm_crypto_transaction(db: Session, crypto_tx: CryptoTransaction) -> bool:
    """Confirm the payment and move its order toward ``paid``.

    The parent order is only paid while still ``pending``; a later lifecycle
    state is never regressed.
    """
    if not _move_crypto_transaction(crypto_tx, CryptoState.CONFIRMED):
        return False
    crypto_tx.verified_at = utcnow()
    order = crypto_tx.order
    if order is not None and may_fire(order, OrderEvent.PAY):
        fire(db, order, OrderEvent.PAY)
    return True


def fail_crypto_transaction(crypto_tx: CryptoTransaction) -> bool:
    return _move_crypto_transaction(crypto_tx, CryptoState.FAILED)


def expire_crypto_transaction(crypto_tx: CryptoTransaction) -> bool:
    return _move_crypto_transaction(crypto_tx, CryptoState.EXPIRED)
