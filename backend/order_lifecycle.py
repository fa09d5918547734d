"""
Order lifecycle rules.

Status workflow:

    pending -> confirmed -> preparing -> ready -> served
       |           |            |
       +-----------+------------+--> cancelled

served and cancelled are terminal. Orders in a terminal state cannot be
edited, and only pending or cancelled orders may be deleted.

Also owns order numbers (``YYMMDD-NNNN`` from an atomic per-restaurant,
per-day sequence) and the pre-flush hook keeping
``total = subtotal + tax - discount`` in sync.
"""
import enum
import logging
from datetime import date, datetime, time
from types import MappingProxyType
from typing import Optional, Tuple

from sqlalchemy import case, event, func, inspect, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import InvalidStatusTransitionError, OrderImmutableStateError, ValidationError
from models import Order, OrderItem, OrderSequence

logger = logging.getLogger(__name__)


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIAL = "partial"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    WALLET = "wallet"
    NETBANKING = "netbanking"


VALID_TRANSITIONS = MappingProxyType({
    OrderStatus.PENDING.value: frozenset({OrderStatus.CONFIRMED.value, OrderStatus.CANCELLED.value}),
    OrderStatus.CONFIRMED.value: frozenset({OrderStatus.PREPARING.value, OrderStatus.CANCELLED.value}),
    OrderStatus.PREPARING.value: frozenset({OrderStatus.READY.value, OrderStatus.CANCELLED.value}),
    OrderStatus.READY.value: frozenset({OrderStatus.SERVED.value}),
    OrderStatus.SERVED.value: frozenset(),
    OrderStatus.CANCELLED.value: frozenset(),
})

IMMUTABLE_STATUSES = frozenset({OrderStatus.SERVED.value, OrderStatus.CANCELLED.value})
DELETABLE_STATUSES = frozenset({OrderStatus.PENDING.value, OrderStatus.CANCELLED.value})

STATUS_VALUES = tuple(s.value for s in OrderStatus)


def can_transition(current: str, target: str) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def apply_status(order: Order, new_status: str) -> None:
    if new_status not in STATUS_VALUES:
        raise ValidationError(
            f"Status must be one of: {', '.join(STATUS_VALUES)}",
            details=[{"field": "status", "message": "invalid status", "value": new_status}],
        )
    if not can_transition(order.status, new_status):
        raise InvalidStatusTransitionError(order.status, new_status)
    order.status = new_status


def ensure_mutable(order: Order) -> None:
    if order.status in IMMUTABLE_STATUSES:
        raise OrderImmutableStateError("Cannot update served or cancelled orders",
                                       details={"status": order.status})


def ensure_deletable(order: Order) -> None:
    if order.status not in DELETABLE_STATUSES:
        raise OrderImmutableStateError("Can only delete pending or cancelled orders",
                                       details={"status": order.status})


# ========== Order numbers ==========

def format_order_number(day: date, sequence: int) -> str:
    return f"{day:%y%m%d}-{sequence:04d}"


def day_bounds(moment: datetime) -> Tuple[datetime, datetime]:
    return datetime.combine(moment.date(), time.min), datetime.combine(moment.date(), time.max)


def count_orders_for_day(db: Session, restaurant_id: str, moment: datetime) -> int:
    start, end = day_bounds(moment)
    return db.scalar(
        select(func.count(Order.id)).where(
            Order.restaurant_id == restaurant_id,
            Order.created_at >= start,
            Order.created_at <= end,
        )
    ) or 0


def next_database_sequence(db: Session, restaurant_id: str, day: date, floor: int) -> int:
    """
    Increment the ``order_sequences`` row for (restaurant, day) in place.

    The UPDATE is a single atomic statement and holds the row lock until the
    caller commits. ``floor`` (orders already persisted that day) keeps the
    counter ahead of numbers handed out while Redis was serving them.
    """
    where = (OrderSequence.restaurant_id == restaurant_id, OrderSequence.day == day)
    bump = (
        update(OrderSequence)
        .where(*where)
        .values(value=case((OrderSequence.value < floor, floor + 1), else_=OrderSequence.value + 1))
        .execution_options(synchronize_session=False)
    )

    if db.execute(bump).rowcount == 0:
        try:
            with db.begin_nested():
                db.add(OrderSequence(restaurant_id=restaurant_id, day=day, value=floor + 1))
        except IntegrityError:
            # another request created the row first
            db.execute(bump)

    return db.scalar(select(OrderSequence.value).where(*where))


def sequence_of(order_number: str) -> int:
    return int(order_number.rsplit("-", 1)[1])


def allocate_order_number(db: Session, restaurant_id: str, sequences=None,
                          now: Optional[datetime] = None, at_least: int = 0) -> str:
    """
    Reserve the next ``YYMMDD-NNNN`` number for ``restaurant_id`` today.

    ``sequences`` is the Redis-backed allocator; when it is missing or
    unavailable the database sequence is used. ``at_least`` is the last
    number known to be taken, passed on retries after a collision.
    """
    now = now or datetime.now()
    today = now.date()

    sequence = None
    if sequences is not None:
        sequence = sequences.next_order_sequence(
            restaurant_id, today, lambda: count_orders_for_day(db, restaurant_id, now)
        )
    if sequence is None:
        floor = max(count_orders_for_day(db, restaurant_id, now), at_least)
        sequence = next_database_sequence(db, restaurant_id, today, floor)

    return format_order_number(today, sequence)


# ========== Totals ==========

def recalculate_totals(order: Order, items_changed: bool) -> None:
    if items_changed:
        order.subtotal = round(sum(item.price * item.quantity for item in order.items), 2)
    # no floor: a discount larger than subtotal + tax gives a negative total
    order.total = round((order.subtotal or 0) + (order.tax or 0) - (order.discount or 0), 2)


def _attr_changed(order: Order, name: str) -> bool:
    return inspect(order).attrs[name].history.has_changes()


@event.listens_for(Session, "before_flush")
def _sync_order_totals(session, flush_context, instances):
    pending = {}

    for obj in list(session.new) + list(session.dirty) + list(session.deleted):
        if isinstance(obj, OrderItem):
            if obj.order is not None and obj.order not in session.deleted:
                pending[obj.order] = True
        elif isinstance(obj, Order) and obj not in session.deleted:
            if obj in session.new or _attr_changed(obj, "items"):
                pending[obj] = True
            elif any(_attr_changed(obj, name) for name in ("subtotal", "tax", "discount")):
                pending.setdefault(obj, False)

    for order, items_changed in pending.items():
        recalculate_totals(order, items_changed)
