"""
Order use cases. Every function receives the acting user and applies the
restaurant scope before touching an order: an order outside the caller's
scope is reported as not found.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

import models
from authorization import scoped_restaurant_id
from errors import ApiError, OrderNotFoundError, ValidationError, pagination_meta
from order_lifecycle import (
    allocate_order_number,
    apply_status,
    ensure_deletable,
    ensure_mutable,
    sequence_of,
)
from permissions import CUSTOMER, has_permission
from redis_client import redis_client
from schemas import OrderCreate

logger = logging.getLogger(__name__)

MAX_ORDER_NUMBER_ATTEMPTS = 5

SORT_FIELDS = {
    "created_at": models.Order.created_at,
    "total": models.Order.total,
    "order_number": models.Order.order_number,
    "status": models.Order.status,
}

UPDATABLE_FIELDS = ("subtotal", "tax", "discount", "table_id", "customer_id",
                    "payment_status", "payment_method", "notes")


def _scoped(actor: models.User, restaurant_id: Optional[str] = None):
    stmt = select(models.Order).options(selectinload(models.Order.items))
    scope = scoped_restaurant_id(actor, restaurant_id)
    if scope:
        stmt = stmt.where(models.Order.restaurant_id == scope)
    if not has_permission(actor.role, "order:view", actor.permissions):
        # order:view:own only
        stmt = stmt.where(models.Order.created_by == actor.id)
    return stmt


def _build_items(items: List[Dict[str, Any]]) -> List[models.OrderItem]:
    return [
        models.OrderItem(
            menu_item_id=item["menu_item_id"],
            name=item["name"],
            price=item["price"],
            quantity=item["quantity"],
            customizations=list(item.get("customizations") or []),
            notes=item.get("notes"),
        )
        for item in items
    ]


def get_order(db: Session, order_id: int, actor: models.User) -> models.Order:
    order = db.scalar(_scoped(actor).where(models.Order.id == order_id))
    if not order:
        raise OrderNotFoundError()
    return order


def create_order(db: Session, data: OrderCreate, actor: models.User, sequences=redis_client) -> models.Order:
    restaurant_id = scoped_restaurant_id(actor, data.restaurant_id)
    if not restaurant_id:
        raise ValidationError("Restaurant ID is required",
                              details=[{"field": "restaurant_id", "message": "required"}])

    fields = data.model_dump(mode="json")
    customer_id = fields["customer_id"]
    if customer_id is None and actor.role == CUSTOMER:
        customer_id = actor.id

    taken_sequence = 0
    for attempt in range(1, MAX_ORDER_NUMBER_ATTEMPTS + 1):
        order_number = allocate_order_number(db, restaurant_id, sequences, at_least=taken_sequence)
        order = models.Order(
            order_number=order_number,
            restaurant_id=restaurant_id,
            table_id=fields["table_id"],
            customer_id=customer_id,
            tax=fields["tax"],
            discount=fields["discount"],
            payment_method=fields["payment_method"],
            notes=fields["notes"],
            created_by=actor.id,
            items=_build_items(fields["items"]),
        )
        db.add(order)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            taken = db.scalar(select(models.Order.id).where(models.Order.order_number == order_number))
            if taken is None:
                raise
            taken_sequence = max(taken_sequence, sequence_of(order_number))
            logger.warning("Order number %s already taken (attempt %d/%d)",
                           order_number, attempt, MAX_ORDER_NUMBER_ATTEMPTS)
            continue

        db.refresh(order)
        logger.info("Order %s created by %s", order.order_number, actor.email)
        return order

    raise ApiError("Could not allocate a unique order number")


def list_orders(db: Session, actor: models.User, filters: Dict[str, Any], page: int = 1,
                limit: int = 10, sort: str = "created_at",
                order: str = "desc") -> Tuple[List[models.Order], Dict[str, int]]:
    if sort not in SORT_FIELDS:
        raise ValidationError(f"Cannot sort by '{sort}'",
                              details=[{"field": "sort", "message": f"one of {', '.join(SORT_FIELDS)}"}])

    stmt = _scoped(actor, filters.get("restaurant_id"))
    if filters.get("status"):
        stmt = stmt.where(models.Order.status == filters["status"])
    if filters.get("payment_status"):
        stmt = stmt.where(models.Order.payment_status == filters["payment_status"])
    if filters.get("customer_id") is not None:
        stmt = stmt.where(models.Order.customer_id == filters["customer_id"])
    if filters.get("start_date"):
        stmt = stmt.where(models.Order.created_at >= filters["start_date"])
    if filters.get("end_date"):
        stmt = stmt.where(models.Order.created_at <= filters["end_date"])

    total = db.scalar(select(func.count()).select_from(stmt.subquery()))

    column = SORT_FIELDS[sort]
    stmt = stmt.order_by(column.asc() if order == "asc" else column.desc(), models.Order.id)
    orders = db.scalars(stmt.offset((page - 1) * limit).limit(limit)).all()

    return list(orders), pagination_meta(page, limit, total)


def update_order(db: Session, order_id: int, patch: Dict[str, Any], actor: models.User) -> models.Order:
    order = get_order(db, order_id, actor)
    ensure_mutable(order)

    for field in UPDATABLE_FIELDS:
        if field in patch:
            setattr(order, field, patch[field])
    if patch.get("items") is not None:
        order.items = _build_items(patch["items"])

    db.commit()
    db.refresh(order)
    logger.info("Order %s updated by %s", order.order_number, actor.email)
    return order


def update_order_status(db: Session, order_id: int, new_status: str, actor: models.User) -> models.Order:
    order = get_order(db, order_id, actor)
    previous = order.status
    apply_status(order, new_status)
    db.commit()
    db.refresh(order)
    logger.info("Order %s: %s -> %s by %s", order.order_number, previous, new_status, actor.email)
    return order


def delete_order(db: Session, order_id: int, actor: models.User) -> None:
    order = get_order(db, order_id, actor)
    ensure_deletable(order)
    db.delete(order)
    db.commit()
    logger.info("Order %s deleted by %s", order.order_number, actor.email)
