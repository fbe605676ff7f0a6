"""
Order state machine

    Pending -> Processing -> Shipped -> Delivered
    Pending / Processing -> Declined
    Pending / Processing / Shipped -> Cancelled

Delivered, Cancelled and Declined are terminal. Side effects belong to the
edge taken, whoever requested it:

- Pending -> Processing reserves stock for every line, all or nothing.
- Processing / Shipped -> Cancelled / Declined puts that stock back.
- entering Delivered adds the line quantities to each product's sales_count.

Status writes are compare-and-set on the status the transition started
from, so two requests racing on the same order cannot both apply a side
effect.
"""

import logging
from typing import Optional

from pymongo import ReturnDocument

from database import get_documents, to_object_id, utcnow
from errors import (
    AlreadyCancelledError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from inventory import record_sales, release_lines, reserve_lines
from schemas import OrderStatus

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.DECLINED, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.DECLINED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.DECLINED: set(),
}

# States in which the order holds reserved stock
HOLDS_STOCK = {OrderStatus.PROCESSING, OrderStatus.SHIPPED}
RELEASING = {OrderStatus.CANCELLED, OrderStatus.DECLINED}
BUYER_CANCELLABLE = {OrderStatus.PENDING, OrderStatus.PROCESSING}

# Lowercase filters used by the seller dashboard
STATUS_ALIASES = {
    "accepted": OrderStatus.PROCESSING,
    "ready": OrderStatus.SHIPPED,
    "completed": OrderStatus.DELIVERED,
}
STATUS_ALIASES.update({s.value.lower(): s for s in OrderStatus})


def parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        pass
    status = STATUS_ALIASES.get(str(value).lower())
    if status is None:
        raise ValidationError(f"Unknown order status: {value}")
    return status


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def _load(db, order_id):
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order:
        raise NotFoundError("Order not found")
    return order


def _lines(order):
    return [
        {"product_id": i["product_id"], "name": i.get("name"), "quantity": i["quantity"]}
        for i in order["items"]
    ]


def _apply_transition(db, order, target: OrderStatus, actor: str, notes: Optional[str] = None):
    """
    Move `order` to `target` and run the edge's side effects.

    Returns the updated order, or None when another request changed the
    order's status first (any stock already reserved is released again).
    """
    current = OrderStatus(order["status"])
    if not can_transition(current, target):
        raise ConflictError(f"Cannot change order status from {current.value} to {target.value}")

    lines = _lines(order)
    reserving = current is OrderStatus.PENDING and target is OrderStatus.PROCESSING
    if reserving:
        reserve_lines(db, lines)

    now = utcnow()
    fields = {"status": target.value, "updated_at": now}
    if notes is not None:
        fields["seller_notes"] = notes
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current.value},
        {
            "$set": fields,
            "$push": {"status_history": {"from": current.value, "to": target.value, "at": now, "actor": actor}},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        if reserving:
            release_lines(db, lines)
        logger.warning(
            "Order %s left %s before the %s transition was written",
            order.get("order_number"), current.value, target.value,
        )
        return None

    if current in HOLDS_STOCK and target in RELEASING:
        restored = release_lines(db, lines)
        logger.info("Restocked %d units from order %s", restored, updated.get("order_number"))
    if target is OrderStatus.DELIVERED:
        record_sales(db, lines)

    logger.info(
        "Order %s: %s -> %s by %s",
        updated.get("order_number"), current.value, target.value, actor,
    )
    return updated


def update_status(db, seller_id: str, order_id, status, notes: Optional[str] = None):
    """Seller driven transition. Re-sending the current status only updates notes."""
    order = _load(db, order_id)
    if order["seller_id"] != seller_id:
        raise AuthorizationError("Order belongs to another seller")

    target = parse_status(status)
    if order["status"] == target.value:
        if notes is not None:
            return update_notes(db, seller_id, order_id, notes)
        return order

    updated = _apply_transition(db, order, target, "seller", notes)
    if updated is None:
        raise ConflictError("Order status changed concurrently, please retry")
    return updated


def cancel_order(db, buyer_id: str, order_id):
    """Buyer cancellation, allowed while the order is Pending or Processing."""
    order = _load(db, order_id)
    if order["buyer_id"] != buyer_id:
        raise AuthorizationError("Order belongs to another buyer")

    for _ in range(2):
        status = OrderStatus(order["status"])
        if status is OrderStatus.CANCELLED:
            raise AlreadyCancelledError()
        if status in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            raise ConflictError("Cannot cancel order that has already been shipped or delivered.")
        if status not in BUYER_CANCELLABLE:
            raise ConflictError(f"Cannot cancel order that is {status.value}")

        updated = _apply_transition(db, order, OrderStatus.CANCELLED, "buyer")
        if updated is not None:
            return updated
        order = _load(db, order_id)

    raise ConflictError("Order status changed concurrently, please retry")


def update_notes(db, seller_id: str, order_id, notes: str):
    order = _load(db, order_id)
    if order["seller_id"] != seller_id:
        raise AuthorizationError("Order belongs to another seller")
    return db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$set": {"seller_notes": notes, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def get_order(db, user_id: str, order_id, role: str = None):
    order = _load(db, order_id)
    if role != "admin" and user_id not in (order["buyer_id"], order["seller_id"]):
        raise AuthorizationError("Not your order")
    return order


def list_buyer_orders(db, buyer_id: str):
    return get_documents(db, "order", {"buyer_id": buyer_id})


def list_seller_orders(db, seller_id: str, status: Optional[str] = None):
    query = {"seller_id": seller_id}
    if status and status != "all":
        query["status"] = parse_status(status).value
    return get_documents(db, "order", query)


def status_counts(db, seller_id: str):
    counts = {"all": 0}
    counts.update({s.value: 0 for s in OrderStatus})
    pipeline = [
        {"$match": {"seller_id": seller_id}},
        {"$group": {"_id": "$status", "count": {"$sum": 1}}},
    ]
    for row in db["order"].aggregate(pipeline):
        if row["_id"]:
            counts[row["_id"]] = row["count"]
        counts["all"] += row["count"]
    return counts
