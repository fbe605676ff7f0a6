"""
Checkout

Turns one cart into one Pending order. Line items are snapshotted at the
current product price and the cart is consumed. Stock is not touched here:
it is reserved when the seller accepts the order (see orders.py).
"""

import logging
from typing import Optional, Union

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from carts import get_cart, is_available
from database import create_document, utcnow
from errors import ConflictError, NotFoundError
from schemas import Order, OrderItem, OrderStatus, ShippingAddress

logger = logging.getLogger(__name__)


def next_order_number(db) -> str:
    counter = db["counter"].find_one_and_update(
        {"_id": "order_number"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return f"{config.ORDER_NUMBER_PREFIX}{counter['seq']:06d}"


def compute_totals(items):
    subtotal = round(sum(i.line_total for i in items), 2)
    shipping_fee = config.SHIPPING_FEE if subtotal <= config.FREE_SHIPPING_THRESHOLD else 0.0
    return subtotal, shipping_fee, round(subtotal + shipping_fee, 2)


def _snapshot_items(db, cart):
    ids = [line["product_id"] for line in cart["items"]]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}})}

    items = []
    for line in cart["items"]:
        product = products.get(line["product_id"])
        if product is None:
            raise ConflictError(f"Product {line['product_id']} in this cart no longer exists")
        if not is_available(product):
            raise ConflictError(f"Product {product.get('name')} is no longer available")
        price = float(product.get("price", 0))
        items.append(OrderItem(
            product_id=str(product["_id"]),
            name=product.get("name") or "",
            price=price,
            quantity=line["quantity"],
            line_total=round(price * line["quantity"], 2),
        ))
    return items


def _insert_order(db, order: Order):
    doc = order.model_dump(mode="json")
    for item in doc["items"]:
        item["product_id"] = ObjectId(item["product_id"])
    doc["status_history"] = [
        {"from": None, "to": OrderStatus.PENDING.value, "at": utcnow(), "actor": "buyer"}
    ]

    for _ in range(config.ORDER_NUMBER_ATTEMPTS):
        doc["order_number"] = None
        try:
            # the first upsert of the counter can itself race on _id
            doc["order_number"] = next_order_number(db)
            return create_document(db, "order", doc), doc["order_number"]
        except DuplicateKeyError:
            logger.warning("Order number %s already taken, drawing another", doc["order_number"])
    raise ConflictError("Could not allocate a unique order number")


def _restore_cart(db, claimed):
    """Put a claimed cart back, merging into a cart the buyer created meanwhile."""
    try:
        db["cart"].insert_one(claimed)
        return
    except DuplicateKeyError:
        pass

    existing = db["cart"].find_one({"buyer_id": claimed["buyer_id"], "seller_id": claimed["seller_id"]})
    if existing is None:
        db["cart"].insert_one(claimed)
        return

    merged = {line["product_id"]: line["quantity"] for line in existing["items"]}
    for line in claimed["items"]:
        merged[line["product_id"]] = merged.get(line["product_id"], 0) + line["quantity"]
    db["cart"].update_one(
        {"_id": existing["_id"]},
        {"$set": {
            "items": [{"product_id": pid, "quantity": qty} for pid, qty in merged.items()],
            "updated_at": utcnow(),
        }},
    )
    logger.warning("Merged cart %s into cart %s after failed checkout", claimed["_id"], existing["_id"])


def checkout(
    db,
    buyer_id: str,
    cart_id,
    shipping_address: Union[ShippingAddress, dict],
    payment_method: str = "COD",
    delivery_instructions: Optional[str] = None,
):
    cart = get_cart(db, buyer_id, cart_id)
    if not cart.get("items"):
        raise NotFoundError("Cart not found or empty")

    items = _snapshot_items(db, cart)
    subtotal, shipping_fee, total = compute_totals(items)

    if isinstance(shipping_address, dict):
        shipping_address = ShippingAddress(**shipping_address)
    order = Order(
        order_number="",
        buyer_id=buyer_id,
        seller_id=cart["seller_id"],
        items=items,
        subtotal=subtotal,
        shipping_fee=shipping_fee,
        total_amount=total,
        shipping_address=shipping_address,
        payment_method=payment_method or "COD",
        delivery_instructions=delivery_instructions,
    )

    # Claim the cart before writing the order so a concurrent checkout of the
    # same cart cannot produce a second order.
    claimed = db["cart"].find_one_and_delete(
        {"_id": cart["_id"], "buyer_id": buyer_id, "items": cart["items"]}
    )
    if claimed is None:
        raise ConflictError("Cart changed during checkout, please retry")

    try:
        order_id, order_number = _insert_order(db, order)
    except Exception:
        _restore_cart(db, claimed)
        raise

    logger.info(
        "Order %s placed by buyer %s for seller %s (total %.2f)",
        order_number, buyer_id, cart["seller_id"], total,
    )
    return {"order_id": str(order_id), "order_number": order_number, "total_amount": total}
