"""
Cart aggregator

A buyer holds one cart per seller. The (buyer_id, seller_id) pair is unique
in the collection, so a cart never mixes products from two sellers. Line
edits are written with a compare-and-set on the previous item list; a cart
that loses its last line is deleted instead of being kept empty.
"""

import logging

from pymongo.errors import DuplicateKeyError

from database import create_document, to_object_id, to_serializable, utcnow
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CART_WRITE_ATTEMPTS = 3


def is_available(product) -> bool:
    return bool(product.get("is_active", True)) and product.get("approval_status", "Pending") == "Approved"


def _check_quantity(quantity):
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError(f"Quantity must be a positive integer, got {quantity!r}")


def _check_stock(product, quantity):
    stock = int(product.get("stock", 0))
    if quantity > stock:
        raise ConflictError(
            f"Insufficient stock for {product.get('name')}: requested {quantity}, available {stock}"
        )


def _find_line(items, product_id):
    for line in items:
        if line["product_id"] == product_id:
            return line
    return None


def _write_items(db, cart, items) -> bool:
    res = db["cart"].update_one(
        {"_id": cart["_id"], "items": cart["items"]},
        {"$set": {"items": items, "updated_at": utcnow()}},
    )
    return res.matched_count == 1


def get_cart(db, buyer_id: str, cart_id):
    cart = db["cart"].find_one({"_id": to_object_id(cart_id, "cart id")})
    if not cart:
        raise NotFoundError("Cart not found")
    if cart["buyer_id"] != buyer_id:
        raise AuthorizationError("Cart belongs to another buyer")
    return cart


def add_item(db, buyer_id: str, product_id, quantity: int):
    """Add `quantity` of a product to the buyer's cart for the product's seller."""
    _check_quantity(quantity)
    pid = to_object_id(product_id, "product id")
    product = db["product"].find_one({"_id": pid})
    if not product:
        raise NotFoundError("Product not found")
    if not is_available(product):
        raise ConflictError(f"Product {product.get('name')} is not available")

    seller_id = product["seller_id"]
    for _ in range(CART_WRITE_ATTEMPTS):
        cart = db["cart"].find_one({"buyer_id": buyer_id, "seller_id": seller_id})
        if cart is None:
            _check_stock(product, quantity)
            try:
                cart_id = create_document(db, "cart", {
                    "buyer_id": buyer_id,
                    "seller_id": seller_id,
                    "items": [{"product_id": pid, "quantity": quantity}],
                })
            except DuplicateKeyError:
                # another request created this cart first
                continue
            logger.info("Created cart %s for buyer %s / seller %s", cart_id, buyer_id, seller_id)
            return db["cart"].find_one({"_id": cart_id})

        line = _find_line(cart["items"], pid)
        combined = quantity + (line["quantity"] if line else 0)
        _check_stock(product, combined)
        if line:
            items = [
                {"product_id": l["product_id"], "quantity": combined if l is line else l["quantity"]}
                for l in cart["items"]
            ]
        else:
            items = cart["items"] + [{"product_id": pid, "quantity": quantity}]
        if _write_items(db, cart, items):
            return db["cart"].find_one({"_id": cart["_id"]})

    raise ConflictError("Cart was modified concurrently, please retry")


def update_item(db, buyer_id: str, product_id, quantity: int):
    """Overwrite the quantity of a cart line, re-checked against current stock."""
    _check_quantity(quantity)
    pid = to_object_id(product_id, "product id")
    for _ in range(CART_WRITE_ATTEMPTS):
        cart = db["cart"].find_one({"buyer_id": buyer_id, "items.product_id": pid})
        if not cart:
            raise NotFoundError("Item not found in any cart")

        product = db["product"].find_one({"_id": pid})
        if not product:
            raise ConflictError("Product no longer exists")
        if not is_available(product):
            raise ConflictError(f"Product {product.get('name')} is not available")
        _check_stock(product, quantity)

        items = [
            {"product_id": l["product_id"], "quantity": quantity if l["product_id"] == pid else l["quantity"]}
            for l in cart["items"]
        ]
        if _write_items(db, cart, items):
            return db["cart"].find_one({"_id": cart["_id"]})

    raise ConflictError("Cart was modified concurrently, please retry")


def remove_item(db, buyer_id: str, product_id):
    """
    Drop a product line from the buyer's cart.

    Returns the updated cart, or None when the removed line was the last one
    and the cart document was deleted.
    """
    pid = to_object_id(product_id, "product id")
    for _ in range(CART_WRITE_ATTEMPTS):
        cart = db["cart"].find_one({"buyer_id": buyer_id, "items.product_id": pid})
        if not cart:
            raise NotFoundError("Cart not found")

        items = [l for l in cart["items"] if l["product_id"] != pid]
        if not items:
            res = db["cart"].delete_one({"_id": cart["_id"], "items": cart["items"]})
            if res.deleted_count == 1:
                logger.info("Deleted empty cart %s", cart["_id"])
                return None
            continue
        if _write_items(db, cart, items):
            return db["cart"].find_one({"_id": cart["_id"]})

    raise ConflictError("Cart was modified concurrently, please retry")


def list_carts(db, buyer_id: str):
    """All carts of a buyer with product summaries resolved for display."""
    carts = list(db["cart"].find({"buyer_id": buyer_id}).sort("created_at", -1))
    product_ids = {l["product_id"] for c in carts for l in c["items"]}
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": list(product_ids)}})}

    result = []
    for cart in carts:
        data = to_serializable(cart)
        subtotal = 0.0
        for line, raw in zip(data["items"], cart["items"]):
            product = products.get(raw["product_id"])
            if product is None:
                line["product"] = None
                continue
            price = float(product.get("price", 0))
            subtotal += price * raw["quantity"]
            line["product"] = {
                "name": product.get("name"),
                "price": price,
                "stock": product.get("stock", 0),
                "unit": product.get("unit"),
                "image_url": product.get("image_url"),
                "available": is_available(product),
            }
        data["subtotal"] = round(subtotal, 2)
        result.append(data)
    return result
