"""
Stock ledger

Every change to a product's stock or sales_count goes through a single
atomic update against the product document. A decrement only matches while
the product still holds enough stock, so a zero match count is the
insufficient-stock signal and stock can never go below zero.
"""

import logging
from typing import Iterable, List

from database import utcnow
from errors import InsufficientStockError

logger = logging.getLogger(__name__)


def reserve(db, product_id, quantity: int) -> bool:
    """Take `quantity` units out of stock if available. Returns False otherwise."""
    if quantity < 1:
        raise ValueError("quantity must be positive")
    res = db["product"].update_one(
        {"_id": product_id, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
    )
    return res.modified_count == 1


def release(db, product_id, quantity: int) -> bool:
    """Put `quantity` units back. Returns False when the product no longer exists."""
    if quantity < 1:
        raise ValueError("quantity must be positive")
    res = db["product"].update_one(
        {"_id": product_id},
        {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
    )
    return res.matched_count == 1


def reserve_lines(db, lines: Iterable[dict]) -> List[dict]:
    """
    Reserve stock for every order line, all or nothing.

    Lines already reserved are released again when a later line fails,
    whether it lacked stock (InsufficientStockError names the product) or the
    database raised mid-way.
    """
    reserved = []
    try:
        for line in lines:
            if not reserve(db, line["product_id"], line["quantity"]):
                missing = db["product"].find_one({"_id": line["product_id"]}, {"_id": 1}) is None
                raise InsufficientStockError(line["product_id"], line.get("name"), missing=missing)
            reserved.append(line)
    except Exception:
        release_lines(db, reserved)
        raise
    return reserved


def release_lines(db, lines: Iterable[dict]) -> int:
    """Restock every line, skipping products that were deleted. Returns units restored."""
    restored = 0
    for line in lines:
        if release(db, line["product_id"], line["quantity"]):
            restored += line["quantity"]
        else:
            logger.warning(
                "Skipping restock of %s x%s: product no longer exists",
                line["product_id"], line["quantity"],
            )
    return restored


def record_sales(db, lines: Iterable[dict]):
    for line in lines:
        res = db["product"].update_one(
            {"_id": line["product_id"]},
            {"$inc": {"sales_count": line["quantity"]}},
        )
        if res.matched_count == 0:
            logger.warning("Sales for %s not recorded: product no longer exists", line["product_id"])
