import threading

import pytest
from pymongo.errors import AutoReconnect

import inventory
import orders
from errors import (
    AlreadyCancelledError,
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    ValidationError,
)
from schemas import OrderStatus
from tests.conftest import BUYER, OTHER_BUYER, OTHER_SELLER, SELLER, stock_of


def sales_of(db, product_id):
    return db["product"].find_one({"_id": product_id})["sales_count"]


def advance(db, order, *statuses):
    for status in statuses:
        order = orders.update_status(db, SELLER, order["_id"], status)
    return order


def test_accepting_reserves_stock(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 3)])

    order = orders.update_status(db, SELLER, order["_id"], "Processing")

    assert order["status"] == "Processing"
    assert stock_of(db, apple) == 7
    assert order["status_history"][-1]["from"] == "Pending"
    assert order["status_history"][-1]["to"] == "Processing"


def test_competing_acceptances_only_one_wins(db, make_product, place_order):
    apple = make_product(stock=5)
    first = place_order([(apple, 3)])
    second = place_order([(apple, 3)], buyer_id=OTHER_BUYER)

    orders.update_status(db, SELLER, first["_id"], "Processing")
    with pytest.raises(InsufficientStockError):
        orders.update_status(db, SELLER, second["_id"], "Processing")

    assert stock_of(db, apple) == 2
    assert db["order"].find_one({"_id": second["_id"]})["status"] == "Pending"


def test_failed_acceptance_touches_no_line(db, make_product, place_order):
    apple = make_product("Apple", stock=10)
    pear = make_product("Pear", stock=3)
    order = place_order([(apple, 2), (pear, 3)])
    db["product"].update_one({"_id": pear}, {"$set": {"stock": 1}})

    with pytest.raises(InsufficientStockError) as exc:
        orders.update_status(db, SELLER, order["_id"], "Processing")

    assert "Pear" in exc.value.message
    assert stock_of(db, apple) == 10
    assert stock_of(db, pear) == 1
    assert db["order"].find_one({"_id": order["_id"]})["status"] == "Pending"


def test_acceptance_with_deleted_product(db, make_product, place_order):
    apple = make_product("Apple", stock=10)
    order = place_order([(apple, 2)])
    db["product"].delete_one({"_id": apple})

    with pytest.raises(InsufficientStockError) as exc:
        orders.update_status(db, SELLER, order["_id"], "Processing")
    assert exc.value.missing is True


def test_lost_status_race_releases_reservation(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 4)])
    stale = db["order"].find_one({"_id": order["_id"]})

    orders.update_status(db, SELLER, order["_id"], "Processing")
    assert stock_of(db, apple) == 6

    # a second request that read the order while it was still Pending
    assert orders._apply_transition(db, stale, OrderStatus.PROCESSING, "seller") is None
    assert stock_of(db, apple) == 6


@pytest.mark.parametrize("path", [
    ["Processing", "Cancelled"],
    ["Processing", "Declined"],
    ["Processing", "Shipped", "Cancelled"],
])
def test_cancel_or_decline_after_reservation_is_net_zero(db, make_product, place_order, path):
    apple = make_product("Apple", stock=10)
    pear = make_product("Pear", stock=4)
    order = place_order([(apple, 2), (pear, 4)])

    order = advance(db, order, *path)

    assert order["status"] == path[-1]
    assert stock_of(db, apple) == 10
    assert stock_of(db, pear) == 4


def test_decline_pending_order_leaves_stock(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 2)])
    order = advance(db, order, "Declined")
    assert order["status"] == "Declined"
    assert stock_of(db, apple) == 10


def test_restock_skips_deleted_product(db, make_product, place_order):
    apple = make_product("Apple", stock=10)
    pear = make_product("Pear", stock=10)
    order = place_order([(apple, 2), (pear, 3)])
    order = advance(db, order, "Processing")
    db["product"].delete_one({"_id": pear})

    order = advance(db, order, "Cancelled")

    assert order["status"] == "Cancelled"
    assert stock_of(db, apple) == 10


def test_delivery_counts_sales_once(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 3)])
    order = advance(db, order, "Processing", "Shipped", "Delivered")
    assert sales_of(db, apple) == 3

    # client retry of the same transition
    order = orders.update_status(db, SELLER, order["_id"], "Delivered")
    assert order["status"] == "Delivered"
    assert sales_of(db, apple) == 3
    assert stock_of(db, apple) == 7


def test_stale_delivery_does_not_double_count(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 3)])
    order = advance(db, order, "Processing", "Shipped")
    stale = db["order"].find_one({"_id": order["_id"]})

    advance(db, order, "Delivered")
    assert orders._apply_transition(db, stale, OrderStatus.DELIVERED, "seller") is None
    assert sales_of(db, apple) == 3


@pytest.mark.parametrize("path,target", [
    (["Processing", "Shipped", "Delivered"], "Cancelled"),
    (["Declined"], "Processing"),
    (["Processing", "Cancelled"], "Shipped"),
    ([], "Shipped"),
    ([], "Delivered"),
    (["Processing", "Shipped"], "Declined"),
])
def test_illegal_transitions(db, make_product, place_order, path, target):
    apple = make_product(stock=10)
    order = advance(db, place_order([(apple, 1)]), *path)
    before = stock_of(db, apple)

    with pytest.raises(ConflictError):
        orders.update_status(db, SELLER, order["_id"], target)
    assert stock_of(db, apple) == before


def test_status_aliases(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 1)])
    order = orders.update_status(db, SELLER, order["_id"], "accepted")
    assert order["status"] == "Processing"
    with pytest.raises(ValidationError):
        orders.update_status(db, SELLER, order["_id"], "teleported")


def test_seller_cannot_touch_other_sellers_order(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 1)])
    with pytest.raises(AuthorizationError):
        orders.update_status(db, OTHER_SELLER, order["_id"], "Processing")
    assert stock_of(db, apple) == 10


def test_notes_update_without_status_change(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 1)])
    order = orders.update_notes(db, SELLER, order["_id"], "Packed with ice")
    assert order["seller_notes"] == "Packed with ice"
    assert order["status"] == "Pending"
    assert stock_of(db, apple) == 10


def test_status_update_with_notes(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 1)])
    order = orders.update_status(db, SELLER, order["_id"], "Processing", notes="Harvesting today")
    assert order["seller_notes"] == "Harvesting today"


def test_buyer_cancels_processing_order(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 2)])
    order = advance(db, order, "Processing")
    assert stock_of(db, apple) == 8

    order = orders.cancel_order(db, BUYER, order["_id"])

    assert order["status"] == "Cancelled"
    assert stock_of(db, apple) == 10
    with pytest.raises(AlreadyCancelledError) as exc:
        orders.cancel_order(db, BUYER, order["_id"])
    assert exc.value.code == "already_cancelled"
    assert stock_of(db, apple) == 10


def test_buyer_cancels_pending_order_without_restock(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 2)])
    order = orders.cancel_order(db, BUYER, order["_id"])
    assert order["status"] == "Cancelled"
    assert stock_of(db, apple) == 10


@pytest.mark.parametrize("path", [["Processing", "Shipped"], ["Processing", "Shipped", "Delivered"], ["Declined"]])
def test_buyer_cannot_cancel_late_orders(db, make_product, place_order, path):
    apple = make_product(stock=10)
    order = advance(db, place_order([(apple, 2)]), *path)
    with pytest.raises(ConflictError) as exc:
        orders.cancel_order(db, BUYER, order["_id"])
    assert not isinstance(exc.value, AlreadyCancelledError)


def test_buyer_cannot_cancel_other_buyers_order(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 2)])
    with pytest.raises(AuthorizationError):
        orders.cancel_order(db, OTHER_BUYER, order["_id"])


def test_listing_and_counts(db, make_product, place_order):
    apple = make_product(stock=10)
    first = place_order([(apple, 1)])
    place_order([(apple, 1)])
    place_order([(apple, 1)], buyer_id=OTHER_BUYER)
    advance(db, first, "Processing")

    assert len(orders.list_buyer_orders(db, BUYER)) == 2
    assert len(orders.list_seller_orders(db, SELLER)) == 3
    assert len(orders.list_seller_orders(db, SELLER, "accepted")) == 1
    assert len(orders.list_seller_orders(db, SELLER, "all")) == 3

    counts = orders.status_counts(db, SELLER)
    assert counts["all"] == 3
    assert counts["Pending"] == 2
    assert counts["Processing"] == 1
    assert counts["Delivered"] == 0


def test_get_order_visibility(db, make_product, place_order):
    apple = make_product(stock=10)
    order = place_order([(apple, 1)])
    assert orders.get_order(db, BUYER, order["_id"])["_id"] == order["_id"]
    assert orders.get_order(db, SELLER, order["_id"])["_id"] == order["_id"]
    assert orders.get_order(db, "admin-1", order["_id"], role="admin")["_id"] == order["_id"]
    with pytest.raises(AuthorizationError):
        orders.get_order(db, OTHER_BUYER, order["_id"])


def test_database_failure_during_acceptance_keeps_order_pending(db, make_product, place_order, monkeypatch):
    apple = make_product("Apple", stock=10)
    pear = make_product("Pear", stock=10)
    order = place_order([(apple, 2), (pear, 3)])
    real_reserve = inventory.reserve

    def flaky_reserve(database, product_id, quantity):
        if product_id == pear:
            raise AutoReconnect("connection dropped")
        return real_reserve(database, product_id, quantity)

    monkeypatch.setattr(inventory, "reserve", flaky_reserve)

    with pytest.raises(AutoReconnect):
        orders.update_status(db, SELLER, order["_id"], "Processing")

    assert db["order"].find_one({"_id": order["_id"]})["status"] == "Pending"
    assert stock_of(db, apple) == 10
    assert stock_of(db, pear) == 10


def test_concurrent_acceptances_on_shared_stock(db, make_product, place_order, monkeypatch):
    apple = make_product(stock=5)
    first = place_order([(apple, 3)])
    second = place_order([(apple, 3)], buyer_id=OTHER_BUYER)

    # MongoDB applies each single-document update atomically; mongomock
    # does not serialize the match and the write, so a lock stands in for that.
    products = db["product"]
    write_lock = threading.Lock()
    update_one = products.update_one

    def atomic_update_one(*args, **kwargs):
        with write_lock:
            return update_one(*args, **kwargs)

    monkeypatch.setattr(products, "update_one", atomic_update_one)

    barrier = threading.Barrier(2)
    outcomes = {}

    def accept(order):
        barrier.wait()
        try:
            orders.update_status(db, SELLER, order["_id"], "Processing")
            outcomes[order["_id"]] = "accepted"
        except InsufficientStockError:
            outcomes[order["_id"]] = "insufficient"

    threads = [threading.Thread(target=accept, args=(o,)) for o in (first, second)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert sorted(outcomes.values()) == ["accepted", "insufficient"]
    assert stock_of(db, apple) == 2
    [loser] = [oid for oid, outcome in outcomes.items() if outcome == "insufficient"]
    assert db["order"].find_one({"_id": loser})["status"] == "Pending"
