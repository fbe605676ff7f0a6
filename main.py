import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import carts
import checkout as checkout_service
import config
import database
import orders
from auth import CurrentUser, get_current_user, require_consumer, require_farmer
from database import get_db, to_serializable
from errors import MarketError
from schemas import (
    AddCartItemRequest,
    CheckoutRequest,
    NotesUpdateRequest,
    StatusUpdateRequest,
    UpdateCartItemRequest,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


app = FastAPI(title="Farm Market Orders API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.get("/")
def read_root():
    return {"message": "Farm Market Orders API running"}


# Cart

@app.get("/cart")
def list_carts(user: CurrentUser = Depends(require_consumer), db=Depends(get_db)):
    return {"carts": carts.list_carts(db, user.id)}


@app.post("/cart/items", status_code=201)
def add_cart_item(payload: AddCartItemRequest, user: CurrentUser = Depends(require_consumer), db=Depends(get_db)):
    cart = carts.add_item(db, user.id, payload.product_id, payload.quantity)
    return to_serializable(cart)


@app.put("/cart/items/{product_id}")
def update_cart_item(
    product_id: str,
    payload: UpdateCartItemRequest,
    user: CurrentUser = Depends(require_consumer),
    db=Depends(get_db),
):
    cart = carts.update_item(db, user.id, product_id, payload.quantity)
    return to_serializable(cart)


@app.delete("/cart/items/{product_id}")
def remove_cart_item(product_id: str, user: CurrentUser = Depends(require_consumer), db=Depends(get_db)):
    cart = carts.remove_item(db, user.id, product_id)
    return {"cart": to_serializable(cart), "deleted": cart is None}


@app.post("/checkout", status_code=201)
def checkout(payload: CheckoutRequest, user: CurrentUser = Depends(require_consumer), db=Depends(get_db)):
    return checkout_service.checkout(
        db,
        user.id,
        payload.cart_id,
        payload.shipping_address,
        payload.payment_method,
        payload.delivery_instructions,
    )


# Buyer orders

@app.get("/orders")
def list_my_orders(user: CurrentUser = Depends(require_consumer), db=Depends(get_db)):
    return [to_serializable(o) for o in orders.list_buyer_orders(db, user.id)]


@app.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: CurrentUser = Depends(require_consumer), db=Depends(get_db)):
    order = orders.cancel_order(db, user.id, order_id)
    return {"message": "Order cancelled successfully", "order": to_serializable(order)}


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    return to_serializable(orders.get_order(db, user.id, order_id, user.role))


# Seller orders

@app.get("/seller/orders")
def list_seller_orders(status: str = None, user: CurrentUser = Depends(require_farmer), db=Depends(get_db)):
    return {"orders": [to_serializable(o) for o in orders.list_seller_orders(db, user.id, status)]}


@app.get("/seller/orders/counts")
def seller_order_counts(user: CurrentUser = Depends(require_farmer), db=Depends(get_db)):
    return orders.status_counts(db, user.id)


@app.get("/seller/orders/{order_id}")
def get_seller_order(order_id: str, user: CurrentUser = Depends(require_farmer), db=Depends(get_db)):
    return to_serializable(orders.get_order(db, user.id, order_id, user.role))


@app.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdateRequest,
    user: CurrentUser = Depends(require_farmer),
    db=Depends(get_db),
):
    order = orders.update_status(db, user.id, order_id, payload.status, payload.notes)
    return {"message": f"Order {order['status']}", "order": to_serializable(order)}


@app.patch("/orders/{order_id}/notes")
def update_order_notes(
    order_id: str,
    payload: NotesUpdateRequest,
    user: CurrentUser = Depends(require_farmer),
    db=Depends(get_db),
):
    order = orders.update_notes(db, user.id, order_id, payload.notes)
    return {"message": "Notes updated successfully", "order": to_serializable(order)}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            try:
                response["collections"] = database.db.list_collection_names()[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if config.DATABASE_URL else "❌ Not Set"
    response["database_name"] = "✅ Set" if config.DATABASE_NAME else "❌ Not Set"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
