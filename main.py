import logging
import os
from datetime import datetime
from typing import List
from zoneinfo import ZoneInfo

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.database import Database

import ledger
import orders
from config import LOG_LEVEL, RESTAURANT_TIMEZONE
from database import get_db, serialize
from dispatch import find_eligible_riders
from errors import ServiceError
from notifications import Notifier, get_notifier
from payments import PhonePeClient, get_gateway, refresh_refund_status, sync_payment_status
from pricing import CartItem
from schemas import DeliveryAddress, PaymentMode

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Food Delivery API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Helpers
def get_now() -> datetime:
    return datetime.now(ZoneInfo(RESTAURANT_TIMEZONE))


@app.exception_handler(ServiceError)
def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"state": "FAILED", "error": exc.message, "reason": exc.reason},
    )


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request body"
    return JSONResponse(
        status_code=400,
        content={"state": "FAILED", "error": message, "reason": "VALIDATION_ERROR"},
    )


@app.get("/")
def root():
    return {"message": "Food Delivery API Running"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {"backend": "Running", "database": "Not Connected", "collections": []}
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "Connected"
    except Exception as e:
        response["database"] = f"Error: {str(e)[:50]}"
    response["database_url"] = "Set" if os.getenv("DATABASE_URL") else "Not Set"
    return response


# Orders
class OrderGroupRequest(BaseModel):
    restaurant_id: str
    items: List[CartItem] = Field(..., min_length=1)


class PlaceOrderRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    payment_mode: PaymentMode = "COD"
    address: DeliveryAddress
    order_groups: List[OrderGroupRequest] = Field(..., min_length=1)


@app.post("/orders")
def place_order(
    payload: PlaceOrderRequest,
    db: Database = Depends(get_db),
    gateway: PhonePeClient = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    now: datetime = Depends(get_now),
):
    groups = [(g.restaurant_id, g.items) for g in payload.order_groups]
    return orders.place_orders(db, gateway, notifier, payload.user_id, payload.payment_mode, payload.address, groups, now)


@app.get("/orders/{order_id}")
def get_order(order_id: str, db: Database = Depends(get_db)):
    return serialize(orders.get_order(db, order_id))


class RestaurantAction(BaseModel):
    restaurant_id: str = Field(..., min_length=1)


class UserAction(BaseModel):
    user_id: str = Field(..., min_length=1)


class RiderAction(BaseModel):
    rider_id: str = Field(..., min_length=1)


@app.post("/restaurant/orders/{order_id}/accept")
def restaurant_accept(order_id: str, payload: RestaurantAction, db: Database = Depends(get_db),
                      notifier: Notifier = Depends(get_notifier)):
    return orders.accept_order(db, notifier, order_id, payload.restaurant_id)


@app.post("/restaurant/orders/{order_id}/reject")
def restaurant_reject(order_id: str, payload: RestaurantAction, db: Database = Depends(get_db),
                      gateway: PhonePeClient = Depends(get_gateway), notifier: Notifier = Depends(get_notifier)):
    return orders.reject_order(db, gateway, notifier, order_id, payload.restaurant_id)


@app.post("/user/orders/{order_id}/cancel")
def user_cancel(order_id: str, payload: UserAction, db: Database = Depends(get_db),
                gateway: PhonePeClient = Depends(get_gateway), notifier: Notifier = Depends(get_notifier)):
    return orders.cancel_order(db, gateway, notifier, order_id, payload.user_id)


# Riders
@app.post("/rider/orders/{order_id}/accept")
def rider_accept(order_id: str, payload: RiderAction, db: Database = Depends(get_db),
                 notifier: Notifier = Depends(get_notifier)):
    return orders.rider_accept_order(db, notifier, order_id, payload.rider_id)


@app.post("/rider/orders/{order_id}/picked-up")
def rider_picked_up(order_id: str, payload: RiderAction, db: Database = Depends(get_db),
                    notifier: Notifier = Depends(get_notifier)):
    return orders.mark_picked_up(db, notifier, order_id, payload.rider_id)


@app.post("/rider/orders/{order_id}/delivered")
def rider_delivered(order_id: str, payload: RiderAction, db: Database = Depends(get_db),
                    notifier: Notifier = Depends(get_notifier)):
    return orders.mark_delivered(db, notifier, order_id, payload.rider_id)


@app.get("/riders/eligible")
def eligible_riders(source_pin: str = Query(..., min_length=1), destination_pin: str = Query(..., min_length=1),
                    db: Database = Depends(get_db)):
    riders = find_eligible_riders(db, source_pin, destination_pin)
    return [{"_id": str(r["_id"]), "name": r.get("name")} for r in riders]


# Payments
class PaymentStatusRequest(BaseModel):
    merchant_order_id: str = Field(..., min_length=1)


class RefundStatusRequest(BaseModel):
    order_id: str = Field(..., min_length=1)


@app.post("/payments/status")
def payment_status(payload: PaymentStatusRequest, db: Database = Depends(get_db),
                   gateway: PhonePeClient = Depends(get_gateway), notifier: Notifier = Depends(get_notifier)):
    return sync_payment_status(db, gateway, notifier, payload.merchant_order_id)


@app.post("/payments/refund-status")
def refund_status(payload: RefundStatusRequest, db: Database = Depends(get_db),
                  gateway: PhonePeClient = Depends(get_gateway)):
    return refresh_refund_status(db, gateway, payload.order_id)


# Earnings
class PayoutRequest(BaseModel):
    amount: float


@app.get("/earnings/{entity_id}")
def get_earnings(entity_id: str, db: Database = Depends(get_db)):
    return ledger.get_entry(db, entity_id)


@app.post("/earnings/{entity_id}/payouts")
def record_payout(entity_id: str, payload: PayoutRequest, db: Database = Depends(get_db)):
    return {"state": "SUCCESS", **ledger.record_payout(db, entity_id, payload.amount)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
