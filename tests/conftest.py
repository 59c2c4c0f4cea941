from datetime import datetime, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import get_db
from errors import PaymentGatewayError
from main import app, get_now
from notifications import Notifier, SendResult, get_notifier
from payments import GatewayOrder, GatewayRefund, get_gateway
from schemas import DayHours, Dish, Restaurant, RestaurantAddress, GeoPoint, Rider, User, WEEKDAYS

# Monday, 13:00 restaurant local time.
NOW = datetime(2024, 1, 15, 13, 0, tzinfo=ZoneInfo("Asia/Kolkata"))

RESTAURANT_PIN = "560001"
CUSTOMER_PIN = "560034"
RESTAURANT_LOCATION = (12.9716, 77.5946)


class FakeGateway:
    def __init__(self):
        self.order_state = "PENDING"
        self.status_state = "COMPLETED"
        self.refund_state = "PENDING"
        self.refund_status_state = "COMPLETED"
        self.fail_refund = False
        self.created_orders: List[tuple] = []
        self.refunds: List[tuple] = []

    def create_order(self, merchant_order_id, amount_minor, callback_url):
        self.created_orders.append((merchant_order_id, amount_minor))
        return GatewayOrder(order_id="OMO123", token="client-token", state=self.order_state,
                            expire_at=datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc))

    def get_order_status(self, merchant_order_id):
        return self.status_state

    def create_refund(self, merchant_refund_id, original_merchant_order_id, amount_minor):
        if self.fail_refund:
            raise PaymentGatewayError("Payment gateway error: HTTP 500")
        self.refunds.append((merchant_refund_id, original_merchant_order_id, amount_minor))
        return GatewayRefund(refund_id="OMR1", state=self.refund_state, merchant_refund_id=merchant_refund_id)

    def get_refund_status(self, merchant_refund_id):
        return self.refund_status_state


class FakeNotifier(Notifier):
    def __init__(self):
        super().__init__(app=None)
        self.sent: List[dict] = []

    def send(self, tokens, title, body, data, hint=None):
        tokens = [t for t in tokens if t]
        if tokens:
            self.sent.append({"tokens": tokens, "title": title, "data": data})
        return SendResult(success_count=len(tokens))

    def titles(self) -> List[str]:
        return [m["title"] for m in self.sent]


class BrokenNotifier(Notifier):
    def __init__(self):
        super().__init__(app=None)

    def send(self, tokens, title, body, data, hint=None):
        return SendResult(failure_count=len([t for t in tokens if t]))


@pytest.fixture
def db():
    return mongomock.MongoClient(tz_aware=True)["food_delivery_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def client(db, gateway, notifier):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_now] = lambda: NOW
    yield TestClient(app)
    app.dependency_overrides.clear()


def all_week(open_time="10:00", close_time="23:00", is_open=True):
    return {day: DayHours(open_time=open_time, close_time=close_time, is_open=is_open) for day in WEEKDAYS}


def add_restaurant(db, **overrides) -> str:
    fields = dict(
        name="Saffron Palace",
        address=RestaurantAddress(line="MG Road", pin_code=RESTAURANT_PIN, location=GeoPoint(
            latitude=RESTAURANT_LOCATION[0], longitude=RESTAURANT_LOCATION[1])),
        opening_hours=all_week(),
        fcm_token="restaurant-token",
    )
    fields.update(overrides)
    return str(db["restaurant"].insert_one(Restaurant(**fields).model_dump()).inserted_id)


def add_dish(db, restaurant_id: str, **overrides) -> str:
    fields = dict(restaurant_id=restaurant_id, name="Paneer Tikka", price=200, category="Starters")
    fields.update(overrides)
    return str(db["dish"].insert_one(Dish(**fields).model_dump()).inserted_id)


def add_user(db, token: Optional[str] = "user-token") -> str:
    return str(db["user"].insert_one(User(name="Asha", fcm_token=token).model_dump()).inserted_id)


def add_rider(db, pins=(RESTAURANT_PIN, CUSTOMER_PIN), is_available=True, token="rider-token") -> str:
    rider = Rider(name="Ravi", is_available=is_available, service_pin_codes=list(pins), fcm_token=token)
    return str(db["rider"].insert_one(rider.model_dump()).inserted_id)


def address(pin=CUSTOMER_PIN, latitude=RESTAURANT_LOCATION[0], longitude=RESTAURANT_LOCATION[1]) -> dict:
    return {"line": "12 Lake View", "pin_code": pin, "latitude": latitude, "longitude": longitude}
