"""
PhonePe standard-checkout client and payment reconciliation.

The gateway authenticates with a short-lived OAuth token. TokenCache holds
the token and its expiry and is injected into the client, so refreshes
happen only when the cached token has expired.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import httpx
from pymongo.database import Database

import config
from database import oid, utcnow
from errors import NotFoundError, PaymentGatewayError, ValidationError
from notifications import Notifier, notify_new_orders

logger = logging.getLogger(__name__)

# Refresh this many seconds before the gateway's stated expiry.
TOKEN_EXPIRY_SKEW = 60


@dataclass
class AccessToken:
    value: str
    expires_at: float


@dataclass
class GatewayOrder:
    order_id: str
    token: str
    state: str
    expire_at: Optional[datetime]


@dataclass
class GatewayRefund:
    refund_id: str
    state: str
    merchant_refund_id: str


class TokenCache:
    def __init__(self, fetch: Callable[[], AccessToken], clock: Callable[[], float] = time.time):
        self._fetch = fetch
        self._clock = clock
        self._token: Optional[AccessToken] = None

    def get_valid_token(self) -> str:
        if self._token is None or self._clock() >= self._token.expires_at - TOKEN_EXPIRY_SKEW:
            self._token = self._fetch()
            logger.debug("Refreshed payment gateway token, expires at %s", self._token.expires_at)
        return self._token.value

    def invalidate(self) -> None:
        self._token = None


def _epoch_ms_to_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class PhonePeClient:
    def __init__(self, http: httpx.Client, client_id: str, client_secret: str, client_version: int,
                 token_cache: Optional[TokenCache] = None):
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.client_version = client_version
        self.tokens = token_cache or TokenCache(self.fetch_token)

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.http.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Payment gateway %s %s failed: %s %s", method, path, e.response.status_code, e.response.text)
            raise PaymentGatewayError(f"Payment gateway error: HTTP {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Payment gateway %s %s failed: %s", method, path, e)
            raise PaymentGatewayError(f"Payment gateway error: {e}")

    def fetch_token(self) -> AccessToken:
        data = self._request(
            "POST",
            "/v1/oauth/token",
            data={
                "client_id": self.client_id,
                "client_version": self.client_version,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            },
        )
        return AccessToken(value=data["access_token"], expires_at=float(data["expires_at"]))

    def _authorized(self, method: str, path: str, **kwargs) -> dict:
        headers = {"Authorization": f"O-Bearer {self.tokens.get_valid_token()}"}
        return self._request(method, path, headers=headers, **kwargs)

    def create_order(self, merchant_order_id: str, amount_minor: int, callback_url: str) -> GatewayOrder:
        data = self._authorized(
            "POST",
            "/checkout/v2/sdk/order",
            json={
                "merchantOrderId": merchant_order_id,
                "amount": amount_minor,
                "callbackUrl": callback_url,
                "paymentFlow": {"type": "PG_CHECKOUT"},
            },
        )
        return GatewayOrder(
            order_id=data["orderId"],
            token=data.get("token", ""),
            state=data["state"],
            expire_at=_epoch_ms_to_datetime(data.get("expireAt")),
        )

    def get_order_status(self, merchant_order_id: str) -> str:
        return self._authorized("GET", f"/checkout/v2/order/{merchant_order_id}/status")["state"]

    def create_refund(self, merchant_refund_id: str, original_merchant_order_id: str, amount_minor: int) -> GatewayRefund:
        data = self._authorized(
            "POST",
            "/payments/v2/refund",
            json={
                "merchantRefundId": merchant_refund_id,
                "originalMerchantOrderId": original_merchant_order_id,
                "amount": amount_minor,
            },
        )
        return GatewayRefund(refund_id=data["refundId"], state=data["state"], merchant_refund_id=merchant_refund_id)

    def get_refund_status(self, merchant_refund_id: str) -> str:
        return self._authorized("GET", f"/payments/v2/refund/{merchant_refund_id}/status")["state"]


_gateway: Optional[PhonePeClient] = None


def get_gateway() -> PhonePeClient:
    global _gateway
    if _gateway is None:
        http = httpx.Client(base_url=config.PHONEPE_BASE_URL, timeout=config.PHONEPE_TIMEOUT_SECONDS)
        _gateway = PhonePeClient(
            http, config.PHONEPE_CLIENT_ID, config.PHONEPE_CLIENT_SECRET, config.PHONEPE_CLIENT_VERSION
        )
    return _gateway


# Reconciliation

def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def status_for_initial_state(state: str) -> str:
    if state == "COMPLETED":
        return "PLACED"
    if state in ("PENDING", "CREATED"):
        return "PENDING"
    return "CANCELLED"


def status_for_payment_state(state: str) -> str:
    if state == "COMPLETED":
        return "PLACED"
    if state == "FAILED":
        return "CANCELLED"
    return "PENDING"


def refund_state_to_payment_state(state: str) -> str:
    if state == "COMPLETED":
        return "REFUNDED"
    if state == "PENDING":
        return "REFUND_INITIATED"
    return "REFUND_FAILED"


def initiate_refund(gateway: PhonePeClient, order: dict) -> Dict[str, str]:
    """Refund an ONLINE order in full and return the fields to persist on it.

    Raises PaymentGatewayError when the gateway call fails; callers must not
    cancel the order in that case.
    """
    if not order.get("merchant_order_id"):
        raise ValidationError("Order has no merchant order id to refund against")
    merchant_refund_id = str(uuid.uuid4())
    refund = gateway.create_refund(merchant_refund_id, order["merchant_order_id"], to_minor_units(order["total"]))
    logger.info("Refund %s for order %s: %s", refund.refund_id, order["_id"], refund.state)
    return {
        "payment_state": "REFUND_INITIATED" if refund.state == "PENDING" else "FAILED",
        "refund_id": refund.refund_id,
        "merchant_refund_id": merchant_refund_id,
    }


# Orders that moved past PLACED are not rewritten by a late or replayed sync.
SYNCABLE_STATUSES = ["PENDING", "PLACED"]


def sync_payment_status(db: Database, gateway: PhonePeClient, notifier: Notifier, merchant_order_id: str) -> dict:
    state = gateway.get_order_status(merchant_order_id)
    orders: List[dict] = list(db["order"].find({"merchant_order_id": merchant_order_id}))
    if not orders:
        raise NotFoundError(f"No orders for merchant order {merchant_order_id}")

    status = status_for_payment_state(state)
    newly_placed = []
    for order in orders:
        if order["status"] not in SYNCABLE_STATUSES:
            logger.info("Skipping payment sync for order %s in status %s", order["_id"], order["status"])
            continue
        result = db["order"].update_one(
            {"_id": order["_id"], "status": order["status"]},
            {"$set": {"payment_state": state, "status": status, "updated_at": utcnow()}},
        )
        if not result.modified_count:
            logger.info("Order %s changed state during payment sync, left as is", order["_id"])
            continue
        if status == "PLACED" and order["status"] != "PLACED":
            newly_placed.append(order["restaurant_id"])

    if state != "COMPLETED":
        return {"state": state}
    if newly_placed:
        notify_new_orders(db, notifier, newly_placed, {"merchantOrderId": merchant_order_id, "paymentState": state})
    return {"state": "SUCCESS"}


def refresh_refund_status(db: Database, gateway: PhonePeClient, order_id: str) -> dict:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise NotFoundError("Order not found")
    if not order.get("merchant_refund_id"):
        raise ValidationError("merchant_refund_id not found")
    state = gateway.get_refund_status(order["merchant_refund_id"])
    payment_state = refund_state_to_payment_state(state)
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"payment_state": payment_state, "updated_at": utcnow()}})
    return {"state": "SUCCESS", "refund_status": state, "payment_state": payment_state}
