"""
Order lifecycle.

    PENDING -> PLACED -> ACCEPTED -> ASSIGNED -> PICKED -> DELIVERED
    PLACED | ACCEPTED -> CANCELLED

Every transition validates against a fresh read and then writes with the
expected status in the update filter, so a concurrent transition makes the
loser fail with a state conflict instead of overwriting the winner.
"""

import logging
import uuid
from datetime import datetime
from typing import Dict, List, Sequence, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
import dispatch
import ledger
from database import create_document, oid, utcnow
from errors import ForbiddenError, NotFoundError, StateConflictError
from notifications import Notifier, notify_new_orders, notify_restaurant, notify_user
from payments import PhonePeClient, initiate_refund, status_for_initial_state, to_minor_units
from pricing import CartItem, price_order_group
from schemas import DeliveryAddress, Order

logger = logging.getLogger(__name__)


def get_order(db: Database, order_id: str) -> dict:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise NotFoundError("Order not found")
    return order


def _transition(db: Database, order: dict, expected: Sequence[str], changes: Dict) -> dict:
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$in": list(expected)}},
        {"$set": {**changes, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise StateConflictError(f"Order {order['_id']} changed state concurrently")
    logger.info("Order %s: %s -> %s", order["_id"], order["status"], changes.get("status"))
    return updated


def _status_update(order_id: str, status: str, kind: str = "ORDER_STATUS_UPDATE") -> Dict[str, str]:
    return {"orderId": order_id, "status": status, "type": kind}


# Placement

def place_orders(
    db: Database,
    gateway: PhonePeClient,
    notifier: Notifier,
    user_id: str,
    payment_mode: str,
    address: DeliveryAddress,
    groups: List[Tuple[str, List[CartItem]]],
    now: datetime,
) -> dict:
    """Price every group, take payment if ONLINE, and persist one order per restaurant."""
    priced = [price_order_group(db, restaurant_id, items, address, now) for restaurant_id, items in groups]
    total = sum(group.total for group in priced)

    payment: Dict = {}
    response: Dict = {}
    if payment_mode == "ONLINE":
        merchant_order_id = str(uuid.uuid4())
        gateway_order = gateway.create_order(merchant_order_id, to_minor_units(total), config.PAYMENT_CALLBACK_URL)
        status = status_for_initial_state(gateway_order.state)
        payment = {
            "merchant_order_id": merchant_order_id,
            "transaction_id": gateway_order.order_id,
            "expire_at": gateway_order.expire_at,
            "payment_state": gateway_order.state,
        }
        response = {
            "merchant_order_id": merchant_order_id,
            "gateway_order_id": gateway_order.order_id,
            "token": gateway_order.token,
        }
    else:
        status = "PLACED"
        payment = {"payment_state": "PLACED"}

    order_ids = []
    for group in priced:
        order = Order(
            user_id=user_id,
            delivery_address=address,
            payment_mode=payment_mode,
            status=status,
            **group.model_dump(),
            **payment,
        )
        order_ids.append(create_document("order", order, database=db))
    logger.info("Placed %d order(s) for user %s (%s, %s)", len(order_ids), user_id, payment_mode, status)

    if status == "PLACED":
        notify_new_orders(db, notifier, [g.restaurant_id for g in priced], {"orderIds": ",".join(order_ids)})
    return {"state": "SUCCESS", "order_ids": order_ids, "status": status, "total": total, **response}


# Restaurant actions

def accept_order(db: Database, notifier: Notifier, order_id: str, restaurant_id: str) -> dict:
    order = get_order(db, order_id)
    if order["restaurant_id"] != restaurant_id:
        raise ForbiddenError("Unauthorized to accept this order")
    if order["status"] != "PLACED":
        raise StateConflictError("Order is not in placed state")
    _transition(db, order, ["PLACED"], {"status": "ACCEPTED", "accepted_at": utcnow()})

    notify_user(db, notifier, order["user_id"], "Order Accepted", "Your order has been accepted by the restaurant.",
                _status_update(order_id, "ACCEPTED"))
    offered = _offer_to_riders(db, notifier, order_id, order)
    return {"state": "SUCCESS", "riders_notified": offered}


def _offer_to_riders(db: Database, notifier: Notifier, order_id: str, order: dict) -> int:
    restaurant = db["restaurant"].find_one({"_id": oid(order["restaurant_id"])}, {"address": 1})
    source_pin = ((restaurant or {}).get("address") or {}).get("pin_code")
    destination_pin = (order.get("delivery_address") or {}).get("pin_code")
    if not source_pin or not destination_pin:
        logger.warning("Order %s has no PIN codes to dispatch on", order_id)
        return 0
    riders = dispatch.find_eligible_riders(db, source_pin, destination_pin)
    if not riders:
        logger.warning("No rider covers %s -> %s for order %s", source_pin, destination_pin, order_id)
        return 0
    count = dispatch.broadcast_order(db, order_id, riders)
    notifier.send([r.get("fcm_token") for r in riders], "New Delivery Request",
                  "A new order is available for pickup near you.",
                  _status_update(order_id, "ACCEPTED", "NEW_DELIVERY"))
    return count


def _cancel(db: Database, gateway: PhonePeClient, order: dict, expected: Sequence[str]) -> dict:
    changes: Dict = {"status": "CANCELLED", "cancelled_at": utcnow()}
    if order.get("payment_mode") == "ONLINE":
        # Raises on gateway failure, leaving the order untouched.
        changes.update(initiate_refund(gateway, order))
    try:
        updated = _transition(db, order, expected, changes)
    except StateConflictError:
        if "refund_id" in changes:
            logger.error("Order %s changed state after refund %s was issued", order["_id"], changes["refund_id"])
        raise
    dispatch.withdraw_order(db, str(order["_id"]))
    return updated


def _refund_summary(order: dict) -> Dict:
    if not order.get("refund_id"):
        return {}
    return {"refund": {k: order[k] for k in ("refund_id", "merchant_refund_id", "payment_state")}}


def reject_order(db: Database, gateway: PhonePeClient, notifier: Notifier, order_id: str, restaurant_id: str) -> dict:
    order = get_order(db, order_id)
    if order["restaurant_id"] != restaurant_id:
        raise ForbiddenError("Unauthorized to reject this order")
    if order["status"] != "PLACED":
        raise StateConflictError("Order is not in placed state")
    updated = _cancel(db, gateway, order, ["PLACED"])

    notify_user(db, notifier, order["user_id"], "Order Rejected", "Your order has been rejected by the restaurant.",
                _status_update(order_id, "REJECTED"))
    return {"state": "SUCCESS", **_refund_summary(updated)}


# User actions

def cancel_order(db: Database, gateway: PhonePeClient, notifier: Notifier, order_id: str, user_id: str) -> dict:
    order = get_order(db, order_id)
    if order["user_id"] != user_id:
        raise ForbiddenError("Forbidden")
    if order["status"] not in ("PLACED", "ACCEPTED"):
        raise StateConflictError("Order cannot be cancelled at this stage")
    updated = _cancel(db, gateway, order, ["PLACED", "ACCEPTED"])

    notify_restaurant(db, notifier, order["restaurant_id"], "Order Cancelled",
                      f"Order #{order_id} has been cancelled by the user.",
                      _status_update(order_id, "CANCELLED", "ORDER_CANCELLED"))
    return {"state": "SUCCESS", "message": "Order cancelled successfully", **_refund_summary(updated)}


# Rider actions

def rider_accept_order(db: Database, notifier: Notifier, order_id: str, rider_id: str) -> dict:
    order = get_order(db, order_id)
    if order["status"] != "ACCEPTED":
        raise StateConflictError("Order is not in accepted state")
    rider = db["rider"].find_one({"_id": oid(rider_id)})
    if not rider:
        raise NotFoundError("Rider not found")
    if not rider.get("is_available"):
        raise StateConflictError("Rider is not available")
    if order_id not in rider.get("available_orders", []):
        raise ForbiddenError("Order is not available for this rider")

    _transition(db, order, ["ACCEPTED"], {"status": "ASSIGNED", "assigned_rider_id": rider_id, "assigned_at": utcnow()})
    dispatch.claim_order(db, order_id, rider["_id"])

    notify_user(db, notifier, order["user_id"], "Rider Assigned",
                "A rider has been assigned to your order and is on the way.", _status_update(order_id, "ASSIGNED"))
    notify_restaurant(db, notifier, order["restaurant_id"], "Rider Assigned",
                      "A rider has been assigned to pick up the order.",
                      _status_update(order_id, "ASSIGNED", "RIDER_ASSIGNED"))
    return {"state": "SUCCESS"}


def _assigned_order(db: Database, order_id: str, rider_id: str, expected: str) -> dict:
    order = get_order(db, order_id)
    if order.get("assigned_rider_id") != rider_id:
        raise ForbiddenError("Rider not assigned to this order")
    if order["status"] != expected:
        raise StateConflictError(f"Order is not in {expected.lower()} state")
    return order


def mark_picked_up(db: Database, notifier: Notifier, order_id: str, rider_id: str) -> dict:
    order = _assigned_order(db, order_id, rider_id, "ASSIGNED")
    _transition(db, order, ["ASSIGNED"], {"status": "PICKED", "picked_up_at": utcnow()})

    notify_user(db, notifier, order["user_id"], "Order Picked Up",
                "Your order has been picked up and is on the way.", _status_update(order_id, "PICKED"))
    return {"state": "SUCCESS"}


def mark_delivered(db: Database, notifier: Notifier, order_id: str, rider_id: str) -> dict:
    order = _assigned_order(db, order_id, rider_id, "PICKED")
    _transition(db, order, ["PICKED"], {"status": "DELIVERED", "delivered_at": utcnow()})

    dispatch.release_order(db, order_id, oid(rider_id))
    credits = [(order["restaurant_id"], "restaurant", order.get("item_total", 0)),
               (rider_id, "rider", order.get("delivery_fee", 0))]
    for position, (entity_id, entity_type, amount) in enumerate(credits):
        try:
            ledger.credit(db, entity_id, entity_type, amount)
        except PyMongoError:
            # The order is already DELIVERED, so these credits must be applied by hand.
            logger.exception("Order %s delivered but earnings credit failed, pending: %s",
                             order_id, credits[position:])
            raise

    notify_user(db, notifier, order["user_id"], "Order Delivered", "Your order has been delivered successfully!",
                _status_update(order_id, "DELIVERED"))
    return {"state": "SUCCESS"}