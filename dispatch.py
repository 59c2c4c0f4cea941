"""
Rider dispatch by PIN code.

An accepted order is offered to every available rider covering both the
restaurant's and the customer's PIN code. The first rider to claim it wins;
the order is then withdrawn from everyone else.
"""

import logging
from typing import List, Optional

from bson import ObjectId
from pymongo.database import Database

logger = logging.getLogger(__name__)


def find_eligible_riders(db: Database, source_pin: str, destination_pin: str) -> List[dict]:
    # Array containment on one field is indexable; the second PIN is checked in memory.
    candidates = db["rider"].find({"is_available": True, "service_pin_codes": source_pin})
    return [r for r in candidates if destination_pin in r.get("service_pin_codes", [])]


def broadcast_order(db: Database, order_id: str, riders: List[dict]) -> int:
    if not riders:
        return 0
    result = db["rider"].update_many(
        {"_id": {"$in": [r["_id"] for r in riders]}},
        {"$addToSet": {"available_orders": order_id}},
    )
    logger.info("Order %s offered to %d rider(s)", order_id, result.matched_count)
    return result.matched_count


def withdraw_order(db: Database, order_id: str, except_rider: Optional[ObjectId] = None) -> int:
    query = {"available_orders": order_id}
    if except_rider is not None:
        query["_id"] = {"$ne": except_rider}
    result = db["rider"].update_many(query, {"$pull": {"available_orders": order_id}})
    return result.modified_count


def claim_order(db: Database, order_id: str, rider_oid: ObjectId) -> None:
    db["rider"].update_one(
        {"_id": rider_oid},
        {"$pull": {"available_orders": order_id}, "$addToSet": {"assigned_orders": order_id}},
    )
    withdraw_order(db, order_id, except_rider=rider_oid)


def release_order(db: Database, order_id: str, rider_oid: ObjectId) -> None:
    db["rider"].update_one({"_id": rider_oid}, {"$pull": {"assigned_orders": order_id}})
