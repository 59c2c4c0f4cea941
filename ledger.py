"""
Earnings ledger for restaurants and riders.

One document per entity in the "earnings" collection, keyed by the entity id.
`earnings` and `payout` only ever grow and `payout <= earnings` holds.
"""

import logging
from datetime import datetime
from typing import Optional

from pymongo.database import Database

from database import utcnow
from errors import NotFoundError, StateConflictError, ValidationError
from schemas import Earnings

logger = logging.getLogger(__name__)


def credit(db: Database, entity_id: str, entity_type: str, amount: float) -> None:
    """Add `amount` to the entity's earnings, creating the entry on first credit.

    A single upserting $inc, so concurrent credits never lose an update.
    """
    if amount < 0:
        raise ValidationError("Credit amount must not be negative")
    db["earnings"].update_one(
        {"_id": entity_id},
        {
            "$inc": {"earnings": amount},
            "$set": {"updated_at": utcnow()},
            "$setOnInsert": {"entity_type": entity_type, "payout": 0, "last_payout": None},
        },
        upsert=True,
    )
    logger.info("Credited %s %s with %s", entity_type, entity_id, amount)


def get_entry(db: Database, entity_id: str) -> dict:
    doc = db["earnings"].find_one({"_id": entity_id})
    if not doc:
        raise NotFoundError(f"No earnings recorded for {entity_id}")
    entry = Earnings(**doc)
    return {"entity_id": entity_id, **entry.model_dump(), "balance": entry.earnings - entry.payout}


def record_payout(db: Database, entity_id: str, amount: float, now: Optional[datetime] = None) -> dict:
    if amount <= 0:
        raise ValidationError("Payout amount must be positive")
    entry = db["earnings"].find_one({"_id": entity_id})
    if not entry:
        raise NotFoundError(f"No earnings recorded for {entity_id}")
    balance = entry["earnings"] - entry["payout"]
    if amount > balance:
        raise ValidationError(f"Payout {amount} exceeds remaining balance {balance}")

    # Matching on the payout we read makes two racing payouts unable to both pass the balance check.
    now = now or utcnow()
    updated = db["earnings"].find_one_and_update(
        {"_id": entity_id, "payout": entry["payout"]},
        {"$inc": {"payout": amount}, "$set": {"last_payout": now, "updated_at": now}},
    )
    if updated is None:
        raise StateConflictError("Ledger changed while recording payout, retry")
    logger.info("Recorded payout of %s to %s", amount, entity_id)
    return get_entry(db, entity_id)
