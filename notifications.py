"""
Best-effort push notifications through Firebase Cloud Messaging.

Sending never raises: delivery and token lookup failures are logged and
reported in the returned tally, so a push can never fail the request that
triggered it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import firebase_admin
from bson import ObjectId
from firebase_admin import credentials, messaging
from pymongo.database import Database

from config import FIREBASE_CREDENTIALS

logger = logging.getLogger(__name__)


@dataclass
class AndroidHint:
    channel_id: str = "default"
    sound: Optional[str] = "notification_sound"
    icon: Optional[str] = "notification_icon"
    color: Optional[str] = "#FFB627"
    priority: str = "high"


STATUS_HINT = AndroidHint()
NEW_ORDER_HINT = AndroidHint(channel_id="order", sound="custom_sound.wav", icon=None, color=None)


@dataclass
class SendResult:
    success_count: int = 0
    failure_count: int = 0


def _android_config(hint: Optional[AndroidHint]) -> Optional[messaging.AndroidConfig]:
    if hint is None:
        return None
    return messaging.AndroidConfig(
        priority=hint.priority,
        notification=messaging.AndroidNotification(
            channel_id=hint.channel_id, sound=hint.sound, icon=hint.icon, color=hint.color
        ),
    )


def _payload(data: Dict[str, str]) -> Dict[str, str]:
    payload = {k: str(v) for k, v in data.items() if v is not None}
    payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    return payload


class Notifier:
    def __init__(self, app: Optional[firebase_admin.App] = None):
        self.app = app

    def send(self, tokens: Iterable[str], title: str, body: str, data: Dict[str, str],
             hint: Optional[AndroidHint] = STATUS_HINT) -> SendResult:
        tokens = [t for t in tokens if t]
        if not tokens:
            return SendResult()
        if self.app is None:
            logger.info("Push disabled, dropping %r to %d device(s)", title, len(tokens))
            return SendResult(failure_count=len(tokens))
        notification = messaging.Notification(title=title, body=body)
        try:
            if len(tokens) == 1:
                message = messaging.Message(
                    token=tokens[0], notification=notification, data=_payload(data), android=_android_config(hint)
                )
                messaging.send(message, app=self.app)
                return SendResult(success_count=1)
            multicast = messaging.MulticastMessage(
                tokens=tokens, notification=notification, data=_payload(data), android=_android_config(hint)
            )
            response = messaging.send_each_for_multicast(multicast, app=self.app)
        except Exception:
            logger.exception("Error sending %r notification", title)
            return SendResult(failure_count=len(tokens))
        if response.failure_count:
            errors = [r.exception for r in response.responses if not r.success]
            logger.error("Failed to send %d of %d messages: %s", response.failure_count, len(tokens), errors)
        return SendResult(success_count=response.success_count, failure_count=response.failure_count)


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        app = None
        if FIREBASE_CREDENTIALS:
            app = firebase_admin.initialize_app(credentials.Certificate(FIREBASE_CREDENTIALS))
        else:
            logger.warning("FIREBASE_CREDENTIALS not set, push notifications are disabled")
        _notifier = Notifier(app)
    return _notifier


# Token lookups

def _tokens(db: Database, collection: str, entity_ids: Iterable[Optional[str]]) -> Tuple[List[str], int]:
    """Return the push tokens found and the number of lookups that failed."""
    tokens: List[str] = []
    failed = 0
    for entity_id in dict.fromkeys(entity_ids):
        if not entity_id or not ObjectId.is_valid(entity_id):
            continue
        try:
            doc = db[collection].find_one({"_id": ObjectId(entity_id)}, {"fcm_token": 1})
        except Exception:
            logger.exception("Could not look up push token for %s %s", collection, entity_id)
            failed += 1
            continue
        if doc and doc.get("fcm_token"):
            tokens.append(doc["fcm_token"])
    return tokens, failed


def _notify(db: Database, notifier: Notifier, collection: str, entity_ids: Iterable[Optional[str]], title: str,
            body: str, data: Dict[str, str], hint: Optional[AndroidHint]) -> SendResult:
    tokens, failed = _tokens(db, collection, entity_ids)
    result = notifier.send(tokens, title, body, data, hint)
    result.failure_count += failed
    return result


def notify_user(db: Database, notifier: Notifier, user_id: str, title: str, body: str, data: Dict[str, str],
                hint: Optional[AndroidHint] = STATUS_HINT) -> SendResult:
    return _notify(db, notifier, "user", [user_id], title, body, data, hint)


def notify_restaurant(db: Database, notifier: Notifier, restaurant_id: str, title: str, body: str,
                      data: Dict[str, str], hint: Optional[AndroidHint] = STATUS_HINT) -> SendResult:
    return _notify(db, notifier, "restaurant", [restaurant_id], title, body, data, hint)


def notify_new_orders(db: Database, notifier: Notifier, restaurant_ids: Iterable[str], data: Dict[str, str]) -> SendResult:
    return _notify(db, notifier, "restaurant", restaurant_ids, "New Order Received", "You have received a new order.",
                   {"type": "NEW_ORDER", **data}, NEW_ORDER_HINT)
