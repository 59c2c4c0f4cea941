"""
Server-side pricing of an order group.

Prices are resolved from stored dish and restaurant documents, never from
the client. One offer applies per line, picked in the order
dish > category > restaurant.
"""

import logging
import math
from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as SchemaError
from pymongo.database import Database

import config
from database import oid
from errors import NotFoundError, ValidationError
from schemas import WEEKDAYS, AppliedOffer, DayHours, DeliveryAddress, Dish, Offer, OrderItem, Restaurant

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


class CartItem(BaseModel):
    dish_id: str
    quantity: int = Field(..., ge=1)

    @field_validator("quantity", mode="before")
    @classmethod
    def quantity_is_a_number(cls, value):
        # Strings and booleans would otherwise coerce to int.
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("quantity must be a number")
        return value


class PricedGroup(BaseModel):
    restaurant_id: str
    items: List[OrderItem]
    item_total: float
    delivery_fee: float
    gst: float
    platform_fee: float
    total: float


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def apply_offer(base_price: float, offer: Optional[Offer]) -> float:
    if offer is None:
        return base_price
    if offer.type == "percentage":
        return base_price * (1 - offer.value / 100)
    return max(0.0, base_price - offer.value)


def resolve_offer(dish: Dish, restaurant: Restaurant) -> Optional[AppliedOffer]:
    if dish.offer is not None:
        return AppliedOffer(**dish.offer.model_dump(), source="dish")
    if dish.category and dish.category in restaurant.offers.category:
        return AppliedOffer(**restaurant.offers.category[dish.category].model_dump(), source="category")
    if restaurant.offers.offer is not None:
        return AppliedOffer(**restaurant.offers.offer.model_dump(), source="restaurant")
    return None


def haversine_km(origin: Tuple[float, float], destination: Tuple[float, float]) -> float:
    lat1, lon1 = map(math.radians, origin)
    lat2, lon2 = map(math.radians, destination)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def delivery_fee(distance_km: float) -> int:
    """Fee for a great-circle distance, corrected to road distance and floored at the minimum."""
    road_km = distance_km * config.ROAD_DISTANCE_FACTOR
    return round_half_up(max(config.MIN_DELIVERY_FEE, road_km * config.DELIVERY_RATE_PER_KM))


def gst_for(item_total: float) -> float:
    return item_total * (config.GST_PERCENTAGE / 100)


def grand_total(item_total: float, fee: float, gst: float, platform_fee: float) -> int:
    return round_half_up(item_total + fee + gst + platform_fee)


def _minutes(hhmm: str) -> int:
    parts = hhmm.split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"malformed time {hhmm!r}, expected HH:MM")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"time out of range: {hhmm!r}")
    return hour * 60 + minute


def is_open_at(hours: Optional[DayHours], moment: datetime) -> bool:
    """Whether `moment` (restaurant local time) falls inside the day's window.

    A close time earlier than the open time means the window runs past midnight.
    Raises ValueError on malformed HH:MM values.
    """
    if hours is None or not hours.is_open:
        return False
    open_minutes = _minutes(hours.open_time)
    close_minutes = _minutes(hours.close_time)
    now_minutes = moment.hour * 60 + moment.minute
    if close_minutes < open_minutes:
        return now_minutes >= open_minutes or now_minutes <= close_minutes
    return open_minutes <= now_minutes <= close_minutes


def check_open(restaurant_id: str, restaurant: Restaurant, moment: datetime) -> None:
    hours = restaurant.opening_hours.get(WEEKDAYS[moment.weekday()])
    try:
        open_now = is_open_at(hours, moment)
    except ValueError as e:
        raise ValidationError(f"Restaurant {restaurant_id} has invalid opening hours: {e}")
    if not open_now:
        if hours is not None and hours.is_open:
            raise ValidationError(
                f"Restaurant {restaurant_id} is currently closed. "
                f"It is open from {hours.open_time} to {hours.close_time} today."
            )
        raise ValidationError(f"Restaurant {restaurant_id} is currently closed.")


def price_items(restaurant: Restaurant, dishes: List[Tuple[str, Dish]], cart: List[CartItem]) -> Tuple[List[OrderItem], float]:
    quantities = {item.dish_id: item.quantity for item in cart}
    items = []
    item_total = 0.0
    for dish_id, dish in dishes:
        offer = resolve_offer(dish, restaurant)
        unit_price = apply_offer(dish.price, offer)
        qty = quantities[dish_id]
        item_total += unit_price * qty
        items.append(
            OrderItem(
                dish_id=dish_id,
                quantity=qty,
                name=dish.name,
                base_price=dish.price,
                final_unit_price=unit_price,
                applied_offer=offer,
            )
        )
    return items, item_total


def _load_dish(db: Database, restaurant_id: str, item: CartItem) -> Dish:
    doc = db["dish"].find_one({"_id": oid(item.dish_id)})
    if not doc:
        raise NotFoundError(f"Dish with ID {item.dish_id} not found")
    if doc.get("restaurant_id") != restaurant_id:
        raise ValidationError(f"Dish {item.dish_id} does not belong to restaurant {restaurant_id}")
    if not doc.get("is_available"):
        raise ValidationError(f"Dish {item.dish_id} is not available")
    price = doc.get("price")
    if isinstance(price, bool) or not isinstance(price, (int, float)) or price <= 0:
        raise ValidationError(f"Invalid or missing price for dish {item.dish_id}")
    if not doc.get("name"):
        raise ValidationError(f"Missing name for dish {item.dish_id}")
    doc.pop("_id")
    try:
        return Dish(**doc)
    except SchemaError:
        raise ValidationError(f"Dish {item.dish_id} has malformed data.")


def price_order_group(
    db: Database, restaurant_id: str, cart: List[CartItem], address: DeliveryAddress, now: datetime
) -> PricedGroup:
    if not cart:
        raise ValidationError(f"Order group for restaurant {restaurant_id} has no items")
    doc = db["restaurant"].find_one({"_id": oid(restaurant_id)})
    if not doc:
        raise NotFoundError(f"Restaurant with ID {restaurant_id} not found")
    doc.pop("_id")
    try:
        restaurant = Restaurant(**doc)
    except SchemaError:
        raise ValidationError(f"Restaurant with ID {restaurant_id} has malformed data.")
    location = restaurant.address.location
    if location is None:
        raise ValidationError(f"Restaurant with ID {restaurant_id} has invalid or missing location data.")

    check_open(restaurant_id, restaurant, now)

    seen = set()
    for item in cart:
        if item.dish_id in seen:
            raise ValidationError(f"Dish {item.dish_id} appears more than once")
        seen.add(item.dish_id)
    dishes = [(item.dish_id, _load_dish(db, restaurant_id, item)) for item in cart]
    items, item_total = price_items(restaurant, dishes, cart)

    distance = haversine_km((address.latitude, address.longitude), (location.latitude, location.longitude))
    fee = delivery_fee(distance)
    gst = gst_for(item_total)
    total = grand_total(item_total, fee, gst, config.PLATFORM_FEE)
    logger.debug("Priced group for %s: items=%.2f fee=%s gst=%.2f total=%s", restaurant_id, item_total, fee, gst, total)
    return PricedGroup(
        restaurant_id=restaurant_id,
        items=items,
        item_total=item_total,
        delivery_fee=fee,
        gst=gst,
        platform_fee=config.PLATFORM_FEE,
        total=total,
    )
