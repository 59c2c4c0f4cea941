"""
Database Schemas for the Food Delivery platform

Each Pydantic model represents a collection in MongoDB. Collection name is the lowercase of the class name.

- User -> "user"
- Restaurant -> "restaurant"
- Dish -> "dish"
- Rider -> "rider"
- Order -> "order"
- Earnings -> "earnings" (keyed by restaurant or rider id)
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

OrderStatus = Literal["PENDING", "PLACED", "ACCEPTED", "ASSIGNED", "PICKED", "DELIVERED", "CANCELLED"]
PaymentMode = Literal["COD", "ONLINE"]

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class Offer(BaseModel):
    type: Literal["percentage", "flat"]
    value: float = Field(..., ge=0)


class AppliedOffer(Offer):
    source: Literal["dish", "category", "restaurant"]


class OfferConfig(BaseModel):
    offer: Optional[Offer] = Field(None, description="Restaurant-wide offer")
    category: Dict[str, Offer] = Field(default_factory=dict, description="Offer per dish category name")


class DayHours(BaseModel):
    open_time: str = Field(..., description="HH:MM, restaurant local time")
    close_time: str = Field(..., description="HH:MM; earlier than open_time means past midnight")
    is_open: bool = True


class GeoPoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class RestaurantAddress(BaseModel):
    line: Optional[str] = None
    pin_code: Optional[str] = None
    location: Optional[GeoPoint] = None


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: Optional[EmailStr] = Field(None, description="Email address")
    phone: Optional[str] = None
    fcm_token: Optional[str] = Field(None, description="Push notification device token")


class Restaurant(BaseModel):
    name: str
    address: RestaurantAddress = Field(default_factory=RestaurantAddress)
    opening_hours: Dict[str, DayHours] = Field(default_factory=dict, description="Keyed by lowercase weekday")
    offers: OfferConfig = Field(default_factory=OfferConfig)
    fcm_token: Optional[str] = None
    best_seller: Optional[str] = Field(None, description="Highlighted dish id")


class Dish(BaseModel):
    restaurant_id: str = Field(..., description="Reference to restaurant _id as string")
    name: str
    price: float = Field(..., ge=0)
    is_available: bool = Field(True)
    category: Optional[str] = None
    offer: Optional[Offer] = None


class Rider(BaseModel):
    name: str
    is_available: bool = False
    service_pin_codes: List[str] = Field(default_factory=list)
    fcm_token: Optional[str] = None
    available_orders: List[str] = Field(default_factory=list, description="Order ids broadcast to this rider")
    assigned_orders: List[str] = Field(default_factory=list, description="Order ids claimed and in progress")


class DeliveryAddress(BaseModel):
    line: Optional[str] = None
    pin_code: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class OrderItem(BaseModel):
    """Price snapshot of one line taken at placement time."""

    dish_id: str
    quantity: int = Field(..., ge=1)
    name: str
    base_price: float
    final_unit_price: float
    applied_offer: Optional[AppliedOffer] = None


class Order(BaseModel):
    user_id: str
    restaurant_id: str
    merchant_order_id: Optional[str] = None
    items: List[OrderItem]
    item_total: float
    delivery_fee: float
    gst: float
    platform_fee: float
    total: float
    delivery_address: DeliveryAddress
    payment_mode: PaymentMode = "COD"
    payment_state: str = "PLACED"
    status: OrderStatus = "PLACED"
    assigned_rider_id: Optional[str] = None
    transaction_id: Optional[str] = None
    expire_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    merchant_refund_id: Optional[str] = None


class Earnings(BaseModel):
    entity_type: Literal["restaurant", "rider"]
    earnings: float = Field(0, ge=0)
    payout: float = Field(0, ge=0)
    last_payout: Optional[datetime] = None
