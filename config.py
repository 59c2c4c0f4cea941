"""Runtime configuration read from the environment."""

import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "food_delivery")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Opening hours are stored in restaurant local time.
RESTAURANT_TIMEZONE = os.getenv("RESTAURANT_TIMEZONE", "Asia/Kolkata")

# Pricing
GST_PERCENTAGE = float(os.getenv("GST_PERCENTAGE", 5))
PLATFORM_FEE = float(os.getenv("PLATFORM_FEE", 10))
DELIVERY_RATE_PER_KM = float(os.getenv("DELIVERY_RATE_PER_KM", 10))
MIN_DELIVERY_FEE = float(os.getenv("MIN_DELIVERY_FEE", 10))
ROAD_DISTANCE_FACTOR = float(os.getenv("ROAD_DISTANCE_FACTOR", 1.3))

# Payment gateway (PhonePe standard checkout)
PHONEPE_BASE_URL = os.getenv("PHONEPE_BASE_URL", "https://api-preprod.phonepe.com/apis/pg-sandbox")
PHONEPE_CLIENT_ID = os.getenv("PHONEPE_CLIENT_ID", "")
PHONEPE_CLIENT_SECRET = os.getenv("PHONEPE_CLIENT_SECRET", "")
PHONEPE_CLIENT_VERSION = int(os.getenv("PHONEPE_CLIENT_VERSION", 1))
PHONEPE_TIMEOUT_SECONDS = float(os.getenv("PHONEPE_TIMEOUT_SECONDS", 10))
PAYMENT_CALLBACK_URL = os.getenv("PAYMENT_CALLBACK_URL", "")

# Path to a Firebase service account JSON; push notifications are skipped when unset.
FIREBASE_CREDENTIALS = os.getenv("FIREBASE_CREDENTIALS")
