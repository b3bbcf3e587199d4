"""
Runtime configuration read from the environment (and a local .env file).
"""

import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

AUTH_SECRET = os.getenv("AUTH_SECRET", "vendersphere")

# Orders shipped inside this city arrive sooner and ship cheaper
FAST_LANE_CITY = os.getenv("FAST_LANE_CITY", "Dhaka")
FAST_LANE_DELIVERY_DAYS = 3
STANDARD_DELIVERY_DAYS = 5
FAST_LANE_SHIPPING_COST = 60.0
STANDARD_SHIPPING_COST = 120.0

CANCELLATION_WINDOW_MINUTES = int(os.getenv("CANCELLATION_WINDOW_MINUTES", "60"))

CURRENCY = os.getenv("CURRENCY", "usd")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

MAIL_HOST = os.getenv("MAIL_HOST")
MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
MAIL_USER = os.getenv("MAIL_USER")
MAIL_PASS = os.getenv("MAIL_PASS")
MAIL_FROM = os.getenv("MAIL_FROM", MAIL_USER or "no-reply@vendersphere.local")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
