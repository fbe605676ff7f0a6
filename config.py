"""
Settings

All runtime configuration comes from environment variables (a local .env
file is honoured through python-dotenv).
"""

import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Flat delivery charge added when the order subtotal is at or below the threshold
SHIPPING_FEE = float(os.getenv("SHIPPING_FEE", "5.99"))
FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", "50"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

ORDER_NUMBER_PREFIX = "ORD-"
ORDER_NUMBER_ATTEMPTS = 5
