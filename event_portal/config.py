"""
Shared configuration for the Event Portal services.

Values come from the environment (a local .env is loaded once here).
Secrets are only checked when something actually needs them, so importing
a blueprint never fails on a half-configured machine.
"""

import os
from typing import List

from dotenv import load_dotenv

load_dotenv()

# --- DATABASE ---
DATABASE_URL = os.getenv("DATABASE_URL")

# --- AUTH ---
JWT_SECRET = os.getenv("JWT_SECRET")
TOKEN_EXPIRATION_MINUTES = int(os.getenv("TOKEN_EXPIRATION_MINUTES", 1440))  # Default 24 hours

# --- PAYMENTS (mobile-money aggregator) ---
PAYMENT_API_URL = os.getenv("PAYMENT_API_URL", "https://api.mobilemoney.example.cm/v1")
PAYMENT_API_KEY = os.getenv("PAYMENT_API_KEY")
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")
PAYMENT_REQUEST_TIMEOUT = float(os.getenv("PAYMENT_REQUEST_TIMEOUT", 15))
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "XAF")

# Client-side polling of /api/payments/status
PAYMENT_POLL_INTERVAL = float(os.getenv("PAYMENT_POLL_INTERVAL", 5))
PAYMENT_POLL_MAX_INTERVAL = float(os.getenv("PAYMENT_POLL_MAX_INTERVAL", 30))
PAYMENT_POLL_MAX_ATTEMPTS = int(os.getenv("PAYMENT_POLL_MAX_ATTEMPTS", 24))
PAYMENT_POLL_TIMEOUT = float(os.getenv("PAYMENT_POLL_TIMEOUT", 300))

# --- VERIFICATION CODES / SMS ---
VERIFICATION_CODE_TTL_MINUTES = int(os.getenv("VERIFICATION_CODE_TTL_MINUTES", 15))
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")

# --- REGISTRATIONS ---
STALE_REGISTRATION_MINUTES = int(os.getenv("STALE_REGISTRATION_MINUTES", 60))

# --- GATEWAY ---
APP_ENV = os.getenv("APP_ENV", "development")
GATEWAY_PORT = int(os.getenv("GATEWAY_PORT", 5050))


def cors_origins() -> List[str]:
    """
    Allowed browser origins, comma separated in CORS_ORIGINS.
    Falls back to the local development servers.
    """
    raw = os.getenv("CORS_ORIGINS")
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [
        "http://localhost:3000",  # Next.js dev server
        "http://localhost:5050",  # Gateway itself
    ]


def is_production() -> bool:
    return APP_ENV == "production"
