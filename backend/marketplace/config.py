# backend/marketplace/config.py
from __future__ import annotations
import json
import os
from decimal import Decimal


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_rates(name: str, default: dict[str, str]) -> dict[str, Decimal]:
    # JSON object of currency code -> units of base currency per unit
    raw = os.environ.get(name)
    rates = json.loads(raw) if raw else default
    return {code.upper(): Decimal(str(rate)) for code, rate in rates.items()}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/marketplace.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///marketplace.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bcrypt cost factor (tests lower it)
    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)

    # Session / token lifetimes
    ACCESS_TOKEN_MINUTES = _env_int("ACCESS_TOKEN_MINUTES", 15)
    REFRESH_TOKEN_DAYS = _env_int("REFRESH_TOKEN_DAYS", 7)
    OAUTH_STATE_MINUTES = _env_int("OAUTH_STATE_MINUTES", 10)
    TOKEN_RETENTION_DAYS = _env_int("TOKEN_RETENTION_DAYS", 30)

    # Login throttling
    LOGIN_MAX_FAILED_ATTEMPTS = _env_int("LOGIN_MAX_FAILED_ATTEMPTS", 5)
    LOGIN_LOCKOUT_MINUTES = _env_int("LOGIN_LOCKOUT_MINUTES", 15)

    # Cart limits
    CART_MAX_QUANTITY_PER_ITEM = _env_int("CART_MAX_QUANTITY_PER_ITEM", 100)
    CART_MAX_UNIQUE_PRODUCTS = _env_int("CART_MAX_UNIQUE_PRODUCTS", 20)
    CART_MAX_TOTAL_ITEMS = _env_int("CART_MAX_TOTAL_ITEMS", 50)
    CART_MAX_VALUE = Decimal(os.environ.get("CART_MAX_VALUE", "10000.00"))

    # Checkout
    CHECKOUT_MAX_ATTEMPTS = _env_int("CHECKOUT_MAX_ATTEMPTS", 3)
    TAX_RATE_BPS = _env_int("TAX_RATE_BPS", 0)  # 1000 = 10%

    # Currencies
    BASE_CURRENCY = os.environ.get("BASE_CURRENCY", "THB")
    SUPPORTED_CURRENCIES = ("THB", "USD", "EUR", "JPY", "GBP")
    EXCHANGE_RATES = _env_rates(
        "EXCHANGE_RATES",
        {"THB": "1", "USD": "36.50", "EUR": "39.60", "JPY": "0.24", "GBP": "46.20"},
    )

    # Google OAuth (PKCE)
    GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET", "")
    GOOGLE_REDIRECT_URI = os.environ.get("GOOGLE_REDIRECT_URI", "")
    OAUTH_HTTP_TIMEOUT = float(os.environ.get("OAUTH_HTTP_TIMEOUT", "10"))

    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000",
        ).split(",")
        if o.strip()
    )
