# Overview: Currency conversion through a pluggable rate provider.

"""
Exchange rates are quoted as units of the marketplace base currency per one
unit of the other currency (THB base: {"USD": 36.50} means 1 USD = 36.50 THB).
Fetching live rates is somebody else's job; the marketplace only needs a
provider that can hand back the current table.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from flask import current_app

from ..errors import ValidationError
from ..money import to_money


class RateProvider(Protocol):
    base_currency: str

    def get_rates(self) -> dict[str, Decimal]:
        ...


class StaticRateProvider:
    """Rates fixed at construction time, normally the EXCHANGE_RATES config."""
    source = "STATIC"

    def __init__(self, rates: dict[str, Decimal], base_currency: str = "THB"):
        self.base_currency = base_currency.upper()
        self._rates = {code.upper(): Decimal(str(rate)) for code, rate in rates.items()}
        self._rates[self.base_currency] = Decimal("1")

    @classmethod
    def from_config(cls, config) -> "StaticRateProvider":
        return cls(config["EXCHANGE_RATES"], base_currency=config["BASE_CURRENCY"])

    def get_rates(self) -> dict[str, Decimal]:
        return dict(self._rates)


def get_rate_provider() -> RateProvider:
    return current_app.extensions["rate_provider"]


def convert(amount: Decimal, from_currency: str, to_currency: str, rates: dict[str, Decimal]) -> Decimal:
    """
    Convert between two currencies quoted against the same base.

    Goes through the base currency and rounds once, half-up to two places.
    """
    from_currency = (from_currency or "").upper()
    to_currency = (to_currency or "").upper()
    if from_currency == to_currency:
        return to_money(amount)

    missing = [code for code in (from_currency, to_currency) if code not in rates]
    if missing:
        raise ValidationError(
            f"No exchange rate for {', '.join(missing)}",
            details={"currencies": missing},
        )
    from_rate = Decimal(rates[from_currency])
    to_rate = Decimal(rates[to_currency])
    if from_rate <= 0 or to_rate <= 0:
        raise ValidationError("Exchange rates must be positive", details={"currencies": [from_currency, to_currency]})

    return to_money(Decimal(amount) * from_rate / to_rate)


def to_base(amount: Decimal, currency: str, rates: dict[str, Decimal] | None = None) -> Decimal:
    provider = get_rate_provider()
    return convert(amount, currency, provider.base_currency, rates if rates is not None else provider.get_rates())


def validate_currency(code: str | None) -> str:
    code = (code or "").upper()
    if code not in current_app.config["SUPPORTED_CURRENCIES"]:
        raise ValidationError(
            f"Unsupported currency: {code or '(empty)'}",
            details={"field": "currency", "supported": list(current_app.config["SUPPORTED_CURRENCIES"])},
        )
    return code


def get_rates_snapshot() -> dict:
    provider = get_rate_provider()
    return {
        "base_currency": provider.base_currency,
        "rates": {code: str(rate) for code, rate in sorted(provider.get_rates().items())},
        "source": getattr(provider, "source", provider.__class__.__name__),
    }
