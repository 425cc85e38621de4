from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import Boolean, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError
from .money import to_money

# Upper bound of a Numeric(18, 2) price that still reads as a price
MAX_PRICE = Decimal("99999999.99")


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: frozenset[str]
    required_on_create: frozenset[str] = field(default_factory=frozenset)


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"name", "description", "image_url", "price", "base_currency", "stock", "is_active"}),
    required_on_create=frozenset({"name", "price"}),
)


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    return {c.key: c for c in model.__mapper__.columns}


def _coerce_integer(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{key} must be a plain integer", details={"field": key})
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer", details={"field": key})
    raise ValidationError(f"{key} must be an integer", details={"field": key})


def _coerce_decimal(key: str, value: Any) -> Decimal:
    # Floats arrive from JSON; go through str so 19.99 stays 19.99
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a decimal number", details={"field": key})
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{key} must be a decimal number", details={"field": key})
    if not result.is_finite():
        raise ValidationError(f"{key} must be a finite number", details={"field": key})
    return to_money(result)


def _coerce_value(col, value: Any):
    coltype = col.type

    if isinstance(coltype, Integer):
        return _coerce_integer(col.key, value)

    if isinstance(coltype, Numeric):
        return _coerce_decimal(col.key, value)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be true or false", details={"field": col.key})

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = sorted(f for f in policy.required_on_create if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", details={"fields": missing})

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields or k not in cols:
            raise ValidationError(f"Field not allowed: {k}", details={"field": k})

    patch: dict = {}
    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null", details={"field": k})
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable and val == "":
            raise ValidationError(f"{k} cannot be blank", details={"field": k})

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}", details={"field": k})

        patch[k] = val

    return patch


def enforce_rules_product(patch: dict, supported_currencies) -> None:
    """Product rules that column metadata alone does not capture."""
    if patch.get("price") is not None:
        price = patch["price"]
        if price <= 0:
            raise ValidationError("price must be greater than 0", details={"field": "price"})
        if price > MAX_PRICE:
            raise ValidationError(f"price cannot exceed {MAX_PRICE}", details={"field": "price"})

    if patch.get("stock") is not None and patch["stock"] < 0:
        raise ValidationError("stock must be >= 0", details={"field": "stock"})

    if patch.get("base_currency") is not None:
        patch["base_currency"] = patch["base_currency"].upper()
        if patch["base_currency"] not in supported_currencies:
            raise ValidationError(
                f"Unsupported currency: {patch['base_currency']}",
                details={"field": "base_currency", "supported": list(supported_currencies)},
            )


def require_positive_int(value: Any, key: str) -> int:
    number = _coerce_integer(key, value)
    if number <= 0:
        raise ValidationError(f"{key} must be greater than 0", details={"field": key})
    return number


def require_int(value: Any, key: str) -> int:
    if value is None:
        raise ValidationError(f"{key} is required", details={"field": key})
    return _coerce_integer(key, value)
