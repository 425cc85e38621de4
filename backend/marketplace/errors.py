# Overview: Domain error taxonomy shared by services and routes.

"""
Marketplace domain errors.

Services raise these; routes translate them into JSON responses with
`jsonify(e.to_dict()), e.status_code`. Anything that is not a
MarketplaceError is a bug and surfaces as a logged 500.

Retry semantics for callers:
- ConcurrencyConflict / InsufficientStock: retry with fresh data
- InvalidTransition / Forbidden: terminal for the request, do not retry unmodified
- TokenReused / InvalidOAuthState: force re-authentication
"""

from __future__ import annotations


class MarketplaceError(Exception):
    """Base class for errors that map onto an HTTP response."""
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationError(MarketplaceError):
    """400-level input problem."""
    code = "VALIDATION_ERROR"


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""
    code = "WEAK_PASSWORD"


class NotFoundError(MarketplaceError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, entity: str, key):
        super().__init__(f"{entity} not found", details={"entity": entity, "id": key})


class ConflictError(MarketplaceError):
    """409-level business rule conflict (e.g., duplicate email)."""
    status_code = 409
    code = "CONFLICT"


class ConcurrencyConflict(ConflictError):
    """Cart row was modified by another request since the caller read it."""
    code = "CONCURRENCY_CONFLICT"


class InsufficientStock(ConflictError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, requested: int, available_stock: int, product_name: str | None = None):
        label = product_name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}",
            details={
                "product_id": product_id,
                "requested": requested,
                "available_stock": available_stock,
            },
        )
        self.product_id = product_id
        self.requested = requested
        self.available_stock = available_stock


class EmptyCart(MarketplaceError):
    code = "EMPTY_CART"

    def __init__(self):
        super().__init__("Cart is empty")


class CartLimitExceeded(MarketplaceError):
    code = "CART_LIMIT_EXCEEDED"


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"


class Forbidden(MarketplaceError):
    status_code = 403
    code = "FORBIDDEN"


class Unauthorized(MarketplaceError):
    status_code = 401
    code = "UNAUTHORIZED"


class InvalidCredentials(Unauthorized):
    code = "INVALID_CREDENTIALS"

    def __init__(self, details: dict | None = None):
        super().__init__("Invalid credentials", details=details)


class AccountLocked(MarketplaceError):
    status_code = 429
    code = "ACCOUNT_LOCKED"


class InvalidToken(Unauthorized):
    code = "INVALID_TOKEN"


class TokenReused(Unauthorized):
    """A revoked refresh token was presented again; the whole chain is revoked."""
    code = "TOKEN_REUSED"

    def __init__(self, revoked_count: int = 0):
        super().__init__(
            "Refresh token reuse detected; please sign in again",
            details={"force_reauth": True, "revoked_tokens": revoked_count},
        )


class InvalidOAuthState(Unauthorized):
    code = "INVALID_OAUTH_STATE"

    def __init__(self, message: str = "OAuth state is invalid or expired"):
        super().__init__(message, details={"force_reauth": True})


class OAuthProviderError(MarketplaceError):
    status_code = 502
    code = "OAUTH_PROVIDER_ERROR"
