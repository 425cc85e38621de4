# Overview: Account registration, password login and account administration.

"""
Authentication Service

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters with uppercase, digit and special character
- Soft-deleted accounts cannot sign in
- Access and refresh tokens are issued by token_service
"""

from __future__ import annotations

import re

import bcrypt
from flask import current_app

from ..errors import (
    AccountLocked,
    ConflictError,
    InvalidCredentials,
    NotFoundError,
    PasswordValidationError,
    ValidationError,
)
from ..extensions import db
from ..models import User
from ..models.identity import ROLE_BUYER, ROLE_SELLER, VALID_ROLES
from ..time_utils import utcnow
from . import login_throttle_service, session_service, token_service
from .token_service import TokenPair

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one digit
    - At least one special character

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[^A-Za-z0-9]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """Hash password using bcrypt with cost factor 12, after validating strength."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=current_app.config.get("BCRYPT_ROUNDS", 12))
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str | None) -> bool:
    """Timing-safe bcrypt check; accounts without a password never match."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed stored hash
        return False


def create_user(
    email: str,
    password: str | None,
    display_name: str | None = None,
    role: str = ROLE_BUYER,
    is_verified: bool = False,
    commit: bool = True,
) -> User:
    """
    Create a user.

    password may be None only for accounts created through OAuth; the caller
    must attach a UserLogin in the same transaction.

    Raises:
        ValidationError: malformed email or unknown role
        PasswordValidationError: weak password
        ConflictError: email already registered
    """
    email = normalize_email(email)
    if not EMAIL_RE.match(email):
        raise ValidationError("A valid email address is required", details={"field": "email"})
    if role not in VALID_ROLES:
        raise ValidationError(f"Unknown role: {role}", details={"field": "role"})

    existing = db.session.query(User).filter_by(email=email).first()
    if existing:
        raise ConflictError("Email is already registered", details={"field": "email"})

    user = User(
        email=email,
        display_name=(display_name or "").strip() or None,
        password_hash=hash_password(password) if password is not None else None,
        role=role,
        is_verified=is_verified,
        is_seller_approved=role == ROLE_SELLER,
        became_seller_at=utcnow() if role == ROLE_SELLER else None,
    )
    db.session.add(user)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return user


def register_user(email: str, password: str, display_name: str | None = None) -> User:
    """Self-registration of a buyer account with a local password."""
    if not password:
        raise PasswordValidationError("Password is required")
    return create_user(email=email, password=password, display_name=display_name)


def authenticate(email: str, password: str) -> User | None:
    """
    Return the user if the credentials are valid, None otherwise.

    Updates last_login_at on success.
    """
    user = db.session.query(User).filter(
        User.email == normalize_email(email),
        User.is_deleted.is_(False),
    ).first()

    if not user or not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user


def login(
    email: str,
    password: str,
    device_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> TokenPair:
    """
    Password login with throttling.

    Raises:
        AccountLocked: too many recent failures for this email
        InvalidCredentials: wrong email/password (the failure is recorded)
    """
    identifier = normalize_email(email)

    is_locked, seconds_remaining = login_throttle_service.is_account_locked(identifier)
    if is_locked:
        raise AccountLocked(
            "Account temporarily locked due to too many failed login attempts",
            details={"retry_after_seconds": seconds_remaining},
        )

    user = authenticate(identifier, password)
    if not user:
        failed_count = login_throttle_service.record_failed_attempt(
            identifier=identifier,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        remaining = current_app.config["LOGIN_MAX_FAILED_ATTEMPTS"] - failed_count
        if remaining <= 0:
            raise AccountLocked(
                "Account locked due to too many failed login attempts",
                details={"retry_after_minutes": current_app.config["LOGIN_LOCKOUT_MINUTES"]},
            )
        raise InvalidCredentials(details={"attempts_remaining": remaining})

    login_throttle_service.record_successful_login(
        user_id=user.id,
        identifier=identifier,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return token_service.issue_tokens(user, device_id=device_id, ip_address=ip_address, user_agent=user_agent)


def logout(access_token: str | None, refresh_token: str | None) -> bool:
    """Revoke the presented refresh token (and its sessions) and/or access session."""
    revoked = False
    if refresh_token:
        revoked = token_service.revoke_refresh_token(refresh_token) or revoked
    if access_token:
        revoked = session_service.revoke_session(access_token) or revoked
    return revoked


def get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None or user.is_deleted:
        raise NotFoundError("User", user_id)
    return user


def get_user_by_email(email: str) -> User:
    user = db.session.query(User).filter_by(email=normalize_email(email)).first()
    if user is None:
        raise NotFoundError("User", email)
    return user


def promote_to_seller(user_id: int) -> User:
    """Make an account an approved seller."""
    user = get_user(user_id)
    if user.role != ROLE_SELLER:
        user.role = ROLE_SELLER
        user.became_seller_at = utcnow()
    user.is_seller_approved = True
    db.session.commit()
    return user


def soft_delete_user(user_id: int) -> User:
    """Hide an account from every flow and end all of its sessions."""
    user = get_user(user_id)
    user.is_deleted = True
    user.deleted_at = utcnow()
    db.session.commit()
    token_service.revoke_all_user_tokens(user.id, reason="account_deleted")
    return user
