"""
Login Throttling Service

Limits brute-force password guessing. After LOGIN_MAX_FAILED_ATTEMPTS
failures for one identifier within the lockout window, further attempts are
refused until LOGIN_LOCKOUT_MINUTES have passed since the latest failure.

Failures are LOGIN_FAILED rows in security_events keyed by the login
identifier (stored in the `action` column), so no extra table is needed.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SecurityEvent, User
from ..time_utils import as_naive_utc, utcnow
from .security_service import log_security_event


def _max_attempts() -> int:
    return current_app.config["LOGIN_MAX_FAILED_ATTEMPTS"]


def _lockout_duration() -> timedelta:
    return timedelta(minutes=current_app.config["LOGIN_LOCKOUT_MINUTES"])


def _normalize(identifier: str) -> str:
    return identifier.strip().lower()


def get_recent_failed_attempts(identifier: str) -> int:
    """
    Count LOGIN_FAILED events for this identifier inside the lockout window,
    ignoring failures that happened before the latest successful login.
    """
    identifier = _normalize(identifier)
    cutoff = utcnow() - _lockout_duration()

    last_success = db.session.query(db.func.max(SecurityEvent.occurred_at)).filter(
        SecurityEvent.event_type == "LOGIN_SUCCESS",
        SecurityEvent.action == identifier,
    ).scalar()
    if last_success is not None:
        cutoff = max(cutoff, as_naive_utc(last_success))

    return db.session.query(SecurityEvent).filter(
        SecurityEvent.event_type == "LOGIN_FAILED",
        SecurityEvent.action == identifier,
        SecurityEvent.occurred_at > cutoff,
    ).count()


def is_account_locked(identifier: str) -> tuple[bool, int | None]:
    """
    Check if an account is currently locked due to too many failed attempts.

    Returns:
    - (True, seconds_remaining) if locked
    - (False, None) if not locked
    """
    identifier = _normalize(identifier)
    if get_recent_failed_attempts(identifier) < _max_attempts():
        return False, None

    most_recent = db.session.query(SecurityEvent).filter(
        SecurityEvent.event_type == "LOGIN_FAILED",
        SecurityEvent.action == identifier,
    ).order_by(SecurityEvent.occurred_at.desc()).first()

    if most_recent:
        lockout_end = as_naive_utc(most_recent.occurred_at) + _lockout_duration()
        now = utcnow()
        if now < lockout_end:
            return True, int((lockout_end - now).total_seconds())

    return False, None


def record_failed_attempt(
    identifier: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
    reason: str = "Invalid credentials",
) -> int:
    """
    Record a failed login attempt.

    Returns the total number of recent failed attempts.
    """
    identifier = _normalize(identifier)
    user = db.session.query(User).filter(User.email == identifier).first()

    log_security_event(
        user_id=user.id if user else None,
        event_type="LOGIN_FAILED",
        success=False,
        resource="/api/auth/login",
        action=identifier,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return get_recent_failed_attempts(identifier)


def record_successful_login(
    user_id: int,
    identifier: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """Record a successful login; it resets the failure count for the identifier."""
    log_security_event(
        user_id=user_id,
        event_type="LOGIN_SUCCESS",
        success=True,
        resource="/api/auth/login",
        action=_normalize(identifier),
        ip_address=ip_address,
        user_agent=user_agent,
    )


def get_lockout_status(identifier: str) -> dict:
    failed_count = get_recent_failed_attempts(identifier)
    is_locked, seconds_remaining = is_account_locked(identifier)

    return {
        "locked": is_locked,
        "failed_attempts": failed_count,
        "max_attempts": _max_attempts(),
        "seconds_until_unlock": seconds_remaining,
        "lockout_duration_minutes": int(_lockout_duration().total_seconds() / 60),
    }
