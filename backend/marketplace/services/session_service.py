# Overview: Access-session tokens; the credential behind `Authorization: Bearer`.

"""
Access Session Management

Access sessions are short-lived (ACCESS_TOKEN_MINUTES) and always minted
next to a refresh token. Clients renew them through token_service's
rotation, never by extending a session.

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage
- Revoked together with the refresh chain that minted them
- Tracks client IP and user agent for security monitoring
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, User
from ..models.identity import is_token_expired
from ..time_utils import utcnow


@dataclass
class SessionContext:
    """Result of a successful validate_session."""
    user: User
    session: SessionToken


def generate_token() -> str:
    """64-character hex string (32 bytes of entropy); only ever sent to the client."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    SHA-256 of a high-entropy token, hex encoded.

    Tokens are random, unlike passwords, so a fast hash is sufficient.
    """
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_session(
    user_id: int,
    refresh_token_id: int | None = None,
    device_id: str | None = None,
    user_agent: str | None = None,
    ip_address: str | None = None,
    commit: bool = True,
) -> tuple[SessionToken, str]:
    """
    Create an access session for a user.

    Returns (session_record, plaintext_token). The database stores only the
    hash. Pass commit=False to keep the insert in the caller's transaction.
    """
    plaintext_token = generate_token()
    now = utcnow()
    lifetime = timedelta(minutes=current_app.config["ACCESS_TOKEN_MINUTES"])

    session = SessionToken(
        user_id=user_id,
        refresh_token_id=refresh_token_id,
        device_id=device_id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + lifetime,
        user_agent=user_agent,
        ip_address=ip_address,
        is_revoked=False,
    )
    db.session.add(session)
    if commit:
        db.session.commit()
    else:
        db.session.flush()

    return session, plaintext_token


def validate_session(token: str) -> SessionContext | None:
    """
    Validate an access token and return its SessionContext.

    Returns None if the token is unknown, revoked or expired, or if the user
    has been soft-deleted. Updates last_used_at on success.
    """
    now = utcnow()
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()

    if not session:
        return None

    if is_token_expired(session.expires_at, now):
        return None

    user = session.user
    if not user or user.is_deleted:
        session.is_revoked = True
        session.revoked_at = now
        session.revoked_reason = "User account deleted"
        db.session.commit()
        return None

    session.last_used_at = now
    db.session.commit()

    return SessionContext(user=user, session=session)


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """
    Revoke one access session.

    Returns True if a live session was revoked, False if not found.
    """
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()

    if not session:
        return False

    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()
    return True


def revoke_sessions_for_tokens(refresh_token_ids: list[int], reason: str) -> int:
    """
    Revoke every live session minted by the given refresh tokens.

    Does not commit; callers batch this with the refresh-token revocation.
    """
    if not refresh_token_ids:
        return 0
    return db.session.query(SessionToken).filter(
        SessionToken.refresh_token_id.in_(refresh_token_ids),
        SessionToken.is_revoked.is_(False),
    ).update(
        {
            SessionToken.is_revoked: True,
            SessionToken.revoked_at: utcnow(),
            SessionToken.revoked_reason: reason,
        },
        synchronize_session=False,
    )


def revoke_all_user_sessions(user_id: int, reason: str = "Revoke all sessions", commit: bool = True) -> int:
    """Revoke all active sessions for a user. Returns count revoked."""
    count = db.session.query(SessionToken).filter(
        SessionToken.user_id == user_id,
        SessionToken.is_revoked.is_(False),
    ).update(
        {
            SessionToken.is_revoked: True,
            SessionToken.revoked_at: utcnow(),
            SessionToken.revoked_reason: reason,
        },
        synchronize_session=False,
    )
    if commit:
        db.session.commit()
    return count
