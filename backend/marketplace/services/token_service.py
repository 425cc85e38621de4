# Overview: Refresh-token issue, rotation and reuse detection.

"""
Refresh Token Rotation

Every refresh token is single use. Presenting an active token revokes it,
links it to a freshly issued successor (replaced_by_token_id) and mints a
new access session. Presenting a token that is already revoked means a copy
leaked: every token reachable from it along the replacement chain is
revoked, the access sessions those tokens minted are revoked, the event is
audited and committed, and TokenReused forces a fresh sign-in.

Revocation reasons written to reason_revoked:
- rotated         replaced by its successor
- logout          explicit sign-out
- superseded      a new login on the same device
- reuse_detected  chain revoked after a replay
- revoke_all      account-wide sign-out
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update

from ..errors import InvalidToken, TokenReused
from ..extensions import db
from ..models import RefreshToken, SessionToken, User
from ..models.identity import is_token_expired
from ..time_utils import to_utc_z, utcnow
from . import session_service
from .security_service import log_security_event

REASON_ROTATED = "rotated"
REASON_LOGOUT = "logout"
REASON_SUPERSEDED = "superseded"
REASON_REUSE = "reuse_detected"
REASON_REVOKE_ALL = "revoke_all"


@dataclass
class TokenPair:
    """Credentials handed back to the client after login, OAuth or rotation."""
    user: User
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    refresh_record: RefreshToken
    session: SessionToken

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "access_token_expires_at": to_utc_z(self.access_expires_at),
            "refresh_token": self.refresh_token,
            "refresh_token_expires_at": to_utc_z(self.refresh_expires_at),
            "token_type": "Bearer",
        }


def _refresh_lifetime() -> timedelta:
    return timedelta(days=current_app.config["REFRESH_TOKEN_DAYS"])


def _find_by_raw(raw_token: str) -> RefreshToken | None:
    if not raw_token:
        return None
    return db.session.query(RefreshToken).filter_by(
        token_hash=session_service.hash_token(raw_token)
    ).first()


def _revoke_values(reason: str) -> dict:
    return {
        RefreshToken.is_revoked: True,
        RefreshToken.revoked_at: utcnow(),
        RefreshToken.reason_revoked: reason,
    }


def issue_refresh_token(
    user_id: int,
    device_id: str | None = None,
    ip_address: str | None = None,
    commit: bool = True,
) -> tuple[RefreshToken, str]:
    """
    Issue a new refresh token.

    For a named device, any token still active for (user, device) is revoked
    as superseded first, keeping at most one active token per device.
    Returns (record, plaintext_token).
    """
    if device_id:
        db.session.query(RefreshToken).filter(
            RefreshToken.user_id == user_id,
            RefreshToken.device_id == device_id,
            RefreshToken.is_revoked.is_(False),
        ).update(_revoke_values(REASON_SUPERSEDED), synchronize_session=False)

    raw = session_service.generate_token()
    record = RefreshToken(
        user_id=user_id,
        token_hash=session_service.hash_token(raw),
        device_id=device_id,
        ip_address=ip_address,
        expires_at=utcnow() + _refresh_lifetime(),
        is_revoked=False,
    )
    db.session.add(record)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return record, raw


def issue_tokens(
    user: User,
    device_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> TokenPair:
    """Issue a refresh token plus the access session it mints, in one commit."""
    record, raw_refresh = issue_refresh_token(user.id, device_id=device_id, ip_address=ip_address, commit=False)
    session, raw_access = session_service.create_session(
        user_id=user.id,
        refresh_token_id=record.id,
        device_id=device_id,
        user_agent=user_agent,
        ip_address=ip_address,
        commit=False,
    )
    db.session.commit()

    return TokenPair(
        user=user,
        access_token=raw_access,
        access_expires_at=session.expires_at,
        refresh_token=raw_refresh,
        refresh_expires_at=record.expires_at,
        refresh_record=record,
        session=session,
    )


def collect_chain(token: RefreshToken) -> list[RefreshToken]:
    """
    Return `token` and every token reachable through replaced_by_token_id.

    Rows are loaded one id at a time; a visited set guards against a
    corrupted chain that loops back on itself.
    """
    chain = []
    seen: set[int] = set()
    current = token
    while current is not None and current.id not in seen:
        chain.append(current)
        seen.add(current.id)
        if current.replaced_by_token_id is None:
            break
        current = db.session.get(RefreshToken, current.replaced_by_token_id)
    return chain


def _handle_reuse(token: RefreshToken, ip_address: str | None, user_agent: str | None) -> None:
    chain = collect_chain(token)
    chain_ids = [t.id for t in chain]

    revoked = db.session.query(RefreshToken).filter(
        RefreshToken.id.in_(chain_ids),
        RefreshToken.is_revoked.is_(False),
    ).update(_revoke_values(REASON_REUSE), synchronize_session=False)

    sessions_revoked = session_service.revoke_sessions_for_tokens(chain_ids, reason="Refresh token reuse detected")

    log_security_event(
        user_id=token.user_id,
        event_type="TOKEN_REUSE_DETECTED",
        success=False,
        resource="/api/auth/refresh",
        action=str(token.id),
        reason=f"chain={len(chain_ids)} tokens_revoked={revoked} sessions_revoked={sessions_revoked}",
        ip_address=ip_address,
        user_agent=user_agent,
        commit=False,
    )
    # Revocations must survive the error response
    db.session.commit()

    current_app.logger.warning(
        "Refresh token reuse detected for user %s; revoked %s token(s) and %s session(s)",
        token.user_id, revoked, sessions_revoked,
    )
    raise TokenReused(revoked_count=revoked)


def rotate_refresh_token(
    raw_token: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> TokenPair:
    """
    Exchange a refresh token for a new refresh token and access session.

    Raises:
        TokenReused: the token was already revoked (chain revoked and committed)
        InvalidToken: the token is unknown or expired, or its user is deleted
    """
    token = _find_by_raw(raw_token)
    if token is None:
        raise InvalidToken("Refresh token is invalid")

    if token.is_revoked:
        _handle_reuse(token, ip_address, user_agent)

    if is_token_expired(token.expires_at):
        raise InvalidToken("Refresh token has expired")

    user = db.session.get(User, token.user_id)
    if user is None or user.is_deleted:
        raise InvalidToken("Refresh token is invalid")

    # Compare-and-swap: a concurrent rotation of the same token loses here
    claimed = db.session.execute(
        update(RefreshToken)
        .where(RefreshToken.id == token.id, RefreshToken.is_revoked.is_(False))
        .values(is_revoked=True, revoked_at=utcnow(), reason_revoked=REASON_ROTATED)
    ).rowcount
    if not claimed:
        db.session.rollback()
        _handle_reuse(db.session.get(RefreshToken, token.id), ip_address, user_agent)

    successor, raw_refresh = issue_refresh_token(
        user.id, device_id=token.device_id, ip_address=ip_address, commit=False,
    )
    db.session.execute(
        update(RefreshToken)
        .where(RefreshToken.id == token.id)
        .values(replaced_by_token_id=successor.id)
    )

    session, raw_access = session_service.create_session(
        user_id=user.id,
        refresh_token_id=successor.id,
        device_id=token.device_id,
        user_agent=user_agent,
        ip_address=ip_address,
        commit=False,
    )

    log_security_event(
        user_id=user.id,
        event_type="TOKEN_ROTATED",
        success=True,
        resource="/api/auth/refresh",
        action=str(token.id),
        ip_address=ip_address,
        user_agent=user_agent,
        commit=False,
    )
    db.session.commit()

    return TokenPair(
        user=user,
        access_token=raw_access,
        access_expires_at=session.expires_at,
        refresh_token=raw_refresh,
        refresh_expires_at=successor.expires_at,
        refresh_record=successor,
        session=session,
    )


def revoke_refresh_token(raw_token: str, reason: str = REASON_LOGOUT) -> bool:
    """
    Revoke one refresh token and the sessions it minted (logout).

    Returns False when the token is unknown or already revoked.
    """
    token = _find_by_raw(raw_token)
    if token is None or token.is_revoked:
        return False

    db.session.query(RefreshToken).filter(
        RefreshToken.id == token.id,
    ).update(_revoke_values(reason), synchronize_session=False)
    session_service.revoke_sessions_for_tokens([token.id], reason=reason)
    db.session.commit()
    return True


def revoke_all_user_tokens(user_id: int, reason: str = REASON_REVOKE_ALL) -> int:
    """Revoke every active refresh token and access session of a user."""
    count = db.session.query(RefreshToken).filter(
        RefreshToken.user_id == user_id,
        RefreshToken.is_revoked.is_(False),
    ).update(_revoke_values(reason), synchronize_session=False)
    session_service.revoke_all_user_sessions(user_id, reason=reason, commit=False)
    db.session.commit()
    return count


def get_active_tokens(user_id: int) -> list[RefreshToken]:
    now = utcnow()
    return db.session.query(RefreshToken).filter(
        RefreshToken.user_id == user_id,
        RefreshToken.is_revoked.is_(False),
        RefreshToken.expires_at > now,
    ).order_by(RefreshToken.created_at.desc()).all()
