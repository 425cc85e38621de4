# Overview: Retention jobs for tokens, OAuth states and the security log.

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import or_

from ..extensions import db
from ..models import RefreshToken, SecurityEvent, SessionToken
from ..time_utils import utcnow
from .oauth_service import cleanup_expired_states


def cleanup_tokens(*, retention_days: int = 30) -> dict:
    """
    Delete refresh tokens and access sessions that are expired or revoked and
    older than retention_days.

    Refresh tokens still referenced by a successor pointer are detached
    first, so chains inside the retention window stay walkable.
    """
    now = utcnow()
    cutoff = now - timedelta(days=retention_days)

    sessions = db.session.query(SessionToken).filter(
        or_(SessionToken.expires_at < now, SessionToken.is_revoked.is_(True)),
        SessionToken.created_at < cutoff,
    ).delete(synchronize_session=False)

    stale_ids = [
        token_id for (token_id,) in db.session.query(RefreshToken.id).filter(
            or_(RefreshToken.expires_at < now, RefreshToken.is_revoked.is_(True)),
            RefreshToken.created_at < cutoff,
        ).all()
    ]
    refresh = 0
    if stale_ids:
        db.session.query(RefreshToken).filter(
            RefreshToken.replaced_by_token_id.in_(stale_ids),
        ).update({RefreshToken.replaced_by_token_id: None}, synchronize_session=False)
        db.session.query(SessionToken).filter(
            SessionToken.refresh_token_id.in_(stale_ids),
        ).update({SessionToken.refresh_token_id: None}, synchronize_session=False)
        refresh = db.session.query(RefreshToken).filter(
            RefreshToken.id.in_(stale_ids),
        ).delete(synchronize_session=False)

    db.session.commit()
    return {"sessions_deleted": sessions, "refresh_tokens_deleted": refresh}


def cleanup_oauth_states() -> int:
    return cleanup_expired_states()


def cleanup_security_events(*, retention_days: int = 90) -> int:
    """Delete security events older than retention_days."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
