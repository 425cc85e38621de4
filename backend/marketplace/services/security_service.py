# Overview: Append-only security audit log writer.

from __future__ import annotations

from ..extensions import db
from ..models import SecurityEvent
from ..time_utils import utcnow


def log_security_event(
    user_id: int | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    commit: bool = True,
) -> SecurityEvent:
    """
    Log security event to the audit trail.

    event_type examples:
    - LOGIN_SUCCESS / LOGIN_FAILED
    - LOGOUT
    - TOKEN_ROTATED
    - TOKEN_REUSE_DETECTED
    - OAUTH_STATE_REJECTED
    - OAUTH_LOGIN
    - FULFILLMENT_FORBIDDEN

    Pass commit=False to write the event inside the caller's transaction.
    """
    event = SecurityEvent(
        user_id=user_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow(),
    )
    db.session.add(event)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return event
