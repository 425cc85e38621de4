# Overview: OAuth sign-in; CSRF state + PKCE bookkeeping and account linking.

"""
OAuth Sign-in

begin_oauth stores a random state (and the client's PKCE challenge) for
OAUTH_STATE_MINUTES. complete_oauth consumes the state with a single
conditional DELETE, so a state can be redeemed once and never after it
expires, even when two callbacks race. Only then is the authorization code
exchanged with the provider and the identity linked to a local account.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import timedelta

from flask import current_app
from sqlalchemy import delete

from ..errors import ConflictError, InvalidCredentials, InvalidOAuthState, ValidationError
from ..extensions import db
from ..models import OAuthState, User, UserLogin
from ..time_utils import utcnow
from . import auth_service, token_service
from .google_oauth_client import OAuthIdentity, OAuthProviderClient
from .security_service import log_security_event
from .token_service import TokenPair

PKCE_METHODS = ("S256", "plain")


def get_provider_client(provider: str) -> OAuthProviderClient:
    clients = current_app.extensions.get("oauth_clients", {})
    client = clients.get((provider or "").lower())
    if client is None:
        raise ValidationError(f"Unsupported OAuth provider: {provider}", details={"field": "provider"})
    return client


def compute_code_challenge(code_verifier: str, method: str = "S256") -> str:
    """RFC 7636 challenge for a verifier: base64url(sha256(verifier)) without padding, or the verifier itself."""
    if method == "plain":
        return code_verifier
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(stored: OAuthState, code_verifier: str | None) -> bool:
    if not stored.code_challenge:
        return True
    if not code_verifier:
        return False
    expected = compute_code_challenge(code_verifier, stored.code_challenge_method or "S256")
    return hmac.compare_digest(expected, stored.code_challenge)


def begin_oauth(
    provider: str,
    redirect_uri: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str = "S256",
    user_id: int | None = None,
) -> tuple[OAuthState, str]:
    """
    Start an authorization attempt.

    Returns (state_record, authorization_url). Passing user_id links the
    resulting identity to an already signed-in account.
    """
    client = get_provider_client(provider)
    if code_challenge and code_challenge_method not in PKCE_METHODS:
        raise ValidationError(
            "code_challenge_method must be S256 or plain",
            details={"field": "code_challenge_method"},
        )

    record = OAuthState(
        state=secrets.token_urlsafe(32),
        nonce=secrets.token_urlsafe(16),
        provider=client.provider,
        redirect_uri=redirect_uri,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method if code_challenge else None,
        expires_at=utcnow() + timedelta(minutes=current_app.config["OAUTH_STATE_MINUTES"]),
        user_id=user_id,
    )
    db.session.add(record)
    db.session.commit()

    url = client.authorization_url(record.state, code_challenge, code_challenge_method, redirect_uri)
    return record, url


def consume_state(state: str) -> OAuthState:
    """
    Redeem a state exactly once.

    The row is deleted by a statement that also requires it to be unexpired;
    whoever deletes it owns it. Raises InvalidOAuthState otherwise.
    """
    stored = db.session.query(OAuthState).filter_by(state=state).first() if state else None
    if stored is None:
        raise InvalidOAuthState()
    # Keep the loaded values readable after the row is gone
    db.session.expunge(stored)

    deleted = db.session.execute(
        delete(OAuthState).where(
            OAuthState.id == stored.id,
            OAuthState.expires_at > utcnow(),
        )
    ).rowcount
    if deleted != 1:
        db.session.rollback()
        raise InvalidOAuthState()

    db.session.commit()
    return stored


def _reject(state: str | None, reason: str, ip_address: str | None, user_agent: str | None) -> None:
    current_app.logger.warning("OAuth state rejected: %s", reason)
    log_security_event(
        user_id=None,
        event_type="OAUTH_STATE_REJECTED",
        success=False,
        resource="/api/auth/oauth/callback",
        action=(state or "")[:255],
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def _link_or_create_user(identity: OAuthIdentity, linking_user_id: int | None) -> tuple[User, bool]:
    login = db.session.query(UserLogin).filter_by(
        provider=identity.provider,
        provider_key=identity.provider_key,
    ).first()
    if login is not None:
        user = login.user
        if user.is_deleted:
            raise InvalidCredentials()
        return user, False

    if linking_user_id is not None:
        user = auth_service.get_user(linking_user_id)
    else:
        user = db.session.query(User).filter_by(email=auth_service.normalize_email(identity.email)).first()
        if user is not None and user.is_deleted:
            raise InvalidCredentials()
        if user is not None and not identity.email_verified:
            raise ConflictError(
                "An account with this email already exists; sign in to link the provider",
                details={"field": "email"},
            )

    created = False
    if user is None:
        user = auth_service.create_user(
            email=identity.email,
            password=None,
            display_name=identity.display_name,
            is_verified=identity.email_verified,
            commit=False,
        )
        created = True
    elif identity.email_verified and not user.is_verified:
        user.is_verified = True

    db.session.add(UserLogin(
        user_id=user.id,
        provider=identity.provider,
        provider_key=identity.provider_key,
    ))
    db.session.commit()
    return user, created


def complete_oauth(
    state: str,
    code: str,
    code_verifier: str | None = None,
    device_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> tuple[TokenPair, bool]:
    """
    Finish an authorization attempt.

    Returns (tokens, created) where created is True for a new account.

    Raises:
        InvalidOAuthState: unknown, expired or already used state, or PKCE mismatch
        OAuthProviderError: the provider rejected the code or was unreachable
    """
    try:
        stored = consume_state(state)
    except InvalidOAuthState:
        _reject(state, "unknown, expired or already used state", ip_address, user_agent)
        raise

    if not verify_pkce(stored, code_verifier):
        _reject(state, "PKCE verifier mismatch", ip_address, user_agent)
        raise InvalidOAuthState("PKCE verification failed")

    if not code:
        raise ValidationError("Authorization code is required", details={"field": "code"})

    client = get_provider_client(stored.provider)
    identity = client.exchange_code(code, code_verifier, stored.redirect_uri)

    user, created = _link_or_create_user(identity, stored.user_id)
    user.last_login_at = utcnow()

    log_security_event(
        user_id=user.id,
        event_type="OAUTH_LOGIN",
        success=True,
        resource="/api/auth/oauth/callback",
        action=identity.provider,
        reason="account created" if created else None,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    tokens = token_service.issue_tokens(user, device_id=device_id, ip_address=ip_address, user_agent=user_agent)
    return tokens, created


def cleanup_expired_states() -> int:
    deleted = db.session.execute(
        delete(OAuthState).where(OAuthState.expires_at <= utcnow())
    ).rowcount
    db.session.commit()
    return deleted
