from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..time_utils import as_naive_utc, to_utc_z, utcnow

ROLE_BUYER = "Buyer"
ROLE_SELLER = "Seller"
ROLE_ADMIN = "Admin"
VALID_ROLES = {ROLE_BUYER, ROLE_SELLER, ROLE_ADMIN}

LOCAL_PROVIDER = "local"


class User(db.Model):
    """
    Marketplace account (buyer, seller or admin).

    password_hash is nullable: accounts created through an OAuth callback have
    no local password and must keep at least one UserLogin row instead.
    Accounts are never hard-deleted; is_deleted hides them from every flow.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("email", name="uq_users_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False)
    display_name = db.Column(db.String(100), nullable=True)

    # Bcrypt hashed password (None for OAuth-only accounts)
    password_hash = db.Column(db.String(255), nullable=True)

    role = db.Column(db.String(16), nullable=False, default=ROLE_BUYER)
    preferred_currency = db.Column(db.String(3), nullable=False, default="THB")

    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    is_seller_approved = db.Column(db.Boolean, nullable=False, default=False)
    became_seller_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    logins = db.relationship("UserLogin", backref="user", lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
            "preferred_currency": self.preferred_currency,
            "is_verified": self.is_verified,
            "is_seller_approved": self.is_seller_approved,
            "has_password": has_password(self),
            "is_oauth_user": is_oauth_user(self),
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at) if self.last_login_at else None,
        }


class UserLogin(db.Model):
    """External identity linked to a user (e.g. provider="Google")."""
    __tablename__ = "user_logins"
    __table_args__ = (
        db.UniqueConstraint("provider", "provider_key", name="uq_user_logins_provider_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    provider = db.Column(db.String(50), nullable=False)
    provider_key = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "provider": self.provider,
            "created_at": to_utc_z(self.created_at),
        }


class RefreshToken(db.Model):
    """
    One row per issued refresh token.

    Only the SHA-256 hash is stored. Rotation links the revoked row to its
    successor through replaced_by_token_id, so the rows of one login form a
    singly-linked chain walked by id when a stale token is replayed.
    """
    __tablename__ = "refresh_tokens"
    __table_args__ = (
        db.UniqueConstraint("token_hash", name="uq_refresh_tokens_token_hash"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(64), nullable=False)
    device_id = db.Column(db.String(100), nullable=True)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    is_revoked = db.Column(db.Boolean, nullable=False, default=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reason_revoked = db.Column(db.String(500), nullable=True)
    replaced_by_token_id = db.Column(db.Integer, db.ForeignKey("refresh_tokens.id"), nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("refresh_tokens", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "expires_at": to_utc_z(self.expires_at),
            "is_revoked": self.is_revoked,
            "is_active": is_token_active(self),
            "reason_revoked": self.reason_revoked,
            "replaced_by_token_id": self.replaced_by_token_id,
            "created_at": to_utc_z(self.created_at),
        }


db.Index(
    "ix_refresh_tokens_user_device_active",
    RefreshToken.user_id,
    RefreshToken.device_id,
    sqlite_where=RefreshToken.is_revoked.is_(False),
    postgresql_where=RefreshToken.is_revoked.is_(False),
)


class SessionToken(db.Model):
    """
    Short-lived access credential presented as `Authorization: Bearer`.

    Every session is minted together with a refresh token (refresh_token_id)
    so that revoking a compromised refresh chain also ends its sessions.
    """
    __tablename__ = "session_tokens"
    __table_args__ = (
        db.UniqueConstraint("token_hash", name="uq_session_tokens_token_hash"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    refresh_token_id = db.Column(db.Integer, db.ForeignKey("refresh_tokens.id"), nullable=True, index=True)
    device_id = db.Column(db.String(100), nullable=True)
    token_hash = db.Column(db.String(64), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    user_agent = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
            "expires_at": to_utc_z(self.expires_at),
        }


class OAuthState(db.Model):
    """
    CSRF/PKCE record for one OAuth authorization attempt.

    Single use: the callback deletes the row in the same statement that
    checks it, so a replayed state finds nothing.
    """
    __tablename__ = "oauth_states"
    __table_args__ = (
        db.UniqueConstraint("state", name="uq_oauth_states_state"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    state = db.Column(db.String(255), nullable=False)
    nonce = db.Column(db.String(255), nullable=True)
    provider = db.Column(db.String(50), nullable=False)
    redirect_uri = db.Column(db.String(500), nullable=True)
    code_challenge = db.Column(db.String(128), nullable=True)
    code_challenge_method = db.Column(db.String(10), nullable=True, default="S256")
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "nonce": self.nonce,
            "provider": self.provider,
            "redirect_uri": self.redirect_uri,
            "code_challenge_method": self.code_challenge_method,
            "expires_at": to_utc_z(self.expires_at),
        }


# ---------------------------------------------------------------------------
# Derived properties: pure functions over loaded rows, never stored.
# ---------------------------------------------------------------------------

def has_password(user: User) -> bool:
    return bool(user.password_hash)


def is_oauth_user(user: User) -> bool:
    return any(login.provider and login.provider != LOCAL_PROVIDER for login in user.logins)


def is_active_seller(user: User) -> bool:
    return user.role == ROLE_SELLER and user.is_seller_approved and not user.is_deleted


def credential_invariant_holds(user: User) -> bool:
    """A user without a password must be reachable through an external login."""
    return has_password(user) or is_oauth_user(user)


def is_token_expired(expires_at: datetime, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return now >= as_naive_utc(expires_at)


def is_token_active(token: RefreshToken, now: datetime | None = None) -> bool:
    return not token.is_revoked and not is_token_expired(token.expires_at, now)
