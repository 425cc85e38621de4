# Overview: Flask API routes for registration, password login, token refresh and OAuth.

# backend/marketplace/routes/auth.py
"""
Authentication API routes

- Password strength validation on registration
- Login throttling with lockout after repeated failures
- Short-lived access sessions plus rotating refresh tokens
- Refresh-token reuse revokes the whole rotation chain
- OAuth authorization-code flow with single-use state and PKCE
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import MarketplaceError, ValidationError
from ..services import auth_service
from ..services import login_throttle_service
from ..services import oauth_service
from ..services import session_service
from ..services import token_service
from ..decorators import bearer_token, require_auth


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _client_meta() -> dict:
    return {
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }


@auth_bp.post("/register")
def register_route():
    """
    Create a buyer account and sign it in.

    Body: {"email", "password", "display_name"?, "device_id"?}
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")
        if not email or not password:
            raise ValidationError("email and password required")

        user = auth_service.register_user(email, password, data.get("display_name"))
        tokens = token_service.issue_tokens(user, device_id=data.get("device_id"), **_client_meta())
        return jsonify({**tokens.to_dict(), "user": tokens.user.to_dict(), "message": "Registration successful"}), 201

    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to register user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/login")
def login_route():
    """
    Authenticate with email and password.

    Returns an access token, a refresh token and the user. Repeated failures
    lock the account for LOGIN_LOCKOUT_MINUTES (429).
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")
        if not email or not password:
            raise ValidationError("email and password required")

        tokens = auth_service.login(email, password, device_id=data.get("device_id"), **_client_meta())
        return jsonify({**tokens.to_dict(), "user": tokens.user.to_dict(), "message": "Login successful"}), 200

    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/lockout-status")
def lockout_status_route():
    try:
        email = request.args.get("email")
        if not email:
            raise ValidationError("email query parameter required")
        return jsonify(login_throttle_service.get_lockout_status(email)), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load lockout status")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/refresh")
def refresh_route():
    """
    Exchange a refresh token for a new access/refresh pair.

    Presenting a token that was already rotated or revoked is treated as
    theft: every token descended from it is revoked and the client must sign
    in again.
    """
    try:
        data = request.get_json(silent=True) or {}
        refresh_token = data.get("refresh_token")
        if not refresh_token:
            raise ValidationError("refresh_token required")

        tokens = token_service.rotate_refresh_token(refresh_token, **_client_meta())
        return jsonify({**tokens.to_dict(), "user": tokens.user.to_dict()}), 200

    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to refresh token")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
def logout_route():
    try:
        data = request.get_json(silent=True) or {}
        revoked = auth_service.logout(bearer_token(), data.get("refresh_token"))
        return jsonify({"message": "Logout successful", "revoked": revoked}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to logout")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout-all")
@require_auth
def logout_all_route():
    try:
        revoked = token_service.revoke_all_user_tokens(g.current_user.id)
        return jsonify({"message": "All sessions revoked", "revoked_tokens": revoked}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to revoke sessions")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/validate")
@require_auth
def validate_route():
    context = g.session_context
    return jsonify({
        "valid": True,
        "user": context.user.to_dict(),
        "session": context.session.to_dict(),
    }), 200


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"user": g.current_user.to_dict()}), 200


@auth_bp.post("/oauth/<provider>/begin")
def oauth_begin_route(provider: str):
    """
    Start an OAuth authorization-code flow.

    Body: {"redirect_uri"?, "code_challenge"?, "code_challenge_method"?}
    A Bearer token, when present and valid, links the external identity to
    the signed-in account.
    """
    try:
        data = request.get_json(silent=True) or {}

        linking_user_id = None
        token = bearer_token()
        if token:
            context = session_service.validate_session(token)
            if context:
                linking_user_id = context.user.id

        record, url = oauth_service.begin_oauth(
            provider,
            redirect_uri=data.get("redirect_uri"),
            code_challenge=data.get("code_challenge"),
            code_challenge_method=data.get("code_challenge_method") or "S256",
            user_id=linking_user_id,
        )
        return jsonify({
            "authorization_url": url,
            "state": record.state,
            "expires_at": record.to_dict()["expires_at"],
        }), 200

    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to begin OAuth flow")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/oauth/callback")
def oauth_callback_route():
    """Body: {"state", "code", "code_verifier"?, "device_id"?}"""
    try:
        data = request.get_json(silent=True) or {}
        state = data.get("state")
        if not state:
            raise ValidationError("state required")

        tokens, created = oauth_service.complete_oauth(
            state,
            data.get("code"),
            code_verifier=data.get("code_verifier"),
            device_id=data.get("device_id"),
            **_client_meta(),
        )
        return jsonify({**tokens.to_dict(), "user": tokens.user.to_dict(), "created": created}), 201 if created else 200

    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to complete OAuth flow")
        return jsonify({"error": "Internal server error"}), 500
