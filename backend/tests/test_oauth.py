"""
OAuth sign-in tests.

Verifies:
- a state can be redeemed once, and never after it expires
- PKCE verifiers are checked against the stored challenge
- first sign-in creates an account, later ones reuse the linked login
- the Google client speaks the token and userinfo endpoints (httpx mock)
"""

import json
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from marketplace.errors import ConflictError, InvalidOAuthState, OAuthProviderError, ValidationError
from marketplace.models import OAuthState, SecurityEvent, User, UserLogin
from marketplace.models.identity import credential_invariant_holds, is_oauth_user
from marketplace.services import oauth_service, session_service
from marketplace.services.google_oauth_client import (
    GOOGLE_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    GoogleOAuthClient,
    OAuthIdentity,
)
from marketplace.time_utils import utcnow

VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"


class FakeProvider:
    provider = "Google"

    def __init__(self, identity):
        self.identity = identity
        self.exchanged = []

    def authorization_url(self, state, code_challenge, code_challenge_method, redirect_uri):
        return f"https://provider.test/authorize?state={state}"

    def exchange_code(self, code, code_verifier, redirect_uri):
        self.exchanged.append((code, code_verifier, redirect_uri))
        return self.identity


@pytest.fixture
def provider(app, db_session, monkeypatch):
    fake = FakeProvider(OAuthIdentity(
        provider="Google",
        provider_key="google-sub-1",
        email="oauth.user@example.com",
        email_verified=True,
        display_name="OAuth User",
    ))
    monkeypatch.setitem(app.extensions, "oauth_clients", {"google": fake})
    return fake


def _begin(**kwargs):
    record, _ = oauth_service.begin_oauth("google", **kwargs)
    return record.state


class TestStateLifecycle:

    def test_state_is_single_use(self, db_session, provider):
        state = _begin()

        oauth_service.complete_oauth(state, "code-1")

        with pytest.raises(InvalidOAuthState):
            oauth_service.complete_oauth(state, "code-1")
        assert len(provider.exchanged) == 1
        assert db_session.query(OAuthState).count() == 0

    def test_replay_is_audited(self, db_session, provider):
        state = _begin()
        oauth_service.complete_oauth(state, "code-1")

        with pytest.raises(InvalidOAuthState):
            oauth_service.complete_oauth(state, "code-1")

        assert db_session.query(SecurityEvent).filter_by(event_type="OAUTH_STATE_REJECTED").count() == 1

    def test_expired_state_is_rejected(self, db_session, provider):
        state = _begin()
        db_session.query(OAuthState).filter_by(state=state).update(
            {OAuthState.expires_at: utcnow() - timedelta(seconds=1)}
        )
        db_session.commit()

        with pytest.raises(InvalidOAuthState):
            oauth_service.complete_oauth(state, "code-1")
        assert provider.exchanged == []

    def test_unknown_state(self, db_session, provider):
        with pytest.raises(InvalidOAuthState):
            oauth_service.complete_oauth("never-issued", "code-1")

    def test_unsupported_provider(self, db_session, provider):
        with pytest.raises(ValidationError):
            oauth_service.begin_oauth("myspace")

    def test_cleanup_removes_only_expired_states(self, db_session, provider):
        live = _begin()
        stale = _begin()
        db_session.query(OAuthState).filter_by(state=stale).update(
            {OAuthState.expires_at: utcnow() - timedelta(minutes=1)}
        )
        db_session.commit()

        assert oauth_service.cleanup_expired_states() == 1
        assert db_session.query(OAuthState).filter_by(state=live).count() == 1


class TestPKCE:

    def test_rfc7636_example_challenge(self):
        assert oauth_service.compute_code_challenge(VERIFIER) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_matching_verifier(self, provider):
        state = _begin(code_challenge=oauth_service.compute_code_challenge(VERIFIER))

        tokens, _ = oauth_service.complete_oauth(state, "code-1", code_verifier=VERIFIER)

        assert tokens.access_token
        assert provider.exchanged[0][1] == VERIFIER

    def test_wrong_verifier(self, provider):
        state = _begin(code_challenge=oauth_service.compute_code_challenge(VERIFIER))

        with pytest.raises(InvalidOAuthState):
            oauth_service.complete_oauth(state, "code-1", code_verifier="something-else")
        assert provider.exchanged == []

    def test_missing_verifier(self, provider):
        state = _begin(code_challenge=oauth_service.compute_code_challenge(VERIFIER))

        with pytest.raises(InvalidOAuthState):
            oauth_service.complete_oauth(state, "code-1")

    def test_failed_verifier_still_burns_the_state(self, provider):
        state = _begin(code_challenge=oauth_service.compute_code_challenge(VERIFIER))
        with pytest.raises(InvalidOAuthState):
            oauth_service.complete_oauth(state, "code-1", code_verifier="wrong")

        with pytest.raises(InvalidOAuthState):
            oauth_service.complete_oauth(state, "code-1", code_verifier=VERIFIER)


class TestAccountLinking:

    def test_first_sign_in_creates_account(self, db_session, provider):
        tokens, created = oauth_service.complete_oauth(_begin(), "code-1")

        assert created is True
        user = db_session.query(User).filter_by(email="oauth.user@example.com").one()
        assert user.password_hash is None
        assert user.is_verified is True
        assert is_oauth_user(user)
        assert credential_invariant_holds(user)
        assert session_service.validate_session(tokens.access_token).user.id == user.id

    def test_second_sign_in_reuses_login(self, db_session, provider):
        oauth_service.complete_oauth(_begin(), "code-1")

        _, created = oauth_service.complete_oauth(_begin(), "code-2")

        assert created is False
        assert db_session.query(UserLogin).count() == 1

    def test_verified_email_links_existing_account(self, db_session, make_user, provider):
        existing = make_user(email="oauth.user@example.com")

        tokens, created = oauth_service.complete_oauth(_begin(), "code-1")

        assert created is False
        assert tokens.user.id == existing.id
        assert db_session.query(UserLogin).filter_by(user_id=existing.id).count() == 1

    def test_unverified_email_does_not_take_over_account(self, make_user, provider):
        make_user(email="oauth.user@example.com")
        provider.identity = OAuthIdentity(
            provider="Google", provider_key="google-sub-2", email="oauth.user@example.com", email_verified=False,
        )

        with pytest.raises(ConflictError):
            oauth_service.complete_oauth(_begin(), "code-1")

    def test_signed_in_user_links_provider(self, db_session, buyer, provider):
        _, created = oauth_service.complete_oauth(_begin(user_id=buyer.id), "code-1")

        assert created is False
        assert db_session.query(UserLogin).filter_by(user_id=buyer.id, provider_key="google-sub-1").count() == 1


def _google_transport(token_status=200, userinfo=None):
    userinfo = userinfo or {
        "id": "1234567890",
        "email": "person@gmail.com",
        "verified_email": True,
        "name": "Person",
    }
    seen = {}

    def handler(request):
        if str(request.url) == GOOGLE_TOKEN_URL:
            seen["form"] = parse_qs(request.content.decode())
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "ya29.token"})
        if str(request.url) == GOOGLE_USERINFO_URL:
            seen["authorization"] = request.headers["Authorization"]
            return httpx.Response(200, content=json.dumps(userinfo))
        return httpx.Response(404)

    return httpx.MockTransport(handler), seen


class TestGoogleClient:

    def test_code_exchange(self, app):
        transport, seen = _google_transport()
        client = GoogleOAuthClient("client-id", "client-secret", "https://app.test/cb", transport=transport)

        with app.app_context():
            identity = client.exchange_code("auth-code", VERIFIER, None)

        assert identity == OAuthIdentity(
            provider="Google",
            provider_key="1234567890",
            email="person@gmail.com",
            email_verified=True,
            display_name="Person",
        )
        assert seen["form"]["code_verifier"] == [VERIFIER]
        assert seen["form"]["redirect_uri"] == ["https://app.test/cb"]
        assert seen["authorization"] == "Bearer ya29.token"

    def test_rejected_code(self, app):
        transport, _ = _google_transport(token_status=400)
        client = GoogleOAuthClient("client-id", "client-secret", transport=transport)

        with app.app_context(), pytest.raises(OAuthProviderError) as exc:
            client.exchange_code("bad-code", None, None)

        assert exc.value.details["status"] == 400

    def test_unconfigured_client(self, app):
        with app.app_context(), pytest.raises(OAuthProviderError):
            GoogleOAuthClient("", "").exchange_code("auth-code", None, None)

    def test_authorization_url_carries_pkce(self):
        client = GoogleOAuthClient("client-id", "client-secret", "https://app.test/cb")

        url = httpx.URL(client.authorization_url("st", "challenge", "S256", None))

        assert url.params["state"] == "st"
        assert url.params["code_challenge"] == "challenge"
        assert url.params["code_challenge_method"] == "S256"
        assert url.params["redirect_uri"] == "https://app.test/cb"
