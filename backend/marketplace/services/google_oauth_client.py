# Overview: Identity-provider client for the OAuth authorization-code + PKCE exchange.

"""
OAuth provider clients.

oauth_service only depends on the OAuthProviderClient protocol. The Google
implementation posts the authorization code and PKCE verifier to Google's
token endpoint and reads the profile from the userinfo endpoint, using a
synchronous httpx client because request handlers are synchronous.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import httpx
from flask import current_app

from ..errors import OAuthProviderError

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"


@dataclass(frozen=True)
class OAuthIdentity:
    """Profile returned by a provider after a successful code exchange."""
    provider: str
    provider_key: str
    email: str
    email_verified: bool = False
    display_name: str | None = None


class OAuthProviderClient(Protocol):
    provider: str

    def exchange_code(self, code: str, code_verifier: str | None, redirect_uri: str | None) -> OAuthIdentity:
        ...


class GoogleOAuthClient:
    provider = "Google"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        # Injected in tests (httpx.MockTransport)
        self._transport = transport

    @classmethod
    def from_config(cls, config) -> "GoogleOAuthClient":
        return cls(
            client_id=config.get("GOOGLE_CLIENT_ID", ""),
            client_secret=config.get("GOOGLE_CLIENT_SECRET", ""),
            redirect_uri=config.get("GOOGLE_REDIRECT_URI") or None,
            timeout=config.get("OAUTH_HTTP_TIMEOUT", 10.0),
        )

    def authorization_url(self, state: str, code_challenge: str | None, code_challenge_method: str, redirect_uri: str | None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri or self.redirect_uri or "",
            "response_type": "code",
            "scope": "openid email profile",
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = code_challenge_method
        return str(httpx.URL(GOOGLE_AUTHORIZE_URL, params=params))

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=httpx.Timeout(self.timeout), transport=self._transport)

    def exchange_code(self, code: str, code_verifier: str | None, redirect_uri: str | None) -> OAuthIdentity:
        if not self.client_id or not self.client_secret:
            raise OAuthProviderError("Google OAuth credentials not configured")

        form = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": redirect_uri or self.redirect_uri or "",
        }
        if code_verifier:
            form["code_verifier"] = code_verifier

        try:
            with self._client() as client:
                token_response = client.post(GOOGLE_TOKEN_URL, data=form)
                if token_response.status_code != 200:
                    raise OAuthProviderError(
                        "Google token exchange failed",
                        details={"status": token_response.status_code},
                    )
                access_token = token_response.json().get("access_token")
                if not access_token:
                    raise OAuthProviderError("Invalid token response from Google")

                info_response = client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                if info_response.status_code != 200:
                    raise OAuthProviderError(
                        "Failed to get user info from Google",
                        details={"status": info_response.status_code},
                    )
                info = info_response.json()
        except httpx.HTTPError as exc:
            current_app.logger.warning("Google OAuth request failed: %s", exc)
            raise OAuthProviderError("Could not reach Google") from exc

        if not info.get("id") or not info.get("email"):
            raise OAuthProviderError("Invalid user info response from Google")

        return OAuthIdentity(
            provider=self.provider,
            provider_key=str(info["id"]),
            email=info["email"],
            email_verified=bool(info.get("verified_email")),
            display_name=info.get("name"),
        )
