from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode, urlparse

import httpx

from gatekeeper.logging import get_logger

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPE = "openid email profile"


def validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValueError("OAuth redirect URI must be http(s)")
    if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ValueError("Insecure redirect URI not allowed outside localhost")
    if not parsed.netloc:
        raise ValueError("OAuth redirect URI must include host")
    return redirect_uri


class GoogleOAuthClient:
    """Authorization-code flow against Google's OAuth 2.0 endpoints."""

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._transport = transport
        self._code_registry: dict[str, dict] = {}

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def authorization_url(self, state: str) -> str:
        if not self.is_configured:
            raise ValueError("Google OAuth is not configured")
        params = {
            "client_id": self.client_id,
            "redirect_uri": validate_redirect_uri(self.redirect_uri),
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def register_code(self, code: str, identity: dict) -> None:
        """Record an identity for a code without a network exchange (offline and test flows)."""

        self._code_registry[code] = identity

    async def exchange_code(self, code: str) -> Optional[dict]:
        """Exchange an authorization code for ``{provider_uid, email, name}``."""

        registered = self._code_registry.pop(code, None)
        if registered:
            return registered
        if not self.is_configured:
            logger.error("oauth_credentials_missing", provider="google")
            return None

        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    logger.error("oauth_no_access_token", provider="google")
                    return None

                userinfo_response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider="google", error=str(exc))
            return None

        if not isinstance(userinfo, dict) or not userinfo.get("id") or not userinfo.get("email"):
            logger.error("oauth_identity_incomplete", provider="google")
            return None
        if userinfo.get("verified_email") is False:
            logger.warning("oauth_email_unverified", provider="google")
            return None
        return {
            "provider_uid": str(userinfo["id"]),
            "email": userinfo["email"],
            "name": userinfo.get("name"),
        }
