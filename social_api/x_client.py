"""
X (Twitter) OAuth 2.0 client: token endpoint (authorization_code and refresh_token grants)
and the few authenticated API calls the service needs (profile, tweet, metrics).
Server-to-server only; the confidential client authenticates with HTTP Basic.
"""
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from social_api.config import HTTP_TIMEOUT_SECONDS, X_API_BASE, X_TOKEN_URL
from social_api.errors import (
    ProfileFetchError,
    ProviderError,
    ProviderRequestError,
    TokenExchangeError,
    TokenRefreshError,
)

logger = logging.getLogger(__name__)


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int | None
    scope: str
    refresh_token: str | None = None
    token_type: str = "bearer"

    @classmethod
    def from_json(cls, data: Any) -> "TokenResponse | None":
        if not isinstance(data, dict) or not data.get("access_token"):
            return None
        expires_in = data.get("expires_in")
        return cls(
            access_token=str(data["access_token"]),
            expires_in=int(expires_in) if expires_in is not None else None,
            scope=str(data.get("scope") or ""),
            refresh_token=data.get("refresh_token") or None,
            token_type=str(data.get("token_type") or "bearer"),
        )


def build_http_client(timeout: float = HTTP_TIMEOUT_SECONDS) -> httpx.AsyncClient:
    """Shared client for provider calls; bounded timeout so a stalled provider cannot stall the app."""
    return httpx.AsyncClient(timeout=timeout, headers={"Accept": "application/json"})


class XOAuthClient:
    platform = "x"

    def __init__(self, http: httpx.AsyncClient, *, token_url: str = X_TOKEN_URL, api_base: str = X_API_BASE):
        self._http = http
        self._token_url = token_url
        self._api_base = api_base.rstrip("/")

    async def _post_token(
        self,
        form: dict[str, str],
        client_id: str,
        client_secret: str,
        error_cls: type[ProviderError],
        label: str,
    ) -> TokenResponse:
        try:
            r = await self._http.post(
                self._token_url,
                data=form,
                auth=httpx.BasicAuth(client_id, client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise error_cls(f"{label} failed: {e.__class__.__name__}: {e}") from e

        if not r.is_success:
            raise error_cls(f"{label} failed: {r.text}", status_code=r.status_code, body=r.text)
        try:
            data = r.json()
        except ValueError as e:
            raise error_cls(f"{label} failed: response is not JSON", status_code=r.status_code, body=r.text) from e
        tokens = TokenResponse.from_json(data)
        if tokens is None:
            raise error_cls(f"{label} failed: no access_token in response", status_code=r.status_code, body=r.text)
        return tokens

    async def exchange_code_for_tokens(
        self,
        code: str,
        code_verifier: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
    ) -> TokenResponse:
        """authorization_code grant. Codes are single-use, so failures are never retried here."""
        return await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
                "client_id": client_id,
            },
            client_id,
            client_secret,
            TokenExchangeError,
            "Token exchange",
        )

    async def refresh_access_token(self, refresh_token: str, client_id: str, client_secret: str) -> TokenResponse:
        """refresh_token grant. refresh_token in the result is None when the provider did not rotate it."""
        return await self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
            },
            client_id,
            client_secret,
            TokenRefreshError,
            "Token refresh",
        )

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        error_cls: type[ProviderError],
        label: str,
        **kwargs: Any,
    ) -> Any:
        try:
            r = await self._http.request(
                method,
                f"{self._api_base}{path}",
                headers={"Authorization": f"Bearer {access_token}"},
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise error_cls(f"{label} failed: {e.__class__.__name__}: {e}") from e
        if not r.is_success:
            raise error_cls(f"{label} failed: {r.text}", status_code=r.status_code, body=r.text)
        try:
            return r.json()
        except ValueError as e:
            raise error_cls(f"{label} failed: response is not JSON", status_code=r.status_code, body=r.text) from e

    async def fetch_profile(self, access_token: str) -> dict[str, str]:
        """GET /2/users/me -> {id, username, name}."""
        data = await self._request("GET", "/2/users/me", access_token, ProfileFetchError, "Profile fetch")
        profile = data.get("data") if isinstance(data, dict) else None
        if not isinstance(profile, dict) or not profile.get("id") or not profile.get("username"):
            raise ProfileFetchError("Profile fetch failed: missing id or username", body=str(data))
        return {
            "id": str(profile["id"]),
            "username": str(profile["username"]),
            "name": str(profile.get("name") or ""),
        }

    async def fetch_metrics(self, access_token: str, tweet_ids: list[str]) -> list[dict[str, Any]]:
        """Public metrics for up to 100 tweets."""
        if not tweet_ids:
            return []
        data = await self._request(
            "GET",
            "/2/tweets",
            access_token,
            ProviderRequestError,
            "Metrics fetch",
            params={"ids": ",".join(tweet_ids), "tweet.fields": "public_metrics"},
        )
        return list(data.get("data") or []) if isinstance(data, dict) else []

    async def post_tweet(self, access_token: str, text: str) -> dict[str, Any]:
        """POST /2/tweets -> {id, text}."""
        data = await self._request(
            "POST",
            "/2/tweets",
            access_token,
            ProviderRequestError,
            "Tweet post",
            json={"text": text},
        )
        tweet = data.get("data") if isinstance(data, dict) else None
        if not isinstance(tweet, dict) or not tweet.get("id"):
            raise ProviderRequestError("Tweet post failed: no tweet id in response", body=str(data))
        return tweet
