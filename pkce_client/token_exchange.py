"""
Token endpoint calls: authorization_code and refresh_token grants, plus the profile
fetch used by the host page. No persistence and no retries here; callers decide.
"""
import logging
import time
from typing import Any, Callable

import httpx

from pkce_client.credential_store import Credential, now_ms
from pkce_client.errors import MissingRefreshToken, NetworkError, TokenExchangeError

logger = logging.getLogger(__name__)


def _provider_message(response: httpx.Response) -> str:
    """error_description / error from a JSON error body, else the raw text."""
    if response.headers.get("content-type", "").startswith("application/json"):
        try:
            err = response.json()
        except ValueError:
            err = None
        if isinstance(err, dict):
            desc = err.get("error_description") or err.get("error")
            if isinstance(desc, dict):
                # Spotify Web API nests errors: {"error": {"status": 401, "message": "..."}}
                desc = desc.get("message")
            if desc:
                return str(desc)
    return response.text or response.reason_phrase or "Token exchange failed"


class TokenExchanger:
    """Async client for the provider token endpoint (form-encoded POST, JSON response)."""

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        redirect_uri: str,
        profile_url: str | None = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.profile_url = profile_url
        self.timeout = timeout
        self._clock = clock
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def exchange_code(self, code: str, code_verifier: str) -> Credential:
        """Redeem an authorization code with its PKCE verifier."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": code_verifier,
        }
        return await self._post_token(data)

    async def exchange_refresh_token(self, refresh_token: str | None) -> Credential:
        """
        Obtain a new access token. The returned credential's refresh_token is None when the
        provider did not rotate it; the caller keeps its previous value in that case.
        """
        if not refresh_token:
            raise MissingRefreshToken("refresh_token grant requested without a refresh token")
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }
        return await self._post_token(data)

    async def _post_token(self, data: dict[str, str]) -> Credential:
        grant_type = data["grant_type"]
        logger.debug("POST %s grant_type=%s", self.token_url, grant_type)
        try:
            async with self._client() as client:
                r = await client.post(
                    self.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.RequestError as e:
            logger.warning("Token request (%s) failed: %s", grant_type, e)
            raise NetworkError(f"Token request failed: {e}") from e

        if not r.is_success:
            message = _provider_message(r)
            logger.warning("Token request (%s) rejected: %s %s", grant_type, r.status_code, message)
            raise TokenExchangeError(r.status_code, message)

        credential = self._credential_from_response(r)
        logger.info("%s grant succeeded; access token valid for %.0fs", grant_type,
                    credential.seconds_until_expiry(now_ms(self._clock)))
        return credential

    def _credential_from_response(self, r: httpx.Response) -> Credential:
        issued_at = now_ms(self._clock)
        try:
            payload = r.json()
        except ValueError as e:
            raise TokenExchangeError(r.status_code, "Token response is not valid JSON") from e
        if not isinstance(payload, dict):
            raise TokenExchangeError(r.status_code, "Token response is not a JSON object")

        access_token = payload.get("access_token")
        expires_in = payload.get("expires_in")
        if not access_token:
            raise TokenExchangeError(r.status_code, "Token response missing access_token")
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError) as e:
            raise TokenExchangeError(r.status_code, "Token response missing or invalid expires_in") from e

        return Credential(
            access_token=access_token,
            # Omitted and empty-string refresh_token both mean "not rotated"
            refresh_token=payload.get("refresh_token") or None,
            expires_at=issued_at + expires_in * 1000,
        )

    async def fetch_profile(self, access_token: str) -> dict[str, Any]:
        """GET the provider profile endpoint with the bearer token."""
        if not self.profile_url:
            raise ValueError("profile_url is not configured")
        try:
            async with self._client() as client:
                r = await client.get(
                    self.profile_url,
                    headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                )
        except httpx.RequestError as e:
            raise NetworkError(f"Profile request failed: {e}") from e
        if not r.is_success:
            raise TokenExchangeError(r.status_code, _provider_message(r))
        try:
            return r.json()
        except ValueError as e:
            raise TokenExchangeError(r.status_code, "Profile response is not valid JSON") from e
