"""
Session controller: the token lifecycle state machine.

resume(location) decides between redirect-callback handling, stored-session resumption
and "not logged in"; login() starts a PKCE authorization redirect; the refresh scheduler
calls back into refresh() shortly before expiry. Only one token exchange runs at a time.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pkce_client.credential_store import Credential, CredentialStore, now_ms
from pkce_client.errors import OAuthClientError, SessionStateError, TokenExchangeError
from pkce_client.pkce import build_authorize_url, generate_pkce
from pkce_client.refresh_scheduler import RefreshScheduler
from pkce_client.token_exchange import TokenExchanger

logger = logging.getLogger(__name__)

# Query parameters the provider appends to the redirect URI
CALLBACK_PARAMS = frozenset({"code", "state", "error", "error_description", "error_uri"})


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    RESUMING = "resuming"
    EXCHANGING_CODE = "exchanging_code"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    FAILED = "failed"


class Navigator:
    """
    Location changes requested by the controller. assign() is a full navigation (leaves
    the app); replace() rewrites the visible location without navigating. The default
    implementation records the last request for the host to act on.
    """

    def __init__(self):
        self.location: str | None = None
        self.replaced: str | None = None

    def assign(self, url: str) -> None:
        self.location = url

    def replace(self, url: str) -> None:
        self.replaced = url


def callback_params(location: str) -> dict[str, str]:
    """First value of each query parameter in location."""
    params: dict[str, str] = {}
    for key, value in parse_qsl(urlsplit(location).query, keep_blank_values=True):
        params.setdefault(key, value)
    return params


def strip_callback_params(location: str) -> str:
    """location without the provider's transient callback parameters; path and fragment kept."""
    parts = urlsplit(location)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in CALLBACK_PARAMS]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))


class SessionController:
    def __init__(
        self,
        *,
        store: CredentialStore,
        exchanger: TokenExchanger,
        scheduler: RefreshScheduler,
        navigator: Navigator,
        client_id: str,
        redirect_uri: str,
        authorize_url: str,
        scope: str,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._exchanger = exchanger
        self._scheduler = scheduler
        self._navigator = navigator
        self._client_id = client_id
        self._redirect_uri = redirect_uri
        self._authorize_url = authorize_url
        self._scope = scope
        self._clock = clock

        self._state = SessionState.RESUMING
        self._access_token: str | None = None
        self._expires_at: int | None = None
        self._last_error: Exception | None = None
        self._inflight: asyncio.Task | None = None
        self._disposed = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def access_token(self) -> str | None:
        """Current access token for API calls; None unless authenticated and unexpired."""
        if self._access_token is None or self._token_expired():
            return None
        return self._access_token

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def exchange_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    # --- entry points ---

    async def resume(self, location: str) -> SessionState:
        """Resolve the session from the current location and stored credentials."""
        await self._wait_idle()
        self._state = SessionState.RESUMING
        params = callback_params(location)

        if params.get("error"):
            message = params.get("error_description") or params["error"]
            logger.warning("Authorization failed at provider: %s", message)
            self._navigator.replace(strip_callback_params(location))
            self._fail(TokenExchangeError(400, message))
            return self._state

        code = params.get("code")
        if code:
            code_verifier = self._store.load_verifier()
            if code_verifier:
                await self._exclusive(self._exchange_code(code, code_verifier, location))
                return self._state
            logger.warning("Authorization code present but no stored code_verifier; ignoring code")

        credential = self._store.load()
        if credential is None:
            self._drop_token()
            self._state = SessionState.UNAUTHENTICATED
        elif not credential.expired(now_ms(self._clock)):
            logger.info("Resumed stored session")
            self._activate(credential)
        else:
            logger.info("Stored access token expired; refreshing")
            await self._exclusive(self._refresh())
        return self._state

    async def refresh(self) -> SessionState:
        """
        Exchange the stored refresh token for a new access token. A call made while another
        exchange is in flight joins that exchange instead of starting a second one.

        Allowed from any state, so UNAUTHENTICATED or FAILED can retry explicitly with the
        stored refresh token after a failed refresh.
        """
        if self.exchange_in_flight:
            logger.debug("Refresh requested while an exchange is in flight; joining it")
            await asyncio.shield(self._inflight)
            return self._state
        await self._exclusive(self._refresh())
        return self._state

    def login(self) -> str:
        """Start a new authorization: store a fresh verifier and navigate to the provider."""
        if self.exchange_in_flight or self._state not in (SessionState.UNAUTHENTICATED, SessionState.FAILED):
            raise SessionStateError(f"login() not allowed in state {self._state.value}")
        try:
            pkce = generate_pkce()
        except OAuthClientError as e:
            self._last_error = e
            logger.error("Cannot start login: %s", e)
            raise
        self._store.save_verifier(pkce.code_verifier)
        url = build_authorize_url(
            authorize_url=self._authorize_url,
            client_id=self._client_id,
            redirect_uri=self._redirect_uri,
            scope=self._scope,
            code_challenge=pkce.code_challenge,
        )
        self._navigator.assign(url)
        return url

    async def ensure_token(self) -> str | None:
        """Access token for an API call, refreshing first if the held token has expired."""
        if self._access_token is not None and self._token_expired():
            logger.info("Access token expired before its scheduled refresh; refreshing now")
            await self.refresh()
        return self.access_token

    async def fetch_profile(self) -> dict:
        """Provider profile for the current access token."""
        token = await self.ensure_token()
        if not token:
            raise SessionStateError("not authenticated")
        return await self._exchanger.fetch_profile(token)

    def logout(self) -> None:
        """Forget the session: cancel the timer and clear stored and in-memory tokens."""
        if self.exchange_in_flight:
            raise SessionStateError("logout() not allowed while a token exchange is in flight")
        self._store.clear()
        self._drop_token()
        self._last_error = None
        self._state = SessionState.UNAUTHENTICATED

    def dispose(self) -> None:
        """Stop background refresh; the controller schedules nothing afterwards."""
        self._disposed = True
        self._scheduler.close()
        if self.exchange_in_flight:
            self._inflight.cancel()

    # --- transitions ---

    async def _wait_idle(self) -> None:
        while self.exchange_in_flight:
            try:
                await asyncio.shield(self._inflight)
            except asyncio.CancelledError:
                if not self._inflight.cancelled():
                    raise

    async def _exclusive(self, coro) -> None:
        """Run one exchange as the single in-flight task."""
        self._inflight = asyncio.ensure_future(coro)
        await asyncio.shield(self._inflight)

    async def _exchange_code(self, code: str, code_verifier: str, location: str) -> None:
        self._state = SessionState.EXCHANGING_CODE
        try:
            credential = await self._exchanger.exchange_code(code, code_verifier)
        except OAuthClientError as e:
            # A used or stale code cannot be redeemed again
            self._navigator.replace(strip_callback_params(location))
            self._fail(e)
            return
        # Code grant replaces the whole record; the verifier is consumed
        self._store.save(
            access_token=credential.access_token,
            refresh_token=credential.refresh_token,
            expires_at=credential.expires_at,
            code_verifier=None,
        )
        self._navigator.replace(strip_callback_params(location))
        logger.info("Authorization code exchanged; session established")
        self._activate(credential)

    async def _refresh(self) -> None:
        self._state = SessionState.REFRESHING
        try:
            credential = await self._exchanger.exchange_refresh_token(self._store.load_refresh_token())
        except OAuthClientError as e:
            if isinstance(e, TokenExchangeError) and e.is_client_error:
                logger.warning("Refresh token rejected (HTTP %s); login required", e.status)
            else:
                logger.warning("Token refresh failed: %s", e)
            # Stored refresh token is kept for a later explicit retry
            self._drop_token()
            self._last_error = e
            self._state = SessionState.UNAUTHENTICATED
            return
        self._store.save_credential(credential)
        logger.info("Access token refreshed")
        self._activate(credential)

    def _on_refresh_due(self):
        return self.refresh()

    def _activate(self, credential: Credential) -> None:
        self._access_token = credential.access_token
        self._expires_at = credential.expires_at
        self._last_error = None
        self._state = SessionState.AUTHENTICATED
        if not self._disposed:
            self._scheduler.schedule(credential.seconds_until_expiry(now_ms(self._clock)), self._on_refresh_due)

    def _fail(self, error: Exception) -> None:
        logger.error("Login failed: %s", error)
        self._drop_token()
        self._last_error = error
        self._state = SessionState.FAILED

    def _drop_token(self) -> None:
        self._scheduler.cancel()
        self._access_token = None
        self._expires_at = None

    def _token_expired(self) -> bool:
        return self._expires_at is not None and now_ms(self._clock) >= self._expires_at
