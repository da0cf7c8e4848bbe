"""
Error taxonomy for the PKCE client. Components raise; SessionController converts
exchange failures into state transitions.
"""


class OAuthClientError(Exception):
    """Base class for all client-side OAuth errors."""


class CryptoUnavailable(OAuthClientError):
    """No secure random source or SHA-256 primitive in this environment."""


class NetworkError(OAuthClientError):
    """Transport-level failure talking to the provider (connect, read, timeout)."""


class TokenExchangeError(OAuthClientError):
    """Provider rejected a token or profile request, or sent an unusable response."""

    def __init__(self, status: int, provider_message: str):
        super().__init__(f"HTTP {status}: {provider_message}")
        self.status = status
        self.provider_message = provider_message

    @property
    def is_client_error(self) -> bool:
        # 4xx on refresh means the refresh token is no longer valid
        return 400 <= self.status < 500


class MissingRefreshToken(OAuthClientError):
    """Refresh exchange requested without a refresh token."""


class SessionStateError(OAuthClientError):
    """Operation not allowed in the controller's current state."""
