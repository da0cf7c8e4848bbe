"""
PKCE client configuration. Client id and redirect URI are injected per deployment;
provider endpoints default to the Spotify accounts service.
"""
import os

# Public client id registered at the provider (no secret: PKCE public client)
CLIENT_ID = os.environ.get("OAUTH_CLIENT_ID", "test-client")

# Where the provider redirects after authorization; path is served by /callback
REDIRECT_URI = os.environ.get("OAUTH_REDIRECT_URI", "http://127.0.0.1:8000/callback")

# Provider endpoints
AUTHORIZE_URL = os.environ.get("OAUTH_AUTHORIZE_URL", "https://accounts.spotify.com/authorize").rstrip("/")
TOKEN_URL = os.environ.get("OAUTH_TOKEN_URL", "https://accounts.spotify.com/api/token").rstrip("/")
PROFILE_URL = os.environ.get("OAUTH_PROFILE_URL", "https://api.spotify.com/v1/me").rstrip("/")

# Space-delimited; minimum is profile read access
DEFAULT_SCOPE = os.environ.get("OAUTH_SCOPE", "user-read-private user-read-email")

# Durable credential storage (survives restarts of the host app)
DATABASE_URL = os.environ.get("PKCE_CLIENT_DATABASE_URL", "sqlite:///./pkce_client.db")

# Refresh this many seconds before the access token expires
REFRESH_MARGIN_SECONDS = int(os.environ.get("OAUTH_REFRESH_MARGIN_SECONDS", "60"))

# Per-request timeout for provider calls (seconds)
HTTP_TIMEOUT = float(os.environ.get("OAUTH_HTTP_TIMEOUT", "10.0"))
