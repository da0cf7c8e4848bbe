"""
Pytest configuration for pkce_client. In-memory SQLite and fake provider URLs so tests
never touch the filesystem or the network.
"""
import os
import time

os.environ["PKCE_CLIENT_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["OAUTH_CLIENT_ID"] = "client1"
os.environ["OAUTH_REDIRECT_URI"] = "http://127.0.0.1:8000/callback"
os.environ["OAUTH_AUTHORIZE_URL"] = "https://provider.example/authorize"
os.environ["OAUTH_TOKEN_URL"] = "https://provider.example/api/token"
os.environ["OAUTH_PROFILE_URL"] = "https://api.provider.example/v1/me"

import httpx  # noqa: E402
import pytest  # noqa: E402

from pkce_client.credential_store import CredentialStore  # noqa: E402
from pkce_client.database import create_session_factory  # noqa: E402
from pkce_client.refresh_scheduler import RefreshScheduler  # noqa: E402
from pkce_client.session import Navigator, SessionController  # noqa: E402
from pkce_client.token_exchange import TokenExchanger  # noqa: E402

CLIENT_ID = "client1"
REDIRECT_URI = "http://127.0.0.1:8000/callback"
AUTHORIZE_URL = "https://provider.example/authorize"
TOKEN_URL = "https://provider.example/api/token"
PROFILE_URL = "https://api.provider.example/v1/me"


@pytest.fixture
def store():
    """Fresh, empty credential store (own in-memory database)."""
    return CredentialStore(create_session_factory("sqlite:///:memory:"))


def make_exchanger(handler) -> TokenExchanger:
    return TokenExchanger(
        token_url=TOKEN_URL,
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        profile_url=PROFILE_URL,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def make_controller(store):
    """Build a controller around `store` whose provider is the given MockTransport handler."""
    created = []

    def _make(handler, margin_seconds: float = 60, clock=time.time) -> SessionController:
        controller = SessionController(
            store=store,
            exchanger=make_exchanger(handler),
            scheduler=RefreshScheduler(margin_seconds=margin_seconds),
            navigator=Navigator(),
            client_id=CLIENT_ID,
            redirect_uri=REDIRECT_URI,
            authorize_url=AUTHORIZE_URL,
            scope="user-read-private user-read-email",
            clock=clock,
        )
        created.append(controller)
        return controller

    yield _make
    for controller in created:
        controller.dispose()
