"""
PKCE Client Web App: the host page for the session controller.
GET / shows a login link or a greeting; /login redirects to the provider; /callback
receives the authorization redirect. Port 8000; redirect URI must point at /callback.
"""
import html
import logging
from contextlib import asynccontextmanager
from urllib.parse import urlsplit, urlunsplit

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from pkce_client.config import (
    AUTHORIZE_URL,
    CLIENT_ID,
    DEFAULT_SCOPE,
    HTTP_TIMEOUT,
    PROFILE_URL,
    REDIRECT_URI,
    REFRESH_MARGIN_SECONDS,
    TOKEN_URL,
)
from pkce_client.credential_store import CredentialStore
from pkce_client.database import SessionLocal, init_db
from pkce_client.errors import OAuthClientError, SessionStateError
from pkce_client.refresh_scheduler import RefreshScheduler
from pkce_client.session import Navigator, SessionController, SessionState
from pkce_client.token_exchange import TokenExchanger

logger = logging.getLogger(__name__)


def build_controller() -> SessionController:
    """Wire store, exchanger, scheduler and navigator from configuration."""
    return SessionController(
        store=CredentialStore(SessionLocal),
        exchanger=TokenExchanger(
            token_url=TOKEN_URL,
            client_id=CLIENT_ID,
            redirect_uri=REDIRECT_URI,
            profile_url=PROFILE_URL,
            timeout=HTTP_TIMEOUT,
        ),
        scheduler=RefreshScheduler(margin_seconds=REFRESH_MARGIN_SECONDS),
        navigator=Navigator(),
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        authorize_url=AUTHORIZE_URL,
        scope=DEFAULT_SCOPE,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create storage, resume any stored session (refreshing if expired), stop timers on shutdown."""
    init_db()
    controller = build_controller()
    app.state.session = controller
    parts = urlsplit(REDIRECT_URI)
    await controller.resume(urlunsplit((parts.scheme, parts.netloc, parts.path, "", "")))
    logger.info("Session resumed: %s", controller.state.value)
    yield
    controller.dispose()


app = FastAPI(title="PKCE Client", version="0.1.0", lifespan=lifespan)


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
{body}
</body>
</html>""",
        status_code=status_code,
    )


def _session(request: Request) -> SessionController:
    return request.app.state.session


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "pkce_client"}


@app.get("/", response_class=HTMLResponse)
async def home(request: Request):
    """Login link when there is no access token, otherwise a greeting with the profile name."""
    session = _session(request)
    token = await session.ensure_token()
    if not token:
        return _page("PKCE Client", '  <p><a href="/login">Log in</a></p>')

    display_name = "there"
    try:
        profile = await session.fetch_profile()
        display_name = profile.get("display_name") or profile.get("id") or display_name
    except OAuthClientError as e:
        logger.warning("Error fetching user profile: %s", e)
    return _page(
        "PKCE Client",
        f"""  <h1>Welcome, {html.escape(str(display_name))}!</h1>
  <p><a href="/me">Profile (JSON)</a> | <a href="/logout">Log out</a></p>""",
    )


@app.get("/login")
async def login(request: Request):
    """Generate PKCE, store the verifier and redirect to the provider's authorize endpoint."""
    session = _session(request)
    try:
        url = session.login()
    except SessionStateError:
        # Already logged in (or an exchange is running)
        return RedirectResponse(url="/", status_code=302)
    except OAuthClientError as e:
        return _page("Login error", f"  <h1>Login error</h1>\n  <p>{html.escape(str(e))}</p>", status_code=500)
    return RedirectResponse(url=url, status_code=302)


@app.get("/callback", response_class=HTMLResponse)
async def callback(request: Request):
    """Handle the provider redirect: exchange the code, then drop the code from the address bar."""
    session = _session(request)
    state = await session.resume(str(request.url))
    if state is SessionState.FAILED:
        msg = html.escape(str(session.last_error or "Login failed"))
        return _page(
            "Login error",
            f"""  <h1>Login error</h1>
  <p>{msg}</p>
  <p><a href="/login">Try again</a> | <a href="/">Home</a></p>""",
            status_code=400,
        )
    return RedirectResponse(url="/", status_code=303)


@app.get("/me")
async def me(request: Request):
    """Provider profile for the current access token."""
    session = _session(request)
    token = await session.ensure_token()
    if not token:
        return JSONResponse({"error": "not_authenticated"}, status_code=401)
    try:
        return await session.fetch_profile()
    except OAuthClientError as e:
        logger.warning("Profile request failed: %s", e)
        return JSONResponse({"error": "profile_unavailable", "error_description": str(e)}, status_code=502)


@app.get("/logout")
async def logout(request: Request):
    """Clear stored and in-memory tokens."""
    session = _session(request)
    try:
        session.logout()
    except SessionStateError as e:
        logger.info("Logout deferred: %s", e)
    return RedirectResponse(url="/", status_code=302)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "pkce_client.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
