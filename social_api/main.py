"""
Social API: connect an X account via OAuth 2.0 + PKCE, keep its tokens fresh,
post tweets and fetch engagement metrics.
GET /, /health, /auth/{platform}/start, /auth/{platform}/callback, /api/*, /audit.
"""
import logging
import secrets
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import HTMLResponse

from social_api.api_routes import router as api_router
from social_api.audit import router as audit_router
from social_api.auth_routes import router as auth_router
from social_api.config import COOKIE_SECRET, STATE_DB_FALLBACK
from social_api.cookie_jar import CookieSigner
from social_api.database import build_engine, build_session_factory, init_db
from social_api.flow_store import (
    DatabaseChannel,
    EphemeralStateStore,
    MemoryCacheChannel,
    SignedCookieChannel,
    StateSweeper,
)
from social_api.token_refresh import TokenRefreshManager
from social_api.token_store import AccountTokenStore
from social_api.x_client import XOAuthClient, build_http_client

logger = logging.getLogger(__name__)


def _cookie_secret() -> str:
    if COOKIE_SECRET:
        return COOKIE_SECRET
    logger.warning("COOKIE_SECRET not set; using a per-process key (PKCE cookies will not survive restarts)")
    return secrets.token_urlsafe(48)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and the process-lifetime components; tear them down on shutdown."""
    engine = build_engine()
    await init_db(engine)
    session_factory = build_session_factory(engine)

    channels = [SignedCookieChannel(CookieSigner(_cookie_secret())), MemoryCacheChannel()]
    if STATE_DB_FALLBACK:
        channels.append(DatabaseChannel(session_factory))
    state_store = EphemeralStateStore(channels)
    sweeper = StateSweeper(state_store)

    http = build_http_client()
    oauth_clients = {"x": XOAuthClient(http)}
    account_store = AccountTokenStore(session_factory)

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.state_store = state_store
    app.state.oauth_clients = oauth_clients
    app.state.account_store = account_store
    app.state.refresh_manager = TokenRefreshManager(account_store, oauth_clients)
    app.state.sweeper = sweeper

    sweeper.start()
    try:
        yield
    finally:
        await sweeper.stop()
        await http.aclose()
        await engine.dispose()


app = FastAPI(title="Social API", version="1.0.0", lifespan=lifespan)
app.include_router(auth_router)
app.include_router(api_router)
app.include_router(audit_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "social_api"}


@app.get("/", response_class=HTMLResponse)
def home():
    """Home page with the connect link and the endpoint list."""
    return HTMLResponse(
        """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Social API</title></head>
<body>
  <h1>Social API</h1>
  <p><a href="/auth/x/start">Connect X account</a></p>
  <ul>
    <li>GET /auth/x/start - start the OAuth flow</li>
    <li>GET /auth/x/callback - OAuth callback</li>
    <li>POST /api/tweet - post a tweet</li>
    <li>GET /api/metrics?ids=... - tweet metrics</li>
    <li>GET /api/accounts - connected accounts</li>
  </ul>
</body>
</html>"""
    )


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "social_api.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
