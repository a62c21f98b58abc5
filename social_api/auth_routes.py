"""
Connect flow: GET /auth/{platform}/start and GET /auth/{platform}/callback.
Start generates state + PKCE, persists them and redirects to the provider.
Callback recovers the verifier, exchanges the code, fetches the profile and stores the account.
"""
import html
import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social_api.audit import (
    EVENT_ACCOUNT_CONNECTED,
    EVENT_AUTH_STARTED,
    EVENT_PROVIDER_ERROR,
    EVENT_STATE_REJECTED,
    EVENT_TOKEN_EXCHANGE_FAILED,
    EVENT_TOKEN_EXCHANGED,
    OUTCOME_FAIL,
    get_client_ip,
    log_audit,
)
from social_api.config import PRODUCTION, ensure_supported_platform, get_oauth_client_config, oauth_config_presence
from social_api.cookie_jar import CookieJar
from social_api.dependencies import get_account_store, get_oauth_clients, get_session_factory, get_state_store
from social_api.errors import ConfigurationError, SocialAuthError, TokenExchangeError, UnsupportedPlatformError
from social_api.flow_store import EphemeralStateStore
from social_api.pkce import begin_auth, build_authorize_url
from social_api.token_store import AccountTokenStore
from social_api.x_client import XOAuthClient

logger = logging.getLogger(__name__)
router = APIRouter(tags=["auth"])


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  {body}
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


def _failure_message(e: Exception) -> str:
    """Raw provider detail stays in the logs in production."""
    if PRODUCTION:
        return "OAuth authentication failed. Please try connecting again."
    return f"OAuth authentication failed: {e}"


def _unsupported(platform: str) -> PlainTextResponse | None:
    try:
        ensure_supported_platform(platform)
    except UnsupportedPlatformError as e:
        return PlainTextResponse(str(e), status_code=404)
    return None


@router.get("/auth/{platform}/start")
async def start_auth(
    platform: str,
    request: Request,
    state_store: EphemeralStateStore = Depends(get_state_store),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Generate state and PKCE verifier/challenge, persist them, redirect to the provider."""
    unsupported = _unsupported(platform)
    if unsupported is not None:
        return unsupported
    try:
        config = get_oauth_client_config(platform)
    except ConfigurationError as e:
        logger.error("Cannot start %s OAuth flow: %s", platform, e)
        return PlainTextResponse(str(e), status_code=500)

    attempt = begin_auth(platform)
    url = build_authorize_url(
        client_id=config.client_id,
        redirect_uri=config.redirect_uri,
        state=attempt.state,
        code_challenge=attempt.code_challenge,
        scopes=config.scopes,
    )

    jar = CookieJar(request.cookies)
    try:
        await state_store.save(attempt, jar)
    except SQLAlchemyError:
        logger.exception("Failed to persist OAuth state for %s", platform)
        return PlainTextResponse("Failed to start OAuth flow", status_code=500)

    await log_audit(session_factory, EVENT_AUTH_STARTED, platform=platform, ip=get_client_ip(request))
    logger.info("OAuth start for %s: state generated", platform)
    return jar.apply_to(RedirectResponse(url=url, status_code=302))


@router.get("/auth/{platform}/callback")
async def auth_callback(
    platform: str,
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    state_store: EphemeralStateStore = Depends(get_state_store),
    account_store: AccountTokenStore = Depends(get_account_store),
    clients: dict[str, XOAuthClient] = Depends(get_oauth_clients),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """
    Handle the provider redirect. Order is fixed: state -> code exchange -> profile -> account upsert.
    Pending state cookies are cleared on every outcome.
    """
    unsupported = _unsupported(platform)
    if unsupported is not None:
        return unsupported

    jar = CookieJar(request.cookies)
    ip = get_client_ip(request)
    logger.info("OAuth callback for %s: code=%s state=%s error=%s", platform, bool(code), bool(state), error)

    if error:
        if state:
            # The attempt is over either way; burn it
            await state_store.retrieve_and_consume(state, jar)
        message = html.escape(error_description or error)
        return jar.apply_to(_page("Authorization error", f"<p>OAuth error: {message}</p>", status_code=400))

    if not code or not state:
        return jar.apply_to(PlainTextResponse("Missing authorization code or state parameter", status_code=400))

    try:
        code_verifier = await state_store.retrieve_and_consume(state, jar)
    except SQLAlchemyError as e:
        logger.exception("OAuth state lookup failed")
        return jar.apply_to(PlainTextResponse(_failure_message(e), status_code=500))

    if code_verifier is None:
        await log_audit(
            session_factory,
            EVENT_STATE_REJECTED,
            platform=platform,
            ip=ip,
            outcome=OUTCOME_FAIL,
            detail=f"state={state[:64]}",
        )
        return jar.apply_to(
            JSONResponse(
                {
                    "error": "Invalid or expired OAuth state",
                    "debug": {
                        "received_state": state,
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                        "message": "State not found, expired, or already used. Restart the connect flow.",
                    },
                },
                status_code=400,
            )
        )

    try:
        config = get_oauth_client_config(platform)
        client = clients[platform]
        tokens = await client.exchange_code_for_tokens(
            code,
            code_verifier,
            config.client_id,
            config.client_secret,
            config.redirect_uri,
        )
        await log_audit(session_factory, EVENT_TOKEN_EXCHANGED, platform=platform, ip=ip)

        profile = await client.fetch_profile(tokens.access_token)
        user = await account_store.get_or_create_user(profile["username"])
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=tokens.expires_in)
            if tokens.expires_in is not None
            else None
        )
        account = await account_store.upsert_account(
            user.id,
            platform,
            account_id=profile["id"],
            account_username=profile["username"],
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=expires_at,
            scope=tokens.scope,
            is_active=True,
        )
    except TokenExchangeError as e:
        logger.error("Token exchange failed for %s: %s", platform, e)
        await log_audit(
            session_factory, EVENT_TOKEN_EXCHANGE_FAILED, platform=platform, ip=ip, outcome=OUTCOME_FAIL, detail=e.body
        )
        return jar.apply_to(PlainTextResponse(_failure_message(e), status_code=500))
    except (SocialAuthError, SQLAlchemyError) as e:
        logger.exception("OAuth callback failed for %s", platform)
        await log_audit(
            session_factory, EVENT_PROVIDER_ERROR, platform=platform, ip=ip, outcome=OUTCOME_FAIL, detail=str(e)
        )
        return jar.apply_to(PlainTextResponse(_failure_message(e), status_code=500))

    await log_audit(session_factory, EVENT_ACCOUNT_CONNECTED, platform=platform, user_id=user.id, ip=ip)
    username = html.escape(profile["username"])
    return jar.apply_to(
        _page(
            "Account connected",
            f"""<div>
    <strong>@{username}</strong><br>
    <small>User ID: {user.id}</small><br>
    <small>Account ID: {html.escape(account.account_id)}</small>
  </div>
  <p>Your account has been connected. You can now close this window.</p>
  <script>if (window.opener) {{ setTimeout(() => window.close(), 3000); }}</script>""",
        )
    )


@router.get("/oauth/debug")
async def oauth_debug():
    """Which OAuth settings are configured (booleans only)."""
    return oauth_config_presence("x")
