"""
API endpoints that consume stored credentials: post a tweet, fetch engagement metrics,
list connected accounts and posts, and run the token maintenance sweep.
Every provider call goes through TokenRefreshManager.get_valid_access_token first.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from social_api.config import X_WEB_BASE
from social_api.database import get_db
from social_api.dependencies import get_account_store, get_oauth_clients, get_refresh_manager
from social_api.errors import (
    AccountInactiveError,
    AccountNotFoundError,
    ConfigurationError,
    ProviderError,
    ReauthenticationRequiredError,
    RefreshFailedError,
)
from social_api.models import Post, SocialAccount
from social_api.token_refresh import TokenRefreshManager
from social_api.token_store import AccountTokenStore, public_account_view
from social_api.x_client import XOAuthClient

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["api"])

PLATFORM = "x"
CONNECT_SUGGESTION = f"Connect via /auth/{PLATFORM}/start"
MAX_METRICS_IDS = 100


class TweetRequest(BaseModel):
    text: str | None = None


async def _resolve_account_and_token(
    account_store: AccountTokenStore,
    refresh_manager: TokenRefreshManager,
) -> tuple[SocialAccount, str]:
    """Most recently connected active account plus a valid (refreshed if needed) access token."""
    account = await account_store.find_latest_active_account(PLATFORM)
    if account is None:
        raise HTTPException(
            status_code=400,
            detail={"error": "No connected X account found", "suggestion": CONNECT_SUGGESTION},
        )
    try:
        result = await refresh_manager.get_valid_access_token(account.user_id, PLATFORM)
    except AccountNotFoundError:
        raise HTTPException(
            status_code=400,
            detail={"error": "No connected X account found", "suggestion": CONNECT_SUGGESTION},
        )
    except (AccountInactiveError, ReauthenticationRequiredError) as e:
        raise HTTPException(
            status_code=401,
            detail={"error": "reauthentication_required", "message": str(e), "suggestion": CONNECT_SUGGESTION},
        )
    except RefreshFailedError as e:
        raise HTTPException(status_code=503, detail={"error": "token_refresh_failed", "message": str(e)})
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail={"error": "configuration_error", "message": str(e)})
    return account, result.access_token


def _provider_http_error(e: ProviderError) -> HTTPException:
    return HTTPException(
        status_code=502,
        detail={"error": "X API error", "status": e.status_code, "details": e.body or str(e)},
    )


@router.post("/tweet")
async def post_tweet(
    payload: TweetRequest,
    db: AsyncSession = Depends(get_db),
    account_store: AccountTokenStore = Depends(get_account_store),
    refresh_manager: TokenRefreshManager = Depends(get_refresh_manager),
    clients: dict[str, XOAuthClient] = Depends(get_oauth_clients),
):
    """Post a tweet as the connected account; returns {id, url}."""
    text = (payload.text or "").strip()
    if not text:
        raise HTTPException(status_code=400, detail={"error": "Missing tweet text"})

    account, access_token = await _resolve_account_and_token(account_store, refresh_manager)
    if not account.account_username:
        raise HTTPException(
            status_code=500,
            detail={"error": "Account configuration error", "message": "No username stored for connected account"},
        )

    post = Post(user_id=account.user_id, account_id=account.id, platform=PLATFORM, content=text)
    try:
        tweet = await clients[PLATFORM].post_tweet(access_token, text)
    except ProviderError as e:
        logger.warning("Tweet post failed for account id=%s: %s", account.id, e)
        post.status = "failed"
        post.error = e.body or str(e)
        db.add(post)
        await db.commit()
        raise _provider_http_error(e)

    post.status = "posted"
    post.platform_post_id = str(tweet["id"])
    db.add(post)
    await db.commit()
    return {
        "id": post.platform_post_id,
        "url": f"{X_WEB_BASE}/{account.account_username}/status/{post.platform_post_id}",
    }


@router.get("/metrics")
async def tweet_metrics(
    ids: str = "",
    account_store: AccountTokenStore = Depends(get_account_store),
    refresh_manager: TokenRefreshManager = Depends(get_refresh_manager),
    clients: dict[str, XOAuthClient] = Depends(get_oauth_clients),
):
    """Public metrics for comma-separated tweet ids. Not stored."""
    tweet_ids = [i.strip() for i in ids.split(",") if i.strip()]
    if not tweet_ids:
        raise HTTPException(status_code=400, detail={"error": "ids query parameter is required"})
    if len(tweet_ids) > MAX_METRICS_IDS or not all(i.isdigit() for i in tweet_ids):
        raise HTTPException(
            status_code=400,
            detail={"error": f"ids must be up to {MAX_METRICS_IDS} numeric tweet ids"},
        )

    _, access_token = await _resolve_account_and_token(account_store, refresh_manager)
    try:
        metrics = await clients[PLATFORM].fetch_metrics(access_token, tweet_ids)
    except ProviderError as e:
        raise _provider_http_error(e)
    return {"data": metrics}


@router.get("/accounts")
async def list_accounts(account_store: AccountTokenStore = Depends(get_account_store)):
    """Connected accounts without token material."""
    return [public_account_view(a) for a in await account_store.list_accounts()]


@router.get("/posts/{user_id}")
async def list_posts(user_id: int, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Post).where(Post.user_id == user_id).order_by(Post.id.desc()))
    return [
        {
            "id": p.id,
            "user_id": p.user_id,
            "platform": p.platform,
            "content": p.content,
            "platform_post_id": p.platform_post_id,
            "status": p.status,
            "error": p.error,
            "created_at": p.created_at.isoformat() if p.created_at else None,
        }
        for p in result.scalars().all()
    ]


@router.post("/maintenance/refresh-tokens")
async def refresh_tokens(refresh_manager: TokenRefreshManager = Depends(get_refresh_manager)):
    """Refresh every active account whose token is near expiry. Per-account failures are reported, not raised."""
    summary = await refresh_manager.refresh_all_expiring_tokens()
    return summary.as_dict()
