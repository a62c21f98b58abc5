"""
Pytest configuration for social_api. In-memory SQLite and test OAuth credentials,
set before the app is imported, so tests never touch the filesystem or the provider.
"""
import asyncio
import os
from datetime import datetime, timedelta, timezone

os.environ["SOCIAL_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["COOKIE_SECRET"] = "test-cookie-secret-0123456789-abcdefghijklmnop"
os.environ["X_CLIENT_ID"] = "test-client-id"
os.environ["X_CLIENT_SECRET"] = "test-client-secret"
os.environ["X_REDIRECT_URI"] = "http://testserver/auth/x/callback"
os.environ["X_SCOPES"] = "tweet.read tweet.write users.read offline.access"
os.environ.pop("APP_ENV", None)

import pytest
import pytest_asyncio

from social_api.database import build_engine, build_session_factory, init_db
from social_api.token_store import AccountTokenStore
from social_api.x_client import TokenResponse


class FakeXClient:
    """Stands in for XOAuthClient; records calls and replays configured outcomes."""

    platform = "x"

    def __init__(self):
        self.exchange_result = TokenResponse(
            access_token="AT1", refresh_token="RT1", expires_in=7200, scope="read write"
        )
        self.exchange_error: Exception | None = None
        self.exchange_calls: list[dict] = []
        # Each entry is a TokenResponse or an Exception, consumed in order
        self.refresh_outcomes: list = []
        self.refresh_calls: list[str] = []
        self.refresh_delay = 0.0
        self.profile = {"id": "1234", "username": "alice", "name": "Alice"}
        self.profile_error: Exception | None = None
        self.tweet_error: Exception | None = None
        self.tweets: list[tuple[str, str]] = []
        self.metrics_calls: list[tuple[str, list[str]]] = []

    async def exchange_code_for_tokens(self, code, code_verifier, client_id, client_secret, redirect_uri):
        self.exchange_calls.append(
            {
                "code": code,
                "code_verifier": code_verifier,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
            }
        )
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.exchange_result

    async def refresh_access_token(self, refresh_token, client_id, client_secret):
        self.refresh_calls.append(refresh_token)
        await asyncio.sleep(self.refresh_delay)
        if self.refresh_outcomes:
            outcome = self.refresh_outcomes.pop(0)
        else:
            outcome = TokenResponse(
                access_token=f"refreshed-{len(self.refresh_calls)}",
                refresh_token=None,
                expires_in=7200,
                scope="tweet.read",
            )
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fetch_profile(self, access_token):
        if self.profile_error is not None:
            raise self.profile_error
        return dict(self.profile)

    async def fetch_metrics(self, access_token, tweet_ids):
        self.metrics_calls.append((access_token, list(tweet_ids)))
        return [
            {"id": i, "public_metrics": {"like_count": 1, "retweet_count": 0, "reply_count": 0, "quote_count": 0}}
            for i in tweet_ids
        ]

    async def post_tweet(self, access_token, text):
        if self.tweet_error is not None:
            raise self.tweet_error
        self.tweets.append((access_token, text))
        return {"id": "1790000000000000001", "text": text}


@pytest.fixture
def fake_x():
    return FakeXClient()


@pytest_asyncio.fixture
async def session_factory():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def account_store(session_factory):
    return AccountTokenStore(session_factory)


@pytest_asyncio.fixture
async def make_account(account_store):
    """Factory: user + x account whose token expires in expires_in seconds from now."""

    async def _make(
        username: str = "alice",
        *,
        expires_in: int | None = 600,
        access_token: str | None = "AT-old",
        refresh_token: str | None = "RT-old",
        is_active: bool = True,
    ):
        user = await account_store.get_or_create_user(username)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in) if expires_in is not None else None
        return await account_store.upsert_account(
            user.id,
            "x",
            account_id=f"id-{username}",
            account_username=username,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=expires_at,
            scope="tweet.read tweet.write",
            is_active=is_active,
        )

    return _make
