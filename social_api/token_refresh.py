"""
Token refresh manager: hand out a valid access token for (user_id, platform), refreshing
it first when it expires within the buffer.

Failure policy:
- no account / inactive account / no access token: raised immediately, nothing retried
- no refresh token at expiry: account deactivated, re-authentication required
- refresh token rejected (invalid/expired/revoked): account deactivated, remaining retries skipped
- anything else (network, timeout, 429, 5xx): retried with exponential backoff

Concurrent callers for the same account share one asyncio.Lock, so only the first caller
hits the provider; later callers re-read the account and reuse the fresh token.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from social_api.config import (
    REFRESH_BACKOFF_SECONDS,
    REFRESH_RETRY_COUNT,
    TOKEN_REFRESH_BUFFER_SECONDS,
    OAuthClientConfig,
    get_oauth_client_config,
)
from social_api.errors import (
    AccountInactiveError,
    AccountNotFoundError,
    ProviderError,
    ReauthenticationRequiredError,
    RefreshFailedError,
    UnsupportedPlatformError,
)
from social_api.models import SocialAccount, as_utc
from social_api.token_store import AccountTokenStore
from social_api.x_client import TokenResponse, XOAuthClient

logger = logging.getLogger(__name__)

PERMANENT_FAILURE_MARKERS = ("invalid", "expired", "revoked")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_permanent_failure(error: BaseException) -> bool:
    """
    True when the refresh token itself is unusable and retrying cannot help.
    Transport failures (no status), 429 and 5xx are transient.
    """
    if isinstance(error, ProviderError):
        status = error.status_code
        if status is None or status == 429 or status >= 500:
            return False
        text = f"{error} {error.body}".lower()
    else:
        text = str(error).lower()
    return any(marker in text for marker in PERMANENT_FAILURE_MARKERS)


@dataclass
class TokenRefreshResult:
    access_token: str
    is_refreshed: bool


@dataclass
class RefreshSummary:
    total: int = 0
    refreshed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"total": self.total, "refreshed": self.refreshed, "failed": self.failed, "errors": list(self.errors)}


class TokenRefreshManager:
    def __init__(
        self,
        store: AccountTokenStore,
        clients: Mapping[str, XOAuthClient],
        *,
        config_loader: Callable[[str], OAuthClientConfig] = get_oauth_client_config,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
        buffer_seconds: int = TOKEN_REFRESH_BUFFER_SECONDS,
        retry_count: int = REFRESH_RETRY_COUNT,
        backoff_seconds: float = REFRESH_BACKOFF_SECONDS,
    ):
        self._store = store
        self._clients = clients
        self._config_loader = config_loader
        self._sleep = sleep
        self._clock = clock
        self._buffer = timedelta(seconds=buffer_seconds)
        self._retry_count = retry_count
        self._backoff_seconds = backoff_seconds
        self._locks: dict[tuple[int, str], asyncio.Lock] = {}

    def _lock_for(self, user_id: int, platform: str) -> asyncio.Lock:
        return self._locks.setdefault((user_id, platform), asyncio.Lock())

    def is_fresh(self, account: SocialAccount) -> bool:
        """Expiry more than the buffer away. Unknown expiry counts as stale."""
        expires_at = as_utc(account.token_expires_at)
        if expires_at is None:
            return False
        return expires_at - self._clock() > self._buffer

    async def _load_usable_account(self, user_id: int, platform: str) -> SocialAccount:
        account = await self._store.get_account(user_id, platform)
        if account is None:
            raise AccountNotFoundError(f"No {platform} account found for user {user_id}")
        if not account.is_active:
            raise AccountInactiveError(
                f"{platform} account for user {user_id} is inactive. Re-authentication required."
            )
        if not account.access_token:
            raise ReauthenticationRequiredError(f"No access token found for {platform} account")
        return account

    async def get_valid_access_token(
        self,
        user_id: int,
        platform: str,
        *,
        retry_count: int | None = None,
        backoff_seconds: float | None = None,
    ) -> TokenRefreshResult:
        account = await self._load_usable_account(user_id, platform)
        if self.is_fresh(account):
            return TokenRefreshResult(access_token=account.access_token, is_refreshed=False)

        async with self._lock_for(user_id, platform):
            # Another request may have refreshed (or deactivated) while we waited
            account = await self._load_usable_account(user_id, platform)
            if self.is_fresh(account):
                return TokenRefreshResult(access_token=account.access_token, is_refreshed=False)
            logger.info(
                "Token for %s account %s needs refresh (expires_at=%s)",
                platform,
                account.account_username,
                account.token_expires_at,
            )
            return await self._refresh(
                account,
                self._retry_count if retry_count is None else retry_count,
                self._backoff_seconds if backoff_seconds is None else backoff_seconds,
            )

    async def _refresh(self, account: SocialAccount, retry_count: int, backoff_seconds: float) -> TokenRefreshResult:
        platform = account.platform
        if not account.refresh_token:
            await self._store.deactivate_account(account.id)
            raise ReauthenticationRequiredError(
                f"No refresh token available for {platform} account. Re-authentication required."
            )

        client = self._clients.get(platform)
        if client is None:
            raise UnsupportedPlatformError(f"No OAuth client for platform '{platform}'")
        config = self._config_loader(platform)

        attempts = retry_count + 1
        last_error: ProviderError | None = None
        for attempt in range(attempts):
            logger.info("Refreshing %s token (attempt %d/%d)", platform, attempt + 1, attempts)
            try:
                tokens = await client.refresh_access_token(account.refresh_token, config.client_id, config.client_secret)
            except ProviderError as e:
                last_error = e
                logger.warning("Token refresh attempt %d failed: %s", attempt + 1, e)
                if is_permanent_failure(e):
                    logger.error("Refresh token invalid or expired for %s account id=%s", platform, account.id)
                    await self._store.deactivate_account(account.id)
                    raise ReauthenticationRequiredError(
                        f"Refresh token invalid or expired for {platform} account. Re-authentication required."
                    ) from e
                if attempt < retry_count:
                    delay = backoff_seconds * (2 ** attempt)
                    logger.info("Retrying token refresh in %.2fs", delay)
                    await self._sleep(delay)
                continue
            return await self._store_refreshed(account, tokens)

        logger.error("Token refresh failed after %d attempts for %s account id=%s", attempts, platform, account.id)
        raise RefreshFailedError(
            f"Failed to refresh token after {attempts} attempts: {last_error}", last_error
        ) from last_error

    async def _store_refreshed(self, account: SocialAccount, tokens: TokenResponse) -> TokenRefreshResult:
        expires_at = (
            self._clock() + timedelta(seconds=tokens.expires_in) if tokens.expires_in is not None else None
        )
        # Rotation is optional: keep the old refresh token when none is returned
        await self._store.update_tokens(
            account.id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or account.refresh_token,
            token_expires_at=expires_at,
            scope=tokens.scope or account.scope,
        )
        logger.info(
            "Token refresh successful for %s account %s (expires_at=%s, rotated=%s)",
            account.platform,
            account.account_username,
            expires_at.isoformat() if expires_at else None,
            bool(tokens.refresh_token),
        )
        return TokenRefreshResult(access_token=tokens.access_token, is_refreshed=True)

    async def refresh_all_expiring_tokens(self) -> RefreshSummary:
        """Maintenance sweep over active accounts with a refresh token; failures are per account."""
        accounts = await self._store.list_refreshable_accounts()
        summary = RefreshSummary(total=len(accounts))
        logger.info("Starting bulk token refresh for %d active accounts", len(accounts))
        for account in accounts:
            try:
                result = await self.get_valid_access_token(account.user_id, account.platform)
            except Exception as e:
                summary.failed += 1
                message = f"Failed to refresh {account.platform} account {account.account_username}: {e}"
                summary.errors.append(message)
                logger.error(message)
                continue
            if result.is_refreshed:
                summary.refreshed += 1
        logger.info(
            "Bulk refresh complete: total=%d refreshed=%d failed=%d",
            summary.total,
            summary.refreshed,
            summary.failed,
        )
        return summary
