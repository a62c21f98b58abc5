"""
Account token store: persisted access/refresh tokens per (user_id, platform).
Every write of token fields is a single UPDATE so access_token and token_expires_at never diverge.
"""
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social_api.models import SocialAccount, User, as_utc

logger = logging.getLogger(__name__)

# Columns callers may set through upsert_account
ACCOUNT_FIELDS = {
    "account_id",
    "account_username",
    "access_token",
    "refresh_token",
    "token_expires_at",
    "scope",
    "is_active",
}


def account_token_expires_at(account: SocialAccount) -> datetime | None:
    return as_utc(account.token_expires_at)


def public_account_view(account: SocialAccount) -> dict[str, Any]:
    """Account fields safe to return to API clients (no token material)."""
    expires_at = account_token_expires_at(account)
    return {
        "id": account.id,
        "user_id": account.user_id,
        "platform": account.platform,
        "account_id": account.account_id,
        "account_username": account.account_username,
        "scope": account.scope,
        "token_expires_at": expires_at.isoformat() if expires_at else None,
        "is_active": account.is_active,
        "has_refresh_token": bool(account.refresh_token),
    }


class AccountTokenStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_account(self, user_id: int, platform: str) -> SocialAccount | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SocialAccount).where(
                    SocialAccount.user_id == user_id,
                    SocialAccount.platform == platform,
                )
            )
            return result.scalar_one_or_none()

    async def upsert_account(self, user_id: int, platform: str, **fields: Any) -> SocialAccount:
        """Create or update the single row for (user_id, platform)."""
        unknown = set(fields) - ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {', '.join(sorted(unknown))}")
        try:
            return await self._upsert(user_id, platform, fields)
        except IntegrityError:
            # Concurrent first connect inserted the row; the retry updates it
            logger.info("Concurrent insert for user_id=%s platform=%s; retrying as update", user_id, platform)
            return await self._upsert(user_id, platform, fields)

    async def _upsert(self, user_id: int, platform: str, fields: dict[str, Any]) -> SocialAccount:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SocialAccount).where(
                    SocialAccount.user_id == user_id,
                    SocialAccount.platform == platform,
                )
            )
            account = result.scalar_one_or_none()
            if account is None:
                account = SocialAccount(user_id=user_id, platform=platform, **fields)
                session.add(account)
            else:
                for key, value in fields.items():
                    setattr(account, key, value)
            await session.commit()
            await session.refresh(account)
            return account

    async def update_tokens(
        self,
        account_id: int,
        *,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        scope: str | None,
    ) -> SocialAccount | None:
        """Replace all token fields at once and mark the account active."""
        async with self._session_factory() as session:
            await session.execute(
                update(SocialAccount)
                .where(SocialAccount.id == account_id)
                .values(
                    access_token=access_token,
                    refresh_token=refresh_token,
                    token_expires_at=token_expires_at,
                    scope=scope,
                    is_active=True,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
            return await session.get(SocialAccount, account_id, populate_existing=True)

    async def deactivate_account(self, account_id: int) -> None:
        """Soft delete: the account stays but cannot serve API calls until re-authentication."""
        async with self._session_factory() as session:
            await session.execute(
                update(SocialAccount)
                .where(SocialAccount.id == account_id)
                .values(is_active=False, updated_at=datetime.now(timezone.utc))
            )
            await session.commit()
        logger.warning("Deactivated social account id=%s (re-authentication required)", account_id)

    async def list_accounts(self, platform: str | None = None) -> list[SocialAccount]:
        async with self._session_factory() as session:
            q = select(SocialAccount).order_by(SocialAccount.id)
            if platform:
                q = q.where(SocialAccount.platform == platform)
            result = await session.execute(q)
            return list(result.scalars().all())

    async def list_refreshable_accounts(self) -> list[SocialAccount]:
        """Active accounts that hold a refresh token."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SocialAccount)
                .where(
                    SocialAccount.is_active.is_(True),
                    SocialAccount.refresh_token.is_not(None),
                    SocialAccount.refresh_token != "",
                )
                .order_by(SocialAccount.id)
            )
            return list(result.scalars().all())

    async def find_latest_active_account(self, platform: str) -> SocialAccount | None:
        """Most recently connected active account with usable credentials."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SocialAccount)
                .where(
                    SocialAccount.platform == platform,
                    SocialAccount.is_active.is_(True),
                    (SocialAccount.access_token.is_not(None)) | (SocialAccount.refresh_token.is_not(None)),
                )
                .order_by(SocialAccount.created_at.desc(), SocialAccount.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_or_create_user(self, username: str) -> User:
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            if user is not None:
                return user
            user = User(username=username)
            session.add(user)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                result = await session.execute(select(User).where(User.username == username))
                return result.scalar_one()
            await session.refresh(user)
            logger.info("Created local user for provider username %s", username)
            return user
