"""
Ephemeral store for pending authorization attempts (state -> code_verifier).
Used between /auth/{platform}/start and /auth/{platform}/callback.

Three channels, tried in order on the callback:
  1. signed httpOnly cookie (20 min), survives restarts and multiple workers
  2. in-process cache (10 min), swept every 5 min
  3. oauth_states table (20 min), for proxies that drop cookies on redirect
The first non-expired payload whose embedded state equals the lookup key wins. The state
is then cleared from every channel and recorded as consumed (cache and table) so a captured
cookie cannot be replayed.
"""
import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social_api.config import (
    COOKIE_DOMAIN,
    PRODUCTION,
    STATE_CACHE_TTL_SECONDS,
    STATE_COOKIE_TTL_SECONDS,
    STATE_SWEEP_INTERVAL_SECONDS,
)
from social_api.cookie_jar import CookieJar, CookieOptions, CookieSigner
from social_api.models import OAuthState, as_utc
from social_api.pkce import PendingAuthAttempt

logger = logging.getLogger(__name__)

COOKIE_PREFIX = "oauth_pkce_"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StatePayload:
    """What every channel stores for one attempt."""

    state: str
    code_verifier: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "codeVerifier": self.code_verifier,
            "state": self.state,
            "createdAt": self.created_at.timestamp(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StatePayload | None":
        if not isinstance(data, dict):
            return None
        state = data.get("state")
        verifier = data.get("codeVerifier")
        created = data.get("createdAt")
        if not isinstance(state, str) or not isinstance(verifier, str) or not verifier:
            return None
        if not isinstance(created, (int, float)) or isinstance(created, bool):
            return None
        return cls(
            state=state,
            code_verifier=verifier,
            created_at=datetime.fromtimestamp(created, tz=timezone.utc),
        )

    @classmethod
    def from_attempt(cls, attempt: PendingAuthAttempt) -> "StatePayload":
        return cls(state=attempt.state, code_verifier=attempt.code_verifier, created_at=as_utc(attempt.created_at))


class StateChannel:
    """One backing channel. load() returns the raw payload; the store validates it."""

    name = "channel"

    def __init__(self, ttl_seconds: int):
        self.ttl = timedelta(seconds=ttl_seconds)

    async def save(self, attempt: PendingAuthAttempt, cookies: CookieJar | None) -> None:
        raise NotImplementedError

    async def load(self, state: str, cookies: CookieJar | None) -> StatePayload | None:
        raise NotImplementedError

    async def discard(self, state: str, cookies: CookieJar | None) -> None:
        raise NotImplementedError

    async def consume(self, state: str, cookies: CookieJar | None, now: datetime) -> None:
        """Clear the state after a successful read. Channels that can remember it override this."""
        await self.discard(state, cookies)

    async def is_consumed(self, state: str, now: datetime) -> bool:
        return False

    async def sweep(self, now: datetime) -> int:
        """Remove stale entries; returns how many were removed."""
        return 0


class SignedCookieChannel(StateChannel):
    name = "cookie"

    def __init__(
        self,
        signer: CookieSigner,
        ttl_seconds: int = STATE_COOKIE_TTL_SECONDS,
        *,
        secure: bool = PRODUCTION,
        domain: str | None = COOKIE_DOMAIN,
    ):
        super().__init__(ttl_seconds)
        self._signer = signer
        self._secure = secure
        self._domain = domain

    @staticmethod
    def cookie_name(state: str) -> str:
        return f"{COOKIE_PREFIX}{state}"

    def options(self) -> CookieOptions:
        return CookieOptions(
            max_age=int(self.ttl.total_seconds()),
            domain=self._domain,
            secure=self._secure,
            httponly=True,
            samesite="lax",
        )

    async def save(self, attempt: PendingAuthAttempt, cookies: CookieJar | None) -> None:
        if cookies is None:
            logger.debug("No cookie jar for state save; cookie channel skipped")
            return
        value = self._signer.sign(StatePayload.from_attempt(attempt).to_dict())
        cookies.set(self.cookie_name(attempt.state), value, self.options())

    async def load(self, state: str, cookies: CookieJar | None) -> StatePayload | None:
        if cookies is None:
            return None
        raw = cookies.get(self.cookie_name(state))
        if not raw:
            return None
        return StatePayload.from_dict(self._signer.unsign(raw))

    async def discard(self, state: str, cookies: CookieJar | None) -> None:
        if cookies is None:
            return
        name = self.cookie_name(state)
        if cookies.get(name) is not None:
            cookies.clear(name, self.options())


class MemoryCacheChannel(StateChannel):
    """Process-local cache. Owned by the app instance, not a module global."""

    name = "cache"

    def __init__(
        self,
        ttl_seconds: int = STATE_CACHE_TTL_SECONDS,
        consumed_ttl_seconds: int = STATE_COOKIE_TTL_SECONDS,
    ):
        super().__init__(ttl_seconds)
        self._entries: dict[str, StatePayload] = {}
        # state -> consumed_at, kept as long as a captured cookie could still be replayed
        self._consumed: dict[str, datetime] = {}
        self._consumed_ttl = timedelta(seconds=consumed_ttl_seconds)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, state: str) -> bool:
        return state in self._entries

    async def save(self, attempt: PendingAuthAttempt, cookies: CookieJar | None) -> None:
        self._entries[attempt.state] = StatePayload.from_attempt(attempt)

    async def load(self, state: str, cookies: CookieJar | None) -> StatePayload | None:
        return self._entries.get(state)

    async def discard(self, state: str, cookies: CookieJar | None) -> None:
        self._entries.pop(state, None)

    async def consume(self, state: str, cookies: CookieJar | None, now: datetime) -> None:
        self._entries.pop(state, None)
        self._consumed.setdefault(state, now)

    async def is_consumed(self, state: str, now: datetime) -> bool:
        consumed_at = self._consumed.get(state)
        return consumed_at is not None and now - consumed_at <= self._consumed_ttl

    async def sweep(self, now: datetime) -> int:
        expired = [s for s, p in self._entries.items() if (now - p.created_at) > self.ttl]
        for s in expired:
            del self._entries[s]
        forgotten = [s for s, at in self._consumed.items() if (now - at) > self._consumed_ttl]
        for s in forgotten:
            del self._consumed[s]
        return len(expired) + len(forgotten)


class DatabaseChannel(StateChannel):
    name = "database"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: int = STATE_COOKIE_TTL_SECONDS,
    ):
        super().__init__(ttl_seconds)
        self._session_factory = session_factory

    async def save(self, attempt: PendingAuthAttempt, cookies: CookieJar | None) -> None:
        created_at = as_utc(attempt.created_at)
        async with self._session_factory() as session:
            session.add(
                OAuthState(
                    state=attempt.state,
                    code_verifier=attempt.code_verifier,
                    platform=attempt.platform,
                    user_id=attempt.user_id,
                    created_at=created_at,
                    expires_at=created_at + self.ttl,
                )
            )
            await session.commit()

    async def load(self, state: str, cookies: CookieJar | None) -> StatePayload | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OAuthState).where(OAuthState.state == state, OAuthState.consumed_at.is_(None))
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return StatePayload(state=row.state, code_verifier=row.code_verifier, created_at=as_utc(row.created_at))

    async def discard(self, state: str, cookies: CookieJar | None) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(OAuthState).where(OAuthState.state == state))
            await session.commit()

    async def consume(self, state: str, cookies: CookieJar | None, now: datetime) -> None:
        # Row kept (marked) until expires_at so other workers also refuse a replayed cookie
        async with self._session_factory() as session:
            await session.execute(
                update(OAuthState)
                .where(OAuthState.state == state, OAuthState.consumed_at.is_(None))
                .values(consumed_at=now)
            )
            await session.commit()

    async def is_consumed(self, state: str, now: datetime) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OAuthState.id).where(
                    OAuthState.state == state,
                    OAuthState.consumed_at.is_not(None),
                    OAuthState.expires_at > now,
                )
            )
            return result.first() is not None

    async def sweep(self, now: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(OAuthState).where(OAuthState.expires_at <= now))
            await session.commit()
        return result.rowcount or 0


class EphemeralStateStore:
    """Ordered channels behind save / retrieve_and_consume / sweep."""

    def __init__(self, channels: Sequence[StateChannel], clock: Callable[[], datetime] = utc_now):
        if not channels:
            raise ValueError("at least one state channel is required")
        self.channels = list(channels)
        self._clock = clock

    async def save(self, attempt: PendingAuthAttempt, cookies: CookieJar | None = None) -> None:
        """
        Write the attempt to every channel. If any channel fails the attempt is abandoned:
        channels already written are cleared (best effort) and the error propagates.
        """
        written: list[StateChannel] = []
        try:
            for channel in self.channels:
                await channel.save(attempt, cookies)
                written.append(channel)
        except Exception:
            logger.error("Failed to persist OAuth state; abandoning auth attempt")
            for channel in written:
                try:
                    await channel.discard(attempt.state, cookies)
                except Exception as cleanup_error:
                    logger.warning("Cleanup of %s channel failed: %s", channel.name, cleanup_error)
            raise

    async def retrieve_and_consume(self, state: str, cookies: CookieJar | None = None) -> str | None:
        """
        Return the code_verifier for state, or None if no channel holds a valid, unexpired,
        state-matching payload, or if the state was already consumed. The state is cleared from
        all channels either way; a consumed state stays on record for the cookie lifetime.
        """
        if not state:
            return None
        now = self._clock()
        if await self._already_consumed(state, now):
            logger.warning("Replayed OAuth state %s refused (already consumed)", state[:64])
            for channel in self.channels:
                await channel.consume(state, cookies, now)
            return None

        found: StatePayload | None = None
        for channel in self.channels:
            payload = await channel.load(state, cookies)
            if payload is None:
                continue
            if payload.state != state:
                logger.warning("OAuth state mismatch in %s channel (possible tampering)", channel.name)
                continue
            if now - payload.created_at > channel.ttl:
                logger.info("Expired OAuth state in %s channel", channel.name)
                continue
            logger.debug("OAuth state resolved from %s channel", channel.name)
            found = payload
            break

        for channel in self.channels:
            if found is not None:
                await channel.consume(state, cookies, now)
            else:
                await channel.discard(state, cookies)

        if found is None:
            logger.warning("Invalid or expired OAuth state %s (possible CSRF or replay)", state[:64])
            return None
        return found.code_verifier

    async def _already_consumed(self, state: str, now: datetime) -> bool:
        for channel in self.channels:
            if await channel.is_consumed(state, now):
                return True
        return False

    async def sweep(self) -> dict[str, int]:
        now = self._clock()
        removed = {}
        for channel in self.channels:
            removed[channel.name] = await channel.sweep(now)
        return removed


class StateSweeper:
    """
    Single background task that sweeps stale states every interval.
    Never overlaps itself; a failed sweep is logged and the loop continues.
    """

    def __init__(
        self,
        store: EphemeralStateStore,
        interval_seconds: float = STATE_SWEEP_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._interval = interval_seconds
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="oauth-state-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_once(self) -> dict[str, int]:
        try:
            removed = await self._store.sweep()
        except Exception:
            logger.exception("OAuth state sweep failed")
            return {}
        if any(removed.values()):
            logger.info("Swept expired OAuth states: %s", removed)
        return removed

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            await self.run_once()
