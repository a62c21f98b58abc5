"""
Social API configuration. Values come from the environment; no secrets in this file.
OAuth client credentials are read per request so a missing value fails the request, not the import.
"""
import os
from dataclasses import dataclass

from social_api.errors import ConfigurationError, UnsupportedPlatformError

# SQLite (aiosqlite) for development; :memory: is shared across sessions via StaticPool (tests)
DATABASE_URL = os.environ.get("SOCIAL_DATABASE_URL", "sqlite+aiosqlite:///./social_api.db")

# "production" turns on Secure cookies and hides raw provider errors from end users
APP_ENV = os.environ.get("APP_ENV", "development").strip().lower()
PRODUCTION = APP_ENV == "production"

# HS256 key for the PKCE cookie. Empty = generate a per-process key at startup.
COOKIE_SECRET = os.environ.get("COOKIE_SECRET", "")
COOKIE_DOMAIN = os.environ.get("COOKIE_DOMAIN", "").strip() or None

# Persist pending auth attempts in the oauth_states table as a third channel
STATE_DB_FALLBACK = os.environ.get("OAUTH_STATE_DB_FALLBACK", "1").strip().lower() not in ("0", "false", "no", "")

# X (Twitter) endpoints
X_API_BASE = os.environ.get("X_API_BASE", "https://api.twitter.com").rstrip("/")
X_AUTHORIZE_URL = os.environ.get("X_AUTHORIZE_URL", "https://twitter.com/i/oauth2/authorize")
X_TOKEN_URL = f"{X_API_BASE}/2/oauth2/token"
# Public web base for tweet permalinks
X_WEB_BASE = os.environ.get("X_WEB_BASE", "https://twitter.com").rstrip("/")

# Pending auth attempt lifetimes (seconds)
STATE_COOKIE_TTL_SECONDS = 20 * 60
STATE_CACHE_TTL_SECONDS = 10 * 60
STATE_SWEEP_INTERVAL_SECONDS = 5 * 60

# Access tokens expiring within this window are refreshed before use
TOKEN_REFRESH_BUFFER_SECONDS = 2 * 60
REFRESH_RETRY_COUNT = 2
REFRESH_BACKOFF_SECONDS = 1.0

# Outbound provider calls must not hang the event loop
HTTP_TIMEOUT_SECONDS = 10.0

SUPPORTED_PLATFORMS = ("x",)

# Env var names per platform: client id, client secret, redirect URI, scopes
_PLATFORM_ENV = {
    "x": ("X_CLIENT_ID", "X_CLIENT_SECRET", "X_REDIRECT_URI", "X_SCOPES"),
}


@dataclass(frozen=True)
class OAuthClientConfig:
    platform: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: str


def ensure_supported_platform(platform: str) -> str:
    if platform not in SUPPORTED_PLATFORMS:
        raise UnsupportedPlatformError(f"Platform '{platform}' is not supported")
    return platform


def get_oauth_client_config(platform: str = "x") -> OAuthClientConfig:
    """
    Read client credentials, redirect URI and scopes for the platform.
    Raises ConfigurationError naming every missing variable.
    """
    ensure_supported_platform(platform)
    names = _PLATFORM_ENV[platform]
    values = [os.environ.get(name, "").strip() for name in names]
    missing = [name for name, value in zip(names, values) if not value]
    if missing:
        raise ConfigurationError(
            f"OAuth configuration missing for {platform}: {', '.join(missing)}"
        )
    client_id, client_secret, redirect_uri, scopes = values
    return OAuthClientConfig(
        platform=platform,
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        scopes=" ".join(scopes.split()),
    )


def oauth_config_presence(platform: str = "x") -> dict[str, bool]:
    """Which OAuth settings are present (booleans only, never values)."""
    ensure_supported_platform(platform)
    client_id, client_secret, redirect_uri, scopes = _PLATFORM_ENV[platform]
    return {
        "clientId": bool(os.environ.get(client_id, "").strip()),
        "clientSecret": bool(os.environ.get(client_secret, "").strip()),
        "redirectUri": bool(os.environ.get(redirect_uri, "").strip()),
        "scopes": bool(os.environ.get(scopes, "").strip()),
        "cookieSecret": bool(COOKIE_SECRET),
        "dbFallback": STATE_DB_FALLBACK,
    }
