"""
PKCE (RFC 7636) generation and authorization URL building for the connect flow.
S256 only; the plain method is never offered.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import urlencode

from social_api.config import X_AUTHORIZE_URL

CODE_CHALLENGE_METHOD = "S256"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PendingAuthAttempt:
    """One authorization attempt between redirect-out and callback-in."""

    state: str
    code_verifier: str
    code_challenge: str
    platform: str = "x"
    user_id: int | None = None
    created_at: datetime = field(default_factory=_utc_now)


def generate_state() -> str:
    """Opaque CSRF token: 16 random bytes as 32 lowercase hex chars."""
    return secrets.token_hex(16)


def compute_code_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is 43 chars (256 bits entropy).
    """
    # 32 bytes -> 43 chars base64url, no padding
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, compute_code_challenge(code_verifier)


def begin_auth(platform: str = "x") -> PendingAuthAttempt:
    """Fresh verifier, challenge and state. Caller persists it before redirecting."""
    code_verifier, code_challenge = generate_pkce()
    return PendingAuthAttempt(
        state=generate_state(),
        code_verifier=code_verifier,
        code_challenge=code_challenge,
        platform=platform,
    )


def build_authorize_url(
    *,
    client_id: str,
    redirect_uri: str,
    state: str,
    code_challenge: str,
    scopes: str,
    authorize_url: str = X_AUTHORIZE_URL,
) -> str:
    """Build the provider /authorize URL. Empty client_id or redirect_uri fails fast."""
    if not client_id or not client_id.strip():
        raise ValueError("client_id is required")
    if not redirect_uri or not redirect_uri.strip():
        raise ValueError("redirect_uri is required")
    if not state or not code_challenge:
        raise ValueError("state and code_challenge are required")
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scopes,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": CODE_CHALLENGE_METHOD,
    }
    return f"{authorize_url}?{urlencode(params)}"
