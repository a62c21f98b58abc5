"""
Minimal cookie surface used by the state store: read inbound cookies, queue Set-Cookie
and clear operations, then apply them to whatever response the route returns.
Keeps Starlette types out of the flow store.
"""
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import jwt
from starlette.responses import Response

logger = logging.getLogger(__name__)

COOKIE_SIGNING_ALGORITHM = "HS256"


@dataclass
class CookieOptions:
    max_age: int | None = None
    path: str = "/"
    domain: str | None = None
    secure: bool = False
    httponly: bool = True
    samesite: str = "lax"


class CookieJar:
    """Inbound cookies plus pending outbound operations for one request."""

    def __init__(self, incoming: Mapping[str, str] | None = None):
        self._incoming = dict(incoming or {})
        # name -> (value or None for clear, options)
        self._pending: dict[str, tuple[str | None, CookieOptions]] = {}

    def get(self, name: str) -> str | None:
        pending = self._pending.get(name)
        if pending is not None:
            return pending[0]
        return self._incoming.get(name)

    def set(self, name: str, value: str, options: CookieOptions) -> None:
        self._pending[name] = (value, options)

    def clear(self, name: str, options: CookieOptions) -> None:
        """Expire the cookie on the client. Options must match the ones used to set it."""
        self._pending[name] = (None, options)
        self._incoming.pop(name, None)

    @property
    def pending(self) -> dict[str, tuple[str | None, CookieOptions]]:
        return dict(self._pending)

    def apply_to(self, response: Response) -> Response:
        for name, (value, opts) in self._pending.items():
            if value is None:
                response.delete_cookie(
                    name,
                    path=opts.path,
                    domain=opts.domain,
                    secure=opts.secure,
                    httponly=opts.httponly,
                    samesite=opts.samesite,
                )
            else:
                response.set_cookie(
                    name,
                    value,
                    max_age=opts.max_age,
                    path=opts.path,
                    domain=opts.domain,
                    secure=opts.secure,
                    httponly=opts.httponly,
                    samesite=opts.samesite,
                )
        return response


class CookieSigner:
    """Tamper-evident cookie values: JSON payload signed as an HS256 JWS."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("cookie signing secret is required")
        self._secret = secret

    def sign(self, payload: dict[str, Any]) -> str:
        token = jwt.encode(payload, self._secret, algorithm=COOKIE_SIGNING_ALGORITHM)
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        return token

    def unsign(self, value: str) -> dict[str, Any] | None:
        """Decoded payload, or None if the signature or encoding is invalid."""
        try:
            return jwt.decode(value, self._secret, algorithms=[COOKIE_SIGNING_ALGORITHM])
        except jwt.InvalidTokenError as e:
            logger.warning("Rejected tampered or malformed signed cookie: %s", e)
            return None
