"""Tests for cookie queuing and signing."""
import pytest
from starlette.responses import Response

from social_api.cookie_jar import CookieJar, CookieOptions, CookieSigner


def test_get_prefers_pending_over_incoming():
    jar = CookieJar({"a": "old"})
    assert jar.get("a") == "old"
    jar.set("a", "new", CookieOptions())
    assert jar.get("a") == "new"
    jar.clear("a", CookieOptions())
    assert jar.get("a") is None


def test_apply_to_sets_and_deletes_cookies():
    jar = CookieJar({"gone": "x"})
    jar.set("kept", "v1", CookieOptions(max_age=60, secure=True))
    jar.clear("gone", CookieOptions())
    response = jar.apply_to(Response())

    headers = [v for k, v in response.raw_headers if k == b"set-cookie"]
    assert len(headers) == 2
    kept = next(h.decode() for h in headers if h.startswith(b"kept="))
    gone = next(h.decode() for h in headers if h.startswith(b"gone="))
    assert "Max-Age=60" in kept
    assert "HttpOnly" in kept
    assert "Secure" in kept
    assert "samesite=lax" in kept.lower()
    assert "Max-Age=0" in gone


def test_signer_round_trip_and_tamper_detection():
    signer = CookieSigner("cookie-jar-test-secret-0123456789abcdef")
    value = signer.sign({"state": "s", "codeVerifier": "v", "createdAt": 1.5})
    assert signer.unsign(value) == {"state": "s", "codeVerifier": "v", "createdAt": 1.5}

    head, body, sig = value.split(".")
    tampered = f"{head}.{body}.{sig[:-2]}{'AA' if sig[-2:] != 'AA' else 'BB'}"
    assert signer.unsign(tampered) is None
    assert signer.unsign("garbage") is None


def test_signer_requires_secret():
    with pytest.raises(ValueError):
        CookieSigner("")
