"""Tests for PKCE generation and authorization URL building."""
import hashlib
import re
from base64 import urlsafe_b64encode
from urllib.parse import parse_qs, urlsplit

import pytest

from social_api.pkce import (
    begin_auth,
    build_authorize_url,
    compute_code_challenge,
    generate_pkce,
    generate_state,
)


def test_generate_state_is_lowercase_hex():
    s = generate_state()
    assert len(s) == 32
    assert re.match(r"^[a-f0-9]+$", s)


def test_generate_pkce_returns_verifier_and_challenge():
    verifier, challenge = generate_pkce()
    assert 43 <= len(verifier) <= 128
    assert re.match(r"^[A-Za-z0-9_-]+$", verifier)
    assert re.match(r"^[A-Za-z0-9_-]+$", challenge)
    assert len(challenge) == 43  # base64url(SHA256 digest) no padding


def test_challenge_is_s256_of_verifier():
    for _ in range(50):
        attempt = begin_auth()
        digest = hashlib.sha256(attempt.code_verifier.encode("ascii")).digest()
        expected = urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        assert attempt.code_challenge == expected
        assert compute_code_challenge(attempt.code_verifier) == expected


def test_known_rfc7636_vector():
    # RFC 7636 appendix B
    verifier = "dBjftJeZ4CVP-mJ92K27uhbUJU1p1r-wW1gFWFOEjXk"
    assert compute_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_states_are_unique_across_1000_attempts():
    states = {begin_auth().state for _ in range(1000)}
    assert len(states) == 1000


def test_begin_auth_sets_platform_and_created_at():
    attempt = begin_auth("x")
    assert attempt.platform == "x"
    assert attempt.created_at.tzinfo is not None
    assert attempt.user_id is None


def test_build_authorize_url_exact_params():
    url = build_authorize_url(
        client_id="cid",
        redirect_uri="https://x/cb",
        state="st8",
        code_challenge="chal",
        scopes="read write",
    )
    parts = urlsplit(url)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://twitter.com/i/oauth2/authorize"
    params = {k: v[0] for k, v in parse_qs(parts.query).items()}
    assert params == {
        "response_type": "code",
        "client_id": "cid",
        "redirect_uri": "https://x/cb",
        "scope": "read write",
        "state": "st8",
        "code_challenge": "chal",
        "code_challenge_method": "S256",
    }


def test_build_authorize_url_never_uses_plain():
    url = build_authorize_url(
        client_id="c", redirect_uri="https://c/cb", state="s", code_challenge="ch", scopes="tweet.read"
    )
    assert "code_challenge_method=S256" in url
    assert "plain" not in url


@pytest.mark.parametrize(
    "client_id,redirect_uri",
    [("", "https://x/cb"), ("   ", "https://x/cb"), ("cid", ""), ("cid", "  ")],
)
def test_build_authorize_url_fails_fast_on_empty_inputs(client_id, redirect_uri):
    with pytest.raises(ValueError):
        build_authorize_url(
            client_id=client_id, redirect_uri=redirect_uri, state="s", code_challenge="ch", scopes="a"
        )
