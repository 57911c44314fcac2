"""Unit tests for PKCE helpers and pending authorization tracking."""

import base64
import hashlib
import re
from urllib.parse import parse_qs, urlparse

import pytest

from tokenkeeper.auth.pkce import (
    PendingAuthorizations,
    compute_code_challenge,
    generate_code_verifier,
    generate_state,
)
from tokenkeeper.providers.dropbox import DropboxProvider

pytestmark = pytest.mark.unit

URL_SAFE = re.compile(r"^[A-Za-z0-9_-]+$")


def test_code_verifier_is_url_safe_and_long_enough():
    verifier = generate_code_verifier()
    # 32 random bytes, base64url without padding
    assert len(verifier) == 43
    assert URL_SAFE.match(verifier)


def test_state_is_url_safe():
    state = generate_state()
    assert len(state) >= 22
    assert URL_SAFE.match(state)


def test_rfc7636_challenge_vector():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert compute_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_challenge_matches_definition_for_random_verifiers():
    for _ in range(100):
        verifier = generate_code_verifier()
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .decode()
            .rstrip("=")
        )
        assert compute_code_challenge(verifier) == expected
        assert "=" not in compute_code_challenge(verifier)


def test_authorization_urls_never_repeat_verifier_or_state():
    provider = DropboxProvider("K1")
    verifiers = set()
    states = set()

    for _ in range(1000):
        request = provider.build_authorization_url("http://127.0.0.1:8089/callback")
        verifiers.add(request.code_verifier)
        states.add(request.state)

    assert len(verifiers) == 1000
    assert len(states) == 1000


def test_authorization_url_embeds_challenge_of_verifier():
    request = DropboxProvider("K1").build_authorization_url()
    params = parse_qs(urlparse(request.url).query)

    assert params["code_challenge"] == [compute_code_challenge(request.code_verifier)]
    assert params["state"] == [request.state]


class TestPendingAuthorizations:
    def test_pop_is_single_use(self):
        pending = PendingAuthorizations()
        request = DropboxProvider("K1").build_authorization_url("https://app/cb")
        pending.add(request, "dropbox")

        entry = pending.pop(request.state)
        assert entry.code_verifier == request.code_verifier
        assert entry.redirect_url == "https://app/cb"
        assert entry.provider == "dropbox"

        assert pending.pop(request.state) is None
        assert len(pending) == 0

    def test_unknown_state(self):
        assert PendingAuthorizations().pop("nope") is None

    def test_expired_attempts_are_discarded(self, mocker):
        clock = mocker.patch("tokenkeeper.auth.pkce.time")
        clock.monotonic.return_value = 1000.0
        pending = PendingAuthorizations(ttl_seconds=600)
        provider = DropboxProvider("K1")
        old = provider.build_authorization_url()
        pending.add(old, "dropbox")

        clock.monotonic.return_value = 1601.0
        fresh = provider.build_authorization_url()
        pending.add(fresh, "dropbox")

        assert len(pending) == 1
        assert pending.pop(old.state) is None
        assert pending.pop(fresh.state) is not None

    def test_purge_expired_counts(self, mocker):
        clock = mocker.patch("tokenkeeper.auth.pkce.time")
        clock.monotonic.return_value = 0.0
        pending = PendingAuthorizations(ttl_seconds=10)
        provider = DropboxProvider("K1")
        for _ in range(3):
            pending.add(provider.build_authorization_url(), "dropbox")

        clock.monotonic.return_value = 5.0
        assert pending.purge_expired() == 0
        clock.monotonic.return_value = 10.0
        assert pending.purge_expired() == 3

    def test_discard(self):
        pending = PendingAuthorizations()
        request = DropboxProvider("K1").build_authorization_url()
        pending.add(request, "dropbox")

        pending.discard(request.state)
        pending.discard("unknown")

        assert len(pending) == 0

    def test_repr_hides_verifier(self):
        pending = PendingAuthorizations()
        request = DropboxProvider("K1").build_authorization_url()
        entry = pending.add(request, "dropbox")

        assert request.code_verifier not in repr(entry)
