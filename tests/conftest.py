from urllib.parse import urlencode

import anyio
import pytest

from tokenkeeper.auth.encryption import generate_key
from tokenkeeper.auth.pkce import (
    compute_code_challenge,
    generate_code_verifier,
    generate_state,
)
from tokenkeeper.auth.storage import CredentialStore
from tokenkeeper.providers.base import AuthorizationRequest, Provider, TokenResponse


class FakeProvider(Provider):
    """In-memory provider that records every call made to it."""

    def __init__(
        self,
        name: str = "fake",
        account_id: str = "acct-1",
        access_token: str = "access-1",
        refresh_token: str = "refresh-1",
        expires_in: int = 3600,
        rotate_refresh_token: bool = False,
    ):
        self._name = name
        self.account_id = account_id
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.expires_in = expires_in
        self.rotate_refresh_token = rotate_refresh_token

        self.exchange_calls: list[tuple[str, str, str]] = []
        self.refresh_calls: list[str] = []
        self.account_info_calls = 0
        self.exchange_error: Exception | None = None
        self.refresh_error: Exception | None = None
        self.refresh_delay = 0.0

    @property
    def name(self) -> str:
        return self._name

    def build_authorization_url(self, redirect_url: str = "") -> AuthorizationRequest:
        verifier = generate_code_verifier()
        challenge = compute_code_challenge(verifier)
        state = generate_state()
        params = {
            "client_id": "fake-client",
            "response_type": "code",
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
        if redirect_url:
            params["redirect_uri"] = redirect_url
        return AuthorizationRequest(
            url=f"https://auth.example.com/authorize?{urlencode(params)}",
            code_verifier=verifier,
            code_challenge=challenge,
            state=state,
            redirect_url=redirect_url,
        )

    async def exchange_code(
        self, code: str, code_verifier: str, redirect_url: str = ""
    ) -> TokenResponse:
        self.exchange_calls.append((code, code_verifier, redirect_url))
        if self.exchange_error is not None:
            raise self.exchange_error
        return TokenResponse(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_in=self.expires_in,
            scope="files.read",
            account_id=self.account_id,
        )

    async def refresh(self, refresh_token: str) -> TokenResponse:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await anyio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        count = len(self.refresh_calls)
        return TokenResponse(
            access_token=f"refreshed-{count}",
            refresh_token=f"rotated-{count}" if self.rotate_refresh_token else "",
            expires_in=3600,
        )

    async def get_account_info(self, access_token: str) -> str:
        self.account_info_calls += 1
        return self.account_id


@pytest.fixture
def encryption_key():
    """Generate test encryption key."""
    return generate_key()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "tokens.db"


@pytest.fixture
async def store(db_path, encryption_key):
    """Initialized credential store backed by a temporary SQLite file."""
    credential_store = CredentialStore(db_path, encryption_key=encryption_key)
    await credential_store.initialize()
    return credential_store


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def provider_factory():
    """Build additional FakeProvider instances with custom settings."""
    return FakeProvider
