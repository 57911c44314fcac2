"""OAuth2 provider interface and shared token-endpoint helpers."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from tokenkeeper.auth.errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30.0


@dataclass
class AuthorizationRequest:
    """A freshly built authorization URL and the PKCE state it embeds."""

    url: str
    code_verifier: str = field(repr=False)
    code_challenge: str
    state: str
    redirect_url: str = ""


@dataclass
class TokenResponse:
    access_token: str = field(repr=False)
    refresh_token: str = field(default="", repr=False)
    token_type: str = "bearer"
    expires_in: int = 0
    scope: str = ""
    account_id: str = ""

    def expires_at(self, now: float | None = None) -> int | None:
        """Absolute expiry in epoch seconds, or None when the token does not expire."""
        if self.expires_in <= 0:
            return None
        if now is None:
            now = time.time()
        return int(now) + int(self.expires_in)

    @classmethod
    def from_json(cls, data: dict) -> "TokenResponse":
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token") or "",
            token_type=data.get("token_type") or "bearer",
            expires_in=int(data.get("expires_in") or 0),
            scope=data.get("scope") or "",
            account_id=str(data.get("account_id") or ""),
        )


@dataclass
class ProviderConfig:
    client_id: str
    client_secret: str = field(default="", repr=False)
    auth_url: str = ""
    token_url: str = ""
    scopes: list[str] = field(default_factory=list)


class Provider(ABC):
    """
    OAuth2 client-side contract for one external service.

    Implementations must be safe to share between concurrent token sources
    and the refresh scheduler.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Stable identifier used as the registry and storage key."""
        pass

    @abstractmethod
    def build_authorization_url(self, redirect_url: str = "") -> AuthorizationRequest:
        """
        Build an authorization URL with a fresh PKCE verifier and CSRF state.

        Args:
            redirect_url: Callback URL to embed (omitted when empty)

        Returns:
            AuthorizationRequest carrying the URL, verifier, challenge and state
        """
        pass

    @abstractmethod
    async def exchange_code(
        self, code: str, code_verifier: str, redirect_url: str = ""
    ) -> TokenResponse:
        """
        Trade an authorization code and PKCE verifier for tokens.

        Raises:
            ProviderError: On a non-success response from the token endpoint
        """
        pass

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenResponse:
        """
        Trade a refresh token for a new access token.

        The returned refresh_token may be empty when the provider does not
        rotate it.
        """
        pass

    @abstractmethod
    async def get_account_info(self, access_token: str) -> str:
        """Resolve a stable account identifier for the token's owner."""
        pass


def _error_fields(response: httpx.Response) -> tuple[str, str]:
    try:
        payload = response.json()
    except ValueError:
        return "", ""
    if not isinstance(payload, dict):
        return "", ""

    error = payload.get("error", "")
    description = payload.get("error_description", "")
    # Some APIs nest the error object: {"error": {"code": ..., "message": ...}}
    if isinstance(error, dict):
        description = description or str(error.get("message", ""))
        error = str(error.get("status") or error.get(".tag") or error.get("code", ""))
    return str(error), str(description)


def raise_for_provider_error(
    response: httpx.Response, provider: str, operation: str
) -> None:
    """Raise ProviderError wrapping the upstream payload on a non-2xx response."""
    if response.is_success:
        return

    error, description = _error_fields(response)
    body = response.text[:1000]
    logger.warning(
        f"{provider} {operation} failed with status {response.status_code}"
        + (f": {error}" if error else "")
    )
    raise ProviderError(
        provider,
        operation,
        status_code=response.status_code,
        error=error,
        error_description=description,
        body=body,
    )


def parse_json(response: httpx.Response, provider: str, operation: str) -> dict:
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderError(
            provider,
            operation,
            status_code=response.status_code,
            body="malformed JSON response",
        ) from e
    if not isinstance(data, dict):
        raise ProviderError(
            provider,
            operation,
            status_code=response.status_code,
            body="unexpected JSON response",
        )
    return data


async def request_token(
    client: httpx.AsyncClient,
    token_url: str,
    form: dict[str, str],
    provider: str,
    operation: str,
) -> TokenResponse:
    """
    POST a form to a token endpoint and parse the token response.

    Args:
        client: HTTP client to use
        token_url: Token endpoint URL
        form: Form fields (grant_type, code or refresh_token, client_id, ...)
        provider: Provider name for error reporting
        operation: Operation name for error reporting ("code exchange", "token refresh")

    Returns:
        Parsed TokenResponse

    Raises:
        ProviderError: On transport failure, non-2xx status, or malformed JSON
    """
    try:
        response = await client.post(
            token_url,
            data=form,
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as e:
        raise ProviderError(provider, operation, body=str(e)) from e

    raise_for_provider_error(response, provider, operation)
    token = TokenResponse.from_json(parse_json(response, provider, operation))

    if not token.access_token:
        raise ProviderError(
            provider,
            operation,
            status_code=response.status_code,
            body="response did not include an access_token",
        )

    logger.debug(
        f"{provider} {operation} succeeded (expires_in={token.expires_in}, "
        f"refresh_token={'yes' if token.refresh_token else 'no'})"
    )
    return token
