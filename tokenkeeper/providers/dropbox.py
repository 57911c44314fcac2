"""Dropbox OAuth2 provider (public client, PKCE only)."""

import logging
from urllib.parse import urlencode

import httpx

from tokenkeeper.auth.errors import ProviderError
from tokenkeeper.auth.pkce import (
    compute_code_challenge,
    generate_code_verifier,
    generate_state,
)

from .base import (
    DEFAULT_HTTP_TIMEOUT,
    AuthorizationRequest,
    Provider,
    ProviderConfig,
    TokenResponse,
    parse_json,
    raise_for_provider_error,
    request_token,
)

logger = logging.getLogger(__name__)

DROPBOX_AUTH_URL = "https://www.dropbox.com/oauth2/authorize"
DROPBOX_TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
DROPBOX_API_URL = "https://api.dropboxapi.com/2"


class DropboxProvider(Provider):
    """
    Dropbox provider using PKCE without a client secret.

    Dropbox scopes are configured in the app console, so none are sent in
    the authorization URL. Offline access is requested to obtain a refresh
    token; Dropbox never rotates it.
    """

    def __init__(
        self,
        app_key: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        if not app_key:
            raise ValueError("Dropbox app key is required")
        self.config = ProviderConfig(
            client_id=app_key,
            auth_url=DROPBOX_AUTH_URL,
            token_url=DROPBOX_TOKEN_URL,
        )
        self.client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> str:
        return "dropbox"

    @property
    def app_key(self) -> str:
        return self.config.client_id

    def build_authorization_url(self, redirect_url: str = "") -> AuthorizationRequest:
        code_verifier = generate_code_verifier()
        code_challenge = compute_code_challenge(code_verifier)
        state = generate_state()

        params = {
            "client_id": self.config.client_id,
            "response_type": "code",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
            "token_access_type": "offline",
        }
        if redirect_url:
            params["redirect_uri"] = redirect_url

        return AuthorizationRequest(
            url=f"{self.config.auth_url}?{urlencode(params)}",
            code_verifier=code_verifier,
            code_challenge=code_challenge,
            state=state,
            redirect_url=redirect_url,
        )

    async def exchange_code(
        self, code: str, code_verifier: str, redirect_url: str = ""
    ) -> TokenResponse:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.config.client_id,
            "code_verifier": code_verifier,
        }
        if redirect_url:
            form["redirect_uri"] = redirect_url

        return await request_token(
            self.client, self.config.token_url, form, self.name, "code exchange"
        )

    async def refresh(self, refresh_token: str) -> TokenResponse:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
        }
        token = await request_token(
            self.client, self.config.token_url, form, self.name, "token refresh"
        )
        # Dropbox keeps the original refresh token valid
        token.refresh_token = ""
        token.account_id = ""
        return token

    async def get_account_info(self, access_token: str) -> str:
        try:
            response = await self.client.post(
                f"{DROPBOX_API_URL}/users/get_current_account",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise ProviderError(self.name, "account lookup", body=str(e)) from e

        raise_for_provider_error(response, self.name, "account lookup")
        data = parse_json(response, self.name, "account lookup")

        account_id = data.get("account_id", "")
        if not account_id:
            raise ProviderError(
                self.name,
                "account lookup",
                status_code=response.status_code,
                body="response did not include an account_id",
            )
        return account_id
