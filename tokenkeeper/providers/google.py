"""Google OAuth2 provider."""

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

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

DEFAULT_SCOPES = ["openid", "email"]


class GoogleProvider(Provider):
    """
    Google provider using PKCE, with an optional client secret.

    Installed-app clients are issued a secret that Google still expects on
    the token endpoint, so it is sent when configured. The account identifier
    is the OpenID Connect ``sub`` claim, which requires the ``openid`` scope.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str = "",
        scopes: list[str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        if not client_id:
            raise ValueError("Google client ID is required")
        self.config = ProviderConfig(
            client_id=client_id,
            client_secret=client_secret,
            auth_url=GOOGLE_AUTH_URL,
            token_url=GOOGLE_TOKEN_URL,
            scopes=list(scopes) if scopes else list(DEFAULT_SCOPES),
        )
        self.client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> str:
        return "google"

    @property
    def client_id(self) -> str:
        return self.config.client_id

    @property
    def client_secret(self) -> str:
        return self.config.client_secret

    @property
    def scopes(self) -> list[str]:
        return self.config.scopes

    def build_authorization_url(self, redirect_url: str = "") -> AuthorizationRequest:
        code_verifier = generate_code_verifier()
        code_challenge = compute_code_challenge(code_verifier)
        state = generate_state()

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
            "access_type": "offline",
            # Without consent Google only issues a refresh token on first grant
            "prompt": "consent",
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

    def _client_form(self) -> dict[str, str]:
        form = {"client_id": self.client_id}
        if self.client_secret:
            form["client_secret"] = self.client_secret
        return form

    async def exchange_code(
        self, code: str, code_verifier: str, redirect_url: str = ""
    ) -> TokenResponse:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": code_verifier,
            **self._client_form(),
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
            **self._client_form(),
        }
        return await request_token(
            self.client, self.config.token_url, form, self.name, "token refresh"
        )

    async def get_account_info(self, access_token: str) -> str:
        try:
            response = await self.client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise ProviderError(self.name, "account lookup", body=str(e)) from e

        raise_for_provider_error(response, self.name, "account lookup")
        data = parse_json(response, self.name, "account lookup")

        subject = data.get("sub", "")
        if not subject:
            raise ProviderError(
                self.name,
                "account lookup",
                status_code=response.status_code,
                body="userinfo response did not include a sub claim",
            )
        return str(subject)
