"""Credential manager: the interface offered to the rest of the application."""

import logging
from typing import Optional

import httpx
from anyio.streams.memory import MemoryObjectSendStream

from tokenkeeper.auth.audit import DISCONNECT_CATEGORY, AuditSink, StorageAuditSink
from tokenkeeper.auth.errors import TokenNotFound
from tokenkeeper.auth.flow import (
    CodeReader,
    FlowEvent,
    FlowHandler,
    FlowMode,
    FlowResult,
    ServerFlowConfig,
)
from tokenkeeper.auth.pkce import DEFAULT_PENDING_TTL
from tokenkeeper.auth.refresh_scheduler import RefreshConfig, RefreshScheduler
from tokenkeeper.auth.storage import CredentialRecord, CredentialStore
from tokenkeeper.auth.token_source import (
    DEFAULT_REFRESH_MARGIN,
    StoredTokenSource,
)
from tokenkeeper.config import Settings
from tokenkeeper.providers.base import AuthorizationRequest, TokenResponse
from tokenkeeper.providers.registry import ProviderRegistry, create_registry

logger = logging.getLogger(__name__)


class CredentialManager:
    """
    Obtain, store, refresh and revoke OAuth credentials per (provider, account).

    Token sources are cached per account so concurrent callers share a
    single refresh lock. Flow handlers are cached per provider so a web flow
    can be completed by a later request.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: CredentialStore,
        *,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        audit: Optional[AuditSink] = None,
        server_flow: Optional[ServerFlowConfig] = None,
        refresh_config: Optional[RefreshConfig] = None,
        pending_ttl: float = DEFAULT_PENDING_TTL,
    ):
        self.registry = registry
        self.store = store
        self.refresh_margin = refresh_margin
        self.audit = audit or StorageAuditSink(store)
        self.server_flow = server_flow or ServerFlowConfig()
        self.refresh_config = refresh_config or RefreshConfig()
        self.pending_ttl = pending_ttl
        self.scheduler: Optional[RefreshScheduler] = None
        self._sources: dict[tuple[str, str], StoredTokenSource] = {}
        self._flows: dict[str, FlowHandler] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None
    ) -> "CredentialManager":
        return cls(
            create_registry(settings, http_client=http_client),
            CredentialStore.from_settings(settings),
            refresh_margin=settings.token_refresh_margin,
            server_flow=ServerFlowConfig(
                host=settings.oauth_callback_host,
                port=settings.oauth_callback_port,
                timeout=settings.oauth_flow_timeout,
            ),
            refresh_config=RefreshConfig(
                enabled=settings.refresh_enabled,
                check_interval=settings.refresh_check_interval,
                refresh_margin=settings.refresh_sweep_margin,
            ),
            pending_ttl=settings.pending_authorization_ttl,
        )

    def token_source(self, provider: str, account_id: str) -> StoredTokenSource:
        """Return the cached source for an account, rebuilt if the provider was replaced."""
        instance = self.registry.get(provider)
        key = (provider, account_id)
        source = self._sources.get(key)
        if source is None or source.provider is not instance:
            source = StoredTokenSource(
                instance,
                self.store,
                account_id,
                refresh_margin=self.refresh_margin,
            )
            self._sources[key] = source
        return source

    async def get_token(self, provider: str, account_id: Optional[str] = None) -> str:
        """
        Return a valid access token for an account.

        Args:
            provider: Provider name
            account_id: Account to use; defaults to the most recently updated one

        Raises:
            ProviderNotFound, TokenNotFound, TokenExpired, ProviderError
        """
        self.registry.get(provider)
        if account_id is None:
            records = await self.store.list_credentials(provider)
            if not records:
                raise TokenNotFound(provider)
            account_id = records[0].account_id
        return await self.token_source(provider, account_id).get_token()

    def flow_handler(self, provider: str) -> FlowHandler:
        instance = self.registry.get(provider)
        handler = self._flows.get(provider)
        if handler is None or handler.provider is not instance:
            handler = FlowHandler(
                instance,
                self.store,
                pending_ttl=self.pending_ttl,
                audit=self.audit,
            )
            self._flows[provider] = handler
        return handler

    async def run_authorization_flow(
        self,
        provider: str,
        mode: FlowMode = FlowMode.SERVER,
        *,
        events: Optional[MemoryObjectSendStream[FlowEvent]] = None,
        read_code: Optional[CodeReader] = None,
        server_config: Optional[ServerFlowConfig] = None,
    ) -> FlowResult:
        handler = self.flow_handler(provider)
        if mode is FlowMode.MANUAL:
            result = await handler.run_manual_flow(read_code=read_code, events=events)
        else:
            result = await handler.run_server_flow(
                server_config or self.server_flow, events=events
            )
        self._invalidate(provider, result.account_id)
        return result

    def start_web_flow(self, provider: str, redirect_url: str) -> AuthorizationRequest:
        return self.flow_handler(provider).start_web_flow(redirect_url)

    async def complete_web_flow(
        self,
        provider: str,
        code: str,
        state: str,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> FlowResult:
        result = await self.flow_handler(provider).complete_web_flow(
            code, state, error=error, error_description=error_description
        )
        self._invalidate(provider, result.account_id)
        return result

    async def list_accounts(self, provider: str) -> list[CredentialRecord]:
        self.registry.get(provider)
        return await self.store.list_credentials(provider)

    async def disconnect(self, provider: str, account_id: str) -> bool:
        """
        Delete a stored credential.

        Returns:
            True if a credential was deleted, False if none was stored

        Raises:
            ProviderNotFound: Provider is not registered
        """
        self.registry.get(provider)
        deleted = await self.store.delete_credential(provider, account_id)
        source = self._sources.pop((provider, account_id), None)
        if source is not None:
            source.invalidate()

        if deleted:
            await self.audit.record(
                DISCONNECT_CATEGORY, f"Disconnect {provider}/{account_id}"
            )
        return deleted

    def create_scheduler(self, config: Optional[RefreshConfig] = None) -> RefreshScheduler:
        self.scheduler = RefreshScheduler(
            self.store,
            self.registry,
            config or self.refresh_config,
            audit=self.audit,
        )
        return self.scheduler

    async def refresh_now(self, provider: str, account_id: str) -> TokenResponse:
        """Refresh one credential immediately, serialized with the background sweep."""
        scheduler = self.scheduler or self.create_scheduler()
        token = await scheduler.refresh_credential(provider, account_id)
        self._invalidate(provider, account_id)
        return token

    def _invalidate(self, provider: str, account_id: str) -> None:
        source = self._sources.get((provider, account_id))
        if source is not None:
            source.invalidate()
