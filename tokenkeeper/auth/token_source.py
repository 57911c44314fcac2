"""
Token sources: always hand out a currently valid access token.

``StoredTokenSource`` caches one account's credential and refreshes it through
its provider when it comes within the refresh margin of expiry. Concurrent
callers share one lock, so a refresh in flight is never duplicated.
"""

import dataclasses
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

import anyio

from tokenkeeper.auth.errors import (
    NoRefreshToken,
    RefreshNotSupported,
    TokenExpired,
    TokenNotFound,
)
from tokenkeeper.auth.storage import CredentialStore, DecryptedCredential
from tokenkeeper.providers.base import Provider, TokenResponse

if TYPE_CHECKING:
    from tokenkeeper.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = 300


class TokenSource(ABC):
    @abstractmethod
    async def get_token(self) -> str:
        """Return a valid access token, refreshing first if needed."""
        pass

    @abstractmethod
    async def force_refresh(self) -> str:
        """Refresh regardless of expiry and return the new access token."""
        pass

    @abstractmethod
    def is_valid(self) -> bool:
        pass

    @property
    @abstractmethod
    def expires_at(self) -> Optional[int]:
        pass

    @property
    @abstractmethod
    def account_id(self) -> str:
        pass


async def refresh_and_store(
    provider: Provider,
    store: CredentialStore,
    credential: DecryptedCredential,
) -> TokenResponse:
    """
    Refresh a credential through its provider and persist the rotation.

    The stored refresh token is only replaced when the provider issues a new
    one; the returned response always carries the refresh token now in effect.

    Raises:
        NoRefreshToken: If the credential has no refresh token
        ProviderError: If the provider rejects the refresh
        TokenNotFound: If the credential was deleted meanwhile
    """
    if not credential.refresh_token:
        raise NoRefreshToken(credential.provider, credential.account_id)

    logger.debug(f"Refreshing token for {credential.provider}/{credential.account_id}")
    token = await provider.refresh(credential.refresh_token)

    await store.update_after_refresh(
        credential.provider,
        credential.account_id,
        token.access_token,
        token.refresh_token or None,
        token.expires_at(),
    )

    if not token.refresh_token:
        token.refresh_token = credential.refresh_token
    token.account_id = credential.account_id
    return token


class StoredTokenSource(TokenSource):
    """Token source backed by the credential store for one (provider, account)."""

    def __init__(
        self,
        provider: Provider,
        store: CredentialStore,
        account_id: str,
        *,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
    ):
        self.provider = provider
        self.store = store
        self.refresh_margin = refresh_margin
        self._account_id = account_id
        self._lock = anyio.Lock()
        self._cached: Optional[DecryptedCredential] = None

    @property
    def account_id(self) -> str:
        return self._account_id

    @property
    def expires_at(self) -> Optional[int]:
        return self._cached.expires_at if self._cached else None

    def is_valid(self) -> bool:
        return self._cached is not None and not self._cached.is_expiring_soon(0)

    def invalidate(self) -> None:
        """Drop the cached credential so the next call reloads it."""
        self._cached = None

    async def get_token(self) -> str:
        """
        Return a valid access token.

        Raises:
            TokenNotFound: No credential is stored for this account
            TokenExpired: The credential is expiring and cannot be refreshed
            ProviderError: The provider rejected the refresh
        """
        async with self._lock:
            cached = self._cached
            if cached is not None and not cached.is_expiring_soon(self.refresh_margin):
                token = cached.access_token
            else:
                credential = await self._load()
                if credential.is_expiring_soon(self.refresh_margin):
                    if not credential.refresh_token:
                        self._cached = None
                        raise TokenExpired(
                            f"token for {self.provider.name}/{self._account_id} "
                            "expired and no refresh token available"
                        )
                    credential = await self._refresh(credential)
                self._cached = credential
                token = credential.access_token

        await self._touch()
        return token

    async def force_refresh(self) -> str:
        async with self._lock:
            credential = await self._load()
            if not credential.refresh_token:
                raise NoRefreshToken(self.provider.name, self._account_id)
            credential = await self._refresh(credential)
            self._cached = credential
            token = credential.access_token

        await self._touch()
        return token

    async def _load(self) -> DecryptedCredential:
        credential = await self.store.get_credential(self.provider.name, self._account_id)
        if credential is None:
            self._cached = None
            raise TokenNotFound(self.provider.name, self._account_id)
        return credential

    async def _refresh(self, credential: DecryptedCredential) -> DecryptedCredential:
        try:
            token = await refresh_and_store(self.provider, self.store, credential)
        except Exception:
            self._cached = None
            raise

        logger.info(f"Refreshed token for {self.provider.name}/{self._account_id}")
        return dataclasses.replace(
            credential,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_type=token.token_type or credential.token_type,
            expires_at=token.expires_at(),
        )

    async def _touch(self) -> None:
        try:
            await self.store.update_last_used(self.provider.name, self._account_id)
        except Exception as e:
            logger.warning(
                f"Failed to update last-used time for "
                f"{self.provider.name}/{self._account_id}: {e}"
            )


class StaticTokenSource(TokenSource):
    """Fixed, externally supplied token. Never expires, never refreshes."""

    def __init__(self, access_token: str, account_id: str = ""):
        self._access_token = access_token
        self._account_id = account_id

    @property
    def account_id(self) -> str:
        return self._account_id

    @property
    def expires_at(self) -> Optional[int]:
        return None

    def is_valid(self) -> bool:
        return bool(self._access_token)

    async def get_token(self) -> str:
        if not self._access_token:
            raise TokenExpired("static token is empty")
        return self._access_token

    async def force_refresh(self) -> str:
        raise RefreshNotSupported()


async def token_source_from_store(
    registry: "ProviderRegistry",
    provider_name: str,
    store: CredentialStore,
    account_id: Optional[str] = None,
    **options,
) -> StoredTokenSource:
    """
    Build a token source for a stored credential.

    Args:
        registry: Registry to resolve the provider from
        provider_name: Provider name
        store: Credential store
        account_id: Account to use; defaults to the most recently updated one
        **options: Passed to StoredTokenSource (e.g. refresh_margin)

    Raises:
        ProviderNotFound: Provider is not registered
        TokenNotFound: No credential is stored for the provider
    """
    provider = registry.get(provider_name)

    if account_id is None:
        credential = await store.get_latest_credential(provider_name)
        if credential is None:
            raise TokenNotFound(provider_name)
        account_id = credential.account_id

    return StoredTokenSource(provider, store, account_id, **options)
