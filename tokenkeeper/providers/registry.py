"""Provider registry, built explicitly and passed to consumers."""

import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

import httpx

from tokenkeeper.auth.errors import ProviderNotFound

from .base import Provider
from .dropbox import DropboxProvider
from .google import GoogleProvider

if TYPE_CHECKING:
    from tokenkeeper.config import Settings

logger = logging.getLogger(__name__)


class _ReadWriteLock:
    """Many concurrent readers, or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ProviderRegistry:
    """
    Thread-safe map from provider name to Provider instance.

    Lookups run concurrently with each other; registration takes an
    exclusive lock.
    """

    def __init__(self, providers: list[Provider] | None = None):
        self._lock = _ReadWriteLock()
        self._providers: dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        with self._lock.write():
            replaced = provider.name in self._providers
            self._providers[provider.name] = provider
        if replaced:
            logger.info(f"Replaced OAuth provider: {provider.name}")
        else:
            logger.info(f"Registered OAuth provider: {provider.name}")

    def unregister(self, name: str) -> bool:
        with self._lock.write():
            return self._providers.pop(name, None) is not None

    def get(self, name: str) -> Provider:
        """
        Look up a provider by name.

        Raises:
            ProviderNotFound: If no provider is registered under that name
        """
        with self._lock.read():
            provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFound(name)
        return provider

    def names(self) -> list[str]:
        with self._lock.read():
            return sorted(self._providers)

    def all(self) -> list[Provider]:
        with self._lock.read():
            return [self._providers[name] for name in sorted(self._providers)]

    def __contains__(self, name: object) -> bool:
        with self._lock.read():
            return name in self._providers

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._providers)


def create_registry(
    settings: "Settings", http_client: httpx.AsyncClient | None = None
) -> ProviderRegistry:
    """
    Build a registry with every provider configured in settings.

    Registers:
    1. Dropbox - if DROPBOX_APP_KEY is set
    2. Google - if GOOGLE_CLIENT_ID is set

    Args:
        settings: Loaded settings
        http_client: Shared HTTP client (optional, one per provider otherwise)

    Returns:
        ProviderRegistry, possibly empty
    """
    registry = ProviderRegistry()

    if settings.dropbox_app_key:
        registry.register(
            DropboxProvider(
                settings.dropbox_app_key,
                http_client=http_client,
                timeout=settings.http_timeout,
            )
        )

    if settings.google_client_id:
        registry.register(
            GoogleProvider(
                settings.google_client_id,
                client_secret=settings.google_client_secret or "",
                scopes=settings.google_scopes,
                http_client=http_client,
                timeout=settings.http_timeout,
            )
        )

    if not len(registry):
        logger.warning(
            "No OAuth providers configured. Set DROPBOX_APP_KEY or GOOGLE_CLIENT_ID."
        )

    return registry
