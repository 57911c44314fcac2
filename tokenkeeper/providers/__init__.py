"""OAuth2 providers and the provider registry."""

from .base import AuthorizationRequest, Provider, ProviderConfig, TokenResponse
from .dropbox import DropboxProvider
from .google import GoogleProvider
from .registry import ProviderRegistry, create_registry

__all__ = [
    "AuthorizationRequest",
    "Provider",
    "ProviderConfig",
    "TokenResponse",
    "DropboxProvider",
    "GoogleProvider",
    "ProviderRegistry",
    "create_registry",
]
