"""Exception hierarchy for credential lifecycle operations."""

from typing import Optional


class TokenKeeperError(Exception):
    """Base class for all tokenkeeper errors."""


# Encryption


class EncryptionError(TokenKeeperError):
    """Raised when a secret cannot be encrypted or decrypted."""


class InvalidKeySize(EncryptionError):
    """Encryption key is not exactly 32 bytes."""

    def __init__(self, size: Optional[int] = None):
        self.size = size
        message = "encryption key must be 32 bytes for AES-256"
        if size is not None:
            message += f" (got {size})"
        super().__init__(message)


class CiphertextTooShort(EncryptionError):
    """Ciphertext is shorter than the nonce it must carry."""

    def __init__(self):
        super().__init__("ciphertext too short")


class DecryptionFailed(EncryptionError):
    """Authentication failed: tampered ciphertext or wrong key."""

    def __init__(self, message: str = "decryption failed: authentication error"):
        super().__init__(message)


# Configuration


class ConfigurationError(TokenKeeperError):
    """Invalid local configuration. Never retried."""


class PortUnavailableError(ConfigurationError):
    """The local callback port could not be bound."""

    def __init__(self, host: str, port: int, reason: str = ""):
        self.host = host
        self.port = port
        message = f"port {port} on {host} is not available"
        if reason:
            message += f": {reason}"
        super().__init__(message)


# Providers


class ProviderNotFound(TokenKeeperError):
    """Requested provider is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"provider {name!r} not registered")


class ProviderError(TokenKeeperError):
    """An upstream OAuth2 endpoint rejected a request or could not be reached.

    Carries the upstream error payload verbatim so callers can surface it.
    """

    def __init__(
        self,
        provider: str,
        operation: str,
        status_code: Optional[int] = None,
        error: str = "",
        error_description: str = "",
        body: str = "",
    ):
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        self.error = error
        self.error_description = error_description
        self.body = body

        if error:
            detail = f"{error} - {error_description}" if error_description else error
        elif status_code is not None:
            detail = f"status {status_code}: {body}"
        else:
            detail = body or "request failed"
        super().__init__(f"{provider} {operation} failed: {detail}")


# Authorization flow (protocol errors)


class AuthorizationError(TokenKeeperError):
    """An authorization attempt was aborted."""


class StateMismatchError(AuthorizationError):
    """Callback state does not match the attempt: possible CSRF."""

    def __init__(self, message: str = "state mismatch: possible CSRF attack"):
        super().__init__(message)


class AuthorizationDenied(AuthorizationError):
    """The provider redirected back with an error parameter."""

    def __init__(self, error: str, error_description: str = ""):
        self.error = error
        self.error_description = error_description
        super().__init__(f"authorization error: {error} - {error_description}")


class AuthorizationTimeout(AuthorizationError):
    """No callback arrived before the flow timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"timeout waiting for authorization after {timeout:g}s")


class MissingCodeError(AuthorizationError):
    """A callback or manual entry carried no authorization code."""

    def __init__(self, message: str = "no authorization code received"):
        super().__init__(message)


# Stored credentials


class CredentialError(TokenKeeperError):
    """A stored credential cannot yield a usable access token."""


class TokenNotFound(CredentialError):
    def __init__(self, provider: str, account_id: Optional[str] = None):
        self.provider = provider
        self.account_id = account_id
        if account_id:
            message = f"no token found for provider {provider}, account {account_id}"
        else:
            message = f"no token found for provider {provider}"
        super().__init__(message)


class NoRefreshToken(CredentialError):
    def __init__(self, provider: str, account_id: str):
        self.provider = provider
        self.account_id = account_id
        super().__init__(f"no refresh token available for {provider}/{account_id}")


class TokenExpired(CredentialError):
    def __init__(self, message: str = "token expired and no refresh token available"):
        super().__init__(message)


class RefreshNotSupported(CredentialError):
    def __init__(self, message: str = "static token source does not support refresh"):
        super().__init__(message)
