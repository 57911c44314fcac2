"""
PKCE helpers and the in-memory table of pending authorization attempts.

An attempt is created when an authorization URL is built and consumed by
exactly one callback or code submission. Attempts that are never completed
expire after a bounded window.
"""

import base64
import hashlib
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from tokenkeeper.providers.base import AuthorizationRequest

logger = logging.getLogger(__name__)

VERIFIER_BYTES = 32
STATE_BYTES = 16
DEFAULT_PENDING_TTL = 600


def generate_code_verifier() -> str:
    """Generate a PKCE code verifier (43 URL-safe characters, unpadded)."""
    return secrets.token_urlsafe(VERIFIER_BYTES)


def compute_code_challenge(code_verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    return secrets.token_urlsafe(STATE_BYTES)


@dataclass
class PendingAuthorization:
    provider: str
    state: str
    code_verifier: str = field(repr=False)
    redirect_url: str = ""
    created_at: float = 0.0

    def is_expired(self, ttl_seconds: float) -> bool:
        return time.monotonic() - self.created_at >= ttl_seconds


class PendingAuthorizations:
    """Single-use, time-bounded map from CSRF state to PKCE attempt."""

    def __init__(self, ttl_seconds: float = DEFAULT_PENDING_TTL):
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._pending: dict[str, PendingAuthorization] = {}

    def add(self, request: "AuthorizationRequest", provider: str) -> PendingAuthorization:
        entry = PendingAuthorization(
            provider=provider,
            state=request.state,
            code_verifier=request.code_verifier,
            redirect_url=request.redirect_url,
            created_at=time.monotonic(),
        )
        with self._lock:
            self._purge_locked()
            self._pending[request.state] = entry
        return entry

    def pop(self, state: str) -> Optional[PendingAuthorization]:
        """
        Consume the attempt registered under ``state``.

        Returns:
            The attempt, or None if unknown or expired. The entry is removed
            either way.
        """
        with self._lock:
            self._purge_locked()
            entry = self._pending.pop(state, None)

        if entry is None:
            logger.debug("No pending authorization for presented state")
        return entry

    def discard(self, state: str) -> None:
        with self._lock:
            self._pending.pop(state, None)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked()

    def _purge_locked(self) -> int:
        expired = [
            state
            for state, entry in self._pending.items()
            if entry.is_expired(self.ttl_seconds)
        ]
        for state in expired:
            del self._pending[state]
        if expired:
            logger.debug(f"Purged {len(expired)} expired pending authorization(s)")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
