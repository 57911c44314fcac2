"""Fire-and-forget audit sinks for credential lifecycle events."""

import logging
from typing import TYPE_CHECKING, Optional, Protocol

if TYPE_CHECKING:
    from tokenkeeper.auth.storage import CredentialStore

logger = logging.getLogger(__name__)

REFRESH_CATEGORY = "oauth_token_refresh"
AUTHORIZATION_CATEGORY = "oauth_authorization"
DISCONNECT_CATEGORY = "oauth_disconnect"


class AuditSink(Protocol):
    async def record(
        self,
        category: str,
        description: str,
        error: Optional[BaseException] = None,
    ) -> None: ...


class StorageAuditSink:
    """Write audit entries to the credential store's audit_logs table.

    Recording never raises: a failed write is logged and dropped.
    """

    def __init__(self, store: "CredentialStore"):
        self.store = store

    async def record(
        self,
        category: str,
        description: str,
        error: Optional[BaseException] = None,
    ) -> None:
        try:
            await self.store.record_audit(category, description, error)
        except Exception as e:
            logger.warning(f"Failed to write audit entry ({category}): {e}")


class LoggingAuditSink:
    """Write audit entries through the logging module."""

    def __init__(self, logger_name: str = "tokenkeeper.audit"):
        self._logger = logging.getLogger(logger_name)

    async def record(
        self,
        category: str,
        description: str,
        error: Optional[BaseException] = None,
    ) -> None:
        if error is None:
            self._logger.info(f"[{category}] {description}: success")
        else:
            self._logger.warning(f"[{category}] {description}: failed: {error}")
