"""
Background proactive token refresh.

Every check interval the scheduler walks the stored credentials of every
registered provider and refreshes those nearing expiry. Sweeps never
overlap, and a manual refresh waits for any running sweep.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import anyio
from anyio.abc import TaskStatus

from tokenkeeper.auth.audit import REFRESH_CATEGORY, AuditSink, StorageAuditSink
from tokenkeeper.auth.errors import NoRefreshToken, TokenNotFound
from tokenkeeper.auth.storage import CredentialStore
from tokenkeeper.auth.token_source import refresh_and_store
from tokenkeeper.providers.base import Provider, TokenResponse
from tokenkeeper.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass
class RefreshConfig:
    enabled: bool = True
    check_interval: float = 1800
    refresh_margin: float = 900


@dataclass
class SweepResult:
    refreshed: int = 0
    failed: int = 0
    skipped: int = 0


class RefreshScheduler:
    """Periodically refresh stored credentials before they expire."""

    def __init__(
        self,
        store: CredentialStore,
        registry: ProviderRegistry,
        config: Optional[RefreshConfig] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config or RefreshConfig()
        self.audit = audit or StorageAuditSink(store)
        self._sweep_lock = anyio.Lock()
        self._stop: Optional[anyio.Event] = None
        self._done: Optional[anyio.Event] = None

    @property
    def running(self) -> bool:
        return self._done is not None and not self._done.is_set()

    async def start(
        self,
        cancel_event: Optional[anyio.Event] = None,
        *,
        task_status: TaskStatus = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        """
        Run sweeps until ``stop()`` is called or ``cancel_event`` is set.

        Sweeps once immediately, then once per check interval. A stop request
        is honored between sweeps, never in the middle of one.

        Args:
            cancel_event: Optional external stop signal
            task_status: Status object for signaling task readiness
        """
        if not self.config.enabled:
            logger.info("Token refresh scheduler disabled")
            task_status.started()
            return

        if self.running:
            raise RuntimeError("refresh scheduler is already running")

        self._stop = anyio.Event()
        self._done = anyio.Event()
        stop = self._stop
        if cancel_event is not None and cancel_event.is_set():
            stop.set()

        logger.info(
            f"Token refresh scheduler started (interval={self.config.check_interval}s, "
            f"margin={self.config.refresh_margin}s)"
        )

        try:
            async with anyio.create_task_group() as tg:
                if cancel_event is not None:
                    tg.start_soon(self._relay_cancel, cancel_event, stop)
                task_status.started()

                while not stop.is_set():
                    try:
                        await self.sweep()
                    except Exception as e:
                        logger.error(f"Token refresh sweep failed: {e}", exc_info=True)

                    with anyio.move_on_after(self.config.check_interval):
                        await stop.wait()

                tg.cancel_scope.cancel()
        finally:
            self._done.set()
            logger.info("Token refresh scheduler stopped")

    @staticmethod
    async def _relay_cancel(cancel_event: anyio.Event, stop: anyio.Event) -> None:
        await cancel_event.wait()
        stop.set()

    async def stop(self) -> None:
        """Request a stop and wait until the current sweep (if any) has finished."""
        if not self.running:
            return
        assert self._stop is not None and self._done is not None
        self._stop.set()
        await self._done.wait()

    async def sweep(self) -> SweepResult:
        """
        Refresh every stored credential within the refresh margin.

        Credentials without a refresh token are skipped and audited as failed.
        """
        async with self._sweep_lock:
            result = SweepResult()

            for provider in self.registry.all():
                try:
                    records = await self.store.list_credentials(provider.name)
                except Exception as e:
                    logger.error(
                        f"Failed to list credentials for {provider.name}: {e}",
                        exc_info=True,
                    )
                    continue

                for record in records:
                    if not record.is_expiring_soon(self.config.refresh_margin):
                        continue

                    description = f"Refresh token for {provider.name}/{record.account_id}"

                    if not record.has_refresh_token:
                        logger.warning(
                            f"Token for {provider.name}/{record.account_id} is expiring "
                            "but has no refresh token, skipping"
                        )
                        await self.audit.record(
                            REFRESH_CATEGORY,
                            description,
                            NoRefreshToken(provider.name, record.account_id),
                        )
                        result.skipped += 1
                        continue

                    try:
                        await self._refresh_one(provider, record.account_id)
                    except Exception as e:
                        logger.error(
                            f"Failed to refresh token for "
                            f"{provider.name}/{record.account_id}: {e}"
                        )
                        await self.audit.record(REFRESH_CATEGORY, description, e)
                        result.failed += 1
                    else:
                        logger.info(
                            f"Refreshed token for {provider.name}/{record.account_id}"
                        )
                        await self.audit.record(REFRESH_CATEGORY, description)
                        result.refreshed += 1

            if result.refreshed or result.failed or result.skipped:
                logger.info(
                    f"Token refresh sweep: {result.refreshed} refreshed, "
                    f"{result.failed} failed, {result.skipped} skipped"
                )
            else:
                logger.debug("Token refresh sweep: nothing due")
            return result

    async def _refresh_one(self, provider: Provider, account_id: str) -> TokenResponse:
        credential = await self.store.get_credential(provider.name, account_id)
        if credential is None:
            raise TokenNotFound(provider.name, account_id)
        return await refresh_and_store(provider, self.store, credential)

    async def refresh_credential(self, provider_name: str, account_id: str) -> TokenResponse:
        """
        Refresh one credential now, serialized with any running sweep.

        Raises:
            ProviderNotFound: Provider is not registered
            TokenNotFound: No credential stored for the account
            NoRefreshToken: Credential has no refresh token
            ProviderError: The provider rejected the refresh
        """
        provider = self.registry.get(provider_name)
        description = f"Manual refresh for {provider_name}/{account_id}"

        async with self._sweep_lock:
            try:
                token = await self._refresh_one(provider, account_id)
            except Exception as e:
                await self.audit.record(REFRESH_CATEGORY, description, e)
                raise

        await self.audit.record(REFRESH_CATEGORY, description)
        logger.info(f"Manually refreshed token for {provider_name}/{account_id}")
        return token
