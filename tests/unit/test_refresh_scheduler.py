"""Unit tests for the background refresh scheduler."""

import time
from unittest.mock import AsyncMock

import anyio
import pytest

from tokenkeeper.auth.errors import (
    NoRefreshToken,
    ProviderError,
    ProviderNotFound,
    TokenNotFound,
)
from tokenkeeper.auth.refresh_scheduler import RefreshConfig, RefreshScheduler
from tokenkeeper.auth.storage import DecryptedCredential
from tokenkeeper.providers.registry import ProviderRegistry

pytestmark = pytest.mark.unit


async def save(store, provider, account_id, expires_in, refresh_token="refresh"):
    await store.save_credential(
        DecryptedCredential(
            provider=provider,
            account_id=account_id,
            access_token=f"access-{account_id}",
            refresh_token=refresh_token,
            expires_at=int(time.time()) + expires_in if expires_in is not None else None,
        )
    )


@pytest.fixture
def audit():
    return AsyncMock()


@pytest.fixture
def registry(fake_provider):
    return ProviderRegistry([fake_provider])


@pytest.fixture
def scheduler(store, registry, audit):
    return RefreshScheduler(
        store,
        registry,
        RefreshConfig(check_interval=3600, refresh_margin=900),
        audit=audit,
    )


class TestSweep:
    async def test_refreshes_exactly_the_due_credentials(self, scheduler, fake_provider, store):
        # due: within 15 minutes and refreshable
        await save(store, "fake", "due-1", expires_in=60)
        await save(store, "fake", "due-2", expires_in=600)
        await save(store, "fake", "due-3", expires_in=-30)
        # not due
        await save(store, "fake", "later-1", expires_in=3600)
        await save(store, "fake", "later-2", expires_in=None)

        result = await scheduler.sweep()

        assert result.refreshed == 3
        assert result.failed == 0
        assert len(fake_provider.refresh_calls) == 3
        for account in ("due-1", "due-2", "due-3"):
            stored = await store.get_credential("fake", account)
            assert stored.access_token.startswith("refreshed-")
        for account in ("later-1", "later-2"):
            stored = await store.get_credential("fake", account)
            assert stored.access_token == f"access-{account}"

    async def test_skips_expiring_credentials_without_refresh_token(
        self, scheduler, fake_provider, store, audit
    ):
        await save(store, "fake", "no-refresh", expires_in=60, refresh_token="")

        result = await scheduler.sweep()

        assert result.skipped == 1
        assert fake_provider.refresh_calls == []
        category, description, error = audit.record.await_args.args
        assert category == "oauth_token_refresh"
        assert "fake/no-refresh" in description
        assert isinstance(error, NoRefreshToken)

    async def test_audits_every_attempt(self, scheduler, store, audit):
        await save(store, "fake", "a", expires_in=60)
        await save(store, "fake", "b", expires_in=60)

        await scheduler.sweep()

        assert audit.record.await_count == 2
        descriptions = sorted(call.args[1] for call in audit.record.await_args_list)
        assert descriptions == [
            "Refresh token for fake/a",
            "Refresh token for fake/b",
        ]
        assert all(len(call.args) == 2 for call in audit.record.await_args_list)

    async def test_failures_are_audited_and_do_not_stop_the_sweep(
        self, scheduler, fake_provider, store, audit
    ):
        await save(store, "fake", "a", expires_in=60)
        await save(store, "fake", "b", expires_in=60)
        fake_provider.refresh_error = ProviderError(
            "fake", "token refresh", 400, "invalid_grant", "revoked"
        )

        result = await scheduler.sweep()

        assert result.failed == 2
        assert len(fake_provider.refresh_calls) == 2
        errors = [call.args[2] for call in audit.record.await_args_list]
        assert all(isinstance(e, ProviderError) for e in errors)

    async def test_sweeps_every_registered_provider(self, provider_factory, store, audit):
        one = provider_factory(name="one")
        two = provider_factory(name="two")
        await save(store, "one", "a", expires_in=60)
        await save(store, "two", "b", expires_in=60)
        await save(store, "unregistered", "c", expires_in=60)
        scheduler = RefreshScheduler(store, ProviderRegistry([one, two]), audit=audit)

        result = await scheduler.sweep()

        assert result.refreshed == 2
        assert len(one.refresh_calls) == 1
        assert len(two.refresh_calls) == 1

    async def test_sweeps_never_overlap(self, scheduler, fake_provider, store):
        await save(store, "fake", "a", expires_in=60)
        fake_provider.refresh_delay = 0.1
        results = []

        async def run():
            results.append(await scheduler.sweep())

        async with anyio.create_task_group() as tg:
            tg.start_soon(run)
            tg.start_soon(run)

        # The second sweep runs after the first and finds nothing due
        assert sorted(r.refreshed for r in results) == [0, 1]
        assert len(fake_provider.refresh_calls) == 1

    async def test_default_audit_sink_writes_to_store(self, store, registry):
        await save(store, "fake", "a", expires_in=60)
        scheduler = RefreshScheduler(store, registry)

        await scheduler.sweep()

        logs = await store.get_audit_logs(category="oauth_token_refresh")
        assert len(logs) == 1
        assert logs[0]["status"] == "success"


class TestManualRefresh:
    async def test_refresh_credential(self, scheduler, fake_provider, store, audit):
        await save(store, "fake", "a", expires_in=3600)

        token = await scheduler.refresh_credential("fake", "a")

        assert token.access_token == "refreshed-1"
        assert token.refresh_token == "refresh"
        assert (await store.get_credential("fake", "a")).access_token == "refreshed-1"
        audit.record.assert_awaited_once()

    async def test_errors(self, scheduler, store, audit):
        await save(store, "fake", "no-refresh", expires_in=3600, refresh_token="")

        with pytest.raises(ProviderNotFound):
            await scheduler.refresh_credential("other", "a")
        with pytest.raises(TokenNotFound):
            await scheduler.refresh_credential("fake", "ghost")
        with pytest.raises(NoRefreshToken):
            await scheduler.refresh_credential("fake", "no-refresh")

        assert audit.record.await_count == 2

    async def test_waits_for_running_sweep(self, scheduler, fake_provider, store):
        await save(store, "fake", "a", expires_in=60)
        fake_provider.refresh_delay = 0.2
        order = []

        async def sweep():
            await scheduler.sweep()
            order.append("sweep")

        async def manual():
            await anyio.sleep(0.05)
            await scheduler.refresh_credential("fake", "a")
            order.append("manual")

        async with anyio.create_task_group() as tg:
            tg.start_soon(sweep)
            tg.start_soon(manual)

        assert order == ["sweep", "manual"]
        assert fake_provider.refresh_calls == ["refresh", "refresh"]


class TestLifecycle:
    async def test_start_runs_initial_sweep_and_stop_returns(self, scheduler, fake_provider, store):
        await save(store, "fake", "a", expires_in=60)

        async with anyio.create_task_group() as tg:
            await tg.start(scheduler.start)
            assert scheduler.running
            with anyio.fail_after(2):
                while not fake_provider.refresh_calls:
                    await anyio.sleep(0.01)
            with anyio.fail_after(2):
                await scheduler.stop()

        assert not scheduler.running
        assert len(fake_provider.refresh_calls) == 1

    async def test_stop_waits_for_sweep_in_progress(self, scheduler, fake_provider, store):
        await save(store, "fake", "a", expires_in=60)
        fake_provider.refresh_delay = 0.3

        async with anyio.create_task_group() as tg:
            await tg.start(scheduler.start)
            await anyio.sleep(0.05)
            await scheduler.stop()
            # The in-flight refresh completed before stop() returned
            assert (await store.get_credential("fake", "a")).access_token == "refreshed-1"

    async def test_cancel_event_stops_loop(self, scheduler):
        cancel = anyio.Event()

        with anyio.fail_after(2):
            async with anyio.create_task_group() as tg:
                await tg.start(scheduler.start, cancel)
                cancel.set()

        assert not scheduler.running

    async def test_cancel_event_already_set_skips_sweep(self, scheduler, fake_provider, store):
        await save(store, "fake", "a", expires_in=60)
        cancel = anyio.Event()
        cancel.set()

        with anyio.fail_after(2):
            async with anyio.create_task_group() as tg:
                await tg.start(scheduler.start, cancel)

        assert fake_provider.refresh_calls == []
        assert not scheduler.running

    async def test_sweeps_repeat_on_interval(self, store, registry, fake_provider, audit):
        scheduler = RefreshScheduler(
            store,
            registry,
            RefreshConfig(check_interval=0.05, refresh_margin=900),
            audit=audit,
        )
        sweep = AsyncMock(wraps=scheduler.sweep)
        scheduler.sweep = sweep

        async with anyio.create_task_group() as tg:
            await tg.start(scheduler.start)
            await anyio.sleep(0.3)
            await scheduler.stop()

        assert sweep.await_count >= 3

    async def test_sweep_errors_do_not_stop_the_loop(self, store, registry, caplog):
        scheduler = RefreshScheduler(
            store, registry, RefreshConfig(check_interval=0.05), audit=AsyncMock()
        )
        scheduler.sweep = AsyncMock(side_effect=RuntimeError("database is locked"))

        async with anyio.create_task_group() as tg:
            await tg.start(scheduler.start)
            await anyio.sleep(0.2)
            await scheduler.stop()

        assert scheduler.sweep.await_count >= 2
        assert "Token refresh sweep failed" in caplog.text

    async def test_disabled_scheduler_returns_immediately(self, store, registry):
        scheduler = RefreshScheduler(store, registry, RefreshConfig(enabled=False))

        with anyio.fail_after(1):
            await scheduler.start()

        assert not scheduler.running

    async def test_stop_when_not_running(self, scheduler):
        await scheduler.stop()

    async def test_cannot_start_twice(self, scheduler):
        async with anyio.create_task_group() as tg:
            await tg.start(scheduler.start)
            with pytest.raises(RuntimeError):
                await scheduler.start()
            await scheduler.stop()
