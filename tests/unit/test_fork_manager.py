"""Tests for the fork lifecycle manager."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import SHARED_URL, FakeProvider
from paralleldb.exceptions import ProvisioningFailure
from paralleldb.forks.manager import ForkLifecycleManager
from paralleldb.schemas.fork import ForkLifecycleState, ProvisionedFork


class TestCreateFork:
    """Tests for create_fork."""

    @pytest.mark.asyncio
    async def test_active_handle_on_success(self, fork_manager, fake_provider):
        handle = await fork_manager.create_fork("pu-run-index")

        assert handle.id == fake_provider.created[0]
        assert handle.lifecycle_state == ForkLifecycleState.ACTIVE
        assert handle.is_fallback is False
        assert handle.connection_descriptor.startswith("postgresql://tsdbadmin")

    @pytest.mark.asyncio
    async def test_falls_back_when_provider_fails(self):
        manager = ForkLifecycleManager(FakeProvider(fail_create=True), shared_url=SHARED_URL)

        handle = await manager.create_fork("pu-run-index")

        assert handle.is_fallback is True
        assert handle.id.startswith("fallback-")
        assert handle.connection_descriptor == SHARED_URL
        assert handle.is_active

    @pytest.mark.asyncio
    async def test_falls_back_when_provisioning_disabled(self):
        manager = ForkLifecycleManager(None, shared_url=SHARED_URL)

        handle = await manager.create_fork("pu-run-index")

        assert handle.is_fallback is True
        assert manager.provisioning_enabled is False

    @pytest.mark.asyncio
    async def test_falls_back_on_timeout(self):
        provider = FakeProvider()

        async def slow_create(name):
            await asyncio.sleep(5)
            return ProvisionedFork(id="late", connection_descriptor="postgresql://late")

        provider.create = slow_create
        manager = ForkLifecycleManager(provider, shared_url=SHARED_URL, create_timeout=0.01)

        handle = await manager.create_fork("pu-run-index")

        assert handle.is_fallback is True

    @pytest.mark.asyncio
    async def test_raises_without_shared_instance(self):
        manager = ForkLifecycleManager(FakeProvider(fail_create=True), shared_url=None)

        with pytest.raises(ProvisioningFailure):
            await manager.create_fork("pu-run-index")

    @pytest.mark.asyncio
    async def test_descriptor_not_in_repr_or_dump(self, fork_manager):
        handle = await fork_manager.create_fork("pu-run-index")

        assert "secret" not in repr(handle)
        assert "connection_descriptor" not in handle.model_dump()


class TestDeleteFork:
    """Tests for delete_fork."""

    @pytest.mark.asyncio
    async def test_deletes_real_fork(self, fork_manager, fake_provider):
        handle = await fork_manager.create_fork("pu-run-index")

        assert await fork_manager.delete_fork(handle) is True
        assert fake_provider.deleted == [handle.id]
        assert handle.lifecycle_state == ForkLifecycleState.DELETED

    @pytest.mark.asyncio
    async def test_second_delete_is_noop(self, fork_manager, fake_provider):
        handle = await fork_manager.create_fork("pu-run-index")

        await fork_manager.delete_fork(handle)
        await fork_manager.delete_fork(handle)

        assert fake_provider.deleted == [handle.id]

    @pytest.mark.asyncio
    async def test_fallback_never_deleted(self):
        provider = FakeProvider(fail_create=True)
        provider.delete = AsyncMock()
        manager = ForkLifecycleManager(provider, shared_url=SHARED_URL)
        handle = await manager.create_fork("pu-run-index")

        assert await manager.delete_fork(handle) is True
        provider.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_failure_reported_not_raised(self, fake_provider, fork_manager):
        handle = await fork_manager.create_fork("pu-run-index")
        fake_provider.fail_delete = True

        assert await fork_manager.delete_fork(handle) is False
        assert handle.lifecycle_state == ForkLifecycleState.FAILED


class TestListAndPromote:
    """Tests for list_forks and promote."""

    @pytest.mark.asyncio
    async def test_lists_provider_forks(self, fork_manager):
        first = await fork_manager.create_fork("a")
        second = await fork_manager.create_fork("b")

        assert await fork_manager.list_forks() == sorted([first.id, second.id])

    @pytest.mark.asyncio
    async def test_list_errors_yield_empty(self, fake_provider, fork_manager):
        fake_provider.list_forks = AsyncMock(side_effect=RuntimeError("cli missing"))

        assert await fork_manager.list_forks() == []

    @pytest.mark.asyncio
    async def test_promote_delegates_to_coordinator(self, fake_provider):
        coordinator = AsyncMock()
        manager = ForkLifecycleManager(fake_provider, shared_url=SHARED_URL, promotion=coordinator)

        await manager.promote("fork000000", ["ANALYZE users"])

        coordinator.promote.assert_awaited_once_with("fork000000", ["ANALYZE users"])

    @pytest.mark.asyncio
    async def test_promote_without_coordinator(self, fork_manager):
        with pytest.raises(ProvisioningFailure):
            await fork_manager.promote("fork000000", ["ANALYZE users"])
