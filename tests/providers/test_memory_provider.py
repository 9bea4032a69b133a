from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from nodeforge.api import Topology
from nodeforge.core.exceptions import ResourceExhaustedError, SpecConflictError
from nodeforge.orchestrator import expand_topology
from nodeforge.providers.memory.config import Memory
from nodeforge.providers.memory.provider import MemoryProvider
from nodeforge.providers.provider import MachineProvider

pytestmark = [pytest.mark.unit]


@pytest.fixture
def specs():
    return expand_topology(Topology(worker_count=2, memory_mb=1024))


class TestMemoryProvider:
    @pytest.mark.asyncio
    async def test_satisfies_protocol(self, memory_provider: MemoryProvider):
        assert isinstance(memory_provider, MachineProvider)

    @pytest.mark.asyncio
    async def test_create_returns_running_machine(self, memory_provider, specs):
        machine = await memory_provider.create(specs[0])
        assert machine.state == "running"
        assert machine.spec == specs[0]
        assert machine.id
        assert await memory_provider.inspect(machine.id) == "running"

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, memory_provider, specs):
        first = await memory_provider.create(specs[1])
        second = await memory_provider.create(specs[1])
        assert first == second
        assert memory_provider.created == 1
        assert len(await memory_provider.machines()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_collapse(self, specs):
        provider = await Memory(boot_delay=0.01).create_provider()
        machines = await asyncio.gather(*(provider.create(specs[0]) for _ in range(5)))
        assert len({m.id for m in machines}) == 1
        assert provider.created == 1

    @pytest.mark.asyncio
    async def test_conflicting_spec(self, memory_provider, specs):
        await memory_provider.create(specs[0])
        with pytest.raises(SpecConflictError) as exc:
            await memory_provider.create(replace(specs[0], vcpus=8))
        assert exc.value.name == "master"
        assert exc.value.existing.vcpus == 2
        assert exc.value.requested.vcpus == 8

    @pytest.mark.asyncio
    async def test_capacity_exhausted(self, specs):
        provider = await Memory(capacity_mb=2048).create_provider()
        await provider.create(specs[0])
        await provider.create(specs[1])
        with pytest.raises(ResourceExhaustedError) as exc:
            await provider.create(specs[2])
        assert exc.value.spec == specs[2]

    @pytest.mark.asyncio
    async def test_destroy_frees_capacity(self, specs):
        provider = await Memory(capacity_mb=1024).create_provider()
        machine = await provider.create(specs[0])
        await provider.destroy(machine.id)
        assert await provider.inspect(machine.id) == "destroyed"
        assert (await provider.create(specs[1])).state == "running"

    @pytest.mark.asyncio
    async def test_destroy_unknown_is_noop(self, memory_provider):
        await memory_provider.destroy("does-not-exist")
        assert await memory_provider.machines() == []

    @pytest.mark.asyncio
    async def test_machines_ordered_control_first(self, memory_provider, specs):
        for spec in reversed(specs):
            await memory_provider.create(spec)
        names = [m.name for m in await memory_provider.machines()]
        assert names == ["master", "node1", "node2"]

    @pytest.mark.asyncio
    async def test_cancelled_create_leaves_failed_record(self, specs):
        provider = await Memory(boot_delay=10).create_provider()
        task = asyncio.create_task(provider.create(specs[0]))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        (machine,) = await provider.machines()
        assert machine.state == "failed"
        assert provider.created == 0
