"""End-to-end orchestration against the memory provider and FakeHosts."""

from __future__ import annotations

import asyncio

import pytest

from nodeforge.api import Topology
from nodeforge.convergence import ConvergenceEngine, ConvergenceSettings, ConvergenceTask
from nodeforge.core.exceptions import (
    InvalidSpecError,
    OrchestrationCancelled,
    ProviderUnavailableError,
    ResourceExhaustedError,
)
from nodeforge.orchestrator import ClusterOrchestrator, OrchestratorSettings
from nodeforge.providers.memory.config import Memory
from tests.conftest import FAST_RETRY, FakeHosts, FlakyProvider

pytestmark = [pytest.mark.unit]

TASKS = [
    ConvergenceTask("a", apply="add a", check="has a"),
    ConvergenceTask("b", apply="add b", check="has b"),
]


def orchestrator(provider, engine, workers: int = 2, tasks=TASKS) -> ClusterOrchestrator:
    return ClusterOrchestrator(
        provider,
        engine,
        Topology(worker_count=workers),
        tasks,
        OrchestratorSettings(provisioning=FAST_RETRY),
    )


class TestUp:
    @pytest.mark.asyncio
    async def test_ready(self, memory_provider, engine, hosts: FakeHosts):
        report = await orchestrator(memory_provider, engine).up()

        assert report.status == "ready"
        assert report.is_ready
        assert [m.name for m in report.machines] == ["master", "node1", "node2"]
        assert {m.state for m in report.machines} == {"running"}
        assert report.run.converged == ("master", "node1", "node2")
        assert {name: marks for name, marks in hosts.state.items()} == {
            "master": {"a", "b"},
            "node1": {"a", "b"},
            "node2": {"a", "b"},
        }

    @pytest.mark.asyncio
    async def test_second_up_is_a_no_op(self, memory_provider, engine, hosts: FakeHosts):
        cluster = orchestrator(memory_provider, engine)
        first = await cluster.up()
        second = await cluster.up()

        assert second.status == "ready"
        assert memory_provider.created == 3
        assert [m.id for m in second.machines] == [m.id for m in first.machines]
        assert set(hosts.applied.values()) == {1}
        for outcome in second.run.outcomes.values():
            assert outcome.changed == 0

    @pytest.mark.asyncio
    async def test_run_variables(self, memory_provider, engine, hosts: FakeHosts):
        task = ConvergenceTask("vars", apply="echo $node_name $control_ip:$api_port $node_count")
        await orchestrator(memory_provider, engine, workers=1, tasks=[task]).up()
        assert sorted(hosts.calls) == [
            ("master", "echo master 10.10.2.10:6443 2"),
            ("node1", "echo node1 10.10.2.10:6443 2"),
        ]

    @pytest.mark.asyncio
    async def test_no_tasks(self, memory_provider, engine, hosts: FakeHosts):
        report = await orchestrator(memory_provider, engine, tasks=[]).up()
        assert report.is_ready
        assert hosts.calls == []

    @pytest.mark.asyncio
    async def test_one_failing_host_degrades(self, memory_provider, engine, hosts: FakeHosts):
        hosts.fail("node1", "add b")
        report = await orchestrator(memory_provider, engine).up()

        assert report.status == "degraded"
        assert report.failed_hosts == ("node1",)
        assert report.run.converged == ("master", "node2")
        # Convergence failures never roll back infrastructure.
        assert len(await memory_provider.machines()) == 3

    @pytest.mark.asyncio
    async def test_invalid_topology_creates_nothing(self, memory_provider, engine):
        with pytest.raises(InvalidSpecError):
            await orchestrator(memory_provider, engine, workers=240).up()
        assert await memory_provider.machines() == []


class TestProvisioningFailure:
    @pytest.mark.asyncio
    async def test_exhausted_rolls_back(self, memory_provider, engine, hosts: FakeHosts):
        provider = FlakyProvider(memory_provider, exhausted=["node2"])
        with pytest.raises(ResourceExhaustedError) as exc:
            await orchestrator(provider, engine).up()

        assert exc.value.spec.name == "node2"
        assert provider.create_calls["node2"] == 1
        assert hosts.calls == []
        assert await memory_provider.machines() == []
        assert len(provider.destroyed) == 2

    @pytest.mark.asyncio
    async def test_exhausted_while_others_boot(self, engine, hosts: FakeHosts):
        inner = await Memory(boot_delay=1.0).create_provider()
        provider = FlakyProvider(inner, exhausted=["node1"])
        with pytest.raises(ResourceExhaustedError):
            await orchestrator(provider, engine).up()

        assert await inner.machines() == []
        assert hosts.calls == []

    @pytest.mark.asyncio
    async def test_capacity_exhausted(self, engine, hosts: FakeHosts):
        provider = await Memory(capacity_mb=4096).create_provider()
        with pytest.raises(ResourceExhaustedError):
            await orchestrator(provider, engine).up()
        assert await provider.machines() == []
        assert hosts.calls == []

    @pytest.mark.asyncio
    async def test_unavailable_is_retried(self, memory_provider, engine):
        provider = FlakyProvider(memory_provider, unavailable={"node1": 2})
        report = await orchestrator(provider, engine).up()

        assert report.is_ready
        assert provider.create_calls["node1"] == 3
        assert provider.destroyed == []

    @pytest.mark.asyncio
    async def test_unavailable_exhausts_attempts(self, memory_provider, engine, hosts: FakeHosts):
        provider = FlakyProvider(memory_provider, unavailable={"node1": 10})
        with pytest.raises(ProviderUnavailableError, match="backend busy creating node1"):
            await orchestrator(provider, engine).up()

        assert provider.create_calls["node1"] == FAST_RETRY.attempts
        assert await memory_provider.machines() == []
        assert hosts.calls == []

    @pytest.mark.asyncio
    async def test_up_after_rollback_succeeds(self, memory_provider, engine):
        provider = FlakyProvider(memory_provider, exhausted=["node2"])
        with pytest.raises(ResourceExhaustedError):
            await orchestrator(provider, engine).up()

        provider.exhausted.clear()
        report = await orchestrator(provider, engine).up()
        assert report.is_ready


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_before_up(self, memory_provider, engine):
        cluster = orchestrator(memory_provider, engine)
        cluster.cancel()
        with pytest.raises(OrchestrationCancelled):
            await cluster.up()
        assert memory_provider.created == 0

    @pytest.mark.asyncio
    async def test_cancel_while_provisioning(self, engine, hosts: FakeHosts):
        provider = await Memory(boot_delay=5.0).create_provider()
        cluster = orchestrator(provider, engine)
        up = asyncio.create_task(cluster.up())

        async with asyncio.timeout(2):
            while len(await provider.machines()) < 3:
                await asyncio.sleep(0.001)
        cluster.cancel()

        with pytest.raises(OrchestrationCancelled):
            await up
        assert await provider.machines() == []
        assert provider.created == 0
        assert hosts.calls == []

    @pytest.mark.asyncio
    async def test_cancel_while_converging(self, memory_provider, engine, hosts: FakeHosts):
        started, release = hosts.hold("node2", "add a")
        cluster = orchestrator(memory_provider, engine)
        up = asyncio.create_task(cluster.up())

        await started.wait()
        cluster.cancel()
        release.set()
        report = await up

        assert report.status == "degraded"
        assert "node2" in report.failed_hosts
        assert report.run.outcomes["node2"].state == "skipped"
        assert ("node2", "has b") not in hosts.calls
        # Machines stay up; only convergence stopped.
        assert len(await memory_provider.machines()) == 3

    @pytest.mark.asyncio
    async def test_up_after_cancelled_up(self, memory_provider, engine, hosts: FakeHosts):
        cluster = orchestrator(memory_provider, engine)
        cluster.cancel()
        with pytest.raises(OrchestrationCancelled):
            await cluster.up()

        report = await cluster.up()
        assert report.is_ready
        assert report.run.converged == ("master", "node1", "node2")

    @pytest.mark.asyncio
    async def test_up_after_cancelled_convergence(self, memory_provider, engine, hosts: FakeHosts):
        started, release = hosts.hold("node2", "add a")
        cluster = orchestrator(memory_provider, engine)
        up = asyncio.create_task(cluster.up())
        await started.wait()
        cluster.cancel()
        release.set()
        assert (await up).status == "degraded"

        report = await cluster.up()
        assert report.is_ready
        assert not engine.cancelled

    @pytest.mark.asyncio
    async def test_cancel_while_provisioning_leaves_engine_usable(self, engine):
        provider = await Memory(boot_delay=5.0).create_provider()
        cluster = orchestrator(provider, engine)
        up = asyncio.create_task(cluster.up())
        async with asyncio.timeout(2):
            while len(await provider.machines()) < 3:
                await asyncio.sleep(0.001)
        cluster.cancel()
        with pytest.raises(OrchestrationCancelled):
            await up
        assert not engine.cancelled


class TestDown:
    @pytest.mark.asyncio
    async def test_down_destroys_everything(self, memory_provider, engine):
        cluster = orchestrator(memory_provider, engine)
        await cluster.up()

        destroyed = await cluster.down()
        assert [m.name for m in destroyed] == ["master", "node1", "node2"]
        assert await cluster.status() == ()

    @pytest.mark.asyncio
    async def test_down_is_idempotent(self, memory_provider, engine):
        cluster = orchestrator(memory_provider, engine)
        assert await cluster.down() == ()
        await cluster.up()
        await cluster.down()
        assert await cluster.down() == ()

    @pytest.mark.asyncio
    async def test_status_lists_machines(self, memory_provider, engine):
        cluster = orchestrator(memory_provider, engine, workers=1)
        await cluster.up()
        assert [(m.name, m.state) for m in await cluster.status()] == [
            ("master", "running"),
            ("node1", "running"),
        ]
