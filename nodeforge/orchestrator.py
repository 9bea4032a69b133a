"""Cluster orchestration: topology -> machines -> inventory -> convergence.

Infrastructure is all-or-nothing: if any machine cannot be created, every
machine acquired by the failed ``up`` is destroyed before the error
propagates. Convergence is per-host: a cluster may come up degraded with
some hosts converged and others not.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from nodeforge.api import ClusterReport, InventoryEntry, ProvisionedMachine, ResourceSpec, Topology
from nodeforge.api.spec import CONTROL_NAME, WORKER_PREFIX, validate_batch
from nodeforge.convergence.engine import ConvergenceEngine
from nodeforge.convergence.task import ConvergenceTask
from nodeforge.core.exceptions import (
    InvalidSpecError,
    OrchestrationCancelled,
    ProviderUnavailableError,
)
from nodeforge.inventory import build_inventory
from nodeforge.providers.provider import MachineProvider
from nodeforge.retry import RetryPolicy, retrying

log = logger.bind(component="orchestrator")


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    """Provider-side retry policy. Only ProviderUnavailableError is retried."""

    provisioning: RetryPolicy = field(default_factory=RetryPolicy)


def _host_ip(topology: Topology, octet: int, name: str) -> str:
    if not 1 <= octet <= 254:
        raise InvalidSpecError(
            f"{name}: host octet {octet} outside 1..254 in {topology.subnet_base}.0/24"
        )
    return f"{topology.subnet_base}.{octet}"


def expand_topology(topology: Topology) -> tuple[ResourceSpec, ...]:
    """Expand a topology into one ResourceSpec per node.

    Deterministic: the control node is ``master`` at ``control_host`` and
    forwards the API port; worker ``i`` is ``node{i}`` at
    ``worker_offset + i``.
    """
    options = tuple(topology.provider_options.items())

    control = ResourceSpec(
        name=CONTROL_NAME,
        role="control",
        index=0,
        image=topology.base_image,
        ip=_host_ip(topology, topology.control_host, CONTROL_NAME),
        memory_mb=topology.memory_mb,
        vcpus=topology.vcpus,
        forwarded_ports=frozenset({(topology.api_port, topology.api_port)}),
        provider_options=options,
    )
    workers = tuple(
        ResourceSpec(
            name=f"{WORKER_PREFIX}{i}",
            role="worker",
            index=i,
            image=topology.base_image,
            ip=_host_ip(topology, topology.worker_offset + i, f"{WORKER_PREFIX}{i}"),
            memory_mb=topology.memory_mb,
            vcpus=topology.vcpus,
            provider_options=options,
        )
        for i in range(1, topology.worker_count + 1)
    )
    return (control, *workers)


class ClusterOrchestrator:
    """Drives a full ``up``/``down`` cycle against one provider.

    Topology, tasks and settings are fixed at construction; nothing about
    the desired cluster is read from process-wide state.

    Example:
        >>> orchestrator = ClusterOrchestrator(provider, engine, Topology(worker_count=2), tasks)
        >>> report = await orchestrator.up()
        >>> report.status
        'ready'
    """

    def __init__(
        self,
        provider: MachineProvider,
        engine: ConvergenceEngine,
        topology: Topology,
        tasks: Sequence[ConvergenceTask] = (),
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self._provider = provider
        self._engine = engine
        self._topology = topology
        self._tasks = tuple(tasks)
        self._settings = settings or OrchestratorSettings()
        self._provisioning: asyncio.Future[list[ProvisionedMachine]] | None = None
        self._cancel_requested = False
        self._converging = False

    @property
    def topology(self) -> Topology:
        return self._topology

    def specs(self) -> tuple[ResourceSpec, ...]:
        return validate_batch(expand_topology(self._topology))

    def cancel(self) -> None:
        """Abort in-flight creation, or stop convergence after current tasks.

        Called between runs, it cancels the next ``up``. The request is
        cleared when that ``up`` returns or raises.
        """
        self._cancel_requested = True
        if self._provisioning is not None and not self._provisioning.done():
            log.warning("Cancelling machine creation")
            self._provisioning.cancel()
        if self._converging:
            self._engine.cancel()

    # -------------------------------------------------------------------------
    # up
    # -------------------------------------------------------------------------

    async def up(self) -> ClusterReport:
        try:
            return await self._up()
        finally:
            self._cancel_requested = False
            self._converging = False

    async def _up(self) -> ClusterReport:
        specs = self.specs()
        if self._cancel_requested:
            raise OrchestrationCancelled("Cancelled before provisioning started")

        log.info(
            "Provisioning {n} machine(s): {names}",
            n=len(specs), names=", ".join(s.name for s in specs),
        )
        acquired: dict[str, ProvisionedMachine] = {}
        try:
            machines = await self._provision(specs, acquired)
            inventory = build_inventory(machines)
        except asyncio.CancelledError:
            await self._rollback(specs, acquired)
            if self._cancel_requested:
                raise OrchestrationCancelled("Cancelled while provisioning") from None
            raise
        except Exception:
            await self._rollback(specs, acquired)
            raise

        self._converging = True
        if self._cancel_requested:
            self._engine.cancel()
        run = await self._engine.run(inventory, self._tasks, self._run_vars(inventory))
        status = "ready" if not run.unconverged else "degraded"
        if status == "ready":
            log.info("Cluster ready: {n} host(s) converged", n=len(run.converged))
        else:
            log.warning("Cluster degraded: {hosts}", hosts=", ".join(run.unconverged))
        return ClusterReport(status=status, machines=tuple(machines), run=run)

    def _run_vars(self, inventory: Sequence[InventoryEntry]) -> dict[str, Any]:
        return {
            "control_ip": self._topology.control_ip,
            "api_port": self._topology.api_port,
            "subnet_base": self._topology.subnet_base,
            "worker_count": self._topology.worker_count,
            "node_count": len(inventory),
        }

    async def _provision(
        self,
        specs: Sequence[ResourceSpec],
        acquired: dict[str, ProvisionedMachine],
    ) -> list[ProvisionedMachine]:
        self._provisioning = asyncio.ensure_future(self._create_all(specs, acquired))
        try:
            return await self._provisioning
        finally:
            self._provisioning = None

    async def _create_all(
        self,
        specs: Sequence[ResourceSpec],
        acquired: dict[str, ProvisionedMachine],
    ) -> list[ProvisionedMachine]:
        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [tg.create_task(self._create(spec, acquired)) for spec in specs]
        except ExceptionGroup as group:
            first, *rest = group.exceptions
            for other in rest:
                log.warning("Additional provisioning failure: {err}", err=other)
            log.error("Provisioning failed: {err}", err=first)
            raise first from None
        return [t.result() for t in tasks]

    async def _create(
        self,
        spec: ResourceSpec,
        acquired: dict[str, ProvisionedMachine],
    ) -> ProvisionedMachine:
        async for attempt in retrying(
            self._settings.provisioning,
            on=ProviderUnavailableError,
            what=f"create {spec.name}",
        ):
            with attempt:
                machine = await self._provider.create(spec)
                acquired[spec.name] = machine
                return machine
        raise AssertionError("unreachable")

    async def _rollback(
        self,
        specs: Sequence[ResourceSpec],
        acquired: dict[str, ProvisionedMachine],
    ) -> None:
        names = {s.name for s in specs}
        held = {m.id: m for m in acquired.values()}
        try:
            for machine in await self._provider.machines():
                if machine.name in names:
                    held.setdefault(machine.id, machine)
        except Exception as e:
            log.warning("Could not list machines for rollback: {err}", err=e)

        if not held:
            return

        log.warning(
            "Rolling back {n} machine(s): {names}",
            n=len(held), names=", ".join(sorted(m.name for m in held.values())),
        )
        results = await asyncio.gather(
            *(self._provider.destroy(mid) for mid in held),
            return_exceptions=True,
        )
        for machine, result in zip(held.values(), results, strict=True):
            if isinstance(result, BaseException):
                log.error("Failed to destroy {name}: {err}", name=machine.name, err=result)

    # -------------------------------------------------------------------------
    # down / status
    # -------------------------------------------------------------------------

    async def down(self) -> tuple[ProvisionedMachine, ...]:
        """Destroy every machine the provider holds. No-op when there are none."""
        machines = tuple(await self._provider.machines())
        if not machines:
            log.info("Nothing to tear down")
            return ()
        await asyncio.gather(*(self._provider.destroy(m.id) for m in machines))
        log.info("Destroyed {n} machine(s)", n=len(machines))
        return machines

    async def status(self) -> tuple[ProvisionedMachine, ...]:
        return tuple(await self._provider.machines())
