from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence
from dataclasses import replace

from loguru import logger

from nodeforge.api import MachineState, ProvisionedMachine, ResourceSpec
from nodeforge.core.exceptions import ResourceExhaustedError, SpecConflictError
from nodeforge.providers.memory.config import Memory

log = logger.bind(provider="memory")


class MemoryProvider:
    """Keeps machines in a dict keyed by name.

    A per-name lock makes concurrent creates of the same name collapse
    into one machine.
    """

    def __init__(self, config: Memory) -> None:
        self._config = config
        self._by_name: dict[str, ProvisionedMachine] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.created = 0

    @classmethod
    async def from_config(cls, config: Memory) -> MemoryProvider:
        return cls(config)

    def _lock(self, name: str) -> asyncio.Lock:
        return self._locks.setdefault(name, asyncio.Lock())

    def _allocated_mb(self) -> int:
        return sum(
            m.spec.memory_mb
            for m in self._by_name.values()
            if m.state in ("creating", "running")
        )

    async def create(self, spec: ResourceSpec) -> ProvisionedMachine:
        async with self._lock(spec.name):
            existing = self._by_name.get(spec.name)
            if existing is not None and existing.state == "running":
                if existing.spec != spec:
                    raise SpecConflictError(spec.name, existing.spec, spec)
                log.debug("Machine {name} already running", name=spec.name)
                return existing

            capacity = self._config.capacity_mb
            if capacity is not None and self._allocated_mb() + spec.memory_mb > capacity:
                raise ResourceExhaustedError(
                    spec,
                    f"needs {spec.memory_mb} MB, {capacity - self._allocated_mb()} MB free",
                )

            machine = ProvisionedMachine(spec=spec, id=uuid.uuid4().hex[:12], state="creating")
            self._by_name[spec.name] = machine
            try:
                if self._config.boot_delay:
                    await asyncio.sleep(self._config.boot_delay)
            except asyncio.CancelledError:
                self._by_name[spec.name] = replace(machine, state="failed")
                raise

            machine = replace(machine, state="running")
            self._by_name[spec.name] = machine
            self.created += 1
            log.info("Machine {name} running at {ip}", name=spec.name, ip=spec.ip)
            return machine

    async def destroy(self, machine_id: str) -> None:
        for name, machine in list(self._by_name.items()):
            if machine.id == machine_id:
                del self._by_name[name]
                log.info("Machine {name} destroyed", name=name)
                return

    async def inspect(self, machine_id: str) -> MachineState:
        for machine in self._by_name.values():
            if machine.id == machine_id:
                return machine.state
        return "destroyed"

    async def machines(self) -> Sequence[ProvisionedMachine]:
        return sorted(
            self._by_name.values(),
            key=lambda m: (not m.spec.is_control, m.spec.index),
        )
