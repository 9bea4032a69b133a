from __future__ import annotations

import asyncio
from collections import Counter, defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field

import pytest

from nodeforge.api import InventoryEntry, MachineState, ProvisionedMachine, ResourceSpec
from nodeforge.convergence import CommandResult, ConvergenceEngine, ConvergenceSettings
from nodeforge.core.exceptions import (
    ProviderUnavailableError,
    ResourceExhaustedError,
    TransportError,
)
from nodeforge.providers.memory.config import Memory
from nodeforge.providers.memory.provider import MemoryProvider
from nodeforge.retry import RetryPolicy

FAST_RETRY = RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0)


@dataclass
class FakeHosts:
    """Executor that simulates host state with a tiny command language.

    ``has X`` exits 0 when marker X is present on the host, ``add X``
    records X, ``fail`` exits 1. Everything else exits 0.
    """

    state: dict[str, set[str]] = field(default_factory=lambda: defaultdict(set))
    applied: Counter[tuple[str, str]] = field(default_factory=Counter)
    calls: list[tuple[str, str]] = field(default_factory=list)
    events: list[tuple[str, str, str]] = field(default_factory=list)
    failures: dict[tuple[str, str], int] = field(default_factory=dict)
    transient: dict[str, int] = field(default_factory=dict)
    delay: float = 0.0
    _holds: dict[tuple[str, str], tuple[asyncio.Event, asyncio.Event]] = field(
        default_factory=dict
    )
    in_flight: int = 0
    max_in_flight: int = 0
    closed: bool = False

    def fail(self, host: str, command: str, exit_code: int = 1) -> None:
        self.failures[(host, command)] = exit_code

    def hold(self, host: str, command: str) -> tuple[asyncio.Event, asyncio.Event]:
        """Block ``command`` on ``host`` until released. Returns (started, release)."""
        pair = (asyncio.Event(), asyncio.Event())
        self._holds[(host, command)] = pair
        return pair

    async def run(self, host: InventoryEntry, command: str) -> CommandResult:
        name = host.hostname
        self.calls.append((name, command))

        if self.transient.get(name, 0) > 0:
            self.transient[name] -= 1
            raise TransportError(f"connection reset by {name}")

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.events.append((name, "start", command))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            hold = self._holds.get((name, command))
            if hold is not None:
                started, release = hold
                started.set()
                await release.wait()
        finally:
            self.in_flight -= 1
            self.events.append((name, "end", command))

        if (name, command) in self.failures:
            return CommandResult(self.failures[(name, command)], stderr=f"{command} broke")

        verb, _, arg = command.partition(" ")
        match verb:
            case "has":
                return CommandResult(0 if arg in self.state[name] else 1)
            case "add":
                self.state[name].add(arg)
                self.applied[(name, arg)] += 1
                return CommandResult(0)
            case "fail":
                return CommandResult(1, stderr="task failed")
            case _:
                return CommandResult(0, stdout=arg)

    async def close(self) -> None:
        self.closed = True


class FlakyProvider:
    """Wraps MemoryProvider with scripted failures per machine name.

    ``unavailable`` maps a name to how many creates fail transiently
    before succeeding. ``exhausted`` names always fail fatally.
    """

    def __init__(
        self,
        inner: MemoryProvider,
        *,
        unavailable: dict[str, int] | None = None,
        exhausted: Sequence[str] = (),
    ) -> None:
        self.inner = inner
        self.unavailable = dict(unavailable or {})
        self.exhausted = set(exhausted)
        self.create_calls: Counter[str] = Counter()
        self.destroyed: list[str] = []

    async def create(self, spec: ResourceSpec) -> ProvisionedMachine:
        self.create_calls[spec.name] += 1
        if self.unavailable.get(spec.name, 0) > 0:
            self.unavailable[spec.name] -= 1
            raise ProviderUnavailableError(f"backend busy creating {spec.name}")
        if spec.name in self.exhausted:
            await asyncio.sleep(0.01)
            raise ResourceExhaustedError(spec, "host out of memory")
        return await self.inner.create(spec)

    async def destroy(self, machine_id: str) -> None:
        self.destroyed.append(machine_id)
        await self.inner.destroy(machine_id)

    async def inspect(self, machine_id: str) -> MachineState:
        return await self.inner.inspect(machine_id)

    async def machines(self) -> Sequence[ProvisionedMachine]:
        return await self.inner.machines()


def entry(name: str, ip: str = "10.0.0.1", role: str = "worker", index: int = 1, **vars):
    return InventoryEntry(
        hostname=name, ip=ip, role=role, index=index, vars=vars,  # type: ignore[arg-type]
    )


@pytest.fixture
def hosts() -> FakeHosts:
    return FakeHosts()


@pytest.fixture
def engine(hosts: FakeHosts) -> ConvergenceEngine:
    return ConvergenceEngine(hosts, ConvergenceSettings(retry=FAST_RETRY, task_timeout=5.0))


@pytest.fixture
async def memory_provider() -> MemoryProvider:
    return await Memory().create_provider()
