from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from nodeforge.api.spec import NodeRole, ResourceSpec

type MachineState = Literal[
    "requested",
    "creating",
    "running",
    "failed",
    "destroyed",
]


@dataclass(frozen=True, slots=True)
class ProvisionedMachine:
    """A machine as seen by its provider. Only providers produce new versions."""
    spec: ResourceSpec
    id: str
    state: MachineState = "requested"

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def ip(self) -> str:
        return self.spec.ip


@dataclass(frozen=True, slots=True)
class InventoryEntry:
    hostname: str
    ip: str
    role: NodeRole
    index: int
    vars: Mapping[str, Any] = field(default_factory=dict)


type TaskStatus = Literal["ok", "changed", "failed"]


@dataclass(frozen=True, slots=True)
class TaskResult:
    task: str
    status: TaskStatus
    exit_code: int = 0
    stderr: str = ""


type HostState = Literal["pending", "running", "converged", "failed", "skipped"]


@dataclass(frozen=True, slots=True)
class HostOutcome:
    host: str
    state: HostState
    reason: str = ""
    results: tuple[TaskResult, ...] = ()

    @property
    def changed(self) -> int:
        return sum(1 for r in self.results if r.status == "changed")


@dataclass(frozen=True, slots=True)
class ConvergenceRun:
    inventory: tuple[InventoryEntry, ...]
    outcomes: Mapping[str, HostOutcome]

    @property
    def converged(self) -> tuple[str, ...]:
        return tuple(h for h, o in self.outcomes.items() if o.state == "converged")

    @property
    def failed(self) -> tuple[str, ...]:
        return tuple(h for h, o in self.outcomes.items() if o.state == "failed")

    @property
    def unconverged(self) -> tuple[str, ...]:
        """Failed or skipped hosts, in inventory order."""
        return tuple(h for h, o in self.outcomes.items() if o.state != "converged")


type ClusterStatus = Literal["ready", "degraded"]


@dataclass(frozen=True, slots=True)
class ClusterReport:
    status: ClusterStatus
    machines: tuple[ProvisionedMachine, ...]
    run: ConvergenceRun

    @property
    def failed_hosts(self) -> tuple[str, ...]:
        return self.run.unconverged

    @property
    def is_ready(self) -> bool:
        return self.status == "ready"
