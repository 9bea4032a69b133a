"""User-facing API: topology, specs, runtime model."""

from .model import ClusterReport as ClusterReport
from .model import ClusterStatus as ClusterStatus
from .model import ConvergenceRun as ConvergenceRun
from .model import HostOutcome as HostOutcome
from .model import HostState as HostState
from .model import InventoryEntry as InventoryEntry
from .model import MachineState as MachineState
from .model import ProvisionedMachine as ProvisionedMachine
from .model import TaskResult as TaskResult
from .provider import ProviderConfig
from .spec import NodeRole as NodeRole
from .spec import ResourceSpec as ResourceSpec
from .spec import Topology as Topology
from .spec import validate as validate
from .spec import validate_batch as validate_batch

__all__ = [
    "ClusterReport",
    "ClusterStatus",
    "ConvergenceRun",
    "HostOutcome",
    "HostState",
    "InventoryEntry",
    "MachineState",
    "NodeRole",
    "ProviderConfig",
    "ProvisionedMachine",
    "ResourceSpec",
    "TaskResult",
    "Topology",
    "validate",
    "validate_batch",
]
