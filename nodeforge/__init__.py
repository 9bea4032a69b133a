"""nodeforge - provision a local multi-node cluster and converge its hosts.

Example:

    import asyncio
    import nodeforge as nf

    async def main():
        provider = await nf.Memory().create_provider()
        engine = nf.ConvergenceEngine(nf.LocalExecutor())
        tasks = [nf.ConvergenceTask("hello", apply="echo $node_name")]
        orchestrator = nf.ClusterOrchestrator(provider, engine, nf.Topology(worker_count=2), tasks)
        report = await orchestrator.up()
        print(report.status)

    asyncio.run(main())
"""

from nodeforge.api import (
    ClusterReport,
    ConvergenceRun,
    HostOutcome,
    InventoryEntry,
    ProvisionedMachine,
    ResourceSpec,
    TaskResult,
    Topology,
    validate,
    validate_batch,
)
from nodeforge.convergence import (
    CommandResult,
    ConvergenceEngine,
    ConvergenceSettings,
    ConvergenceTask,
    LocalExecutor,
    RemoteExecutor,
    SSHExecutor,
)
from nodeforge.core.exceptions import (
    ConfigurationError,
    ConvergenceFailure,
    IncompleteTopologyError,
    InvalidSpecError,
    NodeforgeError,
    OrchestrationCancelled,
    ProviderUnavailableError,
    ProvisioningError,
    ResourceExhaustedError,
    SpecConflictError,
    TransportError,
)
from nodeforge.inventory import build_inventory, render_inventory
from nodeforge.logging import LogConfig
from nodeforge.orchestrator import ClusterOrchestrator, OrchestratorSettings, expand_topology
from nodeforge.providers import MachineProvider, Memory, Vagrant
from nodeforge.retry import RetryPolicy

__version__ = "0.1.0"

__all__ = [
    "ClusterOrchestrator",
    "ClusterReport",
    "CommandResult",
    "ConfigurationError",
    "ConvergenceEngine",
    "ConvergenceFailure",
    "ConvergenceRun",
    "ConvergenceSettings",
    "ConvergenceTask",
    "HostOutcome",
    "IncompleteTopologyError",
    "InvalidSpecError",
    "InventoryEntry",
    "LocalExecutor",
    "LogConfig",
    "MachineProvider",
    "Memory",
    "NodeforgeError",
    "OrchestrationCancelled",
    "OrchestratorSettings",
    "ProviderUnavailableError",
    "ProvisionedMachine",
    "ProvisioningError",
    "RemoteExecutor",
    "ResourceExhaustedError",
    "ResourceSpec",
    "RetryPolicy",
    "SSHExecutor",
    "SpecConflictError",
    "TaskResult",
    "Topology",
    "TransportError",
    "Vagrant",
    "build_inventory",
    "expand_topology",
    "render_inventory",
    "validate",
    "validate_batch",
]
