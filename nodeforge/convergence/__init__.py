from nodeforge.convergence.engine import ConvergenceEngine, ConvergenceSettings
from nodeforge.convergence.task import ConvergenceTask, tasks_from_config
from nodeforge.convergence.transport import (
    CommandResult,
    LocalExecutor,
    RemoteExecutor,
    SSHExecutor,
)

__all__ = [
    "CommandResult",
    "ConvergenceEngine",
    "ConvergenceSettings",
    "ConvergenceTask",
    "LocalExecutor",
    "RemoteExecutor",
    "SSHExecutor",
    "tasks_from_config",
]
