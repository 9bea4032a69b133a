"""Custom exception hierarchy for nodeforge.

All nodeforge-specific exceptions inherit from NodeforgeError, enabling
callers to catch every orchestration failure with a single except clause.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nodeforge.api.spec import ResourceSpec


class NodeforgeError(Exception):
    """Base exception for all nodeforge errors."""


class InvalidSpecError(NodeforgeError):
    """Raised when a resource spec or topology fails local validation."""


class ConfigurationError(NodeforgeError):
    """Raised for invalid configuration or missing required settings."""


class ProvisioningError(NodeforgeError):
    """Raised when machine provisioning fails."""


class ProviderUnavailableError(ProvisioningError):
    """Transient provider or transport failure. Safe to retry."""


class ResourceExhaustedError(ProvisioningError):
    """Provider cannot satisfy the request. Do not retry."""

    def __init__(self, spec: ResourceSpec, reason: str = "insufficient resources") -> None:
        self.spec = spec
        self.reason = reason
        super().__init__(f"Cannot create {spec.name}: {reason}")


class SpecConflictError(ProvisioningError):
    """A machine with the same name exists with a different spec."""

    def __init__(self, name: str, existing: ResourceSpec, requested: ResourceSpec) -> None:
        self.name = name
        self.existing = existing
        self.requested = requested
        super().__init__(f"Machine {name} already exists with a different spec")


class IncompleteTopologyError(NodeforgeError):
    """Raised when inventory is built from machines that are not all running."""

    def __init__(self, host: str, state: str) -> None:
        self.host = host
        self.state = state
        super().__init__(f"Host {host} is {state}, expected running")


class TransportError(NodeforgeError):
    """Transient remote execution failure (connection reset, timeout)."""


class ConvergenceFailure(NodeforgeError):
    """A convergence task returned a failing result on a host."""

    def __init__(self, host: str, task: str, exit_code: int, stderr: str = "") -> None:
        self.host = host
        self.task = task
        self.exit_code = exit_code
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"Task '{task}' failed on {host} (exit {exit_code}){detail}")


class OrchestrationCancelled(NodeforgeError):
    """Raised when an orchestration is cancelled before convergence started."""
