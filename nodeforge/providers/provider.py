from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from nodeforge.api import MachineState, ProvisionedMachine, ResourceSpec


@runtime_checkable
class MachineProvider(Protocol):
    """Capability interface to a virtualization backend.

    Implementations own every ProvisionedMachine they hand out; callers
    never construct or mutate one. All methods are safe to call
    concurrently for distinct machine names.
    """

    async def create(self, spec: ResourceSpec) -> ProvisionedMachine:
        """Create a machine, or return the existing one.

        Parameters
        ----------
        spec
            Validated resource spec. Identity is ``spec.name``.

        Returns
        -------
        ProvisionedMachine
            The machine in "running" state. Calling create twice with the
            same name and an identical spec returns the existing machine.

        Raises
        ------
        SpecConflictError
            A machine with this name exists with a different spec.
        ProviderUnavailableError
            Transient backend failure; the caller may retry.
        ResourceExhaustedError
            The backend cannot fit the machine; retrying will not help.
        """
        ...

    async def destroy(self, machine_id: str) -> None:
        """Destroy a machine. Unknown ids are ignored."""
        ...

    async def inspect(self, machine_id: str) -> MachineState:
        """Current lifecycle state, "destroyed" for unknown ids."""
        ...

    async def machines(self) -> Sequence[ProvisionedMachine]:
        """Every machine this provider currently holds."""
        ...
