"""Provider configuration protocol.

A provider config is an immutable description of *where* machines live
(``Vagrant(backend="libvirt")``, ``Memory()``). It builds the live
MachineProvider on demand, so configs can be loaded from TOML and
compared without touching a hypervisor.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class ProviderConfig[P](Protocol):
    @property
    def type(self) -> str:
        """Short name used in the ``[provider]`` table, e.g. ``"vagrant"``."""
        ...

    async def create_provider(self) -> P: ...
