from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from nodeforge.api.provider import ProviderConfig

if TYPE_CHECKING:
    from nodeforge.providers.vagrant.provider import VagrantProvider

_DEFAULT_WORKDIR = ".nodeforge/machines"


@dataclass(frozen=True, slots=True)
class Vagrant(ProviderConfig):
    """Vagrant provider configuration.

    Each machine gets its own directory under ``workdir`` holding a
    generated Vagrantfile, so machines can be created and destroyed
    independently and in parallel.

    Example:
        >>> provider = await Vagrant(backend="libvirt").create_provider()
    """

    workdir: str = _DEFAULT_WORKDIR
    backend: str = "virtualbox"
    binary: str = "vagrant"

    async def create_provider(self) -> VagrantProvider:
        from nodeforge.providers.vagrant.provider import VagrantProvider
        return await VagrantProvider.from_config(self)

    @property
    def type(self) -> str: return "vagrant"
