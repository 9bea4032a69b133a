from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from nodeforge.api.provider import ProviderConfig

if TYPE_CHECKING:
    from nodeforge.providers.memory.provider import MemoryProvider


@dataclass(frozen=True, slots=True)
class Memory(ProviderConfig):
    """In-process provider configuration.

    Machines exist only as records inside the provider object. Useful for
    dry runs and tests, usually paired with the local executor.

    Example:
        >>> provider = await Memory(capacity_mb=8192).create_provider()
    """

    capacity_mb: int | None = None
    boot_delay: float = 0.0

    async def create_provider(self) -> MemoryProvider:
        from nodeforge.providers.memory.provider import MemoryProvider
        return await MemoryProvider.from_config(self)

    @property
    def type(self) -> str: return "memory"
