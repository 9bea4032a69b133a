"""Machine providers.

Each provider is a frozen config dataclass with a ``create_provider``
coroutine that builds the stateful MachineProvider.
"""

from nodeforge.providers.memory import Memory
from nodeforge.providers.provider import MachineProvider
from nodeforge.providers.vagrant import Vagrant

__all__ = ["MachineProvider", "Memory", "Vagrant"]
