from nodeforge.providers.memory.config import Memory

__all__ = ["Memory"]
