from nodeforge.providers.vagrant.config import Vagrant

__all__ = ["Vagrant"]
