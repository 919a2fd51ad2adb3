"""Local OS pack: files (with watched content) and kernel modules."""

from resgraph.providers.os.connection import LocalConnection
from resgraph.providers.os.resources import File, Kernel, KernelModule
from resgraph.providers.os.watcher import FileWatcher
from resgraph.runtime.resource import ResourceRegistry

RESOURCES = (File, Kernel, KernelModule)


def register(registry: ResourceRegistry) -> None:
    for cls in RESOURCES:
        registry.register(cls)


__all__ = ["RESOURCES", "FileWatcher", "LocalConnection", "register"]
