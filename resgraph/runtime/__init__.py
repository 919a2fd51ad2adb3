"""Resource graph runtime: identity, lazy fields, caching and watches."""

from resgraph.runtime.cache import CacheEntry, CacheStore
from resgraph.runtime.collection import CollectionIndex
from resgraph.runtime.errors import (
    AmbiguousMatchError,
    MisconfiguredArgumentsError,
    NotFoundError,
    NotReadyError,
    ResourceError,
    TransientIOError,
    UnknownFieldError,
    UnknownResourceError,
)
from resgraph.runtime.identity import PlatformIdentity, init_namespaced_resource, init_resource
from resgraph.runtime.references import resolve_reference, resolve_references
from resgraph.runtime.resource import FieldClass, FieldSpec, Resource, ResourceRegistry, computed
from resgraph.runtime.runtime import Runtime
from resgraph.runtime.watch import WatchBridge, Watcher, WatchState

__all__ = [
    "AmbiguousMatchError",
    "CacheEntry",
    "CacheStore",
    "CollectionIndex",
    "FieldClass",
    "FieldSpec",
    "MisconfiguredArgumentsError",
    "NotFoundError",
    "NotReadyError",
    "PlatformIdentity",
    "Resource",
    "ResourceError",
    "ResourceRegistry",
    "Runtime",
    "TransientIOError",
    "UnknownFieldError",
    "UnknownResourceError",
    "WatchBridge",
    "WatchState",
    "Watcher",
    "computed",
    "init_namespaced_resource",
    "init_resource",
    "resolve_reference",
    "resolve_references",
]
