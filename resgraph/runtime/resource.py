"""Resource base class, field declarations and the type registry.

A resource type is a :class:`Resource` subclass with a dotted ``type_name``
(``"k8s.pod"``), a set of constructor ``arguments`` and a number of
computed fields declared with the :func:`computed` decorator::

    class Kernel(Resource):
        type_name = "kernel"

        @computed(field_class=FieldClass.TRANSIENT)
        async def modules(self) -> list[Resource]:
            ...

Arguments are stored as valid cache entries when the instance is created,
so ``await resource.get("name")`` works the same for arguments and computed
fields.  Computed fields are evaluated lazily by the
:class:`~resgraph.runtime.runtime.Runtime`.

Construction is two-phase: the runtime allocates the instance from its
argument map and then, before the instance is published in the registry,
attaches the vendor payload with :meth:`Resource.attach_internal`.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

from resgraph.runtime.cache import CacheEntry, CacheStore
from resgraph.runtime.collection import CollectionIndex
from resgraph.runtime.errors import (
    MisconfiguredArgumentsError,
    UnknownFieldError,
    UnknownResourceError,
)

if TYPE_CHECKING:
    import asyncio

    from resgraph.runtime.runtime import Runtime

_FIELD_ATTR = "__resgraph_field__"


class FieldClass(StrEnum):
    """How long a cached error of a field stays valid.

    STATIC    -- vendor data that does not change within a session; errors are
                 cached for the lifetime of the instance.
    TRANSIENT -- data fetched over the network or from the filesystem; cached
                 errors expire after the configured transient error TTL.
    """

    STATIC = "static"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class FieldSpec:
    """Declaration of one computed field."""

    name: str
    func: Callable[..., Any]
    field_class: FieldClass = FieldClass.STATIC
    # Watched fields are backed by a mutable external source and refreshed
    # by the watch bridge on change events.
    watched: bool = False


def computed(
    func: Callable[..., Any] | None = None,
    *,
    name: str | None = None,
    field_class: FieldClass = FieldClass.STATIC,
    watched: bool = False,
) -> Any:
    """Mark a method as the compute function of a field.

    Usable bare (``@computed``) or with options
    (``@computed(name="podSpec", field_class=FieldClass.TRANSIENT)``).
    The method may be sync or async and takes only ``self``.
    """

    def decorate(fn: Callable[..., Any]) -> Callable[..., Any]:
        setattr(fn, _FIELD_ATTR, FieldSpec(name or fn.__name__, fn, field_class, watched))
        return fn

    if func is not None:
        return decorate(func)
    return decorate


class Resource:
    """One queried entity with lazily computed, cached fields."""

    type_name: ClassVar[str] = ""
    #: Constructor argument names accepted by this type.
    arguments: ClassVar[frozenset[str]] = frozenset()
    _fields: ClassVar[dict[str, FieldSpec]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        fields: dict[str, FieldSpec] = {}
        for base in reversed(cls.__mro__[1:]):
            fields.update(getattr(base, "_fields", {}))
        for attr in vars(cls).values():
            spec = getattr(attr, _FIELD_ATTR, None)
            if isinstance(spec, FieldSpec):
                fields[spec.name] = spec
        cls._fields = fields

    def __init__(self, runtime: Runtime, args: Mapping[str, Any]) -> None:
        self.runtime = runtime
        self.cache = CacheStore()
        # Guards the in-flight table, the internal payload and the
        # collection indexes of this instance.
        self.lock = threading.RLock()
        self.inflight: dict[str, asyncio.Future[Any]] = {}
        # Uncached failures, handed once to the next non-blocking read.
        self.failed: dict[str, BaseException] = {}
        self._args = dict(args)
        self._internal: Any = None
        self._internal_attached = False
        self._indexes: dict[tuple[str, str], CollectionIndex[Any, Any]] = {}
        for arg_name in self.arguments:
            self.cache.store(arg_name, CacheEntry.ok(self._args.get(arg_name)))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.type_name} {self.identity_key()!r}>"

    # ------------------------------------------------------------------
    # Construction hooks
    # ------------------------------------------------------------------

    @classmethod
    async def init(
        cls, runtime: Runtime, args: dict[str, Any]
    ) -> tuple[dict[str, Any], Resource | None]:
        """Resolve ``args`` to an existing canonical instance, if any.

        Returns the (possibly completed) argument map and either an existing
        instance or None, in which case a new instance is constructed.
        """
        return args, None

    @classmethod
    def validate_args(cls, args: Mapping[str, Any]) -> None:
        unknown = sorted(set(args) - cls.arguments)
        if unknown:
            raise MisconfiguredArgumentsError(
                f"resource '{cls.type_name}' does not accept argument(s): {', '.join(unknown)}"
            )

    @classmethod
    def field_names(cls) -> list[str]:
        return sorted(cls.arguments | cls._fields.keys())

    @classmethod
    def field_spec(cls, name: str) -> FieldSpec | None:
        """Return the spec of a computed field, None for a plain argument."""
        spec = cls._fields.get(name)
        if spec is None and name not in cls.arguments:
            raise UnknownFieldError(cls.type_name, name)
        return spec

    def identity_key(self) -> str:
        """Key the runtime deduplicates instances of this type on.

        Defaults to the ``id`` argument, or to the full argument map for
        types without one.
        """
        ident = self._args.get("id")
        if ident:
            return str(ident)
        return "\x00".join(f"{k}={self._args[k]!r}" for k in sorted(self._args))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def arg(self, name: str, default: Any = None) -> Any:
        value = self._args.get(name)
        return default if value is None else value

    @property
    def args(self) -> dict[str, Any]:
        return dict(self._args)

    def field_uid(self, field: str) -> str:
        return f"{self.type_name}\x00{self.identity_key()}\x00{field}"

    async def get(self, field: str, timeout: float | None = None) -> Any:
        """Shorthand for ``runtime.get_field(self, field)``."""
        return await self.runtime.get_field(self, field, timeout=timeout)

    def watch_key(self, field: str) -> Hashable:
        """Return the key a watched field subscribes to on the watcher."""
        raise NotImplementedError(f"{self.type_name}.{field} is not watchable")

    # ------------------------------------------------------------------
    # Internal vendor payload
    # ------------------------------------------------------------------

    def attach_internal(self, obj: Any) -> None:
        """Attach the vendor payload.  Allowed exactly once per instance."""
        with self.lock:
            if self._internal_attached:
                raise RuntimeError(f"internal state of {self!r} is already attached")
            self._internal = obj
            self._internal_attached = True

    @property
    def internal(self) -> Any:
        with self.lock:
            return self._internal

    def refresh(self, args: Mapping[str, Any], internal: Any = None) -> bool:
        """Replace arguments and payload with a newer listing of the same object.

        Returns True if anything changed, in which case every computed field
        is invalidated.
        """
        with self.lock:
            changed = False
            if internal is not None and internal != self._internal:
                self._internal = internal
                self._internal_attached = True
                changed = True
            for arg_name in self.arguments:
                if arg_name in args and args[arg_name] != self._args.get(arg_name):
                    self._args[arg_name] = args[arg_name]
                    self.cache.store(arg_name, CacheEntry.ok(args[arg_name]))
                    changed = True
            if changed:
                for name in self._fields:
                    self.cache.invalidate(name)
                    self.inflight.pop(name, None)
                    self.failed.pop(name, None)
            return changed

    # ------------------------------------------------------------------
    # Side channels for compute functions
    # ------------------------------------------------------------------

    def cache_sibling(self, name: str, value: Any) -> None:
        """Populate another field from the result of the current computation."""
        self.field_spec(name)
        self.cache.store_if_current(name, CacheEntry.ok(value, self.cache.generation(name)))

    async def collection_index(
        self,
        field: str,
        key_fn: Callable[[Any], Hashable],
        *,
        key_name: str | None = None,
    ) -> CollectionIndex[Any, Any]:
        """Return the index over collection ``field`` keyed by ``key_fn``.

        The index is built from the cached collection value and rebuilt
        whenever the collection moves to a new generation.
        """
        items = await self.get(field)
        entry = self.cache.load(field)
        name = key_name or getattr(key_fn, "__name__", repr(key_fn))
        if entry is None or not entry.is_usable() or entry.error is not None:
            # The collection changed under us; serve a private index.
            index: CollectionIndex[Any, Any] = CollectionIndex(key_fn)
            index.build(items or [], generation=-2)
            return index
        with self.lock:
            index = self._indexes.get((field, name))
            if index is None:
                index = CollectionIndex(key_fn)
                self._indexes[(field, name)] = index
            if not index.is_current(entry.generation):
                index.build(entry.data or [], entry.generation)
            return index


class ResourceRegistry:
    """type_name -> Resource subclass."""

    def __init__(self) -> None:
        self._types: dict[str, type[Resource]] = {}

    def register(self, cls: type[Resource]) -> type[Resource]:
        if not cls.type_name:
            raise ValueError(f"{cls.__name__} has no type_name")
        existing = self._types.get(cls.type_name)
        if existing is not None and existing is not cls:
            raise ValueError(f"resource type '{cls.type_name}' is already registered")
        self._types[cls.type_name] = cls
        return cls

    def lookup(self, type_name: str) -> type[Resource]:
        try:
            return self._types[type_name]
        except KeyError:
            raise UnknownResourceError(type_name) from None

    def types(self) -> list[str]:
        return sorted(self._types)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._types

    def __len__(self) -> int:
        return len(self._types)
