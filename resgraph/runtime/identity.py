"""Resource identity resolution (find-or-construct).

``init_resource`` and ``init_namespaced_resource`` are the ``init`` hooks
of keyed resource types.  Given partial constructor arguments they locate
the canonical instance in the owning collection of the pack's root resource
instead of constructing a duplicate:

1. Callers that already pass more than ``passthrough`` arguments have full
   data; the instance is constructed directly.
2. The lookup key is ``id``, else ``name`` (+ ``namespace``), else the
   ambient :class:`PlatformIdentity` of the scan target.
3. The root resource's collection is fetched (or reused from its cache) and
   matched through a :class:`~resgraph.runtime.collection.CollectionIndex`
   using exact, case-sensitive equality.

No match raises :class:`NotFoundError`.  Several matches return the first
one with a warning, or raise :class:`AmbiguousMatchError` when the runtime
runs with ``strict_identity``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from resgraph.observability.logging import get_logger
from resgraph.runtime.collection import by_id, by_name, by_namespaced_name
from resgraph.runtime.errors import AmbiguousMatchError, MisconfiguredArgumentsError, NotFoundError

if TYPE_CHECKING:
    from resgraph.runtime.resource import Resource
    from resgraph.runtime.runtime import Runtime

_log = get_logger("identity")


@dataclass(frozen=True)
class PlatformIdentity:
    """The object the current scan targets, e.g. one pod of a cluster."""

    id: str = ""
    name: str = ""
    namespace: str = ""

    @classmethod
    def parse(cls, identifier: str) -> PlatformIdentity:
        """Parse a platform identifier path.

        The name is the last path element and the namespace the fourth from
        last, as in
        ``//platformid.api.mondoo.app/runtime/k8s/uid/abc/namespace/default/pods/name/mondoo``.
        """
        parts = identifier.split("/")
        name = parts[-1] if parts else ""
        namespace = parts[-4] if len(parts) >= 4 else ""
        return cls(name=name, namespace=namespace)

    def __bool__(self) -> bool:
        return bool(self.id or self.name)


@dataclass(frozen=True)
class LookupKey:
    """A resolved lookup: by id, or by name within a namespace (None = any)."""

    by: str
    value: str
    namespace: str | None = None
    ambient: bool = False

    def describe(self) -> str:
        if self.by == "id":
            return f"id '{self.value}'"
        if self.namespace:
            return f"name '{self.value}' in namespace '{self.namespace}'"
        return f"name '{self.value}'"


def _str_arg(args: dict[str, Any], name: str) -> str:
    value = args.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise MisconfiguredArgumentsError(
            f"argument '{name}' must be a string, got {type(value).__name__}"
        )
    return value


def lookup_key(
    args: dict[str, Any],
    ambient: PlatformIdentity | None,
    *,
    namespaced: bool,
) -> LookupKey:
    """Pick the lookup key for ``args`` in priority order."""
    ident = _str_arg(args, "id")
    name = _str_arg(args, "name")
    namespace = _str_arg(args, "namespace") if namespaced else ""

    if ident:
        return LookupKey("id", ident)
    if name:
        return LookupKey("name", name, namespace or None)
    if ambient:
        if ambient.id:
            return LookupKey("id", ambient.id, ambient=True)
        return LookupKey("name", ambient.name, (ambient.namespace or None) if namespaced else None, ambient=True)
    what = "id or name/namespace" if namespaced else "id or name"
    raise MisconfiguredArgumentsError(f"cannot use resource without specifying {what}")


async def find_in_collection(
    runtime: Runtime,
    root: Resource,
    collection: str,
    key: LookupKey,
    *,
    type_name: str = "",
) -> Resource:
    """Return the instance of ``root.collection`` matching ``key``."""
    if key.by == "id":
        index = await root.collection_index(collection, by_id)
        matches = index.candidates(key.value)
    elif key.namespace is not None:
        index = await root.collection_index(collection, by_namespaced_name)
        matches = index.candidates((key.namespace, key.value))
    else:
        index = await root.collection_index(collection, by_name)
        matches = index.candidates(key.value)

    if not matches:
        raise NotFoundError(
            f"{type_name or collection} with {key.describe()} not found",
            type_name=type_name,
            key=key.value,
        )
    if len(matches) > 1:
        if runtime.config.strict_identity:
            raise AmbiguousMatchError(
                f"{len(matches)} {type_name or collection} entries match {key.describe()}",
                candidates=len(matches),
            )
        _log.warning(
            "identity_ambiguous_first_match",
            type=type_name,
            key=key.describe(),
            candidates=len(matches),
        )
    return matches[0]


async def init_namespaced_resource(
    runtime: Runtime,
    args: dict[str, Any],
    *,
    collection: str,
    type_name: str = "",
    root_type: str = "k8s",
    passthrough: int = 2,
) -> tuple[dict[str, Any], Resource | None]:
    """``init`` hook body for namespaced objects (pods, secrets, ...)."""
    if len(args) > passthrough:
        return args, None
    key = lookup_key(args, runtime.platform_identity, namespaced=True)
    root = await runtime.create_resource(root_type)
    return args, await find_in_collection(runtime, root, collection, key, type_name=type_name)


async def init_resource(
    runtime: Runtime,
    args: dict[str, Any],
    *,
    collection: str,
    type_name: str = "",
    root_type: str = "k8s",
    passthrough: int = 1,
) -> tuple[dict[str, Any], Resource | None]:
    """``init`` hook body for cluster-scoped objects (nodes, namespaces)."""
    if len(args) > passthrough:
        return args, None
    key = lookup_key(args, runtime.platform_identity, namespaced=False)
    root = await runtime.create_resource(root_type)
    return args, await find_in_collection(runtime, root, collection, key, type_name=type_name)
