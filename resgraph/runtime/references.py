"""Cross-resource references.

Relationships such as pod -> node or ingress -> secret are resolved through
the owning collection that the root resource has already listed, never by a
point lookup against the vendor API.  This keeps the result consistent with
the listing and works for offline manifests.  Each call is one bounded
lookup; nothing is followed transitively.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable
from typing import Any

from resgraph.runtime.collection import by_name
from resgraph.runtime.resource import Resource


async def resolve_reference(
    owner: Resource,
    collection: str,
    key: Hashable,
    *,
    key_fn: Callable[[Any], Hashable] = by_name,
) -> Resource | None:
    """Return the entry of ``owner.collection`` whose key equals ``key``, or None."""
    if key is None or key == "":
        return None
    index = await owner.collection_index(collection, key_fn)
    return index.first(key)


async def resolve_references(
    owner: Resource,
    collection: str,
    keys: Iterable[Hashable],
    *,
    key_fn: Callable[[Any], Hashable] = by_name,
) -> list[Resource]:
    """Resolve several keys, skipping the ones that are absent."""
    index = await owner.collection_index(collection, key_fn)
    resolved = []
    for key in keys:
        found = index.first(key)
        if found is not None:
            resolved.append(found)
    return resolved
