"""Typed collection indexes.

A :class:`CollectionIndex` maps a derived key (id, name, or
namespace+name) to the resource instances of one collection field.  It is
owned by the resource exposing the collection (for example the ``k8s``
root resource owns the index over its ``pods``) and is tagged with the
cache generation of the collection value it was built from.  Whenever the
collection field moves to a new generation the index is rebuilt.

Builds are all-or-nothing: the new mapping is assembled locally and swapped
in with a single assignment, so a reader never observes a partial index.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable
from typing import TYPE_CHECKING, Generic, TypeVar

from resgraph.runtime.errors import AmbiguousMatchError

if TYPE_CHECKING:
    from resgraph.runtime.resource import Resource

K = TypeVar("K", bound=Hashable)
R = TypeVar("R", bound="Resource")

_UNBUILT = -1


class CollectionIndex(Generic[K, R]):
    """Key -> instances mapping over one collection value."""

    def __init__(self, key_fn: Callable[[R], K]) -> None:
        self._key_fn = key_fn
        self._entries: dict[K, list[R]] = {}
        self._generation = _UNBUILT
        self._size = 0

    def build(self, items: Iterable[R], generation: int) -> None:
        """Replace the index contents with ``items``."""
        entries: dict[K, list[R]] = {}
        size = 0
        for item in items:
            entries.setdefault(self._key_fn(item), []).append(item)
            size += 1
        # single swap, see module docstring
        self._entries, self._generation, self._size = entries, generation, size

    def is_current(self, generation: int) -> bool:
        return self._generation != _UNBUILT and self._generation == generation

    @property
    def generation(self) -> int:
        return self._generation

    def candidates(self, key: K) -> list[R]:
        """Return every instance indexed under ``key``, in collection order."""
        return list(self._entries.get(key, ()))

    def first(self, key: K) -> R | None:
        """Return the first instance indexed under ``key`` or None."""
        found = self._entries.get(key)
        return found[0] if found else None

    def one(self, key: K) -> R | None:
        """Return the single instance under ``key``; raise if there are several."""
        found = self._entries.get(key)
        if not found:
            return None
        if len(found) > 1:
            raise AmbiguousMatchError(
                f"more than one entry matches {key!r}, this is unexpected",
                candidates=len(found),
            )
        return found[0]

    def __len__(self) -> int:
        return self._size

    def __contains__(self, key: object) -> bool:
        return key in self._entries


# ---------------------------------------------------------------------------
# Common key functions
# ---------------------------------------------------------------------------


def by_id(resource: Resource) -> str:
    return str(resource.arg("id") or "")


def by_name(resource: Resource) -> str:
    return str(resource.arg("name") or "")


def by_namespaced_name(resource: Resource) -> tuple[str, str]:
    return (str(resource.arg("namespace") or ""), str(resource.arg("name") or ""))
