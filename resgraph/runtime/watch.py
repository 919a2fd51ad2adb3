"""Lazy watch/invalidation bridge.

Connects external change notifications (a :class:`Watcher`, in practice the
watchdog-backed file watcher of the local OS pack) to the cache of watched
fields.  Each watched field moves through::

    UNWATCHED --first get_field--> WATCHING --last observer leaves--> UNWATCHED

While WATCHING, every change event re-runs the field's compute function.
An unchanged value produces no notification; a changed value is stored in
a new cache generation and observers of the field are triggered once.

Watcher callbacks may arrive on an OS thread.  They are marshalled into the
runtime's event loop with ``loop.call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from resgraph.observability.logging import get_logger
from resgraph.observability.metrics import watch_events_total, watches_active
from resgraph.runtime.cache import CacheEntry
from resgraph.runtime.errors import ResourceError

if TYPE_CHECKING:
    from resgraph.runtime.resource import FieldSpec, Resource
    from resgraph.runtime.runtime import Runtime

_log = get_logger("runtime.watch")


class WatchState(StrEnum):
    UNWATCHED = "unwatched"
    WATCHING = "watching"


class Watcher(Protocol):
    """External change-notification source."""

    def subscribe(self, key: Hashable, callback: Callable[[], None]) -> None: ...

    def unsubscribe(self, key: Hashable, callback: Callable[[], None]) -> None: ...


@dataclass
class _Watch:
    resource: Resource
    spec: FieldSpec
    key: Hashable
    future: asyncio.Future[Any]
    callback: Callable[[], None] = lambda: None
    state: WatchState = WatchState.WATCHING
    refresh_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def _same_outcome(old: CacheEntry, new: CacheEntry) -> bool:
    if old.error is not None or new.error is not None:
        return (
            old.error is not None
            and new.error is not None
            and type(old.error) is type(new.error)
            and str(old.error) == str(new.error)
        )
    return bool(old.data == new.data)


def _consume(fut: asyncio.Future[Any]) -> None:
    if not fut.cancelled():
        fut.exception()


class WatchBridge:
    """Per-field subscriptions to a :class:`Watcher`."""

    def __init__(self, runtime: Runtime, watcher: Watcher) -> None:
        self._runtime = runtime
        self._watcher = watcher
        self._watches: dict[str, _Watch] = {}
        self._refreshes: set[asyncio.Task[None]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None

    def state(self, resource: Resource, field_name: str) -> WatchState:
        w = self._watches.get(resource.field_uid(field_name))
        return w.state if w is not None else WatchState.UNWATCHED

    def watch(self, resource: Resource, spec: FieldSpec) -> asyncio.Future[Any]:
        """Return the future resolving to the field's current value.

        The first call subscribes with the watcher and starts the initial
        read; later calls share the same future until the cached entry goes
        stale, at which point a fresh read is started.
        """
        loop = asyncio.get_running_loop()
        self._loop = loop
        uid = resource.field_uid(spec.name)
        with resource.lock:
            w = self._watches.get(uid)
            if w is not None:
                entry = resource.cache.load(spec.name)
                if not w.future.done() or (entry is not None and entry.is_usable()):
                    return w.future
                w.future = self._new_future(loop)
                self._schedule_refresh(w)
                return w.future

            w = _Watch(resource, spec, resource.watch_key(spec.name), self._new_future(loop))
            w.callback = lambda: self._on_change(uid)
            self._watches[uid] = w

        self._watcher.subscribe(w.key, w.callback)
        self._runtime.observers.on_unwatch(uid, lambda: self.unwatch(uid))
        watches_active.inc()
        _log.debug("watch_subscribed", type=resource.type_name, field=spec.name, key=str(w.key))
        self._schedule_refresh(w)
        return w.future

    def unwatch(self, uid: str) -> None:
        """Release the subscription of ``uid`` and drop its cache entry."""
        w = self._watches.pop(uid, None)
        if w is None:
            return
        w.state = WatchState.UNWATCHED
        self._watcher.unsubscribe(w.key, w.callback)
        w.resource.cache.delete(w.spec.name)
        if not w.future.done():
            w.future.cancel()
        watches_active.dec()
        _log.debug("watch_released", type=w.resource.type_name, field=w.spec.name)

    async def wait_idle(self) -> None:
        """Wait until every scheduled refresh has finished."""
        while self._refreshes:
            await asyncio.gather(*list(self._refreshes), return_exceptions=True)

    async def close(self) -> None:
        for uid in list(self._watches):
            self.unwatch(uid)
        for task in list(self._refreshes):
            task.cancel()
        await self.wait_idle()

    # ------------------------------------------------------------------
    # Change events
    # ------------------------------------------------------------------

    def _on_change(self, uid: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._refresh_uid(uid)
        else:
            loop.call_soon_threadsafe(self._refresh_uid, uid)

    def _refresh_uid(self, uid: str) -> None:
        w = self._watches.get(uid)
        if w is None:
            watch_events_total.labels(outcome="dropped").inc()
            return
        self._schedule_refresh(w)

    def _schedule_refresh(self, w: _Watch) -> None:
        task = asyncio.get_running_loop().create_task(self._refresh(w))
        self._refreshes.add(task)
        task.add_done_callback(self._refreshes.discard)

    async def _refresh(self, w: _Watch) -> None:
        async with w.refresh_lock:
            if w.state is WatchState.UNWATCHED:
                return
            resource, spec = w.resource, w.spec
            try:
                value = await self._runtime.invoke_compute(resource, spec)
            except ResourceError as exc:
                if not exc.cacheable:
                    self._resolve(w, None, exc)
                    watch_events_total.labels(outcome="uncached").inc()
                    return
                new = CacheEntry.failed(exc)
            except Exception as exc:
                new = CacheEntry.failed(exc)
            else:
                new = CacheEntry.ok(value)

            if w.state is WatchState.UNWATCHED:
                return
            old = resource.cache.load(spec.name)
            if old is not None and old.valid and _same_outcome(old, new):
                watch_events_total.labels(outcome="unchanged").inc()
                self._resolve(w, old.data, old.error)
                return

            stored = resource.cache.store_new_generation(spec.name, new)
            watch_events_total.labels(outcome="changed").inc()
            _log.debug(
                "watched_field_updated",
                type=resource.type_name,
                field=spec.name,
                generation=stored.generation,
                error=str(new.error) if new.error is not None else None,
            )
            self._resolve(w, new.data, new.error)
        self._runtime.observers.trigger(resource.field_uid(spec.name))

    @staticmethod
    def _resolve(w: _Watch, value: Any, error: BaseException | None) -> None:
        if w.future.done():
            return
        if error is not None:
            w.future.set_exception(error)
        else:
            w.future.set_result(value)

    @staticmethod
    def _new_future(loop: asyncio.AbstractEventLoop) -> asyncio.Future[Any]:
        fut = loop.create_future()
        fut.add_done_callback(_consume)
        return fut
