"""Field computation runtime.

The :class:`Runtime` owns the resource registry of one scan session.  It

* finds or constructs resource instances (:meth:`Runtime.create_resource`),
  deduplicating them on ``(type_name, identity_key)``;
* computes fields lazily and at most once per cache generation
  (:meth:`Runtime.get_field`), sharing one task between concurrent callers;
* notifies observers when a field value lands (:meth:`Runtime.trigger`,
  :meth:`Runtime.watch_and_update`);
* routes watched fields through the :class:`~resgraph.runtime.watch.WatchBridge`.

The runtime is bound to the event loop it is first used from.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Callable, Mapping
from typing import Any

from resgraph.models.config import RuntimeConfig
from resgraph.observability.logging import get_logger
from resgraph.observability.metrics import (
    field_cache_hits_total,
    field_computations_total,
    resources_created_total,
    resources_deduplicated_total,
    resources_registered,
)
from resgraph.runtime.cache import CacheEntry
from resgraph.runtime.errors import (
    MisconfiguredArgumentsError,
    NotReadyError,
    ResourceError,
    TransientIOError,
)
from resgraph.runtime.identity import PlatformIdentity
from resgraph.runtime.observers import Observers
from resgraph.runtime.resource import FieldClass, FieldSpec, Resource, ResourceRegistry
from resgraph.runtime.watch import WatchBridge, Watcher

_log = get_logger("runtime")


class Runtime:
    """Resource registry and lazy field evaluator for one session."""

    def __init__(
        self,
        registry: ResourceRegistry,
        config: RuntimeConfig | None = None,
        *,
        connections: Mapping[str, Any] | None = None,
        platform_identity: PlatformIdentity | None = None,
        watcher: Watcher | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or RuntimeConfig()
        self.platform_identity = platform_identity
        self.observers = Observers()
        self.watch_bridge = WatchBridge(self, watcher) if watcher is not None else None
        self._connections = dict(connections or {})
        self._resources: dict[tuple[str, str], Resource] = {}
        self._resources_lock = threading.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def create_resource(
        self,
        type_name: str,
        args: Mapping[str, Any] | None = None,
        *,
        internal: Any = None,
    ) -> Resource:
        """Return the canonical instance of ``type_name`` for ``args``.

        ``internal`` is the vendor payload; it is attached before the new
        instance becomes visible in the registry.  Raises NotFoundError when
        the type's ``init`` hook finds no matching object.
        """
        if self._closed:
            raise RuntimeError("runtime is closed")
        cls = self.registry.lookup(type_name)
        arguments = dict(args or {})
        cls.validate_args(arguments)

        arguments, existing = await cls.init(self, arguments)
        if existing is not None:
            resources_deduplicated_total.labels(type=type_name).inc()
            return existing

        resource = cls(self, arguments)
        if internal is not None:
            resource.attach_internal(internal)

        key = (cls.type_name, resource.identity_key())
        with self._resources_lock:
            current = self._resources.get(key)
            if current is None:
                self._resources[key] = resource
                resources_registered.set(len(self._resources))

        if current is not None:
            resources_deduplicated_total.labels(type=type_name).inc()
            if current.refresh(arguments, internal):
                _log.debug("resource_refreshed", type=type_name, key=key[1])
            return current

        resources_created_total.labels(type=type_name).inc()
        _log.debug("resource_created", type=type_name, key=key[1])
        return resource

    def lookup_resource(self, type_name: str, identity_key: str) -> Resource | None:
        with self._resources_lock:
            return self._resources.get((type_name, identity_key))

    def connection(self, name: str) -> Any:
        try:
            return self._connections[name]
        except KeyError:
            raise MisconfiguredArgumentsError(f"no '{name}' connection is configured") from None

    def __len__(self) -> int:
        with self._resources_lock:
            return len(self._resources)

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    async def get_field(self, resource: Resource, name: str, *, timeout: float | None = None) -> Any:
        """Return the value of field ``name``, computing it if needed.

        A cached error is re-raised.  Cancelling the caller (or hitting
        ``timeout``) does not cancel the shared computation.
        """
        spec = resource.field_spec(name)
        entry = resource.cache.load(name)
        if entry is not None and entry.is_usable():
            field_cache_hits_total.labels(type=resource.type_name).inc()
            return entry.unwrap()
        if spec is None:
            return None

        fut = self._watch(resource, spec) if spec.watched else self._schedule(resource, spec)
        return await asyncio.wait_for(asyncio.shield(fut), timeout)

    def get_field_nowait(self, resource: Resource, name: str) -> Any:
        """Non-blocking read.

        Returns the cached value (or raises the cached error).  Otherwise the
        computation is started and NotReadyError is raised; observers of the
        field are triggered once the value lands.
        """
        spec = resource.field_spec(name)
        entry = resource.cache.load(name)
        if entry is not None and entry.is_usable():
            field_cache_hits_total.labels(type=resource.type_name).inc()
            return entry.unwrap()
        if spec is None:
            return None
        with resource.lock:
            failed = resource.failed.pop(name, None)
        if failed is not None:
            raise failed
        if spec.watched:
            self._watch(resource, spec)
        else:
            self._schedule(resource, spec)
        raise NotReadyError(resource.field_uid(name))

    def invalidate(self, resource: Resource, name: str) -> None:
        """Start a new generation for ``name``; the next read recomputes.

        Arguments are not computed and cannot be invalidated.
        """
        if resource.field_spec(name) is None:
            raise MisconfiguredArgumentsError(
                f"'{name}' is an argument of {resource.type_name} and cannot be invalidated"
            )
        with resource.lock:
            resource.cache.invalidate(name)
            resource.inflight.pop(name, None)
            resource.failed.pop(name, None)
        _log.debug("field_invalidated", type=resource.type_name, field=name)

    async def invoke_compute(self, resource: Resource, spec: FieldSpec) -> Any:
        """Run the compute function of ``spec`` bounded by the compute timeout.

        Sync compute functions run in a worker thread so a blocking call
        cannot stall the event loop.
        """
        timeout = self.config.compute_timeout
        if inspect.iscoroutinefunction(spec.func):
            pending = spec.func(resource)
        else:
            pending = asyncio.to_thread(spec.func, resource)
        try:
            result = await asyncio.wait_for(pending, timeout)
        except TimeoutError as exc:
            raise TransientIOError(
                f"computing {resource.type_name}.{spec.name} timed out after {timeout}s",
                cause=exc,
            ) from exc
        return result

    def _schedule(self, resource: Resource, spec: FieldSpec) -> asyncio.Future[Any]:
        loop = asyncio.get_running_loop()
        with resource.lock:
            task = resource.inflight.get(spec.name)
            if task is not None:
                return task
            # A computation that finished between the caller's cache check
            # and now has already stored its entry.
            entry = resource.cache.load(spec.name)
            if entry is not None and entry.is_usable():
                fut = loop.create_future()
                if entry.error is not None:
                    fut.set_exception(entry.error)
                else:
                    fut.set_result(entry.data)
                fut.add_done_callback(_consume_exception)
                return fut

            resource.failed.pop(spec.name, None)
            generation = resource.cache.generation(spec.name)
            task = loop.create_task(
                self._compute(resource, spec, generation),
                name=f"{resource.type_name}.{spec.name}",
            )
            resource.inflight[spec.name] = task
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def _compute(self, resource: Resource, spec: FieldSpec, generation: int) -> Any:
        me = asyncio.current_task()
        labels = {"type": resource.type_name}
        try:
            try:
                value = await self.invoke_compute(resource, spec)
            except ResourceError as exc:
                if not exc.cacheable:
                    field_computations_total.labels(**labels, outcome="uncached").inc()
                    with resource.lock:
                        if resource.inflight.get(spec.name) is me:
                            resource.failed[spec.name] = exc
                    self.observers.trigger(resource.field_uid(spec.name))
                    raise
                entry = CacheEntry.failed(exc, generation, self._error_ttl(spec))
            except Exception as exc:
                entry = CacheEntry.failed(exc, generation, self._error_ttl(spec))
            else:
                entry = CacheEntry.ok(value, generation)
            stored = resource.cache.store_if_current(spec.name, entry)
        finally:
            with resource.lock:
                if resource.inflight.get(spec.name) is me:
                    del resource.inflight[spec.name]

        if not stored:
            field_computations_total.labels(**labels, outcome="discarded").inc()
            _log.debug("field_result_discarded", type=resource.type_name, field=spec.name)
            return entry.unwrap()

        outcome = "ok" if entry.error is None else "error"
        field_computations_total.labels(**labels, outcome=outcome).inc()
        _log.debug(
            "field_computed",
            type=resource.type_name,
            field=spec.name,
            outcome=outcome,
            error=str(entry.error) if entry.error is not None else None,
        )
        self.observers.trigger(resource.field_uid(spec.name))
        return entry.unwrap()

    def _error_ttl(self, spec: FieldSpec) -> float | None:
        if spec.field_class is FieldClass.TRANSIENT:
            return float(self.config.transient_error_ttl)
        return None

    def _watch(self, resource: Resource, spec: FieldSpec) -> asyncio.Future[Any]:
        if self.watch_bridge is None:
            raise MisconfiguredArgumentsError(
                f"{resource.type_name}.{spec.name} needs a watcher but none is configured"
            )
        return self.watch_bridge.watch(resource, spec)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        _consume_exception(task)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def trigger(self, resource: Resource, name: str) -> int:
        """Notify the observers of ``resource.name``."""
        return self.observers.trigger(resource.field_uid(name))

    async def watch_and_update(
        self,
        resource: Resource,
        name: str,
        watcher_uid: str,
        callback: Callable[[Any, BaseException | None], None],
    ) -> None:
        """Call ``callback(value, error)`` with the current value and on every change."""
        resource.field_spec(name)

        def notify() -> None:
            entry = resource.cache.load(name)
            if entry is not None and entry.valid:
                callback(entry.data, entry.error)

        self.observers.watch(resource.field_uid(name), watcher_uid, notify)
        entry = resource.cache.load(name)
        if entry is not None and entry.is_usable():
            callback(entry.data, entry.error)
            return
        try:
            await self.get_field(resource, name)
        except Exception as exc:
            # Stored errors reach the callback through the trigger.
            if isinstance(exc, ResourceError) and not exc.cacheable:
                callback(None, exc)

    def watch_and_compute(
        self,
        resource: Resource,
        name: str,
        watcher_uid: str,
        compute: Callable[[], Any],
    ) -> None:
        """Re-run ``compute`` whenever ``resource.name`` changes.

        ``compute`` may return an awaitable; it is then scheduled as a task.
        """
        resource.field_spec(name)

        def run() -> None:
            result = compute()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

        self.observers.watch(resource.field_uid(name), watcher_uid, run)
        entry = resource.cache.load(name)
        if entry is not None and entry.is_usable():
            run()
            return
        try:
            self.get_field_nowait(resource, name)
        except NotReadyError:
            pass

    def unregister(self, watcher_uid: str) -> None:
        """Remove every observer registered by ``watcher_uid``."""
        self.observers.unwatch_all(watcher_uid)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Cancel in-flight work, release watches and close connections."""
        if self._closed:
            return
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self.watch_bridge is not None:
            await self.watch_bridge.close()
        for name, conn in self._connections.items():
            close = getattr(conn, "close", None)
            if close is None:
                continue
            try:
                result = close()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _log.exception("connection_close_failed", connection=name)
        _log.info("runtime_closed", resources=len(self._resources))


def _consume_exception(fut: asyncio.Future[Any]) -> None:
    if not fut.cancelled():
        fut.exception()
