"""Unit tests for the watch/invalidation bridge."""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable, Hashable

import pytest

from resgraph.runtime.errors import MisconfiguredArgumentsError, NotFoundError, NotReadyError
from resgraph.runtime.resource import Resource, ResourceRegistry, computed
from resgraph.runtime.runtime import Runtime
from resgraph.runtime.watch import WatchState

READS: Counter[str] = Counter()


class FakeWatcher:
    """Records subscriptions and fires them on demand."""

    def __init__(self) -> None:
        self.subs: dict[Hashable, list[Callable[[], None]]] = {}

    def subscribe(self, key: Hashable, callback: Callable[[], None]) -> None:
        self.subs.setdefault(key, []).append(callback)

    def unsubscribe(self, key: Hashable, callback: Callable[[], None]) -> None:
        callbacks = self.subs.get(key, [])
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            self.subs.pop(key, None)

    def fire(self, key: Hashable) -> None:
        for callback in list(self.subs.get(key, [])):
            callback()


class Source(Resource):
    type_name = "test.source"
    arguments = frozenset({"key"})

    def watch_key(self, field: str) -> Hashable:
        return self.arg("key")

    @computed(watched=True)
    async def value(self) -> str:
        READS["value"] += 1
        store = self.runtime.connection("store")
        key = self.arg("key")
        if key not in store:
            raise NotFoundError(f"key '{key}' not found", type_name=self.type_name, key=key)
        return store[key]


@pytest.fixture(autouse=True)
def _reset_reads() -> None:
    READS.clear()


def _runtime(store: dict[str, str], watcher: FakeWatcher | None = None) -> Runtime:
    registry = ResourceRegistry()
    registry.register(Source)
    return Runtime(registry, connections={"store": store}, watcher=watcher)


async def _source(rt: Runtime, key: str = "a") -> Resource:
    return await rt.create_resource("test.source", {"key": key})


class TestWatchedField:
    async def test_first_read_subscribes(self) -> None:
        watcher = FakeWatcher()
        rt = _runtime({"a": "v1"}, watcher)
        src = await _source(rt)
        assert rt.watch_bridge is not None
        assert rt.watch_bridge.state(src, "value") is WatchState.UNWATCHED

        assert await src.get("value") == "v1"
        assert rt.watch_bridge.state(src, "value") is WatchState.WATCHING
        assert list(watcher.subs) == ["a"]

    async def test_concurrent_reads_share_one_read(self) -> None:
        rt = _runtime({"a": "v1"}, FakeWatcher())
        src = await _source(rt)
        results = await asyncio.gather(*(src.get("value") for _ in range(10)))
        assert results == ["v1"] * 10
        assert READS["value"] == 1

    async def test_change_event_updates_value_and_notifies_once(self) -> None:
        store = {"a": "v1"}
        watcher = FakeWatcher()
        rt = _runtime(store, watcher)
        src = await _source(rt)
        seen: list[object] = []
        await rt.watch_and_update(src, "value", "q1", lambda v, e: seen.append(v))
        assert seen == ["v1"]

        store["a"] = "v2"
        watcher.fire("a")
        await rt.watch_bridge.wait_idle()

        assert seen == ["v1", "v2"]
        assert await src.get("value") == "v2"

    async def test_unchanged_value_does_not_notify(self) -> None:
        watcher = FakeWatcher()
        rt = _runtime({"a": "v1"}, watcher)
        src = await _source(rt)
        seen: list[object] = []
        await rt.watch_and_update(src, "value", "q1", lambda v, e: seen.append(v))
        generation = src.cache.generation("value")

        watcher.fire("a")
        await rt.watch_bridge.wait_idle()

        assert seen == ["v1"]
        assert READS["value"] == 2
        assert src.cache.generation("value") == generation

    async def test_missing_source_then_created(self) -> None:
        store: dict[str, str] = {}
        watcher = FakeWatcher()
        rt = _runtime(store, watcher)
        src = await _source(rt)
        seen: list[tuple[object, object]] = []
        await rt.watch_and_update(src, "value", "q1", lambda v, e: seen.append((v, e)))
        assert len(seen) == 1
        assert isinstance(seen[0][1], NotFoundError)
        with pytest.raises(NotFoundError):
            await src.get("value")

        store["a"] = "v1"
        watcher.fire("a")
        await rt.watch_bridge.wait_idle()

        assert seen[-1] == ("v1", None)
        assert await src.get("value") == "v1"

    async def test_event_from_another_thread(self) -> None:
        store = {"a": "v1"}
        watcher = FakeWatcher()
        rt = _runtime(store, watcher)
        src = await _source(rt)
        assert await src.get("value") == "v1"

        store["a"] = "v2"
        await asyncio.to_thread(watcher.fire, "a")
        await asyncio.sleep(0)
        await rt.watch_bridge.wait_idle()

        assert await src.get("value") == "v2"

    async def test_nowait_read_of_watched_field(self) -> None:
        rt = _runtime({"a": "v1"}, FakeWatcher())
        src = await _source(rt)
        with pytest.raises(NotReadyError):
            rt.get_field_nowait(src, "value")
        await rt.watch_bridge.wait_idle()
        assert rt.get_field_nowait(src, "value") == "v1"


class TestRelease:
    async def test_last_observer_leaving_releases_subscription(self) -> None:
        watcher = FakeWatcher()
        rt = _runtime({"a": "v1"}, watcher)
        src = await _source(rt)
        await rt.watch_and_update(src, "value", "q1", lambda v, e: None)
        await rt.watch_and_update(src, "value", "q2", lambda v, e: None)

        rt.unregister("q1")
        assert "a" in watcher.subs

        rt.unregister("q2")
        assert watcher.subs == {}
        assert src.cache.load("value") is None
        assert rt.watch_bridge.state(src, "value") is WatchState.UNWATCHED

    async def test_rewatch_after_release(self) -> None:
        store = {"a": "v1"}
        watcher = FakeWatcher()
        rt = _runtime(store, watcher)
        src = await _source(rt)
        await rt.watch_and_update(src, "value", "q1", lambda v, e: None)
        rt.unregister("q1")

        store["a"] = "v2"
        assert await src.get("value") == "v2"
        assert list(watcher.subs) == ["a"]

    async def test_close_releases_every_watch(self) -> None:
        watcher = FakeWatcher()
        rt = _runtime({"a": "v1", "b": "v2"}, watcher)
        await (await _source(rt, "a")).get("value")
        await (await _source(rt, "b")).get("value")
        assert len(watcher.subs) == 2
        await rt.close()
        assert watcher.subs == {}


class TestWithoutWatcher:
    async def test_watched_field_needs_a_watcher(self) -> None:
        rt = _runtime({"a": "v1"})
        src = await _source(rt)
        with pytest.raises(MisconfiguredArgumentsError, match="needs a watcher"):
            await src.get("value")
