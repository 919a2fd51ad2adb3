"""Unit tests for the field computation runtime.

Covers: identity deduplication, at-most-once computation under concurrent
callers, error caching per field class, generation-safe invalidation,
timeouts, the non-blocking read path, observers and shutdown.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter

import pytest

from resgraph.models.config import RuntimeConfig
from resgraph.runtime.errors import (
    MisconfiguredArgumentsError,
    NotReadyError,
    TransientIOError,
    UnknownFieldError,
    UnknownResourceError,
)
from resgraph.runtime.resource import FieldClass, Resource, ResourceRegistry, computed
from resgraph.runtime.runtime import Runtime

CALLS: Counter[str] = Counter()


class Widget(Resource):
    type_name = "test.widget"
    arguments = frozenset({"id", "name"})

    @computed
    async def value(self) -> int:
        CALLS["value"] += 1
        await asyncio.sleep(0.01)
        return 42

    @computed
    def doubled(self) -> int:
        CALLS["doubled"] += 1
        return len(self.arg("name", "")) * 2

    @computed
    async def broken(self) -> int:
        CALLS["broken"] += 1
        raise TransientIOError("vendor call failed")

    @computed(field_class=FieldClass.TRANSIENT)
    async def flaky(self) -> int:
        CALLS["flaky"] += 1
        raise TransientIOError("network down")

    @computed
    async def misconfigured(self) -> int:
        CALLS["misconfigured"] += 1
        raise MisconfiguredArgumentsError("cannot compute without a name")

    @computed
    async def slow(self) -> str:
        CALLS["slow"] += 1
        await asyncio.sleep(0.2)
        return "done"

    @computed
    def blocking(self) -> str:
        CALLS["blocking"] += 1
        time.sleep(0.5)
        return "done"

    @computed
    async def hung(self) -> None:
        await asyncio.sleep(10)

    @computed
    async def gated(self) -> int:
        CALLS["gated"] += 1
        await self.internal.wait()
        return CALLS["gated"]

    @computed
    async def stats(self) -> dict[str, int]:
        CALLS["stats"] += 1
        self.cache_sibling("size", 7)
        return {"mode": 0o644}

    @computed
    async def size(self) -> int:
        CALLS["size"] += 1
        return -1


class Other(Resource):
    type_name = "test.widget"


@pytest.fixture(autouse=True)
def _reset_calls() -> None:
    CALLS.clear()


def _runtime(**config: float) -> Runtime:
    registry = ResourceRegistry()
    registry.register(Widget)
    return Runtime(registry, RuntimeConfig(**config))


# ---------------------------------------------------------------------------
# Registry and identity
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_duplicate_type_name_rejected(self) -> None:
        registry = ResourceRegistry()
        registry.register(Widget)
        registry.register(Widget)
        with pytest.raises(ValueError):
            registry.register(Other)

    def test_unknown_type(self) -> None:
        with pytest.raises(UnknownResourceError, match="cannot find resource 'nope'"):
            ResourceRegistry().lookup("nope")

    def test_field_names_include_arguments(self) -> None:
        names = Widget.field_names()
        assert "id" in names
        assert "value" in names
        assert "size" in names


class TestCreateResource:
    async def test_same_identity_returns_same_instance(self) -> None:
        rt = _runtime()
        first = await rt.create_resource("test.widget", {"id": "w1", "name": "a"})
        second = await rt.create_resource("test.widget", {"id": "w1", "name": "a"})
        assert first is second
        assert len(rt) == 1

    async def test_different_identity_returns_new_instance(self) -> None:
        rt = _runtime()
        first = await rt.create_resource("test.widget", {"id": "w1"})
        second = await rt.create_resource("test.widget", {"id": "w2"})
        assert first is not second

    async def test_relisting_with_new_args_refreshes_canonical_instance(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1", "name": "a"})
        assert await w.get("doubled") == 2
        again = await rt.create_resource("test.widget", {"id": "w1", "name": "abc"})
        assert again is w
        assert await w.get("name") == "abc"
        assert await w.get("doubled") == 6
        assert CALLS["doubled"] == 2

    async def test_unknown_argument_rejected(self) -> None:
        rt = _runtime()
        with pytest.raises(MisconfiguredArgumentsError):
            await rt.create_resource("test.widget", {"bogus": "x"})

    async def test_unknown_type_rejected(self) -> None:
        rt = _runtime()
        with pytest.raises(UnknownResourceError):
            await rt.create_resource("test.nope")

    async def test_internal_attached_before_publish(self) -> None:
        rt = _runtime()
        payload = {"raw": True}
        w = await rt.create_resource("test.widget", {"id": "w1"}, internal=payload)
        assert w.internal is payload
        assert rt.lookup_resource("test.widget", "w1") is w

    async def test_attach_internal_twice_raises(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"}, internal={"raw": 1})
        with pytest.raises(RuntimeError):
            w.attach_internal({"raw": 2})


# ---------------------------------------------------------------------------
# Field computation
# ---------------------------------------------------------------------------


class TestGetField:
    async def test_arguments_are_fields(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        assert await w.get("id") == "w1"
        assert await w.get("name") is None

    async def test_unknown_field(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        with pytest.raises(UnknownFieldError):
            await w.get("nope")

    async def test_sync_compute_function(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1", "name": "abc"})
        assert await w.get("doubled") == 6

    async def test_concurrent_callers_share_one_computation(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        results = await asyncio.gather(*(w.get("value") for _ in range(25)))
        assert results == [42] * 25
        assert CALLS["value"] == 1

    async def test_cached_value_not_recomputed(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        await w.get("value")
        await w.get("value")
        assert CALLS["value"] == 1

    async def test_static_error_is_cached(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        for _ in range(3):
            with pytest.raises(TransientIOError, match="vendor call failed"):
                await w.get("broken")
        assert CALLS["broken"] == 1

    async def test_transient_error_expires_after_ttl(self) -> None:
        rt = _runtime(transient_error_ttl=0)
        w = await rt.create_resource("test.widget", {"id": "w1"})
        for _ in range(3):
            with pytest.raises(TransientIOError):
                await w.get("flaky")
        assert CALLS["flaky"] == 3

    async def test_transient_error_cached_within_ttl(self) -> None:
        rt = _runtime(transient_error_ttl=300)
        w = await rt.create_resource("test.widget", {"id": "w1"})
        for _ in range(3):
            with pytest.raises(TransientIOError):
                await w.get("flaky")
        assert CALLS["flaky"] == 1

    async def test_misconfiguration_is_never_cached(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        for _ in range(2):
            with pytest.raises(MisconfiguredArgumentsError):
                await w.get("misconfigured")
        assert CALLS["misconfigured"] == 2
        assert w.cache.load("misconfigured") is None

    async def test_invalidate_forces_recompute(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        await w.get("value")
        rt.invalidate(w, "value")
        assert await w.get("value") == 42
        assert CALLS["value"] == 2

    async def test_arguments_cannot_be_invalidated(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1", "name": "abc"})
        with pytest.raises(MisconfiguredArgumentsError, match="argument"):
            rt.invalidate(w, "name")
        assert await w.get("name") == "abc"

    async def test_result_from_older_generation_is_discarded(self) -> None:
        rt = _runtime()
        gate = asyncio.Event()
        w = await rt.create_resource("test.widget", {"id": "w1"}, internal=gate)
        first = asyncio.create_task(w.get("gated"))
        await asyncio.sleep(0)
        rt.invalidate(w, "gated")
        gate.set()
        assert await first == 1
        assert w.cache.load("gated") is None
        assert await w.get("gated") == 2

    async def test_sibling_entry_is_populated(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        await w.get("stats")
        assert await w.get("size") == 7
        assert CALLS["size"] == 0


class TestTimeouts:
    async def test_compute_timeout_becomes_transient_error(self) -> None:
        rt = _runtime(compute_timeout=0.05)
        w = await rt.create_resource("test.widget", {"id": "w1"})
        with pytest.raises(TransientIOError, match="timed out"):
            await w.get("hung")

    async def test_blocking_sync_compute_is_bounded(self) -> None:
        rt = _runtime(compute_timeout=0.05)
        w = await rt.create_resource("test.widget", {"id": "w1"})
        ticks: list[int] = []

        async def ticker() -> None:
            for i in range(3):
                await asyncio.sleep(0.01)
                ticks.append(i)

        started = time.monotonic()
        tick_task = asyncio.create_task(ticker())
        with pytest.raises(TransientIOError, match="timed out"):
            await w.get("blocking")
        assert time.monotonic() - started < 0.4
        await tick_task
        assert ticks == [0, 1, 2]

    async def test_sync_compute_value(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1", "name": "abc"})
        assert await w.get("doubled") == 6

    async def test_caller_timeout_does_not_cancel_shared_computation(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        with pytest.raises(TimeoutError):
            await rt.get_field(w, "slow", timeout=0.01)
        assert await w.get("slow") == "done"
        assert CALLS["slow"] == 1


# ---------------------------------------------------------------------------
# Non-blocking reads and observers
# ---------------------------------------------------------------------------


class TestNowait:
    async def test_not_ready_then_value(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        notes: list[int] = []
        rt.observers.watch(w.field_uid("value"), "q1", lambda: notes.append(1))

        with pytest.raises(NotReadyError):
            rt.get_field_nowait(w, "value")
        with pytest.raises(NotReadyError):
            rt.get_field_nowait(w, "value")
        await asyncio.sleep(0.05)

        assert rt.get_field_nowait(w, "value") == 42
        assert notes == [1]
        assert CALLS["value"] == 1

    async def test_uncached_failure_notifies_and_surfaces_once(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        notes: list[int] = []
        rt.observers.watch(w.field_uid("misconfigured"), "q1", lambda: notes.append(1))

        with pytest.raises(NotReadyError):
            rt.get_field_nowait(w, "misconfigured")
        await asyncio.sleep(0.05)
        assert notes == [1]

        with pytest.raises(MisconfiguredArgumentsError, match="without a name"):
            rt.get_field_nowait(w, "misconfigured")
        # The failure is not cached: the next read computes again.
        with pytest.raises(NotReadyError):
            rt.get_field_nowait(w, "misconfigured")
        await asyncio.sleep(0.05)
        assert CALLS["misconfigured"] == 2
        assert notes == [1, 1]


class TestObservers:
    async def test_watch_and_update_delivers_once_per_value(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        seen: list[tuple[object, object]] = []
        await rt.watch_and_update(w, "value", "q1", lambda v, e: seen.append((v, e)))
        assert seen == [(42, None)]

        rt.invalidate(w, "value")
        await w.get("value")
        assert seen == [(42, None), (42, None)]

        rt.unregister("q1")
        rt.invalidate(w, "value")
        await w.get("value")
        assert len(seen) == 2

    async def test_watch_and_update_with_cached_value(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        await w.get("value")
        seen: list[tuple[object, object]] = []
        await rt.watch_and_update(w, "value", "q1", lambda v, e: seen.append((v, e)))
        assert seen == [(42, None)]

    async def test_watch_and_update_delivers_errors(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        seen: list[tuple[object, object]] = []
        await rt.watch_and_update(w, "broken", "q1", lambda v, e: seen.append((v, e)))
        assert len(seen) == 1
        assert isinstance(seen[0][1], TransientIOError)

    async def test_watch_and_compute_reruns_on_change(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        runs: list[str] = []
        rt.watch_and_compute(w, "value", "q1", lambda: runs.append("run"))
        await w.get("value")
        assert runs == ["run"]
        assert rt.trigger(w, "value") == 1
        assert runs == ["run", "run"]


class TestClose:
    async def test_close_cancels_inflight_work(self) -> None:
        rt = _runtime()
        w = await rt.create_resource("test.widget", {"id": "w1"})
        with pytest.raises(NotReadyError):
            rt.get_field_nowait(w, "hung")
        await asyncio.sleep(0)
        assert "hung" in w.inflight
        await rt.close()
        assert w.inflight == {}
        with pytest.raises(RuntimeError):
            await rt.create_resource("test.widget", {"id": "w2"})
