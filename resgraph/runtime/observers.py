"""Field observers.

Observers are keyed by field uid (see :meth:`Resource.field_uid`) and by a
watcher uid chosen by the query engine.  :meth:`Observers.trigger` runs
every callback registered for a field; :meth:`Observers.unwatch_all`
removes every registration of one watcher and fires the ``on_unwatch``
hooks of fields that are left without observers.
"""

from __future__ import annotations

import threading
from collections.abc import Callable

from resgraph.observability.logging import get_logger

_log = get_logger("observers")


class Observers:
    """Thread-safe field uid -> {watcher uid: callback} table."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: dict[str, dict[str, Callable[[], None]]] = {}
        self._by_watcher: dict[str, set[str]] = {}
        self._unwatch_hooks: dict[str, list[Callable[[], None]]] = {}

    def watch(self, field_uid: str, watcher_uid: str, callback: Callable[[], None]) -> tuple[bool, bool]:
        """Register ``callback`` for ``field_uid``.

        Returns ``(is_initial, exists)``: whether this watcher was new for the
        field, and whether the field already had other observers.
        """
        with self._lock:
            callbacks = self._callbacks.setdefault(field_uid, {})
            exists = bool(callbacks)
            is_initial = watcher_uid not in callbacks
            callbacks[watcher_uid] = callback
            self._by_watcher.setdefault(watcher_uid, set()).add(field_uid)
        return is_initial, exists

    def on_unwatch(self, field_uid: str, hook: Callable[[], None]) -> None:
        """Run ``hook`` once, when the last observer of ``field_uid`` leaves."""
        with self._lock:
            self._unwatch_hooks.setdefault(field_uid, []).append(hook)

    def unwatch(self, field_uid: str, watcher_uid: str) -> None:
        hooks: list[Callable[[], None]] = []
        with self._lock:
            hooks = self._remove(field_uid, watcher_uid)
            fields = self._by_watcher.get(watcher_uid)
            if fields is not None:
                fields.discard(field_uid)
                if not fields:
                    del self._by_watcher[watcher_uid]
        self._run_hooks(hooks)

    def unwatch_all(self, watcher_uid: str) -> None:
        """Drop every registration of ``watcher_uid``."""
        hooks: list[Callable[[], None]] = []
        with self._lock:
            for field_uid in self._by_watcher.pop(watcher_uid, set()):
                hooks.extend(self._remove(field_uid, watcher_uid))
        self._run_hooks(hooks)

    def trigger(self, field_uid: str) -> int:
        """Run the callbacks of ``field_uid`` and return how many ran.

        Callbacks run outside the table lock; a failing callback is logged
        and does not stop the others.
        """
        with self._lock:
            callbacks = list(self._callbacks.get(field_uid, {}).items())
        for watcher_uid, callback in callbacks:
            try:
                callback()
            except Exception:
                _log.exception("observer_callback_failed", field=field_uid, watcher=watcher_uid)
        return len(callbacks)

    def watcher_count(self, field_uid: str) -> int:
        with self._lock:
            return len(self._callbacks.get(field_uid, {}))

    def _remove(self, field_uid: str, watcher_uid: str) -> list[Callable[[], None]]:
        callbacks = self._callbacks.get(field_uid)
        if callbacks is None or callbacks.pop(watcher_uid, None) is None:
            return []
        if callbacks:
            return []
        del self._callbacks[field_uid]
        return self._unwatch_hooks.pop(field_uid, [])

    @staticmethod
    def _run_hooks(hooks: list[Callable[[], None]]) -> None:
        for hook in hooks:
            try:
                hook()
            except Exception:
                _log.exception("unwatch_hook_failed")
