"""watchdog-backed file watcher.

Subscriptions are per file path.  The watcher schedules the *parent
directory* of each watched file (non-recursively) so that creation and
deletion of the file itself are reported too; directories are reference
counted and unscheduled when their last file subscription goes away.

Callbacks run on watchdog's observer thread.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Hashable
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from resgraph.observability.logging import get_logger

_log = get_logger("os.watcher")

# Events that do not change file content or metadata.
_IGNORED_EVENTS = frozenset({"opened", "closed_no_write"})


def _decode_if_necessary(v: str | bytes, encoding: str = "utf-8") -> str:
    return v if isinstance(v, str) else v.decode(encoding)


class _DirectoryHandler(FileSystemEventHandler):
    def __init__(self, watcher: FileWatcher) -> None:
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _IGNORED_EVENTS:
            return
        for path in (event.src_path, getattr(event, "dest_path", "")):
            if path:
                self._watcher.dispatch(_decode_if_necessary(path))


class FileWatcher:
    """Path -> callbacks subscriptions on top of one watchdog observer."""

    def __init__(self, observer_factory: Callable[[], Any] = Observer) -> None:
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._handler = _DirectoryHandler(self)
        self._lock = threading.Lock()
        self._callbacks: dict[str, list[Callable[[], None]]] = {}
        # directory -> (watchdog ObservedWatch or None, refcount)
        self._directories: dict[str, tuple[Any, int]] = {}

    def subscribe(self, key: Hashable, callback: Callable[[], None]) -> None:
        path = os.path.abspath(str(key))
        directory = os.path.dirname(path)
        with self._lock:
            self._callbacks.setdefault(path, []).append(callback)
            watch, refs = self._directories.get(directory, (None, 0))
            if refs == 0:
                watch = self._schedule(directory)
            self._directories[directory] = (watch, refs + 1)
        _log.debug("file_watch_added", path=path)

    def unsubscribe(self, key: Hashable, callback: Callable[[], None]) -> None:
        path = os.path.abspath(str(key))
        directory = os.path.dirname(path)
        with self._lock:
            callbacks = self._callbacks.get(path)
            if not callbacks or callback not in callbacks:
                return
            callbacks.remove(callback)
            if not callbacks:
                del self._callbacks[path]
            watch, refs = self._directories.get(directory, (None, 1))
            if refs <= 1:
                self._directories.pop(directory, None)
                if watch is not None and self._observer is not None:
                    self._observer.unschedule(watch)
            else:
                self._directories[directory] = (watch, refs - 1)
        _log.debug("file_watch_removed", path=path)

    def dispatch(self, path: str) -> None:
        """Run the callbacks subscribed to ``path``."""
        with self._lock:
            callbacks = list(self._callbacks.get(os.path.abspath(path), ()))
        for callback in callbacks:
            try:
                callback()
            except Exception:
                _log.exception("file_watch_callback_failed", path=path)

    def close(self) -> None:
        with self._lock:
            observer, self._observer = self._observer, None
            self._callbacks.clear()
            self._directories.clear()
        if observer is not None:
            observer.stop()
            observer.join()
            _log.info("file_watcher_stopped")

    def _schedule(self, directory: str) -> Any:
        if not os.path.isdir(directory):
            _log.warning("file_watch_directory_missing", directory=directory)
            return None
        if self._observer is None:
            self._observer = self._observer_factory()
            self._observer.start()
            _log.info("file_watcher_started")
        return self._observer.schedule(self._handler, directory, recursive=False)
