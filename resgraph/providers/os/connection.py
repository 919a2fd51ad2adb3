"""Local operating system connection."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any

from resgraph.observability.logging import get_logger
from resgraph.runtime.errors import TransientIOError
from resgraph.providers.os.watcher import FileWatcher

_log = get_logger("os.connection")


def parse_proc_modules(text: str) -> list[dict[str, Any]]:
    """Parse ``/proc/modules`` lines (``name size refcount deps state addr``)."""
    modules = []
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        try:
            size = int(fields[1])
        except ValueError:
            size = 0
        modules.append({"name": fields[0], "size": size, "loaded": True})
    return modules


class LocalConnection:
    """Filesystem access for the os pack, plus the watcher of watched fields.

    Blocking filesystem calls are run in a worker thread.
    """

    def __init__(self, watcher: FileWatcher | None = None, *, proc_modules: str = "/proc/modules") -> None:
        self.watcher = watcher if watcher is not None else FileWatcher()
        self.proc_modules = proc_modules

    async def read_text(self, path: str) -> str:
        return await asyncio.to_thread(Path(path).read_text, encoding="utf-8", errors="replace")

    async def stat(self, path: str) -> os.stat_result:
        return await asyncio.to_thread(os.stat, path)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(os.path.exists, path)

    async def kernel_modules(self) -> list[dict[str, Any]]:
        try:
            text = await self.read_text(self.proc_modules)
        except OSError as exc:
            raise TransientIOError(f"cannot read {self.proc_modules}: {exc}", cause=exc) from exc
        modules = parse_proc_modules(text)
        _log.debug("kernel_modules_read", count=len(modules))
        return modules

    def close(self) -> None:
        self.watcher.close()
