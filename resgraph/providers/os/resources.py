"""Local OS resources: files and kernel modules."""

from __future__ import annotations

import os.path
import stat
from typing import TYPE_CHECKING, Any

from resgraph.runtime.collection import by_name
from resgraph.runtime.errors import MisconfiguredArgumentsError, NotFoundError, TransientIOError
from resgraph.runtime.resource import FieldClass, Resource, computed

if TYPE_CHECKING:
    from resgraph.runtime.runtime import Runtime


def _permissions(mode: int) -> dict[str, Any]:
    return {
        "mode": stat.S_IMODE(mode),
        "string": stat.filemode(mode),
        "isFile": stat.S_ISREG(mode),
        "isDirectory": stat.S_ISDIR(mode),
        "isSymlink": stat.S_ISLNK(mode),
    }


class File(Resource):
    """A file on the local filesystem.  ``content`` follows changes on disk."""

    type_name = "file"
    arguments = frozenset({"path"})

    @classmethod
    async def init(
        cls, runtime: Runtime, args: dict[str, Any]
    ) -> tuple[dict[str, Any], Resource | None]:
        path = args.get("path")
        if not isinstance(path, str) or not path:
            raise MisconfiguredArgumentsError("file requires a non-empty string 'path'")
        return {**args, "path": os.path.abspath(path)}, None

    def identity_key(self) -> str:
        return str(self.arg("path", ""))

    def watch_key(self, field: str) -> str:
        return self.identity_key()

    @property
    def path(self) -> str:
        return self.identity_key()

    @computed
    def basename(self) -> str:
        return os.path.basename(self.path)

    @computed
    def dirname(self) -> str:
        return os.path.dirname(self.path)

    @computed(field_class=FieldClass.TRANSIENT)
    async def exists(self) -> bool:
        return await self.runtime.connection("os").exists(self.path)

    @computed(watched=True)
    async def content(self) -> str:
        try:
            return await self.runtime.connection("os").read_text(self.path)
        except FileNotFoundError as exc:
            raise NotFoundError(f"file '{self.path}' not found", type_name=self.type_name, key=self.path) from exc
        except OSError as exc:
            raise TransientIOError(f"cannot read file '{self.path}': {exc}", cause=exc) from exc

    async def _stat(self) -> tuple[dict[str, Any], int]:
        try:
            st = await self.runtime.connection("os").stat(self.path)
        except FileNotFoundError as exc:
            raise NotFoundError(f"file '{self.path}' not found", type_name=self.type_name, key=self.path) from exc
        except OSError as exc:
            raise TransientIOError(f"cannot stat file '{self.path}': {exc}", cause=exc) from exc
        return _permissions(st.st_mode), st.st_size

    # permissions and size come from the same stat call
    @computed(field_class=FieldClass.TRANSIENT)
    async def permissions(self) -> dict[str, Any]:
        perms, size = await self._stat()
        self.cache_sibling("size", size)
        return perms

    @computed(field_class=FieldClass.TRANSIENT)
    async def size(self) -> int:
        perms, size = await self._stat()
        self.cache_sibling("permissions", perms)
        return size

    @computed(field_class=FieldClass.TRANSIENT)
    async def empty(self) -> bool:
        return await self.get("size") == 0


class Kernel(Resource):
    type_name = "kernel"

    @computed(field_class=FieldClass.TRANSIENT)
    async def modules(self) -> list[Resource]:
        result = []
        for module in await self.runtime.connection("os").kernel_modules():
            result.append(await self.runtime.create_resource("kernel.module", module))
        return result


class KernelModule(Resource):
    """A kernel module by name.

    Looking up a module that is not loaded yields an instance with
    ``loaded`` false rather than an error.
    """

    type_name = "kernel.module"
    arguments = frozenset({"name", "size", "loaded"})

    @classmethod
    async def init(
        cls, runtime: Runtime, args: dict[str, Any]
    ) -> tuple[dict[str, Any], Resource | None]:
        if len(args) > 2:
            return args, None
        name = args.get("name")
        if not isinstance(name, str) or not name:
            raise MisconfiguredArgumentsError("kernel.module requires a non-empty string 'name'")

        kernel = await runtime.create_resource("kernel")
        index = await kernel.collection_index("modules", by_name)
        found = index.one(name)
        if found is not None:
            return args, found
        return {"name": name, "size": 0, "loaded": False}, None

    def identity_key(self) -> str:
        return str(self.arg("name", ""))
