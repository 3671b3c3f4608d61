"""``importlib.resources`` support for modules loaded from a container.

:class:`VirtualResourceReader` is what :class:`python_lockpack.runtime.VirtualSourceLoader`
hands back from ``get_resource_reader``, so ``importlib.resources.files(pkg)``
works for packages that only exist in the VFS. Every filesystem access goes
through the overlay provider.
"""

from collections.abc import Iterator
import importlib.resources.abc
import io
import os
from typing import Any

from python_lockpack.overlay import FileProvider


class VirtualTraversable(importlib.resources.abc.Traversable):
    """A file or directory reached through a :class:`FileProvider`."""

    _provider: FileProvider
    _path: str

    def __init__(self, provider: FileProvider, path: str) -> None:
        self._provider = provider
        self._path = path

    def __repr__(self) -> str:
        return f"VirtualTraversable({self._path!r})"

    @property
    def name(self) -> str:
        return os.path.basename(self._path)

    def is_dir(self) -> bool:
        if self._provider.exists_sync(self._path) is False:
            return False
        return self._provider.stat_sync(self._path).is_dir()

    def is_file(self) -> bool:
        if self._provider.exists_sync(self._path) is False:
            return False
        return self._provider.stat_sync(self._path).is_file()

    def iterdir(self) -> Iterator["VirtualTraversable"]:
        for name in self._provider.list_directory_sync(self._path):
            yield VirtualTraversable(self._provider, os.path.join(self._path, name))

    def joinpath(self, *descendants: str) -> "VirtualTraversable":
        parts: list[str] = []
        for d in descendants:
            parts.extend(p for p in str(d).replace("\\", "/").split("/") if len(p) > 0)
        return VirtualTraversable(self._provider, os.path.join(self._path, *parts))

    def __truediv__(self, child: str) -> "VirtualTraversable":
        return self.joinpath(child)

    def read_bytes(self) -> bytes:
        data = self._provider.read_sync(self._path)
        if isinstance(data, str) is True:
            return data.encode("utf-8")
        return data

    def read_text(self, encoding: str | None = None, errors: str | None = None) -> str:
        return self.read_bytes().decode(encoding if encoding is not None else "utf-8", errors or "strict")

    def open(self, mode: str = "r", *args: Any, **kwargs: Any) -> io.IOBase:
        """Open the resource for reading.

        :param mode: ``"r"`` (text) or ``"rb"`` (binary).
        :returns: An in-memory file object over the resource bytes.
        :raises ValueError: If ``mode`` is not a read mode.
        """

        if mode == "rb":
            return io.BytesIO(self.read_bytes())
        if mode == "r":
            if len(args) == 0:
                kwargs.setdefault("encoding", "utf-8")
            return io.TextIOWrapper(io.BytesIO(self.read_bytes()), *args, **kwargs)
        raise ValueError(f"Unsupported mode for a container resource: {mode!r}")


class VirtualResourceReader(importlib.resources.abc.TraversableResources):
    """Resource reader rooted at a package directory."""

    _root: VirtualTraversable

    def __init__(self, provider: FileProvider, package_dir: str) -> None:
        self._root = VirtualTraversable(provider, package_dir)

    def files(self) -> VirtualTraversable:
        return self._root
