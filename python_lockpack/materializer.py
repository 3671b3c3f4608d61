"""Write native artifacts from the VFS to a process-scoped temp directory.

Native extensions can only be loaded from a real file path, so each one is
written to ``<tmp>/<process-start-ms>-lockpack-addons/<basename>`` on demand.
The directory is removed by :meth:`NativeArtifactMaterializer.cleanup`, which
is registered with :mod:`atexit` when the directory is first created.
"""

import atexit
import logging
import os
import pathlib
import shutil
import tempfile
import time

from python_lockpack.vfs import VirtualEntry, VirtualFileSystem


PROCESS_START_MS: int = int(time.time() * 1000)
ADDONS_DIR_SUFFIX: str = "lockpack-addons"


class NativeArtifactMaterializer:
    """Materialize virtual native binaries as real files."""

    _vfs: VirtualFileSystem
    _dir: pathlib.Path
    _created: bool
    _logger: logging.Logger

    def __init__(
        self,
        vfs: VirtualFileSystem,
        *,
        base_dir: str | os.PathLike[str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        base: pathlib.Path = pathlib.Path(base_dir) if base_dir is not None else pathlib.Path(tempfile.gettempdir())
        self._vfs = vfs
        self._dir = base / f"{PROCESS_START_MS}-{ADDONS_DIR_SUFFIX}"
        self._created = False
        self._logger = logger if logger is not None else logging.getLogger("python_lockpack")

    @property
    def directory(self) -> pathlib.Path:
        return self._dir

    def _ensure_dir(self) -> None:
        if self._created is True:
            return
        self._dir.mkdir(parents=True, exist_ok=True)
        self._created = True
        atexit.register(self.cleanup)
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"python-lockpack: addons_dir={self._dir}")

    def materialize(self, virtual_path: str | os.PathLike[str]) -> str:
        """Write a virtual file to the temp directory.

        :param virtual_path: Virtual path of a regular file.
        :returns: Real path of the written file.
        :raises FileNotFoundError: If the path is not a virtual regular file.
        """

        entry: VirtualEntry | None = self._vfs.get(virtual_path)
        if entry is None or entry.content is None:
            raise FileNotFoundError(f"No virtual file to materialize: {os.fspath(virtual_path)}")

        self._ensure_dir()
        out_path: pathlib.Path = self._dir / os.path.basename(entry.path)
        with open(out_path, "wb") as f:
            f.write(entry.content)
        self._logger.debug(f"python-lockpack: materialized {entry.path} -> {out_path}")
        return str(out_path)

    def cleanup(self) -> None:
        """Remove the temp directory and everything in it. Safe to call twice."""

        if self._created is False:
            return
        self._created = False
        atexit.unregister(self.cleanup)
        shutil.rmtree(self._dir, ignore_errors=True)

    def __enter__(self) -> "NativeArtifactMaterializer":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        self.cleanup()
        return False
