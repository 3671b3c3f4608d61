"""Bootstrap and Python execution hooks.

:func:`bootstrap` turns a container blob into a ready :class:`Bootstrap`
(sections, VFS, resolver, overlay provider, materializer). The import hooks
(:class:`VirtualModuleFinder`, :class:`VirtualSourceLoader`) are installed
explicitly on ``sys.meta_path`` and removed again by :func:`run_entry_point`;
nothing else in the process is patched.
"""

from collections.abc import Sequence
from dataclasses import dataclass
import importlib.abc
import importlib.machinery
import importlib.util
import logging
import os
import sys

from python_lockpack.config import LoaderConfig, resolve_loader_config
from python_lockpack.container import ContainerSections, parse_container, split_startup_args
from python_lockpack.materializer import NativeArtifactMaterializer
from python_lockpack.overlay import OverlayFileProvider
from python_lockpack.resolver import HostFindPath, Resolver, ResolverRules
from python_lockpack.resources import VirtualResourceReader
from python_lockpack.vfs import VirtualFileSystem, build_vfs


PYTHON_SOURCE_SUFFIXES: tuple[str, ...] = tuple(importlib.machinery.SOURCE_SUFFIXES)
PYTHON_EXTENSION_SUFFIXES: tuple[str, ...] = tuple(importlib.machinery.EXTENSION_SUFFIXES)
PACKAGE_INIT: str = "__init__.py"

# Python import rules: no manifest, packages are directories with an ``__init__.py``.
PYTHON_RULES: ResolverRules = ResolverRules(
    extensions=PYTHON_SOURCE_SUFFIXES + PYTHON_EXTENSION_SUFFIXES,
    index_names=(PACKAGE_INIT,),
    manifest_name=None,
)


@dataclass(frozen=True, slots=True)
class Bootstrap:
    """Everything built from one container.

    :ivar sections: Parsed container sections.
    :ivar vfs: Virtual filesystem.
    :ivar resolver: Module-path resolver over ``vfs``.
    :ivar module_resolver: Resolver with :data:`PYTHON_RULES`, used by the import hook.
    :ivar provider: Virtual-then-real filesystem provider.
    :ivar materializer: Native artifact writer.
    """

    sections: ContainerSections
    vfs: VirtualFileSystem
    resolver: Resolver
    module_resolver: Resolver
    provider: OverlayFileProvider
    materializer: NativeArtifactMaterializer

    @property
    def entry_point(self) -> str:
        """Canonical absolute path of the entry-point module."""

        return self.vfs.canonicalize(self.sections.entry_point)


def bootstrap(
    blob: bytes | bytearray | memoryview,
    public_key: str,
    *,
    config: LoaderConfig | None = None,
    host_find_path: HostFindPath | None = None,
    logger: logging.Logger | None = None,
) -> Bootstrap:
    """Parse a container and build the loader components.

    :param blob: Container bytes.
    :param public_key: Public secret.
    :param config: Loader configuration (resolved from the environment if omitted).
    :param host_find_path: Fallback resolver for specifiers the VFS cannot satisfy.
    :param logger: Optional logger.
    :returns: Ready bootstrap.
    """

    cfg: LoaderConfig = config if config is not None else resolve_loader_config()
    log: logging.Logger = logger if logger is not None else logging.getLogger("python_lockpack")

    sections: ContainerSections = parse_container(blob, public_key, logger=log)
    vfs: VirtualFileSystem = build_vfs(sections, root=cfg.project_root, logger=log)
    return Bootstrap(
        sections=sections,
        vfs=vfs,
        resolver=Resolver(vfs, host_find_path=host_find_path, logger=log),
        module_resolver=Resolver(vfs, rules=PYTHON_RULES, logger=log),
        provider=OverlayFileProvider(vfs, chunk_size=cfg.chunk_size),
        materializer=NativeArtifactMaterializer(vfs, base_dir=cfg.temp_base, logger=log),
    )


def bootstrap_from_argv(
    argv: Sequence[str | bytes],
    *,
    config: LoaderConfig | None = None,
    logger: logging.Logger | None = None,
) -> Bootstrap:
    """Bootstrap from process arguments (``argv[1]`` key, ``argv[2:7]`` blob).

    :param argv: Process arguments including the program name.
    :param config: Loader configuration.
    :param logger: Optional logger.
    :returns: Ready bootstrap.
    """

    public_key, blob = split_startup_args(argv)
    return bootstrap(blob, public_key, config=config, logger=logger)


class VirtualSourceLoader(importlib.abc.SourceLoader):
    """Load Python source from the overlay provider.

    Executed modules reach the overlay through ``__loader__.provider``, and
    packages expose their data files to ``importlib.resources``.
    """

    _fullname: str
    _path: str
    _provider: OverlayFileProvider

    def __init__(self, fullname: str, path: str, provider: OverlayFileProvider) -> None:
        self._fullname = fullname
        self._path = path
        self._provider = provider

    @property
    def provider(self) -> OverlayFileProvider:
        return self._provider

    def get_filename(self, fullname: str | None = None) -> str:
        return self._path

    def get_data(self, path: str) -> bytes:
        data = self._provider.read_sync(path)
        if isinstance(data, str) is True:
            return data.encode("utf-8")
        return data

    def get_resource_reader(self, fullname: str) -> VirtualResourceReader | None:
        if os.path.basename(self._path) != PACKAGE_INIT:
            return None
        return VirtualResourceReader(self._provider, os.path.dirname(self._path))


class VirtualModuleFinder(importlib.abc.MetaPathFinder):
    """Meta path finder for modules stored in the VFS.

    Top-level names are searched in ``search_paths``; submodules in their
    package's ``__path__``. Returning ``None`` hands the import back to the
    regular import system.
    """

    _boot: Bootstrap
    _search_paths: list[str]

    def __init__(self, boot: Bootstrap, search_paths: Sequence[str]) -> None:
        self._boot = boot
        self._search_paths = [boot.vfs.canonicalize(p) for p in search_paths]

    def find_spec(  # type: ignore[override]
        self,
        fullname: str,
        path: Sequence[str] | None,
        target: object | None = None,
    ) -> importlib.machinery.ModuleSpec | None:
        """Find a module spec in the VFS.

        :param fullname: Module name being imported.
        :param path: Parent package ``__path__``, or ``None`` for top-level.
        :param target: Target module (unused).
        :returns: A module spec if the module is virtual.
        """

        tail: str = fullname.rpartition(".")[2]
        dirs: Sequence[str] = path if path is not None else self._search_paths
        resolver: Resolver = self._boot.module_resolver
        vfs: VirtualFileSystem = self._boot.vfs

        for directory in dirs:
            # A trailing separator only probes the package index.
            init: str | None = resolver.find_path(tail + os.sep, [directory])
            if init is not None and vfs.is_file(init) is True:
                loader = VirtualSourceLoader(fullname, init, self._boot.provider)
                return importlib.util.spec_from_file_location(
                    fullname,
                    init,
                    loader=loader,
                    submodule_search_locations=[os.path.dirname(init)],
                )

            found: str | None = resolver.find_path(tail, [directory])
            if found is not None and found.endswith(PYTHON_RULES.extensions) is False:
                found = resolver.probe_extensions(os.path.join(directory, tail))
            if found is None or vfs.is_file(found) is False:
                continue

            if found.endswith(PYTHON_SOURCE_SUFFIXES) is True:
                loader = VirtualSourceLoader(fullname, found, self._boot.provider)
                return importlib.util.spec_from_file_location(fullname, found, loader=loader)

            real_path: str = self._boot.materializer.materialize(found)
            ext_loader = importlib.machinery.ExtensionFileLoader(fullname, real_path)
            return importlib.util.spec_from_file_location(fullname, real_path, loader=ext_loader)

        return None


def install_finder(boot: Bootstrap, search_paths: Sequence[str] | None = None) -> VirtualModuleFinder:
    """Insert a :class:`VirtualModuleFinder` at the front of ``sys.meta_path``.

    :param boot: Bootstrap to serve modules from.
    :param search_paths: Top-level search directories (defaults to the
        entry point's directory, then the VFS root).
    :returns: The installed finder.
    """

    if search_paths is None:
        search_paths = [os.path.dirname(boot.entry_point), boot.vfs.root]
    finder = VirtualModuleFinder(boot, search_paths)
    sys.meta_path.insert(0, finder)
    return finder


def uninstall_finder(finder: VirtualModuleFinder) -> None:
    if finder in sys.meta_path:
        sys.meta_path.remove(finder)


def run_entry_point(
    boot: Bootstrap,
    argv: Sequence[str] | None = None,
    *,
    logger: logging.Logger | None = None,
) -> dict[str, object]:
    """Execute the container's entry point as ``__main__``.

    :param boot: Bootstrap to run.
    :param argv: Arguments for the program (``sys.argv[1:]``).
    :param logger: Optional logger.
    :returns: The executed module's namespace.
    :raises FileNotFoundError: If the entry point is not a virtual regular file.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("python_lockpack")
    entry: str = boot.entry_point
    if boot.vfs.is_file(entry) is False:
        raise FileNotFoundError(f"Entry point is not a virtual file: {entry}")

    loader = VirtualSourceLoader("__main__", entry, boot.provider)
    spec = importlib.util.spec_from_file_location("__main__", entry, loader=loader)
    if spec is None:
        raise ImportError(f"Failed to create an import spec for {entry}")
    module = importlib.util.module_from_spec(spec)

    saved_main = sys.modules.get("__main__")
    saved_argv: list[str] = sys.argv
    finder: VirtualModuleFinder = install_finder(boot)
    log.info(f"python-lockpack: running {entry}")
    try:
        sys.argv = [entry, *(argv if argv is not None else [])]
        sys.modules["__main__"] = module
        loader.exec_module(module)
    finally:
        uninstall_finder(finder)
        sys.argv = saved_argv
        if saved_main is not None:
            sys.modules["__main__"] = saved_main
    return vars(module)
