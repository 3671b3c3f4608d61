"""Hierarchical module-path resolution against the virtual filesystem.

For each search directory, in order, the first hit wins:

1. ``candidate = join(directory, specifier)``
2. without a trailing separator: exact regular file, else manifest on an
   existing virtual directory, else extension probing
3. manifest resolution on ``candidate``
4. directory-index resolution on ``candidate``

Note the asymmetry: a specifier with a trailing separator never goes through
extension probing.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import json
import logging
import os

from python_lockpack.vfs import VirtualEntry, VirtualFileSystem


HostFindPath = Callable[[str, Sequence[str]], str | None]


class ManifestError(ValueError):
    """Raised when a virtual package manifest is not valid JSON."""


@dataclass(frozen=True, slots=True)
class ResolverRules:
    """Probe lists used by the resolver.

    :ivar extensions: Suffixes tried by extension probing, in order.
    :ivar index_names: File names tried by directory-index resolution, in order.
    :ivar manifest_name: Package manifest file name, or ``None`` to disable.
    """

    extensions: tuple[str, ...]
    index_names: tuple[str, ...]
    manifest_name: str | None


DEFAULT_RULES: ResolverRules = ResolverRules(
    extensions=(".js", ".json", ".node"),
    index_names=("index.js", "index.json", "index.node"),
    manifest_name="package.json",
)


def _no_host_match(specifier: str, search_paths: Sequence[str]) -> str | None:
    return None


class Resolver:
    """Resolve specifiers to absolute virtual paths with host fallback."""

    _vfs: VirtualFileSystem
    _host_find_path: HostFindPath
    _rules: ResolverRules
    _cache: dict[tuple[str, tuple[str, ...]], str | None]
    _logger: logging.Logger

    def __init__(
        self,
        vfs: VirtualFileSystem,
        *,
        host_find_path: HostFindPath | None = None,
        rules: ResolverRules = DEFAULT_RULES,
        logger: logging.Logger | None = None,
    ) -> None:
        self._vfs = vfs
        self._host_find_path = host_find_path if host_find_path is not None else _no_host_match
        self._rules = rules
        self._cache = {}
        self._logger = logger if logger is not None else logging.getLogger("python_lockpack")

    @property
    def rules(self) -> ResolverRules:
        return self._rules

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def _regular_file(self, path: str) -> bool:
        entry: VirtualEntry | None = self._vfs.get(path)
        return entry is not None and entry.stat.is_file()

    def probe_extensions(self, path: str, extensions: Sequence[str] | None = None) -> str | None:
        """Try ``<path><ext>`` for each extension.

        :param path: Base path without extension.
        :param extensions: Override for the rule's extension list.
        :returns: First candidate present as a virtual regular file.
        """

        exts: Sequence[str] = extensions if extensions is not None else self._rules.extensions
        for ext in exts:
            full: str = f"{path}{ext}"
            if self._regular_file(full) is True:
                return self._vfs.canonicalize(full)
        return None

    def probe_index(self, path: str, index_names: Sequence[str] | None = None) -> str | None:
        """Try ``<path>/<index>`` for each index name.

        :param path: Directory path (a trailing separator is ignored).
        :param index_names: Override for the rule's index list.
        :returns: First candidate present as a virtual regular file.
        """

        names: Sequence[str] = index_names if index_names is not None else self._rules.index_names
        if path.endswith(os.sep) is True:
            path = path[:-1]
        for name in names:
            full: str = f"{path}{os.sep}{name}"
            if self._regular_file(full) is True:
                return self._vfs.canonicalize(full)
        return None

    def probe_manifest(self, path: str) -> str | None:
        """Resolve a directory through its package manifest ``main`` field.

        :param path: Directory path.
        :returns: Resolved path, or ``None`` if there is no usable manifest.
        :raises ManifestError: If the manifest is not valid JSON.
        """

        if self._rules.manifest_name is None:
            return None

        manifest_path: str = os.path.join(path, self._rules.manifest_name)
        entry: VirtualEntry | None = self._vfs.get(manifest_path)
        if entry is None or entry.stat.is_file() is False:
            return None

        try:
            manifest = json.loads(entry.text)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ManifestError(f"{entry.path}: {e}") from e

        main = manifest.get("main") if isinstance(manifest, dict) is True else None
        if isinstance(main, str) is False or len(main) == 0:
            return None

        target: str = self._vfs.canonicalize(os.path.join(self._vfs.canonicalize(path), main))
        if self._regular_file(target) is True:
            return target

        found: str | None = self.probe_extensions(target)
        if found is not None:
            return found
        return self.probe_index(target)

    def _search(self, specifier: str, search_paths: Sequence[str]) -> str | None:
        trailing_sep: bool = len(specifier) > 0 and specifier.endswith(("/", os.sep)) is True

        for directory in search_paths:
            candidate: str = self._vfs.canonicalize(os.path.join(directory, specifier))

            if trailing_sep is False:
                entry: VirtualEntry | None = self._vfs.get(candidate)
                if entry is not None and entry.stat.is_file() is True:
                    return candidate
                if entry is not None and entry.stat.is_dir() is True:
                    found: str | None = self.probe_manifest(candidate)
                    if found is not None:
                        return found

                found = self.probe_extensions(candidate)
                if found is not None:
                    return found

            found = self.probe_manifest(candidate)
            if found is not None:
                return found

            found = self.probe_index(candidate)
            if found is not None:
                return found

        return None

    def find_path(self, specifier: str, search_paths: Sequence[str]) -> str | None:
        """Resolve a specifier to a path.

        :param specifier: Module specifier (relative or bare).
        :param search_paths: Directories to search, in order.
        :returns: Absolute path, or ``None`` when neither the VFS nor the host matches.
        """

        key: tuple[str, tuple[str, ...]] = (specifier, tuple(search_paths))
        if key in self._cache:
            return self._cache[key]

        result: str | None = self._search(specifier, key[1])
        if result is None:
            result = self._host_find_path(specifier, key[1])
            if self._logger.isEnabledFor(logging.DEBUG) is True:
                self._logger.debug(f"python-lockpack: host fallback for {specifier!r} -> {result!r}")

        self._cache[key] = result
        return result
