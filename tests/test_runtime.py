"""Tests for bootstrap and the Python import hooks."""

from collections.abc import Callable, Iterator
import dataclasses
import importlib.machinery
import pathlib
import sys

import pytest

from conftest import PUBLIC_KEY, SAMPLE_FILES
from python_lockpack.config import LoaderConfig
from python_lockpack.container import ContainerIntegrityError
from python_lockpack.runtime import (
    Bootstrap,
    VirtualModuleFinder,
    bootstrap,
    bootstrap_from_argv,
    install_finder,
    run_entry_point,
    uninstall_finder,
)


@pytest.fixture()
def clean_modules() -> Iterator[None]:
    before: set[str] = set(sys.modules)
    yield
    for name in set(sys.modules) - before:
        del sys.modules[name]


class TestBootstrap:
    def test_wires_components(self, sample_blob: bytes, loader_config: LoaderConfig) -> None:
        boot: Bootstrap = bootstrap(sample_blob, PUBLIC_KEY, config=loader_config)
        assert boot.entry_point == str(loader_config.project_root / "main.js")
        assert boot.provider.read_sync("lib/util.js") == SAMPLE_FILES["lib/util.js"]
        assert boot.resolver.find_path("./lib/util", [boot.vfs.root]) == str(loader_config.project_root / "lib" / "util.js")
        assert boot.provider.chunk_size == 4
        assert boot.materializer.directory.parent == loader_config.temp_base

    def test_from_argv(self, sample_blob: bytes, loader_config: LoaderConfig) -> None:
        segments: list[bytes] = [sample_blob[0:7], sample_blob[7:]]
        boot: Bootstrap = bootstrap_from_argv(["prog", PUBLIC_KEY, *segments], config=loader_config)
        assert boot.sections.entry_point == "main.js"

    def test_truncated_container_aborts_before_wiring(self, sample_blob: bytes, loader_config: LoaderConfig) -> None:
        with pytest.raises(ContainerIntegrityError):
            bootstrap(sample_blob[:-1], PUBLIC_KEY, config=loader_config)


class TestRunEntryPoint:
    def test_runs_main_with_virtual_imports(
        self,
        make_container: Callable[..., bytes],
        loader_config: LoaderConfig,
        clean_modules: None,
    ) -> None:
        files: dict[str, bytes] = {
            "main.py": b"import sys\nimport lp_helper\nfrom lp_pkg import sub\nRESULT = (lp_helper.VALUE, sub.NAME, sys.argv[1:])\n",
            "lp_helper.py": b"VALUE = 21\n",
            "lp_pkg/__init__.py": b"",
            "lp_pkg/sub.py": b"NAME = __name__\n",
        }
        boot: Bootstrap = bootstrap(make_container(files, entry="main.py"), PUBLIC_KEY, config=loader_config)
        saved_argv: list[str] = sys.argv
        finders_before: int = len(sys.meta_path)

        ns: dict[str, object] = run_entry_point(boot, ["--flag"])

        assert ns["RESULT"] == (21, "lp_pkg.sub", ["--flag"])
        assert ns["__name__"] == "__main__"
        assert ns["__file__"] == boot.entry_point
        assert sys.argv is saved_argv
        assert len(sys.meta_path) == finders_before
        assert sys.modules["lp_pkg"].__path__ == [str(loader_config.project_root / "lp_pkg")]

    def test_missing_module_falls_back_to_host(
        self,
        make_container: Callable[..., bytes],
        loader_config: LoaderConfig,
        clean_modules: None,
    ) -> None:
        files: dict[str, bytes] = {"main.py": b"import json\nimport lp_not_there\n"}
        boot: Bootstrap = bootstrap(make_container(files, entry="main.py"), PUBLIC_KEY, config=loader_config)
        with pytest.raises(ModuleNotFoundError, match="lp_not_there"):
            run_entry_point(boot)

    def test_package_data_through_importlib_resources(
        self,
        make_container: Callable[..., bytes],
        loader_config: LoaderConfig,
        clean_modules: None,
    ) -> None:
        files: dict[str, bytes] = {
            "main.py": (
                b"import importlib.resources\n"
                b"ROOT = importlib.resources.files('lp_res')\n"
                b"NAMES = sorted(t.name for t in ROOT.iterdir())\n"
                b"DATA = ROOT.joinpath('data.txt').read_bytes()\n"
                b"NOTE = (ROOT / 'nested' / 'note.txt').read_text()\n"
                b"NESTED_IS_DIR = (ROOT / 'nested').is_dir()\n"
                b"MISSING = (ROOT / 'missing.txt').is_file()\n"
                b"with importlib.resources.as_file(ROOT / 'data.txt') as p:\n"
                b"    AS_FILE = p.read_bytes()\n"
            ),
            "lp_res/__init__.py": b"",
            "lp_res/data.txt": b"payload\n",
            "lp_res/nested/note.txt": b"n\xc3\xb6te",
        }
        boot: Bootstrap = bootstrap(make_container(files, entry="main.py"), PUBLIC_KEY, config=loader_config)

        ns: dict[str, object] = run_entry_point(boot)

        assert ns["NAMES"] == ["__init__.py", "data.txt", "nested"]
        assert ns["DATA"] == b"payload\n"
        assert ns["NOTE"] == "nöte"
        assert ns["NESTED_IS_DIR"] is True
        assert ns["MISSING"] is False
        assert ns["AS_FILE"] == b"payload\n"

    def test_loader_exposes_overlay_provider(
        self,
        make_container: Callable[..., bytes],
        loader_config: LoaderConfig,
        clean_modules: None,
    ) -> None:
        files: dict[str, bytes] = {
            "main.py": (
                b"import os\n"
                b"here = os.path.dirname(__file__)\n"
                b"fs = __loader__.provider\n"
                b"LISTING = sorted(fs.list_directory_sync(here))\n"
                b"EXISTS = fs.exists_sync(os.path.join(here, 'conf', 'a.json'))\n"
                b"IS_DIR = fs.stat_sync(os.path.join(here, 'conf')).is_dir()\n"
                b"with fs.open_read_stream(os.path.join(here, 'conf', 'a.json')) as stream:\n"
                b"    STREAMED = b''.join(stream)\n"
            ),
            "conf/a.json": b'{"a": 1}',
        }
        boot: Bootstrap = bootstrap(make_container(files, entry="main.py"), PUBLIC_KEY, config=loader_config)

        ns: dict[str, object] = run_entry_point(boot)

        assert ns["LISTING"] == ["conf", "main.py"]
        assert ns["EXISTS"] is True
        assert ns["IS_DIR"] is True
        assert ns["STREAMED"] == b'{"a": 1}'

    def test_entry_point_must_be_virtual_file(self, sample_blob: bytes, loader_config: LoaderConfig) -> None:
        boot: Bootstrap = bootstrap(sample_blob, PUBLIC_KEY, config=loader_config)
        broken = dataclasses.replace(boot, sections=dataclasses.replace(boot.sections, entry_point="lib"))
        with pytest.raises(FileNotFoundError):
            run_entry_point(broken)


class TestFinder:
    def test_native_extension_is_materialized(
        self,
        make_container: Callable[..., bytes],
        loader_config: LoaderConfig,
    ) -> None:
        suffix: str = importlib.machinery.EXTENSION_SUFFIXES[0]
        files: dict[str, bytes] = {"main.py": b"", f"lp_fast{suffix}": b"\x7fELF-not-really"}
        boot: Bootstrap = bootstrap(make_container(files, entry="main.py"), PUBLIC_KEY, config=loader_config)
        finder: VirtualModuleFinder = install_finder(boot)
        try:
            spec = finder.find_spec("lp_fast", None)
            assert spec is not None
            assert isinstance(spec.loader, importlib.machinery.ExtensionFileLoader)
            assert pathlib.Path(spec.origin).read_bytes() == b"\x7fELF-not-really"
            assert pathlib.Path(spec.origin).parent == boot.materializer.directory
        finally:
            uninstall_finder(finder)
            boot.materializer.cleanup()
        assert finder not in sys.meta_path

    def test_unknown_module_returns_none(self, sample_blob: bytes, loader_config: LoaderConfig) -> None:
        boot: Bootstrap = bootstrap(sample_blob, PUBLIC_KEY, config=loader_config)
        finder = VirtualModuleFinder(boot, [boot.vfs.root])
        assert finder.find_spec("definitely_not_virtual", None) is None
        assert finder.find_spec("os.path", ["/usr/lib/python3"]) is None

    def test_source_module_spec(self, sample_blob: bytes, loader_config: LoaderConfig) -> None:
        boot: Bootstrap = bootstrap(sample_blob, PUBLIC_KEY, config=loader_config)
        finder = VirtualModuleFinder(boot, [boot.vfs.root])
        spec = finder.find_spec("helper", None)
        assert spec is not None
        assert spec.origin == str(loader_config.project_root / "helper.py")
        assert spec.loader.get_data(spec.origin) == SAMPLE_FILES["helper.py"]

    def test_repeated_lookup_is_served_from_cache(
        self,
        sample_blob: bytes,
        loader_config: LoaderConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        boot: Bootstrap = bootstrap(sample_blob, PUBLIC_KEY, config=loader_config)
        finder = VirtualModuleFinder(boot, [boot.vfs.root])
        first = finder.find_spec("helper", None)
        assert first is not None
        assert boot.module_resolver.cache_size > 0

        def fail_search(specifier: str, search_paths: object) -> None:
            raise AssertionError(f"uncached lookup for {specifier!r}")

        monkeypatch.setattr(boot.module_resolver, "_search", fail_search)
        second = finder.find_spec("helper", None)
        assert second is not None
        assert second.origin == first.origin

    def test_package_wins_over_module(self, make_container: Callable[..., bytes], loader_config: LoaderConfig) -> None:
        files: dict[str, bytes] = {"main.py": b"", "lp_dual.py": b"", "lp_dual/__init__.py": b""}
        boot: Bootstrap = bootstrap(make_container(files, entry="main.py"), PUBLIC_KEY, config=loader_config)
        spec = VirtualModuleFinder(boot, [boot.vfs.root]).find_spec("lp_dual", None)
        assert spec is not None
        assert spec.origin == str(loader_config.project_root / "lp_dual" / "__init__.py")
        assert spec.submodule_search_locations == [str(loader_config.project_root / "lp_dual")]

    def test_only_packages_get_a_resource_reader(self, sample_blob: bytes, loader_config: LoaderConfig) -> None:
        boot: Bootstrap = bootstrap(sample_blob, PUBLIC_KEY, config=loader_config)
        spec = VirtualModuleFinder(boot, [boot.vfs.root]).find_spec("helper", None)
        assert spec is not None
        assert spec.loader.get_resource_reader("helper") is None
        assert spec.loader.provider is boot.provider
