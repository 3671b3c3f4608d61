"""Tests for the command line interface."""

from collections.abc import Iterator
import os
import pathlib
import sys

import pytest

from conftest import PUBLIC_KEY, SAMPLE_FILES, write_tree
from python_lockpack.cli import EXIT_INTERRUPTED, main
from python_lockpack.config import ENV_PUBLIC_KEY


@pytest.fixture(autouse=True)
def no_env_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(ENV_PUBLIC_KEY, raising=False)


@pytest.fixture()
def restore_main() -> Iterator[None]:
    saved = sys.modules.get("__main__")
    yield
    if saved is not None:
        sys.modules["__main__"] = saved


def _pack(tmp_path: pathlib.Path, files: dict[str, bytes], entry: str) -> pathlib.Path:
    src: pathlib.Path = tmp_path / "src"
    write_tree(src, files)
    out: pathlib.Path = tmp_path / "out" / "app.lpk"
    assert main(["pack", str(src), "-o", str(out), "--entry", entry, "--public-key", PUBLIC_KEY, "-q"]) == 0
    return out


def _loader_args(tmp_path: pathlib.Path) -> list[str]:
    return ["--public-key", PUBLIC_KEY, "--root", str(tmp_path / "virtual"), "--tmp-dir", str(tmp_path / "tmp"), "-q"]


class TestPack:
    def test_pack_writes_container(self, tmp_path: pathlib.Path) -> None:
        out: pathlib.Path = _pack(tmp_path, SAMPLE_FILES, "main.js")
        assert out.is_file() is True

    def test_public_key_from_environment(self, tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(ENV_PUBLIC_KEY, "from-env")
        src: pathlib.Path = tmp_path / "src"
        write_tree(src, {"a.js": b"1"})
        assert main(["pack", str(src), "-o", str(tmp_path / "a.lpk"), "--entry", "a.js", "-q"]) == 0

    def test_missing_public_key_is_usage_error(self, tmp_path: pathlib.Path) -> None:
        src: pathlib.Path = tmp_path / "src"
        write_tree(src, {"a.js": b"1"})
        with pytest.raises(SystemExit) as exc_info:
            main(["pack", str(src), "-o", str(tmp_path / "a.lpk"), "--entry", "a.js"])
        assert exc_info.value.code == 2


class TestLsAndResolve:
    def test_ls_lists_virtual_tree(self, tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
        out: pathlib.Path = _pack(tmp_path, SAMPLE_FILES, "main.js")
        assert main(["ls", *_loader_args(tmp_path), str(out)]) == 0
        lines: list[str] = capsys.readouterr().out.splitlines()
        root: str = str((tmp_path / "virtual").resolve())
        assert os.path.join(root, "lib") + "/" in lines
        assert os.path.join(root, "lib", "util.js") in lines

    def test_ls_directory(self, tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
        out: pathlib.Path = _pack(tmp_path, SAMPLE_FILES, "main.js")
        assert main(["ls", *_loader_args(tmp_path), str(out), "pkg"]) == 0
        assert sorted(capsys.readouterr().out.split()) == ["index.js", "lib", "package.json"]

    def test_resolve(self, tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
        out: pathlib.Path = _pack(tmp_path, SAMPLE_FILES, "main.js")
        assert main(["resolve", *_loader_args(tmp_path), str(out), "pkg"]) == 0
        root: str = str((tmp_path / "virtual").resolve())
        assert capsys.readouterr().out.strip() == os.path.join(root, "pkg", "lib", "a.js")

    def test_resolve_miss(self, tmp_path: pathlib.Path) -> None:
        out: pathlib.Path = _pack(tmp_path, SAMPLE_FILES, "main.js")
        assert main(["resolve", *_loader_args(tmp_path), str(out), "nothing-here"]) == 1


class TestRun:
    def test_run_success(
        self, tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str], restore_main: None
    ) -> None:
        out: pathlib.Path = _pack(tmp_path, {"main.py": b"import sys\nprint('hi', sys.argv[1:])\n"}, "main.py")
        assert main(["run", *_loader_args(tmp_path), str(out), "x", "y"]) == 0
        assert capsys.readouterr().out.strip() == "hi ['x', 'y']"

    def test_uncaught_failure_exits_1_and_reports(
        self, tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str], restore_main: None
    ) -> None:
        out: pathlib.Path = _pack(tmp_path, {"main.py": b"raise ValueError('kaboom')\n"}, "main.py")
        args: list[str] = ["run", "--public-key", PUBLIC_KEY, "--root", str(tmp_path / "virtual"), str(out)]
        assert main(args) == 1
        assert "ValueError: kaboom" in capsys.readouterr().err

    def test_interrupt_exits_130(self, tmp_path: pathlib.Path, restore_main: None) -> None:
        out: pathlib.Path = _pack(tmp_path, {"main.py": b"raise KeyboardInterrupt\n"}, "main.py")
        assert main(["run", *_loader_args(tmp_path), str(out)]) == EXIT_INTERRUPTED


    def test_runs_bundled_example(
        self, tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str], restore_main: None
    ) -> None:
        example: pathlib.Path = pathlib.Path(__file__).resolve().parent.parent / "examples" / "hello_lockpack"
        out: pathlib.Path = tmp_path / "hello.lpk"
        before: set[str] = set(sys.modules)
        assert main(["pack", str(example), "-o", str(out), "--entry", "main.py", "--public-key", PUBLIC_KEY, "-q"]) == 0
        try:
            assert main(["run", *_loader_args(tmp_path), str(out), "a"]) == 0
        finally:
            for name in set(sys.modules) - before:
                if name.split(".")[0] == "greetings":
                    del sys.modules[name]
        assert "Hello, world, from inside a lockpack container!" in capsys.readouterr().out
