"""Shared fixtures: real containers built through the packer."""

from collections.abc import Callable, Mapping
import logging
import pathlib

import pytest

from python_lockpack.config import LoaderConfig, resolve_loader_config
from python_lockpack.container import ContainerSections, parse_container
from python_lockpack.packer import pack_project
from python_lockpack.vfs import VirtualFileSystem, build_vfs


PUBLIC_KEY: str = "public-test-key"
PRIVATE_KEY: str = "private-test-key"

SAMPLE_FILES: dict[str, bytes] = {
    "main.js": b"require('./lib/util')\n",
    "main.py": b"import helper\nRESULT = helper.VALUE * 2\n",
    "helper.py": b"VALUE = 21\n",
    "lib/util.js": b"module.exports = 42\n",
    "lib/data.json": b'{"answer": 42}',
    "lib/nested/deep.txt": "héllo wörld\n".encode("utf-8"),
    "pkg/package.json": b'{"main": "lib/a"}',
    "pkg/index.js": b"// index\n",
    "pkg/lib/a.js": b"// a\n",
    "addon/native.node": bytes(range(256)),
}


def write_tree(root: pathlib.Path, files: Mapping[str, bytes | None]) -> None:
    """Write a project tree; ``None`` content creates an empty directory."""

    for rel, content in files.items():
        p: pathlib.Path = root / rel
        if content is None:
            p.mkdir(parents=True, exist_ok=True)
            continue
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(content)


@pytest.fixture()
def logger() -> logging.Logger:
    return logging.getLogger("python_lockpack.tests")


@pytest.fixture()
def virtual_root(tmp_path: pathlib.Path) -> pathlib.Path:
    """A project root that does not exist on disk."""

    return tmp_path / "virtual-app"


@pytest.fixture()
def make_container(tmp_path: pathlib.Path) -> Callable[..., bytes]:
    """Return a factory packing ``files`` into container bytes."""

    counter: list[int] = [0]

    def factory(
        files: Mapping[str, bytes | None],
        *,
        entry: str,
        public_key: str = PUBLIC_KEY,
        private_key: str = PRIVATE_KEY,
    ) -> bytes:
        counter[0] += 1
        src: pathlib.Path = tmp_path / f"src{counter[0]}"
        src.mkdir()
        write_tree(src, files)
        blob, _ = pack_project(
            input_dir=src,
            entry_relpath=entry,
            public_key=public_key,
            private_key=private_key,
        )
        return blob

    return factory


@pytest.fixture()
def sample_blob(make_container: Callable[..., bytes]) -> bytes:
    return make_container(SAMPLE_FILES, entry="main.js")


@pytest.fixture()
def sample_sections(sample_blob: bytes) -> ContainerSections:
    return parse_container(sample_blob, PUBLIC_KEY)


@pytest.fixture()
def sample_vfs(sample_sections: ContainerSections, virtual_root: pathlib.Path) -> VirtualFileSystem:
    return build_vfs(sample_sections, root=virtual_root)


@pytest.fixture()
def loader_config(tmp_path: pathlib.Path, virtual_root: pathlib.Path) -> LoaderConfig:
    return resolve_loader_config(
        project_root_override=virtual_root,
        temp_dir_override=tmp_path / "tmp",
        chunk_size_override=4,
    )
