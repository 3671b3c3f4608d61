"""Loader configuration.

Values are resolved in order: explicit overrides (CLI flags), then
``PYTHON_LOCKPACK_*`` environment variables, then defaults.
"""

from dataclasses import dataclass
import os
import pathlib
import re
import tempfile

from python_lockpack.overlay import DEFAULT_CHUNK_SIZE


ENV_ROOT: str = "PYTHON_LOCKPACK_ROOT"
ENV_TMPDIR: str = "PYTHON_LOCKPACK_TMPDIR"
ENV_CHUNK_SIZE: str = "PYTHON_LOCKPACK_CHUNK_SIZE"
ENV_PUBLIC_KEY: str = "PYTHON_LOCKPACK_PUBLIC_KEY"


class ConfigError(ValueError):
    """Raised when configuration values cannot be resolved."""


@dataclass(frozen=True, slots=True)
class LoaderConfig:
    """Runtime configuration for the loader.

    :ivar project_root: Directory stored container paths are resolved against.
    :ivar temp_base: Parent directory for the native-artifact temp directory.
    :ivar chunk_size: Default read-stream chunk size in bytes.
    :ivar public_key: Public secret, if configured.
    """

    project_root: pathlib.Path
    temp_base: pathlib.Path
    chunk_size: int
    public_key: str | None


_POSITIVE_INT_RE: re.Pattern[str] = re.compile(r"^[1-9]\d*$")


def _env(name: str) -> str | None:
    value: str | None = os.environ.get(name)
    if value is None or len(value) == 0:
        return None
    return value


def resolve_loader_config(
    *,
    project_root_override: pathlib.Path | None = None,
    temp_dir_override: pathlib.Path | None = None,
    chunk_size_override: int | str | None = None,
    public_key_override: str | None = None,
) -> LoaderConfig:
    """Resolve loader configuration.

    :param project_root_override: Explicit project root.
    :param temp_dir_override: Explicit temp base directory.
    :param chunk_size_override: Explicit stream chunk size.
    :param public_key_override: Explicit public key.
    :returns: Resolved configuration.
    :raises ConfigError: If a value is invalid.
    """

    return LoaderConfig(
        project_root=_resolve_project_root(project_root_override),
        temp_base=_resolve_temp_base(temp_dir_override),
        chunk_size=_resolve_chunk_size(chunk_size_override),
        public_key=public_key_override if public_key_override is not None else _env(ENV_PUBLIC_KEY),
    )


def _resolve_project_root(project_root_override: pathlib.Path | None) -> pathlib.Path:
    if project_root_override is not None:
        return project_root_override.resolve()
    env_root: str | None = _env(ENV_ROOT)
    if env_root is not None:
        return pathlib.Path(env_root).resolve()
    return pathlib.Path.cwd()


def _resolve_temp_base(temp_dir_override: pathlib.Path | None) -> pathlib.Path:
    if temp_dir_override is not None:
        return temp_dir_override
    env_tmp: str | None = _env(ENV_TMPDIR)
    if env_tmp is not None:
        return pathlib.Path(env_tmp)
    return pathlib.Path(tempfile.gettempdir())


def _resolve_chunk_size(chunk_size_override: int | str | None) -> int:
    """Resolve the stream chunk size.

    :param chunk_size_override: Optional explicit override.
    :returns: Positive chunk size.
    :raises ConfigError: If the value is not a positive integer.
    """

    raw: int | str | None = chunk_size_override
    source: str = "chunk size"
    if raw is None:
        raw = _env(ENV_CHUNK_SIZE)
        source = ENV_CHUNK_SIZE
    if raw is None:
        return DEFAULT_CHUNK_SIZE
    if isinstance(raw, int) is True and isinstance(raw, bool) is False:
        if raw <= 0:
            raise ConfigError(f"Invalid {source} {raw!r}; expected a positive integer.")
        return raw
    if _POSITIVE_INT_RE.match(str(raw).strip()) is None:
        raise ConfigError(f"Invalid {source} {raw!r}; expected a positive integer.")
    return int(str(raw).strip())
