"""Command line interface for python-lockpack."""

import argparse
import logging
import pathlib
import sys
import traceback

from python_lockpack.config import LoaderConfig, resolve_loader_config
from python_lockpack.packer import write_container
from python_lockpack.runtime import Bootstrap, bootstrap, run_entry_point


EXIT_INTERRUPTED: int = 130


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the python-lockpack logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("python_lockpack")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--public-key",
        type=str,
        default=None,
        help="Public key (defaults to $PYTHON_LOCKPACK_PUBLIC_KEY).",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def _add_loader_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("container", type=pathlib.Path, help="Path to a container file.")
    p.add_argument(
        "--root",
        type=pathlib.Path,
        default=None,
        help="Project root virtual paths resolve against (defaults to the current directory).",
    )
    p.add_argument(
        "--tmp-dir",
        type=pathlib.Path,
        default=None,
        help="Parent directory for materialized native artifacts.",
    )


def _require_public_key(cfg: LoaderConfig, parser: argparse.ArgumentParser) -> str:
    if cfg.public_key is None:
        parser.error("a public key is required (--public-key or PYTHON_LOCKPACK_PUBLIC_KEY)")
    return cfg.public_key


def _load(ns: argparse.Namespace, cfg: LoaderConfig, public_key: str, logger: logging.Logger) -> Bootstrap:
    blob: bytes = ns.container.read_bytes()
    return bootstrap(blob, public_key, config=cfg, logger=logger)


def _cmd_ls(boot: Bootstrap, ns: argparse.Namespace) -> int:
    if ns.path is None:
        for key in boot.vfs:
            suffix: str = "/" if boot.vfs.is_dir(key) is True else ""
            print(f"{key}{suffix}")
        return 0
    for name in boot.provider.list_directory_sync(ns.path):
        print(name)
    return 0


def _cmd_resolve(boot: Bootstrap, ns: argparse.Namespace) -> int:
    search: list[str] = ns.search if ns.search else [boot.vfs.root]
    found: str | None = boot.resolver.find_path(ns.specifier, search)
    if found is None:
        print(f"python-lockpack: cannot resolve {ns.specifier!r}", file=sys.stderr)
        return 1
    print(found)
    return 0


def _cmd_run(boot: Bootstrap, ns: argparse.Namespace, logger: logging.Logger) -> int:
    """Run the entry point with cleanup on every exit path.

    :returns: 0 on success, 130 on interrupt, 1 on an uncaught exception.
    """

    try:
        run_entry_point(boot, ns.args, logger=logger)
        return 0
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except Exception:
        logger.error(traceback.format_exc().rstrip())
        return 1
    finally:
        boot.materializer.cleanup()


def main(argv: list[str] | None = None) -> int:
    """Run the python-lockpack CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="python-lockpack",
        description="Pack a project into an encrypted container, and load or run it from memory.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_pack = subparsers.add_parser("pack", help="Build a container from a project directory.")
    p_pack.add_argument("input", type=pathlib.Path, help="Project directory.")
    p_pack.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        required=True,
        help="Output path for the container.",
    )
    p_pack.add_argument(
        "--entry",
        type=str,
        required=True,
        help="Entry file path relative to the project directory.",
    )
    p_pack.add_argument(
        "--private-key",
        type=str,
        default=None,
        help="Private key (random when omitted).",
    )
    _add_common(p_pack)

    p_ls = subparsers.add_parser("ls", help="List the virtual filesystem of a container.")
    _add_loader_args(p_ls)
    p_ls.add_argument("path", nargs="?", default=None, help="Virtual directory to list.")
    _add_common(p_ls)

    p_resolve = subparsers.add_parser("resolve", help="Resolve a module specifier against a container.")
    _add_loader_args(p_resolve)
    p_resolve.add_argument("specifier", type=str, help="Module specifier.")
    p_resolve.add_argument(
        "--from",
        dest="search",
        action="append",
        default=None,
        help="Search directory (repeatable; defaults to the project root).",
    )
    _add_common(p_resolve)

    p_run = subparsers.add_parser("run", help="Run a container's entry point.")
    _add_loader_args(p_run)
    p_run.add_argument("args", nargs=argparse.REMAINDER, help="Arguments passed to the program.")
    _add_common(p_run)

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    if ns.command == "pack":
        cfg: LoaderConfig = resolve_loader_config(public_key_override=ns.public_key)
        write_container(
            input_dir=ns.input,
            entry_relpath=ns.entry,
            output_path=ns.output,
            public_key=_require_public_key(cfg, parser),
            private_key=ns.private_key,
            logger=logger,
        )
        return 0

    cfg = resolve_loader_config(
        project_root_override=ns.root,
        temp_dir_override=ns.tmp_dir,
        public_key_override=ns.public_key,
    )
    public_key: str = _require_public_key(cfg, parser)
    boot: Bootstrap = _load(ns, cfg, public_key, logger)

    if ns.command == "ls":
        return _cmd_ls(boot, ns)
    if ns.command == "resolve":
        return _cmd_resolve(boot, ns)
    if ns.command == "run":
        return _cmd_run(boot, ns, logger)

    raise AssertionError(f"Unhandled command: {ns.command}")
