"""python-lockpack.

A bootstrap loader for single-file, encrypted distributions: it unpacks a
container blob into an in-memory virtual filesystem and serves module lookups
and file reads from it before falling back to the real disk.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
