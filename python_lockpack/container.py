"""Container parsing.

Wire layout (every length field is :data:`LENGTH_FIELD_SIZE` bytes of ASCII,
whose value is the run of digits after the last ``$``)::

    [len][encrypted private key]      -- key section, protected by the public key
    [len][entry point]                -- working key
    [len][file header JSON]           -- working key
    [data region ...]                 -- addressed by header offset/size

The working key is ``public_key + private_key``.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import json
import logging
import re

from python_lockpack.crypto import CipherInputError, decrypt_text, derive_key


LENGTH_FIELD_SIZE: int = 20
LENGTH_FIELD_PAD: str = "$"
MAX_STARTUP_SEGMENTS: int = 5

_DIGITS_RE: re.Pattern[str] = re.compile(r"^\d+$")


class ContainerIntegrityError(RuntimeError):
    """Raised when the container is truncated or a declared range is missing."""


class ContainerParseError(ValueError):
    """Raised when a decrypted section cannot be interpreted."""


@dataclass(frozen=True, slots=True)
class HeaderEntry:
    """One file-header record.

    :ivar path: Virtual path as stored in the container (usually relative).
    :ivar offset: Byte offset into the data region.
    :ivar size: Byte length in the data region.
    :ivar stat: Raw stat mapping (timestamps and capability flags).
    """

    path: str
    offset: int
    size: int
    stat: Mapping[str, object]


@dataclass(frozen=True, slots=True)
class ContainerSections:
    """Sections recovered from a container blob.

    :ivar working_key: Combined public + private key.
    :ivar entry_point: Path of the module to execute first.
    :ivar header: File-header records keyed by stored path.
    :ivar data: Zero-copy view over the trailing data region.
    """

    working_key: str
    entry_point: str
    header: dict[str, HeaderEntry]
    data: memoryview


def encode_length_field(length: int) -> bytes:
    """Encode a section length as a fixed-width field.

    :param length: Section length in bytes.
    :returns: :data:`LENGTH_FIELD_SIZE` ASCII bytes.
    :raises ValueError: If the length does not fit.
    """

    digits: str = str(length)
    if length < 0 or len(digits) >= LENGTH_FIELD_SIZE:
        raise ValueError(f"Section length {length} does not fit a {LENGTH_FIELD_SIZE}-byte field.")
    return digits.rjust(LENGTH_FIELD_SIZE, LENGTH_FIELD_PAD).encode("ascii")


def decode_length_field(field: bytes | memoryview) -> int:
    """Decode a fixed-width length field.

    :param field: Raw field bytes.
    :returns: Declared section length.
    :raises ContainerIntegrityError: If the field carries no decimal length.
    """

    text: str = bytes(field).decode("latin-1")
    tail: str = text[text.rfind(LENGTH_FIELD_PAD) + 1 :]
    if _DIGITS_RE.match(tail) is None:
        raise ContainerIntegrityError(f"Malformed length field: {text!r}")
    return int(tail)


class _Cursor:
    """Sequential reader over the container blob."""

    _view: memoryview
    pos: int

    def __init__(self, blob: bytes | bytearray | memoryview) -> None:
        self._view = memoryview(blob)
        self.pos = 0

    def take(self, n: int, *, what: str) -> memoryview:
        """Read exactly ``n`` bytes.

        :param n: Number of bytes.
        :param what: Section name for the error message.
        :returns: A view of the bytes read.
        :raises ContainerIntegrityError: On a short read.
        """

        chunk: memoryview = self._view[self.pos : self.pos + n]
        self.pos += n
        if len(chunk) != n:
            raise ContainerIntegrityError(f"unable to read {what}.")
        return chunk

    def take_section(self, *, what: str) -> memoryview:
        length: int = decode_length_field(self.take(LENGTH_FIELD_SIZE, what=f"{what} length"))
        return self.take(length, what=what)

    def rest(self) -> memoryview:
        return self._view[self.pos :]


def _as_int(value: object, *, field: str, path: str) -> int:
    # bool is an int subclass; a JSON true is not a valid offset.
    if isinstance(value, bool) is True or isinstance(value, int) is False or value < 0:
        raise ContainerParseError(f"Header entry {path!r} has invalid {field}: {value!r}")
    return value


def _parse_header(text: str) -> dict[str, HeaderEntry]:
    """Decode the file-header JSON.

    :param text: Decrypted header text.
    :returns: Header records keyed by path.
    :raises ContainerParseError: If the JSON is malformed or mis-shaped.
    """

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ContainerParseError(f"File header is not valid JSON (wrong key?): {e}") from e

    if isinstance(raw, dict) is False:
        raise ContainerParseError(f"File header must be a JSON object, got {type(raw).__name__}.")

    header: dict[str, HeaderEntry] = {}
    for path, meta in raw.items():
        if isinstance(meta, dict) is False:
            raise ContainerParseError(f"Header entry {path!r} must be an object.")
        stat = meta.get("stat")
        if isinstance(stat, dict) is False:
            raise ContainerParseError(f"Header entry {path!r} has no stat object.")
        header[path] = HeaderEntry(
            path=path,
            offset=_as_int(meta.get("offset"), field="offset", path=path),
            size=_as_int(meta.get("size"), field="size", path=path),
            stat=stat,
        )
    return header


def parse_container(
    blob: bytes | bytearray | memoryview,
    public_key: str,
    *,
    logger: logging.Logger | None = None,
) -> ContainerSections:
    """Parse a container blob into its sections.

    :param blob: Container bytes.
    :param public_key: Public secret.
    :param logger: Optional logger.
    :returns: Parsed sections.
    :raises ContainerIntegrityError: On any short read.
    :raises ContainerParseError: If a decrypted section cannot be interpreted.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("python_lockpack")
    cur = _Cursor(blob)

    try:
        encrypted_key: memoryview = cur.take_section(what="encrypted key")
        working_key: str = derive_key(public_key, encrypted_key)

        entry_point: str = decrypt_text(cur.take_section(what="entry point"), working_key)
        header_text: str = decrypt_text(cur.take_section(what="file header"), working_key)
    except CipherInputError as e:
        raise ContainerParseError(str(e)) from e

    header: dict[str, HeaderEntry] = _parse_header(header_text)
    data: memoryview = cur.rest()

    log.debug(
        f"python-lockpack: parsed container (entries={len(header)}, data={len(data)} bytes)"
    )
    return ContainerSections(
        working_key=working_key,
        entry_point=entry_point,
        header=header,
        data=data,
    )


def blob_from_segments(segments: Sequence[str | bytes]) -> bytes:
    """Join startup segments into a container blob.

    At most :data:`MAX_STARTUP_SEGMENTS` segments are used; joining stops at
    the first empty one.

    :param segments: Segments in order.
    :returns: Concatenated blob.
    """

    parts: list[bytes] = []
    for seg in segments[0:MAX_STARTUP_SEGMENTS]:
        if len(seg) == 0:
            break
        parts.append(seg.encode("utf-8") if isinstance(seg, str) else bytes(seg))
    return b"".join(parts)


def split_startup_args(argv: Sequence[str | bytes]) -> tuple[str, bytes]:
    """Split process arguments into the public key and the container blob.

    ``argv[1]`` is the public key, ``argv[2:7]`` are the blob segments.

    :param argv: Process arguments including the program name.
    :returns: ``(public_key, blob)``.
    :raises ContainerIntegrityError: If no public key is present.
    """

    if len(argv) < 2:
        raise ContainerIntegrityError("unable to read public key from startup arguments.")
    public_key = argv[1]
    if isinstance(public_key, bytes) is True:
        public_key = public_key.decode("utf-8")
    return public_key, blob_from_segments(argv[2:])
