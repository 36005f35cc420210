"""Backup filename codec, compression table and snapshot name generation.

A backup filename carries (subject, timestamp, incremental flag)::

    <subject with "/" -> "_">_<YYYYMMDD>_<HHMMSS>[_incr].zfs[.gz|.zst|.lz4]

e.g. ``tank/containers/web`` at 2026-01-27 14:30:22 UTC becomes
``tank_containers_web_20260127_143022.zfs.zst``.

Grammar used by :func:`decode` (anchored at the end of the name)::

    name      := subject "_" date "_" time [ "_incr" ] [ extension ]
    date      := 8 DIGIT            ; YYYYMMDD, UTC
    time      := 6 DIGIT            ; HHMMSS, UTC
    extension := "." *ANY

The subject is greedy, so the timestamp is always the last fixed-width
``_DDDDDDDD_DDDDDD`` group before the extension. Literal "_" and "%" in a
subject are percent-escaped ("%5F", "%25") so that every "_" left in the
encoded subject stands for a "/" and decoding is exact.

The escaping changes the on-disk name of any dataset containing "_".
Files written by the older shell scripts used the bare "_", so
``pool/my_data`` was stored as ``pool_my_data_...`` and now decodes as
``pool/my/data``; rename such files (``_`` -> ``%5F`` inside the dataset
part) before restoring or pruning them. Names of datasets without "_" are
unchanged.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import unquote

from zfsh.models import BackupName

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
INCREMENTAL_MARK = "_incr"
STREAM_EXTENSION = ".zfs"

_NAME_RE = re.compile(
    r"^(?P<subject>.+)_(?P<stamp>\d{8}_\d{6})(?P<incr>_incr)?(?P<ext>\..*)?$",
    re.DOTALL,
)


class DecodeError(ValueError):
    """Raised when a filename has no trailing timestamp suffix."""


@dataclass(frozen=True)
class Compression:
    name: str
    extension: str
    compress_cmd: tuple[str, ...]
    decompress_cmd: tuple[str, ...]

    @property
    def tool(self) -> str | None:
        """Executable that must be installed, or None for no compression."""
        return self.compress_cmd[0] if self.compress_cmd else None


COMPRESSIONS = {
    "gzip": Compression("gzip", ".gz", ("gzip", "-c"), ("gzip", "-dc")),
    "zstd": Compression("zstd", ".zst", ("zstd", "-c", "-T0"), ("zstd", "-dc")),
    "lz4": Compression("lz4", ".lz4", ("lz4", "-c"), ("lz4", "-dc")),
    "none": Compression("none", "", (), ()),
}


def get_compression(name: str) -> Compression:
    try:
        return COMPRESSIONS[name]
    except KeyError:
        choices = ", ".join(COMPRESSIONS)
        raise ValueError(f"Unknown compression {name!r} (use: {choices})") from None


def detect_compression(filename: str) -> Compression:
    """Guess the compression of a backup file from its extension."""
    for comp in COMPRESSIONS.values():
        if comp.extension and filename.endswith(comp.extension):
            return comp
    return COMPRESSIONS["none"]


def backup_extension(compression: str) -> str:
    """".zfs" plus the compressor's extension, e.g. ".zfs.zst"."""
    return STREAM_EXTENSION + get_compression(compression).extension


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _escape_subject(subject: str) -> str:
    return subject.replace("%", "%25").replace("_", "%5F").replace("/", "_")


def _unescape_subject(encoded: str) -> str:
    return unquote(encoded.replace("_", "/"))


def encode(
    subject: str,
    timestamp: datetime,
    is_incremental: bool = False,
    extension: str = "",
) -> str:
    """Build a backup filename. ``extension`` is appended verbatim.

    Naive timestamps are taken as UTC; aware ones are converted to UTC.
    """
    if not subject:
        raise ValueError("subject must not be empty")
    name = f"{_escape_subject(subject)}_{_utc(timestamp).strftime(TIMESTAMP_FORMAT)}"
    if is_incremental:
        name += INCREMENTAL_MARK
    return name + extension


def decode(filename: str) -> BackupName:
    """Parse a backup filename (directories are ignored). Raises DecodeError."""
    basename = os.path.basename(filename)
    match = _NAME_RE.match(basename)
    if not match:
        raise DecodeError(f"Not a backup filename: {basename!r}")
    try:
        stamp = datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT)
    except ValueError as e:
        raise DecodeError(f"Invalid timestamp in {basename!r}: {e}") from e
    return BackupName(
        subject=_unescape_subject(match.group("subject")),
        timestamp=stamp.replace(tzinfo=timezone.utc),
        is_incremental=match.group("incr") is not None,
        extension=match.group("ext") or "",
    )


def snapshot_name(prefix: str, when: datetime | None = None) -> str:
    """Generated snapshot name: "<prefix>_YYYYMMDD_HHMMSS" in UTC."""
    when = datetime.now(timezone.utc) if when is None else _utc(when)
    return f"{prefix}_{when.strftime(TIMESTAMP_FORMAT)}"
