"""Tests for zfsh.naming module."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from zfsh.naming import (
    COMPRESSIONS,
    DecodeError,
    backup_extension,
    decode,
    detect_compression,
    encode,
    get_compression,
    snapshot_name,
)
from tests.conftest import ts


def test_encode_full_backup():
    name = encode("pool/containers/web", ts(2026, 1, 27, 14, 30, 22))
    assert name == "pool_containers_web_20260127_143022"


def test_decode_full_backup():
    result = decode("pool_containers_web_20260127_143022")
    assert result.subject == "pool/containers/web"
    assert result.timestamp == ts(2026, 1, 27, 14, 30, 22)
    assert result.is_incremental is False
    assert result.extension == ""


def test_incremental_with_extension():
    name = encode("tank/data", ts(2026, 2, 1), True, ".zfs.zst")
    assert name == "tank_data_20260201_000000_incr.zfs.zst"
    result = decode(name)
    assert result.subject == "tank/data"
    assert result.is_incremental
    assert result.extension == ".zfs.zst"


def test_decode_ignores_directory():
    result = decode("/root/backups/tank_20260101_010203.zfs.gz")
    assert result.subject == "tank"
    assert result.extension == ".zfs.gz"


def test_aware_timestamp_is_stored_as_utc():
    plus_two = timezone(timedelta(hours=2))
    name = encode("tank", datetime(2026, 1, 27, 16, 30, 22, tzinfo=plus_two))
    assert name == "tank_20260127_143022"


def test_naive_timestamp_is_taken_as_utc():
    assert encode("tank", datetime(2026, 1, 27, 14, 30, 22)) == "tank_20260127_143022"


@pytest.mark.parametrize("subject", [
    "tank",
    "tank/data",
    "pool/containers/web",
    "tank/my_data",
    "tank/a_b/c_d",
    "tank/100%",
    "tank/%5F",
    "tank/20260101_000000",
])
@pytest.mark.parametrize("incremental", [False, True])
def test_subjects_survive_round_trip(subject, incremental):
    when = ts(2025, 12, 31, 23, 59, 59)
    result = decode(encode(subject, when, incremental, ".zfs.lz4"))
    assert (result.subject, result.timestamp, result.is_incremental) == (subject, when, incremental)


def test_underscore_in_subject_is_escaped():
    name = encode("tank/my_data", ts(2026, 1, 1))
    assert name == "tank_my%5Fdata_20260101_000000"


def test_bare_underscore_names_decode_as_path_separators():
    # Names written before escaping: "pool/my_data" was stored with a bare "_"
    assert decode("pool_my_data_20260101_000000.zfs").subject == "pool/my/data"
    assert decode("pool_my%5Fdata_20260101_000000.zfs").subject == "pool/my_data"


@pytest.mark.parametrize("filename", [
    "notes.txt",
    "tank.zfs",
    "tank_2026011_010203.zfs",
    "_20260101_010203.zfs",
    "tank_20260101-010203.zfs",
])
def test_decode_rejects_unrecognized(filename):
    with pytest.raises(DecodeError):
        decode(filename)


def test_decode_rejects_impossible_date():
    with pytest.raises(DecodeError, match="Invalid timestamp"):
        decode("tank_20261340_250000.zfs")


def test_encode_requires_subject():
    with pytest.raises(ValueError):
        encode("", ts(2026, 1, 1))


def test_compression_table():
    assert backup_extension("zstd") == ".zfs.zst"
    assert backup_extension("gzip") == ".zfs.gz"
    assert backup_extension("lz4") == ".zfs.lz4"
    assert backup_extension("none") == ".zfs"
    assert COMPRESSIONS["zstd"].compress_cmd == ("zstd", "-c", "-T0")
    assert COMPRESSIONS["none"].tool is None


def test_unknown_compression():
    with pytest.raises(ValueError, match="Unknown compression"):
        get_compression("bzip2")


def test_detect_compression():
    assert detect_compression("x_20260101_000000.zfs.zst").name == "zstd"
    assert detect_compression("x_20260101_000000.zfs.gz").name == "gzip"
    assert detect_compression("x_20260101_000000.zfs").name == "none"


def test_snapshot_name():
    assert snapshot_name("backup", ts(2026, 1, 27, 14, 30, 22)) == "backup_20260127_143022"
