"""Backups: zfs send to compressed files or to a remote host, and back."""
from __future__ import annotations

import hashlib
import os
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING, Callable

from zfsh import zfs
from zfsh.chain import NotFoundError, resolve_base, resolve_recursive_base
from zfsh.executor import ExecutorError, parse_remote
from zfsh.models import Artifact, BackupName, RetentionPolicy
from zfsh.naming import (
    DecodeError,
    STREAM_EXTENSION,
    backup_extension,
    decode,
    detect_compression,
    encode,
    get_compression,
    snapshot_name,
)
from zfsh.retention import classify, group_by_subject, validate_policy
from zfsh.units import format_size

if TYPE_CHECKING:
    from zfsh.executor import Executor
    from zfsh.output import Console

CHECKSUM_EXTENSION = ".sha256"
SORT_KEYS = ("date", "size", "name")


@dataclass(frozen=True)
class BackupFile:
    """A backup file found in a backup directory."""
    path: str
    name: BackupName
    size: int

    @property
    def filename(self) -> str:
        return os.path.basename(self.path)

    @property
    def compression(self) -> str:
        return detect_compression(self.filename).name

    def to_artifact(self) -> Artifact:
        return Artifact(
            identity=self.path,
            subject=self.name.subject,
            created_at=self.name.timestamp,
            is_incremental=self.name.is_incremental,
            size_bytes=self.size,
        )


def scan_backups(directory: str, warn: Callable[[str], None] | None = None) -> list[BackupFile]:
    """Decode every backup file directly inside ``directory``, sorted by name.

    Files that look like backups but do not decode are skipped (with a
    warning) so foreign files never abort a listing or cleanup.
    """
    found = []
    with os.scandir(directory) as entries:
        for entry in entries:
            if not entry.is_file() or STREAM_EXTENSION not in entry.name:
                continue
            if entry.name.endswith(CHECKSUM_EXTENSION):
                continue
            try:
                name = decode(entry.name)
            except DecodeError as e:
                if warn is not None:
                    warn(f"Skipping {entry.name}: {e}")
                continue
            found.append(BackupFile(path=entry.path, name=name, size=entry.stat().st_size))
    found.sort(key=lambda b: b.filename)
    return found


def file_sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum(path: str) -> str:
    """Write ``<path>.sha256`` in sha256sum format and return its path."""
    checksum_path = path + CHECKSUM_EXTENSION
    with open(checksum_path, "w") as f:
        f.write(f"{file_sha256(path)}  {os.path.basename(path)}\n")
    return checksum_path


def verify_checksum(path: str) -> bool:
    with open(path + CHECKSUM_EXTENSION) as f:
        expected = f.read().split()[0].lower()
    return file_sha256(path) == expected


def _source_snapshot(
    source: str,
    executor: "Executor",
    console: "Console",
    prefix: str,
    recursive: bool,
    now: datetime,
    purpose: str,
) -> tuple[str, str, bool] | None:
    """Return (dataset, snapshot, created) for a dataset or snapshot source."""
    if "@" in source:
        if not zfs.snapshot_exists(source, executor):
            console.error(f"Snapshot '{source}' does not exist")
            return None
        return source.partition("@")[0], source, False

    if not zfs.dataset_exists(source, executor):
        console.error(f"Dataset '{source}' does not exist")
        return None
    console.info(f"Creating snapshot for {purpose}...")
    name = snapshot_name(prefix, now)
    try:
        zfs.create_snapshot(source, name, executor, recursive=recursive)
    except ExecutorError as e:
        console.error(f"Failed to create snapshot: {e}")
        return None
    snapshot = f"{source}@{name}"
    console.success(f"Created snapshot: {snapshot}")
    return source, snapshot, True


def _discard_snapshot(snapshot: str, executor: "Executor", console: "Console") -> None:
    try:
        zfs.destroy_snapshot(snapshot, executor)
    except ExecutorError as e:
        console.warn(f"Could not remove snapshot {snapshot}: {e}")


def _target_artifact(timeline: list[Artifact], snapshot: str, now: datetime) -> Artifact:
    for artifact in timeline:
        if artifact.identity == snapshot:
            return artifact
    dataset = snapshot.partition("@")[0]
    return Artifact(identity=snapshot, subject=dataset, created_at=now)


def _with_prefix(timeline: list[Artifact], prefix: str | None) -> list[Artifact]:
    if not prefix:
        return timeline
    return [a for a in timeline if a.identity.partition("@")[2].startswith(prefix)]


def _resolve_incremental_base(
    dataset: str,
    snapshot: str,
    executor: "Executor",
    console: "Console",
    explicit: str | None,
    prefix: str | None,
    recursive: bool,
    now: datetime,
    remote_executor: "Executor | None" = None,
    remote_path: str | None = None,
) -> str | None:
    """Full snapshot name of the incremental base, or None for a full stream.

    Raises NotFoundError when ``explicit`` is not a local snapshot.
    """
    # The prefix only narrows automatic selection; an explicit base or the
    # target snapshot may carry any name.
    everything = zfs.snapshot_timeline(dataset, executor)
    if explicit:
        return resolve_base(everything, explicit=explicit).identity
    local = _with_prefix(everything, prefix)

    snap_suffix = snapshot[len(dataset):]

    def remote_timeline(path: str) -> list[Artifact]:
        try:
            return zfs.snapshot_timeline(path, remote_executor)
        except ExecutorError:
            return []

    if not recursive:
        remote = remote_timeline(remote_path) if remote_executor is not None else None
        base = resolve_base(local, remote, target=_target_artifact(everything, snapshot, now))
        return base.identity if base is not None else None

    local_by_subject = {dataset: local}
    unfiltered = {dataset: everything}
    remote_by_subject = {} if remote_executor is not None else None
    targets = {}
    for child in zfs.list_datasets(dataset, executor):
        if child.name != dataset:
            unfiltered[child.name] = zfs.snapshot_timeline(child.name, executor)
            local_by_subject[child.name] = _with_prefix(unfiltered[child.name], prefix)
        targets[child.name] = _target_artifact(
            unfiltered[child.name], child.name + snap_suffix, now,
        )
        if remote_by_subject is not None:
            remote_by_subject[child.name] = remote_timeline(remote_path + child.name[len(dataset):])
    suffix, divergent = resolve_recursive_base(local_by_subject, remote_by_subject, targets)
    if divergent:
        console.warn(
            "Child datasets do not share an incremental base: " + ", ".join(divergent)
        )
    return dataset + suffix if suffix else None


def run_create(
    source: str,
    executor: "Executor",
    console: "Console",
    output_dir: str,
    compression: str = "zstd",
    incremental: bool = False,
    base: str | None = None,
    recursive: bool = False,
    progress: bool = False,
    prefix: str = "backup",
    now: datetime | None = None,
) -> int:
    """Write ``zfs send`` of a dataset or snapshot to a compressed file."""
    now = now or datetime.now(timezone.utc)
    comp = get_compression(compression)
    if comp.tool and not executor.has_command(comp.tool):
        console.error(f"Compression tool '{comp.tool}' not found")
        return 1

    os.makedirs(output_dir, exist_ok=True)

    source_info = _source_snapshot(source, executor, console, prefix, recursive, now, "backup")
    if source_info is None:
        return 1
    dataset, snapshot, created = source_info

    base_snap = None
    if incremental:
        try:
            base_snap = _resolve_incremental_base(
                dataset, snapshot, executor, console, base, prefix, recursive, now,
            )
        except NotFoundError as e:
            console.error(str(e))
            if created:
                _discard_snapshot(snapshot, executor, console)
            return 1
        if base_snap is None:
            console.warn("No base snapshot found, creating full backup")
            incremental = False
        else:
            console.info(f"Incremental from: {base_snap}")

    filename = encode(dataset, now, incremental, backup_extension(compression))
    output_path = os.path.join(output_dir, filename)
    console.info(f"Creating backup: {output_path}")

    stages = [zfs.send_command(snapshot, base_snap, recursive)]
    if progress and executor.has_command("pv"):
        size = zfs.get_properties(snapshot, ["referenced"], executor, parsable=True).get("referenced", "0")
        stages.append(["pv", "-s", size])
    if comp.compress_cmd:
        stages.append(list(comp.compress_cmd))

    start = time.monotonic()
    try:
        with open(output_path, "wb") as out:
            zfs.run_pipeline(stages, executor, stdout=out)
    except (ExecutorError, OSError) as e:
        if os.path.exists(output_path):
            os.remove(output_path)
        if created:
            _discard_snapshot(snapshot, executor, console)
        console.error(f"Backup failed: {e}")
        return 1
    duration = int(time.monotonic() - start)

    write_checksum(output_path)
    file_size = os.path.getsize(output_path)

    console.success(f"Backup complete: {output_path}")
    console.info(f"Size: {format_size(file_size)}, Duration: {duration}s")
    console.emit_json({
        "success": True,
        "file": output_path,
        "size": file_size,
        "size_human": format_size(file_size),
        "duration": duration,
        "snapshot": snapshot,
        "base": base_snap,
        "incremental": incremental,
        "compression": compression,
    })
    return 0


def run_restore(
    backup_file: str,
    target: str,
    executor: "Executor",
    console: "Console",
    force: bool = False,
    dry_run: bool = False,
    progress: bool = False,
) -> int:
    """Feed a backup file (or stdin for "-") into ``zfs receive``."""
    from_stdin = backup_file == "-"
    if not from_stdin and not os.path.isfile(backup_file):
        console.error(f"Backup file not found: {backup_file}")
        return 1

    comp = detect_compression(backup_file) if not from_stdin else get_compression("none")

    if zfs.dataset_exists(target, executor) and not force:
        console.error(f"Target '{target}' exists. Use -f to force overwrite.")
        return 1

    stages = []
    if progress and not from_stdin and executor.has_command("pv"):
        stages.append(["pv", "-s", str(os.path.getsize(backup_file))])
    if comp.decompress_cmd:
        stages.append(list(comp.decompress_cmd))
    stages.append(zfs.receive_command(target, force=force, dry_run=dry_run))

    console.info(f"Restoring to: {target}")
    if dry_run:
        console.info("(Dry run mode)")

    try:
        if from_stdin:
            zfs.run_pipeline(stages, executor, stdin=sys.stdin.buffer)
        else:
            with open(backup_file, "rb") as f:
                zfs.run_pipeline(stages, executor, stdin=f)
    except ExecutorError as e:
        console.error(f"Restore failed: {e}")
        return 1

    console.success("Restore complete")
    console.emit_json({"success": True, "target": target, "dry_run": dry_run})
    return 0


def run_list(
    directory: str,
    console: "Console",
    pool: str | None = None,
    sort: str = "date",
) -> int:
    if not os.path.isdir(directory):
        console.info(f"Backup directory not found: {directory}")
        console.emit_json({"backups": []})
        return 0

    backups = scan_backups(directory, warn=console.warn)
    if pool:
        backups = [
            b for b in backups
            if b.name.subject == pool or b.name.subject.startswith(pool + "/")
        ]

    if sort == "date":
        backups.sort(key=lambda b: b.name.timestamp, reverse=True)
    elif sort == "size":
        backups.sort(key=lambda b: b.size, reverse=True)
    else:
        backups.sort(key=lambda b: b.filename)

    console.emit_json({"backups": [
        {
            "file": b.filename,
            "dataset": b.name.subject,
            "date": b.name.timestamp.isoformat(),
            "size": b.size,
            "size_human": format_size(b.size),
            "type": "incr" if b.name.is_incremental else "full",
            "compression": b.compression,
        }
        for b in backups
    ]})
    if not backups:
        console.info(f"No backups found in: {directory}")
        return 0

    console.table(
        ("FILE", "DATASET", "DATE", "SIZE", "TYPE", "COMP"),
        [
            (
                b.filename,
                b.name.subject,
                b.name.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                format_size(b.size),
                "incr" if b.name.is_incremental else "full",
                b.compression,
            )
            for b in backups
        ],
        (45, 25, 19, 10, 6, 5),
    )
    return 0


def _stream_readable(path: str, compression: str, executor: "Executor") -> bool:
    comp = get_compression(compression)
    with open(path, "rb") as f:
        if not comp.decompress_cmd:
            f.read(1024)
            return True
        proc = executor.popen(list(comp.decompress_cmd), stdin=f, stdout=subprocess.PIPE)
        data = proc.stdout.read(1024)
        proc.stdout.close()
        if data:
            proc.kill()
            proc.wait()
            return True
        return proc.wait() == 0


def run_verify(
    backup_file: str,
    executor: "Executor",
    console: "Console",
    checksum: bool = False,
    verbose: bool = False,
) -> int:
    if not os.path.isfile(backup_file):
        console.error(f"Backup file not found: {backup_file}")
        return 1

    filename = os.path.basename(backup_file)
    errors = 0
    console.header(f"Verifying: {filename}")

    size = os.path.getsize(backup_file)
    if size == 0:
        console.error("File is empty")
        errors += 1
    else:
        console.success(f"File size: {format_size(size)}")

    try:
        name = decode(filename)
    except DecodeError:
        console.warn("Could not parse filename")
    else:
        console.success(f"Dataset: {name.subject}")
        console.success(f"Date: {name.timestamp.strftime('%Y-%m-%d %H:%M:%S')}")
        console.success(f"Type: {'incremental' if name.is_incremental else 'full'}")

    compression = detect_compression(filename).name
    console.success(f"Compression: {compression}")

    checksum_file = backup_file + CHECKSUM_EXTENSION
    if os.path.isfile(checksum_file):
        console.info("Verifying checksum...")
        if verify_checksum(backup_file):
            console.success("Checksum: OK")
        else:
            console.error("Checksum: FAILED")
            errors += 1
    elif checksum:
        console.warn(f"No checksum file found: {checksum_file}")

    if verbose:
        console.info("Verifying stream integrity...")
        try:
            readable = _stream_readable(backup_file, compression, executor)
        except (ExecutorError, OSError):
            readable = False
        if readable:
            console.success("Stream: readable")
        else:
            console.error("Stream: cannot read")
            errors += 1

    console.line()
    console.emit_json({"valid": errors == 0, "errors": errors})
    if errors:
        console.error(f"Verification failed with {errors} error(s)")
        return 1
    console.success("Verification passed")
    return 0


def plan_cleanup(
    backups: list[BackupFile],
    policy: RetentionPolicy,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> tuple[list[BackupFile], list[BackupFile]]:
    """Classify backups per dataset. Returns (keep, delete)."""
    by_path = {b.path: b for b in backups}
    keep: list[BackupFile] = []
    delete: list[BackupFile] = []
    timelines = group_by_subject(b.to_artifact() for b in backups)
    for subject in sorted(timelines):
        decision = classify(timelines[subject], policy, now=now, tz=tz)
        keep.extend(by_path[a.identity] for a in decision.keep)
        delete.extend(by_path[a.identity] for a in decision.delete)
    return keep, delete


def run_cleanup(
    directory: str,
    policy: RetentionPolicy,
    console: "Console",
    dry_run: bool = False,
    assume_yes: bool = False,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> int:
    """Delete backup files (and their checksums) outside the retention policy."""
    validate_policy(policy)

    if not os.path.isdir(directory):
        console.info(f"Backup directory not found: {directory}")
        return 0

    backups = scan_backups(directory, warn=console.warn)
    keep, delete = plan_cleanup(backups, policy, now=now, tz=tz)

    if not delete:
        console.info("No backups to delete based on retention policy")
        console.emit_json({"deleted": 0, "freed_bytes": 0, "kept": len(keep), "dry_run": dry_run})
        return 0

    total_size = sum(b.size for b in delete)
    console.header("Cleanup Plan")
    console.line(f"Files to delete ({len(delete)}):")
    for b in delete:
        console.line(f"  {b.filename} ({format_size(b.size)})")
    console.line()
    console.info(f"Total space to free: {format_size(total_size)}")

    if dry_run:
        console.info("Dry run - no changes made")
        console.emit_json({
            "would_delete": [b.filename for b in delete],
            "freed_bytes": total_size,
            "kept": len(keep),
            "dry_run": True,
        })
        return 0

    if not console.confirm(f"Delete {len(delete)} backup file(s)?", assume_yes):
        console.line("Aborted.")
        return 0

    deleted = 0
    failed = 0
    for b in delete:
        try:
            os.remove(b.path)
            if os.path.exists(b.path + CHECKSUM_EXTENSION):
                os.remove(b.path + CHECKSUM_EXTENSION)
        except OSError as e:
            console.error(f"Failed to delete: {b.filename}: {e}")
            failed += 1
            continue
        console.success(f"Deleted: {b.filename}")
        deleted += 1

    console.info(f"Deleted {deleted} file(s)")
    console.emit_json({"deleted": deleted, "failed": failed, "freed_bytes": total_size})
    return 1 if failed else 0


def run_send(
    source: str,
    remote_spec: str,
    executor: "Executor",
    console: "Console",
    incremental: bool = False,
    base: str | None = None,
    compression: str = "none",
    bandwidth: str | None = None,
    progress: bool = False,
    recursive: bool = False,
    prefix: str = "backup",
    remote_executor: "Executor | None" = None,
    now: datetime | None = None,
) -> int:
    """Pipe ``zfs send`` over SSH into ``zfs receive -F`` on another host."""
    now = now or datetime.now(timezone.utc)
    try:
        remote = parse_remote(remote_spec)
    except ValueError as e:
        console.error(str(e))
        return 1
    comp = get_compression(compression)
    remote_exec = remote_executor or remote.executor()

    console.info(f"Remote: {remote.display}")
    console.info("Testing SSH connection...")
    try:
        remote_exec.run(["zfs", "list", "-H", "-o", "name"])
    except ExecutorError:
        console.error("Cannot connect to remote or ZFS not available on remote")
        return 1
    console.success("SSH connection OK")

    source_info = _source_snapshot(source, executor, console, prefix, recursive, now, "send")
    if source_info is None:
        return 1
    dataset, snapshot, created = source_info

    base_snap = None
    if incremental:
        try:
            base_snap = _resolve_incremental_base(
                dataset, snapshot, executor, console, base, prefix, recursive, now,
                remote_executor=remote_exec, remote_path=remote.path,
            )
        except NotFoundError as e:
            console.error(str(e))
            if created:
                _discard_snapshot(snapshot, executor, console)
            return 1
        if base_snap is None:
            console.warn("No common snapshot found, sending full stream")
            incremental = False
        else:
            console.info(f"Incremental from: {base_snap}")

    stages = [zfs.send_command(snapshot, base_snap, recursive)]
    have_pv = (progress or bandwidth) and executor.has_command("pv")
    if progress and have_pv:
        size = zfs.get_properties(snapshot, ["referenced"], executor, parsable=True).get("referenced", "0")
        stages.append(["pv", "-s", size])
    if comp.compress_cmd:
        stages.append(list(comp.compress_cmd))
    if bandwidth:
        if have_pv:
            stages.append(["pv", "-q", "-L", bandwidth])
        else:
            console.warn("Bandwidth limit ignored: 'pv' is not installed")
    remote_stages = [zfs.receive_command(remote.path, force=True)]
    if comp.decompress_cmd:
        remote_stages.insert(0, list(comp.decompress_cmd))
    stages.append(remote.executor().wrap_pipeline(*remote_stages))

    console.info(f"Sending to {remote.host}:{remote.path}...")
    try:
        zfs.run_pipeline(stages, executor)
    except ExecutorError as e:
        if created:
            _discard_snapshot(snapshot, executor, console)
        console.error(f"Send failed: {e}")
        return 1

    console.success("Send complete")
    console.emit_json({
        "success": True,
        "snapshot": snapshot,
        "remote": remote_spec,
        "base": base_snap,
        "incremental": incremental,
    })
    return 0
