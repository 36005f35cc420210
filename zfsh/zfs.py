"""ZFS operations using an Executor for dependency injection."""
from __future__ import annotations

import shlex
import subprocess
from datetime import datetime, timezone
from typing import IO, TYPE_CHECKING, Sequence

from zfsh.executor import ExecutorError
from zfsh.models import Artifact, Dataset, Snapshot

if TYPE_CHECKING:
    from zfsh.executor import Executor

SNAPSHOT_FIELDS = "name,creation,used,refer"
SORT_FIELDS = {"creation": "creation", "name": "name", "used": "used"}


def _parse_snapshot_line(line: str) -> Snapshot | None:
    parts = line.rstrip("\n").split("\t")
    if len(parts) < 4 or "@" not in parts[0]:
        return None
    name, creation, used, refer = parts[:4]
    snap = Snapshot.parse(name)
    return Snapshot(
        dataset=snap.dataset,
        name=snap.name,
        created_at=datetime.fromtimestamp(int(creation), tz=timezone.utc),
        used=int(used) if used.isdigit() else None,
        referenced=int(refer) if refer.isdigit() else None,
    )


def list_datasets(root: str, executor: "Executor", include_root: bool = True) -> list[Dataset]:
    """Return ``root`` and all datasets below it."""
    output = executor.run(["zfs", "list", "-H", "-o", "name", "-r", root])
    results = []
    for line in output.splitlines():
        name = line.strip()
        if not name or (name == root and not include_root):
            continue
        results.append(Dataset(name=name))
    return results


def list_snapshots(dataset: str, executor: "Executor") -> list[Snapshot]:
    """Return snapshots for a dataset, oldest first."""
    output = executor.run([
        "zfs", "list", "-H", "-p", "-o", SNAPSHOT_FIELDS,
        "-t", "snapshot", "-s", "creation", "-r", dataset,
    ])
    results = []
    for line in output.splitlines():
        snap = _parse_snapshot_line(line)
        # Only include snapshots directly on this dataset (not children)
        if snap is not None and snap.dataset == dataset:
            results.append(snap)
    return results


def list_all_snapshots(
    executor: "Executor",
    root: str | None = None,
    sort: str = "creation",
) -> list[Snapshot]:
    """Return every snapshot (optionally under ``root``), sorted by ``sort``."""
    cmd = [
        "zfs", "list", "-H", "-p", "-o", SNAPSHOT_FIELDS,
        "-t", "snapshot", "-s", SORT_FIELDS[sort],
    ]
    if root:
        cmd += ["-r", root]
    output = executor.run(cmd)
    return [s for s in map(_parse_snapshot_line, output.splitlines()) if s is not None]


def snapshot_timeline(
    dataset: str,
    executor: "Executor",
    prefix: str | None = None,
) -> list[Artifact]:
    """Oldest-first artifacts for a dataset's snapshots, optionally by name prefix."""
    return [
        snap.to_artifact()
        for snap in list_snapshots(dataset, executor)
        if not prefix or snap.name.startswith(prefix)
    ]


def dataset_exists(dataset: str, executor: "Executor") -> bool:
    """Return True if the dataset exists."""
    try:
        executor.run(["zfs", "list", "-H", "-o", "name", dataset])
        return True
    except ExecutorError:
        return False


def snapshot_exists(snapshot: str, executor: "Executor") -> bool:
    """Return True if the snapshot exists."""
    try:
        executor.run(["zfs", "list", "-H", "-o", "name", "-t", "snapshot", snapshot])
        return True
    except ExecutorError:
        return False


def get_properties(
    target: str,
    props: Sequence[str],
    executor: "Executor",
    pool: bool = False,
    parsable: bool = False,
) -> dict[str, str]:
    """Read properties with ``zfs get`` (or ``zpool get`` when ``pool``)."""
    cmd = ["zpool" if pool else "zfs", "get", "-H"]
    if parsable:
        cmd.append("-p")
    cmd += ["-o", "property,value", ",".join(props), target]
    output = executor.run(cmd)
    values = {}
    for line in output.splitlines():
        prop, _, value = line.partition("\t")
        if prop:
            values[prop.strip()] = value.strip()
    return values


def create_snapshot(
    dataset: str,
    name: str,
    executor: "Executor",
    recursive: bool = False,
) -> Snapshot:
    cmd = ["zfs", "snapshot"]
    if recursive:
        cmd.append("-r")
    cmd.append(f"{dataset}@{name}")
    executor.run(cmd)
    return Snapshot(dataset=dataset, name=name, created_at=datetime.now(timezone.utc))


def destroy_snapshot(
    snapshot: str,
    executor: "Executor",
    recursive: bool = False,
) -> None:
    """Destroy a single snapshot (full name)."""
    cmd = ["zfs", "destroy"]
    if recursive:
        cmd.append("-r")
    cmd.append(snapshot)
    executor.run(cmd)


def rollback(
    snapshot: str,
    executor: "Executor",
    recursive: bool = False,
    force: bool = False,
) -> None:
    cmd = ["zfs", "rollback"]
    if recursive:
        cmd.append("-r")
    if force:
        cmd += ["-R", "-f"]
    cmd.append(snapshot)
    executor.run(cmd)


def newer_snapshots(snapshot: Snapshot, snapshots: Sequence[Snapshot]) -> list[Snapshot]:
    """Snapshots listed after ``snapshot`` in an oldest-first list."""
    for index, snap in enumerate(snapshots):
        if snap.full_name == snapshot.full_name:
            return list(snapshots[index + 1:])
    return []


def send_command(
    snapshot: str,
    base: str | None = None,
    recursive: bool = False,
) -> list[str]:
    """``zfs send`` argv: full when ``base`` is None, else ``-i base``."""
    cmd = ["zfs", "send"]
    if recursive:
        cmd.append("-R")
    if base:
        cmd += ["-i", base]
    cmd.append(snapshot)
    return cmd


def receive_command(target: str, force: bool = False, dry_run: bool = False) -> list[str]:
    cmd = ["zfs", "receive"]
    if force:
        cmd.append("-F")
    if dry_run:
        cmd.append("-n")
    cmd.append(target)
    return cmd


def describe_pipeline(stages: Sequence[list[str]]) -> str:
    return " | ".join(shlex.join(cmd) for cmd in stages)


def run_pipeline(
    stages: Sequence[list[str]],
    executor: "Executor",
    stdin: IO[bytes] | int | None = None,
    stdout: IO[bytes] | int | None = None,
) -> None:
    """Run ``a | b | c`` with each stage launched through ``executor``.

    ``stdin`` feeds the first stage and ``stdout`` receives the last.
    Raises ExecutorError naming every stage's exit status if any fails.
    """
    procs: list[subprocess.Popen] = []
    upstream = stdin
    for index, cmd in enumerate(stages):
        last = index == len(stages) - 1
        try:
            proc = executor.popen(
                cmd,
                stdin=upstream,
                stdout=stdout if last else subprocess.PIPE,
            )
        except OSError as e:
            for started in procs:
                started.kill()
                started.wait()
            raise ExecutorError(cmd, 1, str(e)) from e
        if procs:
            # Allow the upstream stage to receive SIGPIPE if this one dies
            procs[-1].stdout.close()
        procs.append(proc)
        upstream = proc.stdout

    codes = [proc.wait() for proc in procs]
    if any(codes):
        detail = ", ".join(
            f"{cmd[0]} exited {code}" for cmd, code in zip(stages, codes)
        )
        flat: list[str] = []
        for cmd in stages:
            flat += (["|"] if flat else []) + list(cmd)
        raise ExecutorError(flat, max(codes), detail)


def list_pools(executor: "Executor") -> list[str]:
    output = executor.run(["zpool", "list", "-H", "-o", "name"])
    return [line.strip() for line in output.splitlines() if line.strip()]


def pool_exists(pool: str, executor: "Executor") -> bool:
    try:
        executor.run(["zpool", "list", "-H", "-o", "name", pool])
        return True
    except ExecutorError:
        return False


def pool_status(pool: str, executor: "Executor") -> str:
    """Raw ``zpool status`` text for one pool."""
    return executor.run(["zpool", "status", pool])


def create_pool(pool: str, vdev: str, executor: "Executor", autotrim: bool = True) -> None:
    executor.run(["zpool", "create", "-o", f"autotrim={'on' if autotrim else 'off'}", pool, vdev])


def expand_vdev(pool: str, vdev: str, executor: "Executor") -> None:
    """Let the pool grow into a vdev that got bigger (``zpool online -e``)."""
    executor.run(["zpool", "online", "-e", pool, vdev])


def set_property(target: str, prop: str, value: str, executor: "Executor") -> None:
    executor.run(["zfs", "set", f"{prop}={value}", target])
