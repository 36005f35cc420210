"""Snapshot lifecycle: create, list, delete, rollback and retention cleanup."""
from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING

from zfsh import zfs
from zfsh.executor import ExecutorError
from zfsh.models import Artifact, RetentionPolicy, Snapshot
from zfsh.naming import snapshot_name
from zfsh.retention import classify, validate_policy
from zfsh.units import format_duration, format_size

if TYPE_CHECKING:
    from zfsh.executor import Executor
    from zfsh.output import Console


def _age(artifact: Artifact, now: datetime) -> str:
    return format_duration(int((now - artifact.created_at).total_seconds()))


def _destroy_all(
    names: list[str],
    executor: "Executor",
    console: "Console",
    recursive: bool = False,
) -> tuple[int, int]:
    """Destroy snapshots one by one. Returns (deleted, failed)."""
    deleted = failed = 0
    for name in names:
        try:
            zfs.destroy_snapshot(name, executor, recursive=recursive)
        except ExecutorError as e:
            console.error(f"Failed to delete: {name}: {e}")
            failed += 1
            continue
        console.success(f"Deleted: {name}")
        deleted += 1
    return deleted, failed


def run_create(
    dataset: str,
    executor: "Executor",
    console: "Console",
    name: str | None = None,
    prefix: str = "backup",
    recursive: bool = False,
) -> int:
    if not zfs.dataset_exists(dataset, executor):
        console.error(f"Dataset '{dataset}' does not exist")
        return 1

    name = name or snapshot_name(prefix)
    full_name = f"{dataset}@{name}"
    console.info(f"Creating snapshot: {full_name}")
    try:
        snap = zfs.create_snapshot(dataset, name, executor, recursive=recursive)
    except ExecutorError as e:
        console.error(f"Failed to create snapshot: {e}")
        return 1

    console.success(f"Snapshot created: {full_name}")
    console.emit_json({
        "success": True,
        "snapshot": snap.full_name,
        "creation": snap.created_at.isoformat(),
        "recursive": recursive,
    })
    return 0


def run_list(
    executor: "Executor",
    console: "Console",
    dataset: str | None = None,
    pool: str | None = None,
    max_age: int | None = None,
    prefix: str | None = None,
    sort: str = "creation",
    now: datetime | None = None,
) -> int:
    now = now or datetime.now(timezone.utc)
    snaps = zfs.list_all_snapshots(executor, root=dataset or pool, sort=sort)

    if dataset:
        snaps = [s for s in snaps if s.dataset == dataset]
    elif pool:
        snaps = [s for s in snaps if s.dataset == pool or s.dataset.startswith(pool + "/")]
    if prefix:
        snaps = [s for s in snaps if s.name.startswith(prefix)]
    if max_age is not None:
        snaps = [
            s for s in snaps
            if (now - s.created_at).total_seconds() <= max_age
        ]

    console.emit_json({"snapshots": [
        {
            "name": s.full_name,
            "creation": s.created_at.isoformat(),
            "used": s.used,
            "refer": s.referenced,
        }
        for s in snaps
    ]})
    if not snaps:
        console.info("No snapshots found")
        return 0

    console.table(
        ("NAME", "CREATION", "USED", "REFER"),
        [
            (
                s.full_name,
                s.created_at.astimezone().strftime("%Y-%m-%d %H:%M"),
                format_size(s.used) if s.used is not None else "-",
                format_size(s.referenced) if s.referenced is not None else "-",
            )
            for s in snaps
        ],
        (50, 20, 10, 10),
    )
    return 0


def run_delete(
    target: str,
    executor: "Executor",
    console: "Console",
    name: str | None = None,
    older_than: int | None = None,
    prefix: str | None = None,
    recursive: bool = False,
    dry_run: bool = False,
    assume_yes: bool = False,
    now: datetime | None = None,
) -> int:
    """Delete one snapshot, or a dataset's snapshots older than an age."""
    to_delete: list[str] = []

    if "@" in target:
        if not zfs.snapshot_exists(target, executor):
            console.error(f"Snapshot '{target}' does not exist")
            return 1
        to_delete.append(target)
    else:
        if not zfs.dataset_exists(target, executor):
            console.error(f"Dataset '{target}' does not exist")
            return 1
        if name:
            full_name = f"{target}@{name}"
            if not zfs.snapshot_exists(full_name, executor):
                console.error(f"Snapshot '{full_name}' does not exist")
                return 1
            to_delete.append(full_name)
        elif older_than is not None:
            timeline = zfs.snapshot_timeline(target, executor, prefix=prefix)
            decision = classify(timeline, RetentionPolicy(older_than=older_than), now=now)
            to_delete.extend(a.identity for a in decision.delete)
        else:
            console.error("Specify --name, --older-than, or use full snapshot path")
            return 1

    if not to_delete:
        console.info("No snapshots to delete")
        console.emit_json({"deleted": 0, "failed": 0, "dry_run": dry_run})
        return 0

    console.line(f"Snapshots to delete ({len(to_delete)}):")
    for snap in to_delete:
        console.line(f"  {snap}")

    if dry_run:
        console.info("Dry run - no changes made")
        console.emit_json({"would_delete": to_delete, "dry_run": True})
        return 0

    if not console.confirm(f"Delete {len(to_delete)} snapshot(s)?", assume_yes):
        console.line("Aborted.")
        return 0

    deleted, failed = _destroy_all(to_delete, executor, console, recursive=recursive)
    console.info(f"Deleted: {deleted}, Failed: {failed}")
    console.emit_json({"deleted": deleted, "failed": failed})
    return 1 if failed else 0


def run_rollback(
    snapshot: str,
    executor: "Executor",
    console: "Console",
    recursive: bool = False,
    force: bool = False,
    assume_yes: bool = False,
) -> int:
    try:
        target = Snapshot.parse(snapshot)
    except ValueError as e:
        console.error(str(e))
        return 1
    if not zfs.snapshot_exists(snapshot, executor):
        console.error(f"Snapshot '{snapshot}' does not exist")
        return 1

    newer = zfs.newer_snapshots(target, zfs.list_snapshots(target.dataset, executor))
    if newer and not force:
        console.line("Warning: The following snapshots are newer and will be destroyed:")
        for snap in newer:
            console.line(f"  {snap.full_name}")
        console.line()
        console.warn("Use -f/--force to destroy intermediate snapshots")
        if not console.confirm("Continue anyway?", assume_yes):
            console.line("Aborted.")
            return 0

    console.info(f"Rolling back to: {snapshot}")
    try:
        zfs.rollback(snapshot, executor, recursive=recursive, force=force)
    except ExecutorError as e:
        console.error(f"Rollback failed: {e}")
        return 1

    console.success("Rollback complete")
    console.emit_json({"success": True, "snapshot": snapshot})
    return 0


def plan_cleanup(
    dataset: str,
    policy: RetentionPolicy,
    executor: "Executor",
    recursive: bool = False,
    prefix: str | None = None,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> list[tuple[str, list[Artifact], list[Artifact]]]:
    """Classify each dataset's snapshots. Returns [(dataset, keep, delete)]."""
    if recursive:
        datasets = [ds.name for ds in zfs.list_datasets(dataset, executor)]
    else:
        datasets = [dataset]

    plans = []
    for ds in datasets:
        timeline = zfs.snapshot_timeline(ds, executor, prefix=prefix)
        if not timeline:
            continue
        decision = classify(timeline, policy, now=now, tz=tz)
        plans.append((ds, list(decision.keep), list(decision.delete)))
    return plans


def run_cleanup(
    dataset: str,
    policy: RetentionPolicy,
    executor: "Executor",
    console: "Console",
    recursive: bool = False,
    prefix: str | None = None,
    dry_run: bool = False,
    assume_yes: bool = False,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> int:
    """
    Apply a retention policy to a dataset's snapshots.
    Returns exit code (0=success, 1=partial failure).

    Two-pass approach: classify every dataset, show the plan, prompt once,
    then destroy.
    """
    validate_policy(policy)
    now = now or datetime.now(timezone.utc)

    if not zfs.dataset_exists(dataset, executor):
        console.error(f"Dataset '{dataset}' does not exist")
        return 1

    # --- Phase 1: Plan ---
    plans = plan_cleanup(dataset, policy, executor, recursive, prefix, now, tz)
    to_delete = [a for _, _, delete in plans for a in delete]
    kept = sum(len(keep) for _, keep, _ in plans)

    if not to_delete:
        console.info("No snapshots to delete based on retention policy")
        console.emit_json({"deleted": 0, "failed": 0, "kept": kept, "dry_run": dry_run})
        return 0

    # --- Phase 2: Show plan and prompt ---
    console.header("Cleanup Plan")
    console.line("Retention policy:")
    for line in policy.describe():
        console.line(f"  {line}")
    console.line()
    console.line(f"Snapshots to delete ({len(to_delete)}):")
    for artifact in to_delete:
        console.line(f"  {artifact.identity} (age: {_age(artifact, now)})")

    if dry_run:
        console.info("Dry run - no changes made")
        console.emit_json({
            "would_delete": [a.identity for a in to_delete],
            "kept": kept,
            "dry_run": True,
        })
        return 0

    console.line()
    if not console.confirm(f"Delete {len(to_delete)} snapshot(s)?", assume_yes):
        console.line("Aborted.")
        return 0

    # --- Phase 3: Execute ---
    deleted, failed = _destroy_all([a.identity for a in to_delete], executor, console)

    console.line()
    console.info(f"Summary: Deleted {deleted}, Failed {failed}")
    console.emit_json({"deleted": deleted, "failed": failed, "kept": kept})
    return 1 if failed else 0
