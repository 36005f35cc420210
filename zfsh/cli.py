"""CLI entry point for zfsh."""
from __future__ import annotations

import argparse
import sys

from zfsh.chain import NotFoundError
from zfsh.config import ConfigError, load_settings
from zfsh.executor import ExecutorError, LocalExecutor
from zfsh.models import RetentionPolicy
from zfsh.naming import COMPRESSIONS
from zfsh.output import Console
from zfsh.retention import PolicyError
from zfsh.units import ParseError, parse_duration

_KEEP_FIELDS = ("keep_last", "keep_daily", "keep_weekly", "keep_monthly")


def build_policy(args, settings) -> RetentionPolicy:
    """Retention policy from --keep-*/--older-than flags or a named --policy."""
    counts = {f: getattr(args, f) for f in _KEEP_FIELDS if getattr(args, f) is not None}
    older_than = parse_duration(args.older_than) if args.older_than else None
    if args.policy:
        if counts or older_than is not None:
            raise PolicyError("use either --policy or --keep-*/--older-than, not both")
        if args.policy not in settings.policies:
            raise ConfigError(f"Unknown policy {args.policy!r} (not in config policies)")
        return settings.policies[args.policy]
    return RetentionPolicy(older_than=older_than, **counts)


# ---------------------------------------------------------------------------
# snapshot
# ---------------------------------------------------------------------------

def cmd_snapshot_create(args, settings, console, executor) -> int:
    from zfsh.snapshot import run_create
    return run_create(
        args.dataset, executor, console,
        name=args.name,
        prefix=args.prefix or settings.snapshot_prefix,
        recursive=args.recursive,
    )


def cmd_snapshot_list(args, settings, console, executor) -> int:
    from zfsh.snapshot import run_list
    return run_list(
        executor, console,
        dataset=args.dataset,
        pool=args.pool,
        max_age=parse_duration(args.age) if args.age else None,
        prefix=args.prefix,
        sort=args.sort,
    )


def cmd_snapshot_delete(args, settings, console, executor) -> int:
    from zfsh.snapshot import run_delete
    return run_delete(
        args.target, executor, console,
        name=args.name,
        older_than=parse_duration(args.older_than) if args.older_than else None,
        prefix=args.prefix,
        recursive=args.recursive,
        dry_run=args.dry_run,
        assume_yes=args.yes,
    )


def cmd_snapshot_rollback(args, settings, console, executor) -> int:
    from zfsh.snapshot import run_rollback
    return run_rollback(
        args.snapshot, executor, console,
        recursive=args.recursive,
        force=args.force,
        assume_yes=args.yes,
    )


def cmd_snapshot_cleanup(args, settings, console, executor) -> int:
    from zfsh.snapshot import run_cleanup
    return run_cleanup(
        args.dataset, build_policy(args, settings), executor, console,
        recursive=args.recursive,
        prefix=args.prefix,
        dry_run=args.dry_run,
        assume_yes=args.yes,
    )


# ---------------------------------------------------------------------------
# backup
# ---------------------------------------------------------------------------

def cmd_backup_create(args, settings, console, executor) -> int:
    from zfsh.backup import run_create
    return run_create(
        args.source, executor, console,
        output_dir=args.output or settings.backup_dir,
        compression=args.compress or settings.compression,
        incremental=args.incremental,
        base=args.base,
        recursive=args.recursive,
        progress=args.progress,
        prefix=settings.snapshot_prefix,
    )


def cmd_backup_restore(args, settings, console, executor) -> int:
    from zfsh.backup import run_restore
    return run_restore(
        args.file, args.target, executor, console,
        force=args.force,
        dry_run=args.dry_run,
        progress=args.progress,
    )


def cmd_backup_list(args, settings, console, executor) -> int:
    from zfsh.backup import run_list
    return run_list(args.dir or settings.backup_dir, console, pool=args.pool, sort=args.sort)


def cmd_backup_verify(args, settings, console, executor) -> int:
    from zfsh.backup import run_verify
    return run_verify(args.file, executor, console, checksum=args.checksum, verbose=args.verbose)


def cmd_backup_cleanup(args, settings, console, executor) -> int:
    from zfsh.backup import run_cleanup
    return run_cleanup(
        args.dir or settings.backup_dir, build_policy(args, settings), console,
        dry_run=args.dry_run,
        assume_yes=args.yes,
    )


def cmd_backup_send(args, settings, console, executor) -> int:
    from zfsh.backup import run_send
    return run_send(
        args.source, args.remote, executor, console,
        incremental=args.incremental,
        base=args.base,
        compression=args.compress,
        bandwidth=args.bandwidth,
        progress=args.progress,
        recursive=args.recursive,
        prefix=settings.snapshot_prefix,
    )


# ---------------------------------------------------------------------------
# cron
# ---------------------------------------------------------------------------

def cmd_cron_add(args, settings, console, executor) -> int:
    from zfsh.cron import run_add
    policy = build_policy(args, settings) if args.type == "cleanup" else None
    return run_add(
        executor, console,
        task_type=args.type,
        pool=args.pool,
        dataset=args.dataset,
        frequency=args.frequency,
        time=args.time,
        expression=args.cron,
        prefix=args.prefix or settings.snapshot_prefix,
        backup_dir=args.backup_dir or settings.backup_dir,
        compression=args.compress or settings.compression,
        remote=args.remote,
        policy=policy,
    )


def cmd_cron_list(args, settings, console, executor) -> int:
    from zfsh.cron import run_list
    return run_list(executor, console, task_type=args.type)


def cmd_cron_remove(args, settings, console, executor) -> int:
    from zfsh.cron import run_remove
    return run_remove(
        executor, console,
        task_id=args.id,
        task_type=args.type,
        pool=args.pool,
        remove_all=args.all,
        assume_yes=args.yes,
    )


def cmd_cron_test(args, settings, console, executor) -> int:
    from zfsh.cron import run_test
    return run_test(executor, console, args.id, dry_run=args.dry_run)


# ---------------------------------------------------------------------------
# pool
# ---------------------------------------------------------------------------

def cmd_pool_info(args, settings, console, executor) -> int:
    from zfsh.pool import run_info
    return run_info(executor, console, pool=args.pool, show_all=args.all)


def cmd_pool_health(args, settings, console, executor) -> int:
    from zfsh.pool import run_health
    return run_health(executor, console, pool=args.pool)


def cmd_pool_create(args, settings, console, executor) -> int:
    from zfsh.pool import run_create
    return run_create(
        executor, console,
        name=args.name,
        size=args.size,
        image_path=args.path,
        compression=args.compression,
        dedup=args.dedup == "on",
        autotrim=args.trim == "on",
        assume_yes=args.yes,
    )


def cmd_pool_expand(args, settings, console, executor) -> int:
    from zfsh.pool import run_expand
    return run_expand(executor, console, args.pool, size=args.size, add=args.add, assume_yes=args.yes)


# ---------------------------------------------------------------------------
# incus
# ---------------------------------------------------------------------------

def cmd_incus_init(args, settings, console, executor) -> int:
    from zfsh.incus import run_init
    return run_init(
        executor, console,
        pool=args.pool,
        storage=args.storage,
        network=args.network,
        ipv4=args.network_ipv4,
        create_network=not args.no_network,
        assume_yes=args.yes,
    )


def build_parser() -> argparse.ArgumentParser:
    from zfsh.cron import TASK_TYPES

    parser = argparse.ArgumentParser(
        prog="zfsh",
        description="ZFS helper: snapshots, backups, scheduling, pools and Incus setup",
    )
    parser.add_argument("--config", help="Path to YAML settings file")
    parser.add_argument("--json", "-j", action="store_true", help="Output as JSON")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    parser.add_argument("--log", "-l", metavar="FILE", help="Append status lines to FILE")
    groups = parser.add_subparsers(dest="group", required=True)

    # Shared options
    def add_destructive(p):
        p.add_argument("--dry-run", action="store_true",
                       help="Show what would happen without making changes")
        p.add_argument("--yes", "-y", action="store_true",
                       help="Skip confirmation prompts")

    def add_retention(p):
        p.add_argument("--keep-last", type=int, metavar="N", help="Keep the N newest")
        p.add_argument("--keep-daily", type=int, metavar="N", help="Keep one per day for N days")
        p.add_argument("--keep-weekly", type=int, metavar="N", help="Keep one per week for N weeks")
        p.add_argument("--keep-monthly", type=int, metavar="N", help="Keep one per month for N months")
        p.add_argument("--older-than", metavar="AGE", help="Delete everything older than AGE (e.g. 7d, 2w)")
        p.add_argument("--policy", metavar="NAME", help="Named retention policy from the config file")

    # --- snapshot ---
    p_snap = groups.add_parser("snapshot", help="Create, list, delete and prune snapshots")
    snap = p_snap.add_subparsers(dest="command", required=True)

    p = snap.add_parser("create", help="Create a snapshot")
    p.add_argument("dataset")
    p.add_argument("--name", "-n", help="Snapshot name (default: PREFIX_YYYYMMDD_HHMMSS)")
    p.add_argument("--prefix", "-p", help="Prefix for the generated name")
    p.add_argument("--recursive", "-r", action="store_true")
    p.set_defaults(func=cmd_snapshot_create)

    p = snap.add_parser("list", help="List snapshots")
    p.add_argument("dataset", nargs="?")
    p.add_argument("--pool")
    p.add_argument("--age", metavar="AGE", help="Only snapshots newer than AGE")
    p.add_argument("--prefix")
    p.add_argument("--sort", choices=("creation", "name", "used"), default="creation")
    p.set_defaults(func=cmd_snapshot_list)

    p = snap.add_parser("delete", help="Delete a snapshot or snapshots older than an age")
    p.add_argument("target", help="DATASET or DATASET@SNAPSHOT")
    p.add_argument("--name", "-n")
    p.add_argument("--older-than", metavar="AGE")
    p.add_argument("--prefix")
    p.add_argument("--recursive", "-r", action="store_true")
    add_destructive(p)
    p.set_defaults(func=cmd_snapshot_delete)

    p = snap.add_parser("rollback", help="Roll a dataset back to a snapshot")
    p.add_argument("snapshot")
    p.add_argument("--recursive", "-r", action="store_true")
    p.add_argument("--force", "-f", action="store_true", help="Destroy newer snapshots")
    p.add_argument("--yes", "-y", action="store_true")
    p.set_defaults(func=cmd_snapshot_rollback)

    p = snap.add_parser("cleanup", help="Prune snapshots per retention policy")
    p.add_argument("dataset")
    add_retention(p)
    p.add_argument("--recursive", "-r", action="store_true")
    p.add_argument("--prefix")
    add_destructive(p)
    p.set_defaults(func=cmd_snapshot_cleanup)

    # --- backup ---
    p_backup = groups.add_parser("backup", help="File and remote backups")
    backup = p_backup.add_subparsers(dest="command", required=True)

    p = backup.add_parser("create", help="Write a dataset or snapshot to a backup file")
    p.add_argument("source", help="DATASET or DATASET@SNAPSHOT")
    p.add_argument("--output", "-o", metavar="DIR")
    p.add_argument("--compress", "-c", choices=tuple(COMPRESSIONS))
    p.add_argument("--incremental", "-i", action="store_true")
    p.add_argument("--base", metavar="SNAP", help="Explicit incremental base")
    p.add_argument("--recursive", "-r", action="store_true")
    p.add_argument("--progress", action="store_true")
    p.set_defaults(func=cmd_backup_create)

    p = backup.add_parser("restore", help="Receive a backup file into a dataset")
    p.add_argument("file", help="Backup file, or - for stdin")
    p.add_argument("target")
    p.add_argument("--force", "-f", action="store_true")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--progress", action="store_true")
    p.set_defaults(func=cmd_backup_restore)

    p = backup.add_parser("list", help="List backup files")
    p.add_argument("--dir", "-d")
    p.add_argument("--pool", "-p")
    p.add_argument("--sort", choices=("date", "size", "name"), default="date")
    p.set_defaults(func=cmd_backup_list)

    p = backup.add_parser("verify", help="Check a backup file")
    p.add_argument("file")
    p.add_argument("--checksum", action="store_true")
    p.add_argument("--verbose", "-v", action="store_true", help="Also test that the stream decompresses")
    p.set_defaults(func=cmd_backup_verify)

    p = backup.add_parser("cleanup", help="Prune backup files per retention policy")
    p.add_argument("--dir", "-d")
    add_retention(p)
    add_destructive(p)
    p.set_defaults(func=cmd_backup_cleanup)

    p = backup.add_parser("send", help="Send a snapshot to a remote host over SSH")
    p.add_argument("source", help="DATASET or DATASET@SNAPSHOT")
    p.add_argument("remote", help="user@host:pool/ds, host:pool/ds or ssh://user@host[:port]/pool/ds")
    p.add_argument("--incremental", "-i", action="store_true")
    p.add_argument("--base", metavar="SNAP")
    p.add_argument("--compress", "-c", choices=tuple(COMPRESSIONS), default="none")
    p.add_argument("--bandwidth", metavar="RATE", help="Limit rate via pv (e.g. 10M)")
    p.add_argument("--progress", action="store_true")
    p.add_argument("--recursive", "-r", action="store_true")
    p.set_defaults(func=cmd_backup_send)

    # --- cron ---
    p_cron = groups.add_parser("cron", help="Manage scheduled tasks")
    cron = p_cron.add_subparsers(dest="command", required=True)

    p = cron.add_parser("add", help="Add a scheduled task")
    p.add_argument("--type", required=True, choices=TASK_TYPES)
    p.add_argument("--pool", required=True)
    p.add_argument("--dataset", help="Target dataset (default: the pool)")
    freq = p.add_mutually_exclusive_group()
    for name in ("hourly", "daily", "weekly", "monthly"):
        freq.add_argument(f"--{name}", dest="frequency", action="store_const", const=name)
    freq.add_argument("--cron", metavar="EXPR", help="Custom 5-field cron expression")
    p.add_argument("--time", default="02:00", metavar="HH:MM")
    p.add_argument("--prefix", help="Snapshot prefix for snapshot tasks")
    p.add_argument("--backup-dir")
    p.add_argument("--compress", choices=tuple(COMPRESSIONS))
    p.add_argument("--remote", help="Send backups to this remote instead of a file")
    add_retention(p)
    p.set_defaults(func=cmd_cron_add, frequency="daily")

    p = cron.add_parser("list", help="List scheduled tasks")
    p.add_argument("--type", choices=TASK_TYPES)
    p.set_defaults(func=cmd_cron_list)

    p = cron.add_parser("remove", help="Remove scheduled tasks")
    p.add_argument("--id", type=int)
    p.add_argument("--type", choices=TASK_TYPES)
    p.add_argument("--pool")
    p.add_argument("--all", action="store_true")
    p.add_argument("--yes", "-y", action="store_true")
    p.set_defaults(func=cmd_cron_remove)

    p = cron.add_parser("test", help="Run a scheduled task now")
    p.add_argument("--id", type=int, required=True)
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_cron_test)

    # --- pool ---
    p_pool = groups.add_parser("pool", help="Pool information, health and file-backed pools")
    pool = p_pool.add_subparsers(dest="command", required=True)

    p = pool.add_parser("info", help="Show pool details")
    p.add_argument("pool", nargs="?")
    p.add_argument("--all", "-a", action="store_true", help="Include datasets")
    p.set_defaults(func=cmd_pool_info)

    p = pool.add_parser("health", help="Check pool health (all pools if none given)")
    p.add_argument("pool", nargs="?")
    p.set_defaults(func=cmd_pool_health)

    p = pool.add_parser("create", help="Create a pool on a sparse image file")
    p.add_argument("--name", "-n", default="default")
    p.add_argument("--size", "-s", required=True, help="Pool size, e.g. 50G")
    p.add_argument("--path", "-p", help="Image file (default: /var/lib/incus/disks/NAME.img)")
    p.add_argument("--compression", "-c", choices=("off", "lz4", "zstd"), default="zstd")
    p.add_argument("--dedup", "-d", choices=("on", "off"), default="off")
    p.add_argument("--trim", "-t", choices=("on", "off"), default="on", help="autotrim")
    p.add_argument("--yes", "-y", action="store_true")
    p.set_defaults(func=cmd_pool_create)

    p = pool.add_parser("expand", help="Grow a file-backed pool")
    p.add_argument("pool")
    grow = p.add_mutually_exclusive_group(required=True)
    grow.add_argument("--size", "-s", help="New total size, e.g. 100G")
    grow.add_argument("--add", "-a", help="Size to add, e.g. +50G")
    p.add_argument("--yes", "-y", action="store_true")
    p.set_defaults(func=cmd_pool_expand)

    # --- incus ---
    p_incus = groups.add_parser("incus", help="Incus container host setup")
    incus = p_incus.add_subparsers(dest="command", required=True)

    p = incus.add_parser("init", help="Initialize Incus with an existing ZFS pool")
    p.add_argument("--pool", "-p", default="default", help="ZFS pool name")
    p.add_argument("--storage", "-s", help="Incus storage pool name (default: the ZFS pool)")
    p.add_argument("--network", "-n", default="incusbr0", help="Bridge network name")
    p.add_argument("--network-ipv4", metavar="CIDR", help="IPv4 address of the bridge (default: auto)")
    p.add_argument("--no-network", action="store_true", help="Do not create a bridge network")
    p.add_argument("--yes", "-y", action="store_true")
    p.set_defaults(func=cmd_incus_init)

    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    console = Console(quiet=args.quiet, json=args.json, log_file=args.log or settings.log_file)
    try:
        code = args.func(args, settings, console, LocalExecutor())
    except (ConfigError, ParseError, PolicyError, NotFoundError) as e:
        console.error(str(e))
        code = 1
    except ExecutorError as e:
        console.error(f"Command failed: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
