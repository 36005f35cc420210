"""Scheduled tasks stored as tagged entries in the user's crontab.

Each task is a metadata comment followed by the cron line it owns::

    # zfsh:id=3:type=cleanup:pool=tank:keep-daily=7
    0 2 * * * zfsh -q snapshot cleanup tank -y --keep-daily 7

Lines that are not ours are preserved untouched on every rewrite.
"""
from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from zfsh import zfs
from zfsh.executor import ExecutorError
from zfsh.models import RetentionPolicy
from zfsh.retention import validate_policy
from zfsh.units import exact_duration

if TYPE_CHECKING:
    from zfsh.executor import Executor
    from zfsh.output import Console

CRON_TAG = "zfsh"
TASK_TYPES = ("snapshot", "backup", "cleanup", "scrub")
FREQUENCIES = ("hourly", "daily", "weekly", "monthly")

_META_RE = re.compile(rf"^#\s*{CRON_TAG}:(?P<meta>.*)$")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass
class CronTask:
    id: int
    type: str
    pool: str
    schedule: str = ""
    command: str = ""
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def meta_line(self) -> str:
        parts = [f"id={self.id}", f"type={self.type}", f"pool={self.pool}"]
        parts += [f"{k}={v}" for k, v in self.extra.items()]
        return f"# {CRON_TAG}:" + ":".join(parts)

    def render(self) -> str:
        return f"{self.meta_line}\n{self.schedule} {self.command}\n"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "pool": self.pool,
            "schedule": self.schedule,
            "command": self.command,
            **({"options": self.extra} if self.extra else {}),
        }


def _parse_meta(meta: str) -> CronTask | None:
    values: dict[str, str] = {}
    for item in meta.split(":"):
        key, sep, value = item.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    try:
        task_id = int(values.pop("id"))
    except (KeyError, ValueError):
        return None
    return CronTask(
        id=task_id,
        type=values.pop("type", ""),
        pool=values.pop("pool", ""),
        extra=values,
    )


def split_cron_line(line: str) -> tuple[str, str]:
    """Split a crontab line into (schedule, command)."""
    fields = line.split(None, 5)
    if fields and fields[0].startswith("@"):
        parts = line.split(None, 1)
        return parts[0], parts[1] if len(parts) > 1 else ""
    if len(fields) < 6:
        return " ".join(fields), ""
    return " ".join(fields[:5]), fields[5]


def parse_crontab(text: str) -> list[CronTask]:
    """Return the zfsh tasks found in a crontab, in file order."""
    tasks = []
    pending: CronTask | None = None
    for line in text.splitlines():
        match = _META_RE.match(line.strip())
        if match:
            pending = _parse_meta(match.group("meta"))
            continue
        if pending is None or not line.strip() or line.lstrip().startswith("#"):
            continue
        pending.schedule, pending.command = split_cron_line(line.strip())
        tasks.append(pending)
        pending = None
    return tasks


def remove_tasks(text: str, matches: Callable[[CronTask], bool]) -> tuple[str, list[CronTask]]:
    """Drop matching tasks (metadata line and the line after it)."""
    kept: list[str] = []
    removed: list[CronTask] = []
    skip_next = False
    for line in text.splitlines():
        if skip_next:
            skip_next = False
            continue
        match = _META_RE.match(line.strip())
        if match:
            task = _parse_meta(match.group("meta"))
            if task is not None and matches(task):
                removed.append(task)
                skip_next = True
                continue
        kept.append(line)
    new_text = "\n".join(kept)
    if new_text and not new_text.endswith("\n"):
        new_text += "\n"
    return new_text, removed


def next_id(tasks: list[CronTask]) -> int:
    return max((t.id for t in tasks), default=0) + 1


def parse_time(text: str) -> tuple[int, int]:
    match = _TIME_RE.match(text.strip())
    if not match:
        raise ValueError(f"Invalid time {text!r} (expected HH:MM)")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time {text!r} (expected HH:MM)")
    return hour, minute


def build_schedule(frequency: str = "daily", time: str = "02:00", expression: str | None = None) -> str:
    if expression:
        fields = expression.split()
        if not (len(fields) == 5 or (len(fields) == 1 and fields[0].startswith("@"))):
            raise ValueError(f"Invalid cron expression {expression!r} (expected 5 fields)")
        return " ".join(fields)
    hour, minute = parse_time(time)
    if frequency == "hourly":
        return f"{minute} * * * *"
    if frequency == "daily":
        return f"{minute} {hour} * * *"
    if frequency == "weekly":
        return f"{minute} {hour} * * 0"
    if frequency == "monthly":
        return f"{minute} {hour} 1 * *"
    raise ValueError(f"Unknown frequency {frequency!r}")


def policy_args(policy: RetentionPolicy) -> tuple[list[str], dict[str, str]]:
    """CLI flags and metadata for a retention policy."""
    args: list[str] = []
    meta: dict[str, str] = {}
    if policy.older_than is not None:
        age = exact_duration(policy.older_than)
        args += ["--older-than", age]
        meta["older-than"] = age
    for flag, value in (
        ("keep-last", policy.keep_last),
        ("keep-daily", policy.keep_daily),
        ("keep-weekly", policy.keep_weekly),
        ("keep-monthly", policy.keep_monthly),
    ):
        if value > 0:
            args += [f"--{flag}", str(value)]
            meta[flag] = str(value)
    return args, meta


def build_task_command(
    task_type: str,
    pool: str,
    target: str,
    prefix: str = "backup",
    backup_dir: str | None = None,
    compression: str = "zstd",
    remote: str | None = None,
    policy: RetentionPolicy | None = None,
) -> tuple[str, dict[str, str]]:
    """Return (shell command, extra metadata) for a task."""
    meta: dict[str, str] = {}
    if task_type == "snapshot":
        argv = ["zfsh", "-q", "snapshot", "create", target, "-r", "-p", prefix]
    elif task_type == "backup":
        if remote:
            argv = ["zfsh", "-q", "backup", "send", target, remote, "-i", "-c", compression]
            meta["remote"] = remote
        else:
            argv = ["zfsh", "-q", "backup", "create", target, "-i", "-c", compression]
            if backup_dir:
                argv += ["-o", backup_dir]
                meta["backup-dir"] = backup_dir
        meta["compress"] = compression
    elif task_type == "cleanup":
        if policy is None:
            policy = RetentionPolicy()
        validate_policy(policy)
        flags, meta = policy_args(policy)
        argv = ["zfsh", "-q", "snapshot", "cleanup", target, "-r", "-y"] + flags
    elif task_type == "scrub":
        argv = ["zpool", "scrub", pool]
    else:
        raise ValueError(f"Invalid task type {task_type!r} (use: {', '.join(TASK_TYPES)})")
    return shlex.join(argv), meta


def read_crontab(executor: "Executor") -> str:
    """Current crontab text; a missing crontab reads as empty."""
    try:
        return executor.run(["crontab", "-l"])
    except ExecutorError:
        return ""


def write_crontab(text: str, executor: "Executor") -> None:
    executor.run(["crontab", "-"], input=text)


def run_add(
    executor: "Executor",
    console: "Console",
    task_type: str,
    pool: str,
    dataset: str | None = None,
    frequency: str = "daily",
    time: str = "02:00",
    expression: str | None = None,
    prefix: str = "backup",
    backup_dir: str | None = None,
    compression: str = "zstd",
    remote: str | None = None,
    policy: RetentionPolicy | None = None,
) -> int:
    if task_type not in TASK_TYPES:
        console.error(f"Invalid task type: {task_type} (use: {', '.join(TASK_TYPES)})")
        return 1
    if not zfs.pool_exists(pool, executor):
        console.error(f"Pool '{pool}' does not exist")
        return 1

    try:
        schedule = build_schedule(frequency, time, expression)
    except ValueError as e:
        console.error(str(e))
        return 1
    command, extra = build_task_command(
        task_type, pool, dataset or pool,
        prefix=prefix, backup_dir=backup_dir, compression=compression,
        remote=remote, policy=policy,
    )

    current = read_crontab(executor)
    task = CronTask(
        id=next_id(parse_crontab(current)),
        type=task_type,
        pool=pool,
        schedule=schedule,
        command=command,
        extra=extra,
    )
    console.info(f"Adding cron task #{task.id}: {task_type} for {pool}")
    console.info(f"Schedule: {schedule}")
    console.info(f"Command: {command}")

    if current and not current.endswith("\n"):
        current += "\n"
    write_crontab(current + task.render(), executor)

    console.success(f"Task #{task.id} added successfully")
    console.emit_json(task.to_dict())
    console.line()
    console.line("To view tasks: zfsh cron list")
    console.line(f"To remove:     zfsh cron remove --id {task.id}")
    console.line(f"To test:       zfsh cron test --id {task.id} --dry-run")
    return 0


def run_list(executor: "Executor", console: "Console", task_type: str | None = None) -> int:
    tasks = parse_crontab(read_crontab(executor))
    if task_type:
        tasks = [t for t in tasks if t.type == task_type]

    console.emit_json({"tasks": [t.to_dict() for t in tasks]})
    if not tasks:
        console.info("No zfsh tasks found")
        return 0

    def short(command: str) -> str:
        return command if len(command) <= 50 else command[:50] + "..."

    console.header("Scheduled ZFS Tasks")
    console.table(
        ("ID", "TYPE", "POOL", "SCHEDULE", "COMMAND"),
        [(t.id, t.type, t.pool, t.schedule, short(t.command)) for t in tasks],
        (4, 10, 15, 20, 50),
    )
    return 0


def run_remove(
    executor: "Executor",
    console: "Console",
    task_id: int | None = None,
    task_type: str | None = None,
    pool: str | None = None,
    remove_all: bool = False,
    assume_yes: bool = False,
) -> int:
    if task_id is None and not task_type and not pool and not remove_all:
        console.error("Specify --id, --type, --pool, or --all")
        return 1

    def matches(task: CronTask) -> bool:
        if remove_all:
            return True
        if task_id is not None:
            return task.id == task_id
        if task_type and task.type != task_type:
            return False
        if pool and task.pool != pool:
            return False
        return True

    current = read_crontab(executor)
    new_text, removed = remove_tasks(current, matches)
    if not removed:
        console.info("No matching tasks found")
        console.emit_json({"removed": 0})
        return 0

    if remove_all:
        console.line(f"This will remove ALL zfsh cron tasks ({len(removed)} tasks)")
        if not console.confirm("Are you sure?", assume_yes):
            console.line("Aborted.")
            return 0
    else:
        console.info(f"Will remove {len(removed)} task(s)")

    write_crontab(new_text, executor)
    for task in removed:
        console.success(f"Removed task #{task.id} ({task.type} for {task.pool})")
    console.emit_json({"removed": len(removed), "ids": [t.id for t in removed]})
    return 0


def run_test(
    executor: "Executor",
    console: "Console",
    task_id: int,
    dry_run: bool = False,
) -> int:
    """Run a task's command now (cleanup tasks get --dry-run with ``dry_run``)."""
    tasks = {t.id: t for t in parse_crontab(read_crontab(executor))}
    task = tasks.get(task_id)
    if task is None:
        console.error(f"Task #{task_id} not found")
        return 1

    console.header(f"Test Task #{task.id}")
    console.line(f"Type: {task.type}")
    console.line(f"Pool: {task.pool}")
    console.line(f"Command: {task.command}")
    console.line()

    argv = shlex.split(task.command)
    if dry_run:
        console.info("Dry run - command would be:")
        console.line(f"  {task.command}")
        if task.type != "cleanup":
            console.emit_json({"id": task.id, "type": task.type, "executed": False})
            return 0
        argv.append("--dry-run")
        console.line()
        console.line("Running with --dry-run:")
    else:
        console.info("Executing command...")

    returncode = executor.popen(argv).wait()
    console.emit_json({
        "id": task.id,
        "type": task.type,
        "executed": not dry_run,
        "returncode": returncode,
    })
    if returncode != 0:
        console.error(f"Task failed (exit {returncode})")
        return 1
    console.success("Task completed successfully")
    return 0
