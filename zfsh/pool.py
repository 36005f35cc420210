"""Pool information and health checks."""
from __future__ import annotations

import os
import re
import shutil
import stat
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from zfsh import zfs
from zfsh.executor import ExecutorError
from zfsh.output import BLUE, GREEN, RED, RESET, YELLOW
from zfsh.units import format_size, parse_size

if TYPE_CHECKING:
    from zfsh.executor import Executor
    from zfsh.output import Console

POOL_PROPS = ("health", "size", "allocated", "free", "fragmentation", "capacity", "dedupratio", "autotrim")
DATASET_PROPS = ("compression", "compressratio", "dedup")

CAPACITY_WARN = 80
CAPACITY_ERROR = 90
FRAGMENTATION_WARN = 70
SCRUB_MAX_DAYS = 30

POOL_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
POOL_COMPRESSIONS = ("off", "lz4", "zstd")
IMAGE_DIR = "/var/lib/incus/disks"

SCRUB_DATE_FORMAT = "%a %b %d %H:%M:%S %Y"
_COUNT_RE = re.compile(r"^\d+(\.\d+)?[KMGT]?$")

GIB = 1024 ** 3
TIB = 1024 ** 4


@dataclass
class PoolInfo:
    name: str
    props: dict[str, str] = field(default_factory=dict)
    sizes: dict[str, int] = field(default_factory=dict)
    dataset_props: dict[str, str] = field(default_factory=dict)
    status_text: str = ""
    backend_path: str = ""
    backend_type: str = "unknown"
    backend_bytes: int = 0
    datasets: list[tuple[str, str, str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class HealthCheck:
    name: str
    status: str  # ok | warn | error
    value: str
    recommendation: str = ""


# ---------------------------------------------------------------------------
# zpool status parsing
# ---------------------------------------------------------------------------

def backend_path(status_text: str) -> str:
    """First vdev given as an absolute path (file or device) in ``zpool status``."""
    for line in status_text.splitlines():
        stripped = line.strip()
        if stripped.startswith("/"):
            return stripped.split()[0]
    return ""


def backend_type(path: str) -> str:
    if not path:
        return "unknown"
    try:
        mode = os.stat(path).st_mode
    except OSError:
        return "unknown"
    if stat.S_ISREG(mode):
        return "file"
    if stat.S_ISBLK(mode):
        return "device"
    return "unknown"


def _count(text: str) -> int:
    return int(text) if text.isdigit() else parse_size(text)


def io_error_counts(status_text: str) -> tuple[int, int, int]:
    """Sum READ, WRITE and CKSUM columns over the config table."""
    read = write = cksum = 0
    in_config = False
    for line in status_text.splitlines():
        stripped = line.strip()
        if stripped.startswith("config:"):
            in_config = True
            continue
        if stripped.startswith("errors:"):
            in_config = False
            continue
        if not in_config:
            continue
        fields = stripped.split()
        if len(fields) < 5 or not all(_COUNT_RE.match(f) for f in fields[2:5]):
            continue
        read += _count(fields[2])
        write += _count(fields[3])
        cksum += _count(fields[4])
    return read, write, cksum


def _percent(value: str) -> int | None:
    value = value.strip().rstrip("%")
    return int(value) if value.isdigit() else None


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------

def check_pool_status(pool: str, health: str) -> HealthCheck:
    if health == "ONLINE":
        return HealthCheck("pool_status", "ok", health)
    if health == "DEGRADED":
        return HealthCheck(
            "pool_status", "warn", health,
            f"Pool is degraded. Check 'zpool status {pool}' for details.",
        )
    return HealthCheck("pool_status", "error", health, f"Pool is {health}! Immediate attention required.")


def check_io_errors(pool: str, status_text: str) -> HealthCheck:
    read, write, cksum = io_error_counts(status_text)
    value = f"R:{read} W:{write} C:{cksum}"
    if read + write + cksum == 0:
        return HealthCheck("io_errors", "ok", value)
    if cksum:
        return HealthCheck(
            "io_errors", "error", value,
            f"Checksum errors detected! Data corruption possible. Run 'zpool scrub {pool}'.",
        )
    return HealthCheck("io_errors", "warn", value, "I/O errors detected. Monitor closely.")


def check_scrub(pool: str, status_text: str, now: datetime | None = None) -> HealthCheck:
    """Last scrub age from the ``scan:`` line; warns past SCRUB_MAX_DAYS or if never run."""
    if "scrub in progress" in status_text:
        progress = next((l.strip() for l in status_text.splitlines() if "done" in l), "")
        return HealthCheck("scrub", "ok", "in progress", progress)

    scan = next((l.strip() for l in status_text.splitlines() if l.strip().startswith("scan:")), "")
    if "scrub repaired" in scan:
        _, sep, when = scan.rpartition(" on ")
        if not sep:
            return HealthCheck("scrub", "ok", "completed")
        try:
            finished = datetime.strptime(" ".join(when.split()), SCRUB_DATE_FORMAT)
        except ValueError:
            return HealthCheck("scrub", "ok", when.strip())
        days = ((now or datetime.now()) - finished).days
        if days > SCRUB_MAX_DAYS:
            return HealthCheck(
                "scrub", "warn", f"{days} days ago",
                f"Last scrub was {days} days ago. Recommend: 'zpool scrub {pool}'",
            )
        return HealthCheck("scrub", "ok", f"{days} days ago")
    if "none requested" in scan:
        return HealthCheck(
            "scrub", "warn", "never",
            f"No scrub has been performed. Recommend: 'zpool scrub {pool}'",
        )
    return HealthCheck("scrub", "warn", "unknown", "Could not determine scrub status")


def check_compression(pool: str, compression: str, ratio: str) -> HealthCheck:
    value = f"{compression} (ratio: {ratio})"
    if compression == "off":
        return HealthCheck(
            "compression", "warn", value,
            f"Compression is disabled. Consider enabling: 'zfs set compression=zstd {pool}'",
        )
    return HealthCheck("compression", "ok", value)


def dedup_ram_estimate(allocated: int) -> int:
    """About 5 GiB of RAM per TiB of deduplicated data, at least 1 GiB."""
    return max(allocated * 5 // TIB * GIB, GIB)


def check_dedup(dedup: str, ratio: str, allocated: int, available_ram: int | None) -> HealthCheck:
    if dedup == "off":
        return HealthCheck("dedup", "ok", "off")
    ddt = allocated * 25 // 10000
    value = f"on (ratio: {ratio}, DDT: ~{format_size(ddt)})"
    needed = dedup_ram_estimate(allocated)
    if available_ram is not None and needed > available_ram:
        return HealthCheck(
            "dedup", "warn", value,
            f"Dedup may need ~{format_size(needed)} RAM. Available: {format_size(available_ram)}",
        )
    return HealthCheck("dedup", "ok", value)


def check_capacity(capacity: str) -> HealthCheck:
    percent = _percent(capacity)
    if percent is None:
        return HealthCheck("capacity", "warn", capacity or "unknown", "Could not read pool capacity")
    if percent >= CAPACITY_ERROR:
        return HealthCheck("capacity", "error", capacity, f"Pool is {capacity} full! Expand immediately or delete data.")
    if percent >= CAPACITY_WARN:
        return HealthCheck("capacity", "warn", capacity, f"Pool is {capacity} full. Consider expanding soon.")
    return HealthCheck("capacity", "ok", capacity)


def check_fragmentation(fragmentation: str) -> HealthCheck:
    percent = _percent(fragmentation)
    if percent is None:
        return HealthCheck("fragmentation", "ok", "N/A")
    if percent >= FRAGMENTATION_WARN:
        return HealthCheck("fragmentation", "warn", fragmentation, "High fragmentation may impact performance")
    return HealthCheck("fragmentation", "ok", fragmentation)


def check_autotrim(pool: str, autotrim: str, backend: str) -> HealthCheck:
    if autotrim == "on":
        return HealthCheck("autotrim", "ok", "on")
    if backend == "file":
        return HealthCheck(
            "autotrim", "warn", "off",
            f"Autotrim disabled. For sparse files, enable with: 'zpool set autotrim=on {pool}'",
        )
    return HealthCheck("autotrim", "ok", "off (device backend)")


def run_checks(info: PoolInfo, available_ram: int | None = None, now: datetime | None = None) -> list[HealthCheck]:
    props, dprops = info.props, info.dataset_props
    return [
        check_pool_status(info.name, props.get("health", "UNKNOWN")),
        check_io_errors(info.name, info.status_text),
        check_scrub(info.name, info.status_text, now),
        check_compression(info.name, dprops.get("compression", "off"), dprops.get("compressratio", "-")),
        check_dedup(dprops.get("dedup", "off"), props.get("dedupratio", "-"),
                    info.sizes.get("allocated", 0), available_ram),
        check_capacity(props.get("capacity", "")),
        check_fragmentation(props.get("fragmentation", "-")),
        check_autotrim(info.name, props.get("autotrim", "off"), info.backend_type),
    ]


# ---------------------------------------------------------------------------
# Gathering
# ---------------------------------------------------------------------------

def available_memory(meminfo: str = "/proc/meminfo") -> int | None:
    try:
        with open(meminfo) as f:
            for line in f:
                if line.startswith("MemAvailable:"):
                    return int(line.split()[1]) * 1024
    except OSError:
        return None
    return None


def gather_pool_info(pool: str, executor: "Executor", with_datasets: bool = False) -> PoolInfo:
    info = PoolInfo(name=pool)
    info.props = zfs.get_properties(pool, POOL_PROPS, executor, pool=True)
    raw = zfs.get_properties(pool, ("size", "allocated", "free"), executor, pool=True, parsable=True)
    info.sizes = {k: int(v) for k, v in raw.items() if v.isdigit()}
    info.dataset_props = zfs.get_properties(pool, DATASET_PROPS, executor)
    info.status_text = zfs.pool_status(pool, executor)
    info.backend_path = backend_path(info.status_text)
    info.backend_type = backend_type(info.backend_path)
    if info.backend_type == "file":
        info.backend_bytes = os.stat(info.backend_path).st_blocks * 512
    if with_datasets:
        output = executor.run(["zfs", "list", "-H", "-o", "name,used,available,refer", "-r", pool])
        for line in output.splitlines():
            parts = line.split("\t")
            if len(parts) == 4:
                info.datasets.append(tuple(parts))
    return info


def _select_pools(pool: str | None, executor: "Executor", console: "Console") -> list[str] | None:
    if pool:
        if not zfs.pool_exists(pool, executor):
            console.error(f"Pool '{pool}' does not exist")
            return None
        return [pool]
    pools = zfs.list_pools(executor)
    if not pools:
        console.error("No ZFS pools found")
        return None
    return pools


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _info_json(info: PoolInfo) -> dict:
    props = info.props
    return {
        "pool": info.name,
        "status": {"health": props.get("health")},
        "storage": {
            "total": info.sizes.get("size"),
            "total_human": props.get("size"),
            "used": info.sizes.get("allocated"),
            "used_human": props.get("allocated"),
            "free": info.sizes.get("free"),
            "free_human": props.get("free"),
            "capacity_percent": _percent(props.get("capacity", "")),
            "fragmentation_percent": _percent(props.get("fragmentation", "")),
            "dedup_ratio": props.get("dedupratio", "").rstrip("x"),
        },
        "properties": {
            "compression": info.dataset_props.get("compression"),
            "dedup": info.dataset_props.get("dedup"),
            "autotrim": props.get("autotrim"),
        },
        "backend": {
            "type": info.backend_type,
            "path": info.backend_path,
            "sparse_size": info.backend_bytes,
        },
        "datasets": [
            {"name": n, "used": u, "available": a, "refer": r}
            for n, u, a, r in info.datasets
        ],
    }


def run_info(
    executor: "Executor",
    console: "Console",
    pool: str | None = None,
    show_all: bool = False,
) -> int:
    pools = _select_pools(pool, executor, console)
    if pools is None:
        return 1
    if len(pools) > 1:
        console.line("Available pools:")
        for name in pools:
            console.line(f"  {name}")
        console.error("Pool name required when more than one pool exists")
        return 1

    try:
        info = gather_pool_info(pools[0], executor, with_datasets=show_all)
    except ExecutorError as e:
        console.error(f"Cannot read pool '{pools[0]}': {e}")
        return 1

    console.emit_json(_info_json(info))
    props = info.props
    console.header(f"ZFS Pool: {info.name}")
    sections = [
        ("Status", [("Health", props.get("health", "-"))]),
        ("Storage", [
            ("Total", props.get("size", "-")),
            ("Used", f"{props.get('allocated', '-')} ({props.get('capacity', '-')})"),
            ("Free", props.get("free", "-")),
            ("Fragmentation", props.get("fragmentation", "-")),
            ("Dedup Ratio", props.get("dedupratio", "-")),
        ]),
        ("Properties", [
            ("Compression", info.dataset_props.get("compression", "-")),
            ("Dedup", info.dataset_props.get("dedup", "-")),
            ("Autotrim", props.get("autotrim", "-")),
        ]),
        ("Backend", [
            ("Type", info.backend_type),
            ("Path", info.backend_path or "-"),
        ]),
    ]
    if info.backend_type == "file":
        sections[-1][1].append(("Actual Size", f"{format_size(info.backend_bytes)} (sparse)"))
    for title, rows in sections:
        console.line()
        console.line(title)
        console.line("-" * len(title))
        for label, value in rows:
            console.line(f"  {label + ':':<15}{value}")

    if show_all and info.datasets:
        console.line()
        console.line("Datasets")
        console.line("--------")
        console.table(("NAME", "USED", "AVAIL", "REFER"), info.datasets, (30, 7, 7, 7))
    return 0


def _check_line(check: HealthCheck) -> str:
    labels = {
        "pool_status": "Pool status",
        "io_errors": "I/O errors",
        "scrub": "Last scrub",
        "compression": "Compression",
        "dedup": "Dedup",
        "capacity": "Capacity",
        "fragmentation": "Fragmentation",
        "autotrim": "Autotrim",
    }
    tag = {
        "ok": f"{GREEN}[OK]{RESET}   ",
        "warn": f"{YELLOW}[WARN]{RESET} ",
        "error": f"{RED}[ERROR]{RESET}",
    }[check.status]
    return f"{tag} {labels.get(check.name, check.name)}: {check.value}"


def overall_status(checks: list[HealthCheck]) -> str:
    if any(c.status == "error" for c in checks):
        return "CRITICAL"
    if any(c.status == "warn" for c in checks):
        return "WARNING"
    return "HEALTHY"


def run_health(
    executor: "Executor",
    console: "Console",
    pool: str | None = None,
    now: datetime | None = None,
    available_ram: int | None = None,
) -> int:
    """Check one pool (or every pool). Returns 1 if any check is an error."""
    pools = _select_pools(pool, executor, console)
    if pools is None:
        return 1
    if available_ram is None:
        available_ram = available_memory()

    results = []
    failed = False
    for name in pools:
        try:
            info = gather_pool_info(name, executor)
        except ExecutorError as e:
            console.error(f"Cannot read pool '{name}': {e}")
            failed = True
            continue
        checks = run_checks(info, available_ram, now)
        overall = overall_status(checks)
        failed = failed or overall == "CRITICAL"
        results.append({
            "pool": name,
            "overall": overall,
            "warnings": sum(c.status == "warn" for c in checks),
            "errors": sum(c.status == "error" for c in checks),
            "checks": [asdict(c) for c in checks],
        })

        console.header(f"ZFS Health Check: {name}")
        for check in checks:
            if check.status == "ok" and not console.chatty:
                continue
            console.line(_check_line(check))
            if check.recommendation:
                console.line(f"        {BLUE}{check.recommendation}{RESET}")
        console.line()
        warnings = results[-1]["warnings"]
        if overall == "CRITICAL":
            console.line(f"Overall: {RED}CRITICAL{RESET}")
        elif warnings:
            console.line(f"Overall: {YELLOW}HEALTHY{RESET} ({warnings} warnings)")
        else:
            console.line(f"Overall: {GREEN}HEALTHY{RESET}")

    console.emit_json(results[0] if pool and results else {"pools": results})
    return 1 if failed else 0


# ---------------------------------------------------------------------------
# File-backed pools
# ---------------------------------------------------------------------------

def free_space(path: str) -> int:
    """Free bytes on the filesystem holding ``path`` (or its nearest existing parent)."""
    path = os.path.abspath(path)
    while not os.path.isdir(path):
        parent = os.path.dirname(path)
        if parent == path:
            break
        path = parent
    return shutil.disk_usage(path).free


def _summary(console: "Console", rows: list[tuple[str, str]], title: str = "") -> None:
    if not console.chatty:
        return
    console.line()
    if title:
        console.line(title)
    for label, value in rows:
        console.line(f"  {label + ':':<17}{value}")
    console.line()


def run_create(
    executor: "Executor",
    console: "Console",
    name: str,
    size: str,
    image_path: str | None = None,
    compression: str = "zstd",
    dedup: bool = False,
    autotrim: bool = True,
    assume_yes: bool = False,
    available: int | None = None,
) -> int:
    """Create a pool on a new sparse image file.

    ``available`` overrides the free-space reading of the image directory.
    """
    if not POOL_NAME_RE.match(name):
        console.error(
            f"Invalid pool name: {name} (must start with a letter and contain only "
            "letters, digits, underscore or hyphen)"
        )
        return 1
    if compression not in POOL_COMPRESSIONS:
        console.error(f"Invalid compression: {compression} (use: {', '.join(POOL_COMPRESSIONS)})")
        return 1
    size_bytes = parse_size(size)
    if size_bytes <= 0:
        console.error("Pool size must be greater than zero")
        return 1
    image_path = image_path or os.path.join(IMAGE_DIR, f"{name}.img")

    if zfs.pool_exists(name, executor):
        console.error(f"Pool '{name}' already exists")
        return 1
    if os.path.exists(image_path):
        console.error(f"Image file already exists: {image_path}")
        return 1
    image_dir = os.path.dirname(os.path.abspath(image_path))
    if available is None:
        available = free_space(image_dir)
    if size_bytes > available:
        console.error(
            f"Not enough free space. Required: {format_size(size_bytes)}, "
            f"Available: {format_size(available)}"
        )
        return 1

    dedup_value = "on" if dedup else "off"
    autotrim_value = "on" if autotrim else "off"
    _summary(console, [
        ("Pool name", name),
        ("Size", format_size(size_bytes)),
        ("Image path", image_path),
        ("Compression", compression),
        ("Dedup", dedup_value),
        ("Autotrim", autotrim_value),
    ], title="Summary:")
    if dedup:
        console.warn("Dedup requires ~5GB RAM per 1TB of data")
    if not console.confirm("Create pool?", assume_yes):
        console.line("Aborted.")
        return 0

    os.makedirs(image_dir, exist_ok=True)
    console.info(f"Creating sparse file: {image_path} ({format_size(size_bytes)})")
    with open(image_path, "wb") as f:
        f.truncate(size_bytes)

    console.info(f"Creating ZFS pool: {name}")
    try:
        zfs.create_pool(name, image_path, executor, autotrim=autotrim)
    except ExecutorError as e:
        os.remove(image_path)
        console.error(f"Pool creation failed: {e}")
        return 1
    try:
        if compression != "off":
            console.info(f"Setting compression: {compression}")
            zfs.set_property(name, "compression", compression, executor)
        if dedup:
            console.info("Enabling deduplication")
            zfs.set_property(name, "dedup", "on", executor)
    except ExecutorError as e:
        console.error(f"Pool '{name}' created but setting properties failed: {e}")
        return 1
    console.success(f"Pool '{name}' created successfully")

    sizes = zfs.get_properties(name, ("size", "allocated", "free"), executor, pool=True, parsable=True)
    console.emit_json({
        "success": True,
        "pool": {
            "name": name,
            "size": size_bytes,
            "path": image_path,
            "compression": compression,
            "dedup": dedup_value,
            "autotrim": autotrim_value,
        },
        "storage": {
            "total": int(sizes.get("size", 0)),
            "used": int(sizes.get("allocated", 0)),
            "free": int(sizes.get("free", 0)),
        },
    })
    return 0


def run_expand(
    executor: "Executor",
    console: "Console",
    pool: str,
    size: str | None = None,
    add: str | None = None,
    assume_yes: bool = False,
    available: int | None = None,
) -> int:
    """Grow a file-backed pool to ``size`` or by ``add`` bytes."""
    if not size and not add:
        console.error("No size specified (use --size or --add)")
        return 1
    if not zfs.pool_exists(pool, executor):
        console.error(f"Pool '{pool}' does not exist")
        return 1

    path = backend_path(zfs.pool_status(pool, executor))
    kind = backend_type(path)
    if kind != "file":
        console.error(f"Pool '{pool}' is not file-backed (type: {kind}). Cannot expand.")
        return 1
    health = zfs.get_properties(pool, ("health",), executor, pool=True).get("health", "UNKNOWN")
    if health != "ONLINE":
        console.error(f"Pool '{pool}' is not ONLINE (status: {health})")
        return 1

    current = zfs.get_properties(pool, ("size", "allocated"), executor, pool=True, parsable=True)
    current_size = int(current.get("size", 0))
    if add:
        new_size = current_size + parse_size(add.lstrip("+"))
    else:
        new_size = parse_size(size)
        if new_size <= current_size:
            console.error(
                f"New size ({format_size(new_size)}) must be larger than "
                f"current size ({format_size(current_size)})"
            )
            return 1

    if available is None:
        available = free_space(os.path.dirname(path))
    needed = new_size - current_size
    if needed > available:
        console.error(
            f"Not enough free space. Need: {format_size(needed)}, Available: {format_size(available)}"
        )
        return 1

    _summary(console, [
        ("Pool", pool),
        ("Backend", path),
        ("Current size", format_size(current_size)),
        ("Current used", format_size(int(current.get("allocated", 0)))),
        ("New size", format_size(new_size)),
        ("Available space", format_size(available)),
    ])
    if not console.confirm(
        f"Expand pool from {format_size(current_size)} to {format_size(new_size)}?", assume_yes,
    ):
        console.line("Aborted.")
        return 0

    console.info(f"Expanding sparse file to {format_size(new_size)}...")
    os.truncate(path, new_size)
    console.info("Notifying ZFS of new size...")
    try:
        zfs.expand_vdev(pool, path, executor)
    except ExecutorError as e:
        console.error(f"Expansion failed: {e}")
        return 1

    after = zfs.get_properties(pool, ("size", "free"), executor, pool=True, parsable=True)
    total, free = int(after.get("size", 0)), int(after.get("free", 0))
    console.success(f"Pool expanded to {format_size(total)}")
    console.emit_json({
        "success": True,
        "pool": pool,
        "previous_size": current_size,
        "new_size": total,
        "new_size_human": format_size(total),
        "free": free,
        "free_human": format_size(free),
    })
    return 0
