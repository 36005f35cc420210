"""Point a fresh Incus install at an existing ZFS pool.

``incus admin init --preseed`` takes a YAML document; it is built as a
plain dict and rendered with PyYAML so names never need quoting by hand.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

import yaml

from zfsh import zfs
from zfsh.executor import ExecutorError

if TYPE_CHECKING:
    from zfsh.executor import Executor
    from zfsh.output import Console

DEFAULT_NETWORK = "incusbr0"


def build_preseed(
    pool: str,
    storage: str,
    network: str = DEFAULT_NETWORK,
    create_network: bool = True,
    attach_network: bool = True,
    ipv4: str | None = None,
) -> dict:
    """Preseed mapping: a zfs storage pool, an optional bridge and the default profile."""
    preseed: dict = {
        "storage_pools": [
            {"name": storage, "driver": "zfs", "config": {"source": pool}},
        ],
    }
    if create_network:
        bridge: dict = {"name": network, "type": "bridge"}
        if ipv4:
            bridge["config"] = {"ipv4.address": ipv4, "ipv4.nat": "true"}
        preseed["networks"] = [bridge]

    devices: dict = {"root": {"path": "/", "pool": storage, "type": "disk"}}
    if create_network or attach_network:
        devices["eth0"] = {"name": "eth0", "network": network, "type": "nic"}
    preseed["profiles"] = [{"name": "default", "devices": devices}]
    return preseed


def _exists(kind: str, name: str, executor: "Executor") -> bool:
    try:
        executor.run(["incus", kind, "show", name])
        return True
    except ExecutorError:
        return False


def _network_ipv4(network: str, executor: "Executor") -> str:
    try:
        return executor.run(["incus", "network", "get", network, "ipv4.address"]).strip()
    except ExecutorError:
        return ""


def run_init(
    executor: "Executor",
    console: "Console",
    pool: str = "default",
    storage: str | None = None,
    network: str = DEFAULT_NETWORK,
    ipv4: str | None = None,
    create_network: bool = True,
    assume_yes: bool = False,
) -> int:
    storage = storage or pool
    if not executor.has_command("incus"):
        console.error("Incus is not installed")
        return 1
    if not zfs.pool_exists(pool, executor):
        console.error(f"ZFS pool '{pool}' does not exist")
        return 1
    health = zfs.get_properties(pool, ("health",), executor, pool=True).get("health", "UNKNOWN")
    if health != "ONLINE":
        console.error(f"ZFS pool '{pool}' is not ONLINE (status: {health})")
        return 1
    if _exists("storage", storage, executor):
        console.error(f"Incus storage pool '{storage}' already exists")
        return 1

    network_exists = _exists("network", network, executor)
    if create_network and network_exists:
        console.warn(f"Network '{network}' already exists, will use existing")
        create_network = False

    if console.chatty:
        console.line()
        console.line("Summary:")
        console.line(f"  ZFS pool:      {pool}")
        console.line(f"  Storage name:  {storage}")
        if create_network:
            console.line(f"  Network:       {network} (create new)")
            if ipv4:
                console.line(f"  Network IPv4:  {ipv4}")
        else:
            console.line(f"  Network:       {network} (use existing)")
        console.line()
    if not console.confirm("Initialize Incus with these settings?", assume_yes):
        console.line("Aborted.")
        return 0

    preseed = yaml.safe_dump(
        build_preseed(pool, storage, network, create_network, network_exists, ipv4),
        sort_keys=False,
    )
    console.info("Applying Incus configuration...")
    if console.chatty:
        console.line("Preseed configuration:")
        console.line("---")
        console.line(preseed.rstrip("\n"))
        console.line("---")
    try:
        executor.run(["incus", "admin", "init", "--preseed"], input=preseed)
    except ExecutorError as e:
        console.error(f"Incus initialization failed: {e}")
        return 1
    console.success("Incus initialized successfully")

    console.info("Verifying setup...")
    if not _exists("storage", storage, executor):
        console.error(f"Storage pool '{storage}' not found")
        return 1
    console.success(f"Storage pool '{storage}' created")
    if _exists("network", network, executor):
        console.success(f"Network '{network}' available")
    else:
        console.warn(f"Network '{network}' not found")
    try:
        profile = executor.run(["incus", "profile", "show", "default"])
    except ExecutorError:
        profile = ""
    if f"pool: {storage}" in profile:
        console.success("Default profile configured")
    else:
        console.warn("Default profile may not be configured correctly")

    if console.json:
        console.emit_json({
            "success": True,
            "storage": {"name": storage, "driver": "zfs", "source": pool},
            "network": {"name": network, "ipv4": _network_ipv4(network, executor)},
        })
    if console.chatty:
        console.line()
        console.line("Setup complete! You can now create containers:")
        console.line("  incus launch images:debian/12 my-container")
        console.line(f"  incus storage info {storage}")
    return 0
