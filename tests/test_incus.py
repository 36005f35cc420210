"""Tests for zfsh.incus module."""
from __future__ import annotations

import json

import yaml

from zfsh import incus
from tests.conftest import MockExecutor, fail

INIT = ("incus", "admin", "init", "--preseed")
STORAGE_SHOW = ("incus", "storage", "show", "tank")
NETWORK_SHOW = ("incus", "network", "show", "incusbr0")
PROFILE = "devices:\n  root:\n    path: /\n    pool: tank\n    type: disk\n"


class IncusExecutor(MockExecutor):
    """MockExecutor whose ``after`` responses take effect once the preseed is applied."""

    def __init__(self, responses, after=None, **kwargs):
        super().__init__(responses, **kwargs)
        self.after = after or {}

    def run(self, cmd, input=None):
        output = super().run(cmd, input)
        if tuple(cmd) == INIT:
            self.responses.update(self.after)
        return output

    def preseed(self):
        return yaml.safe_load(self.inputs[self.calls.index(list(INIT))])


def _executor(health="ONLINE", network_exists=False, extra=None, **kwargs):
    responses = {
        ("zpool", "list", "-H", "-o", "name", "tank"): "tank\n",
        ("zpool", "get", "-H", "-o", "property,value", "health", "tank"): f"health\t{health}\n",
        STORAGE_SHOW: fail("incus", "Storage pool not found"),
        NETWORK_SHOW: "name: incusbr0\n" if network_exists else fail("incus", "Network not found"),
        INIT: "",
    }
    responses.update(extra or {})
    after = {
        STORAGE_SHOW: "name: tank\ndriver: zfs\n",
        NETWORK_SHOW: "name: incusbr0\n",
        ("incus", "profile", "show", "default"): PROFILE,
        ("incus", "network", "get", "incusbr0", "ipv4.address"): "10.20.0.1/24\n",
    }
    return IncusExecutor(responses, after, **kwargs)


class TestPreseed:
    def test_bridge_with_address(self):
        preseed = incus.build_preseed("tank", "containers", ipv4="10.100.0.1/24")
        assert preseed["storage_pools"] == [
            {"name": "containers", "driver": "zfs", "config": {"source": "tank"}},
        ]
        assert preseed["networks"] == [{
            "name": "incusbr0", "type": "bridge",
            "config": {"ipv4.address": "10.100.0.1/24", "ipv4.nat": "true"},
        }]
        devices = preseed["profiles"][0]["devices"]
        assert devices["root"] == {"path": "/", "pool": "containers", "type": "disk"}
        assert devices["eth0"]["network"] == "incusbr0"

    def test_nat_stays_a_string_in_yaml(self):
        text = yaml.safe_dump(incus.build_preseed("tank", "tank", ipv4="10.0.0.1/24"))
        assert yaml.safe_load(text)["networks"][0]["config"]["ipv4.nat"] == "true"

    def test_without_network(self):
        preseed = incus.build_preseed("tank", "tank", create_network=False, attach_network=False)
        assert "networks" not in preseed
        assert list(preseed["profiles"][0]["devices"]) == ["root"]


class TestInit:
    def test_applies_preseed(self, json_console, capsys):
        exec_ = _executor()
        assert incus.run_init(exec_, json_console, pool="tank", assume_yes=True) == 0
        preseed = exec_.preseed()
        assert preseed["storage_pools"][0]["config"] == {"source": "tank"}
        assert preseed["networks"] == [{"name": "incusbr0", "type": "bridge"}]
        payload = json.loads(capsys.readouterr().out)
        assert payload["storage"] == {"name": "tank", "driver": "zfs", "source": "tank"}
        assert payload["network"] == {"name": "incusbr0", "ipv4": "10.20.0.1/24"}

    def test_existing_network_is_reused(self, console, capsys):
        exec_ = _executor(network_exists=True)
        assert incus.run_init(exec_, console, pool="tank", assume_yes=True) == 0
        preseed = exec_.preseed()
        assert "networks" not in preseed
        assert preseed["profiles"][0]["devices"]["eth0"]["network"] == "incusbr0"
        captured = capsys.readouterr()
        assert "will use existing" in captured.err
        assert "Default profile configured" in captured.out

    def test_no_network(self, console):
        exec_ = _executor()
        exec_.after.pop(NETWORK_SHOW)
        assert incus.run_init(exec_, console, pool="tank", create_network=False, assume_yes=True) == 0
        assert "eth0" not in exec_.preseed()["profiles"][0]["devices"]

    def test_storage_pool_already_exists(self, console, capsys):
        exec_ = _executor(extra={STORAGE_SHOW: "name: tank\n"})
        assert incus.run_init(exec_, console, pool="tank", assume_yes=True) == 1
        assert "Incus storage pool 'tank' already exists" in capsys.readouterr().err
        assert list(INIT) not in exec_.calls

    def test_pool_not_online(self, console, capsys):
        assert incus.run_init(_executor(health="FAULTED"), console, pool="tank", assume_yes=True) == 1
        assert "is not ONLINE (status: FAULTED)" in capsys.readouterr().err

    def test_incus_missing(self, console, capsys):
        exec_ = _executor(missing=("incus",))
        assert incus.run_init(exec_, console, pool="tank", assume_yes=True) == 1
        assert "Incus is not installed" in capsys.readouterr().err
        assert exec_.calls == []

    def test_declined(self, console, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda _: "no")
        exec_ = _executor()
        assert incus.run_init(exec_, console, pool="tank") == 0
        assert list(INIT) not in exec_.calls

    def test_failed_init(self, console, capsys):
        exec_ = _executor(extra={INIT: fail("incus", "Failed to create storage pool")})
        assert incus.run_init(exec_, console, pool="tank", assume_yes=True) == 1
        assert "Incus initialization failed" in capsys.readouterr().err
