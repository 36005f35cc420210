"""Tests for zfsh.chain module."""
from __future__ import annotations

import pytest

from zfsh.chain import NotFoundError, resolve_base, resolve_recursive_base
from zfsh.models import Artifact
from tests.conftest import ts


def _snap(dataset, name, day):
    return Artifact(identity=f"{dataset}@{name}", subject=dataset, created_at=ts(2026, 1, day))


LOCAL = [_snap("tank/data", n, d) for n, d in (("s1", 1), ("s2", 2), ("s3", 3))]


def test_local_base_is_previous_artifact():
    assert resolve_base(LOCAL).identity == "tank/data@s2"


def test_single_artifact_has_no_base():
    assert resolve_base(LOCAL[:1]) is None


def test_empty_timeline_has_no_base():
    assert resolve_base([]) is None


def test_remote_base_is_newest_common_before_target():
    remote = [_snap("backup/data", "s1", 1)]
    base = resolve_base(LOCAL, remote)
    assert base.identity == "tank/data@s1"


def test_remote_prefers_newest_common():
    remote = [_snap("backup/data", "s1", 1), _snap("backup/data", "s2", 2)]
    assert resolve_base(LOCAL, remote).identity == "tank/data@s2"


def test_target_itself_on_remote_is_not_a_base():
    remote = [_snap("backup/data", "s3", 3)]
    assert resolve_base(LOCAL, remote) is None


def test_no_common_suffix_means_full_send():
    remote = [_snap("backup/data", "other", 1)]
    assert resolve_base(LOCAL, remote) is None


def test_empty_remote_means_full_send():
    assert resolve_base(LOCAL, []) is None


def test_explicit_target():
    assert resolve_base(LOCAL, target=LOCAL[1]).identity == "tank/data@s1"


def test_target_not_yet_listed_uses_creation_time():
    new = _snap("tank/data", "s4", 4)
    assert resolve_base(LOCAL, target=new).identity == "tank/data@s3"


@pytest.mark.parametrize("explicit", ["tank/data@s1", "@s1", "s1"])
def test_explicit_base_forms(explicit):
    assert resolve_base(LOCAL, explicit=explicit).identity == "tank/data@s1"


def test_explicit_base_missing():
    with pytest.raises(NotFoundError, match="nope"):
        resolve_base(LOCAL, explicit="nope")


def test_other_subjects_are_ignored():
    mixed = [
        _snap("tank/data", "s1", 1),
        _snap("tank/data/child", "s2", 2),
        _snap("tank/data", "s3", 3),
    ]
    assert resolve_base(mixed).identity == "tank/data@s1"


class TestRecursive:
    def _setup(self, child_remote):
        local = {
            "tank/data": LOCAL,
            "tank/data/a": [_snap("tank/data/a", n, d) for n, d in (("s1", 1), ("s2", 2), ("s3", 3))],
        }
        remote = {
            "tank/data": [_snap("backup/data", "s2", 2)],
            "tank/data/a": child_remote,
        }
        targets = {subject: timeline[-1] for subject, timeline in local.items()}
        return local, remote, targets

    def test_shared_suffix(self):
        local, remote, targets = self._setup([_snap("backup/data/a", "s2", 2)])
        assert resolve_recursive_base(local, remote, targets) == ("@s2", [])

    def test_divergent_child_falls_back_to_full(self):
        local, remote, targets = self._setup([_snap("backup/data/a", "s1", 1)])
        suffix, divergent = resolve_recursive_base(local, remote, targets)
        assert suffix is None
        assert divergent == ["tank/data/a"]

    def test_child_without_base_falls_back_to_full(self):
        local, remote, targets = self._setup([])
        suffix, divergent = resolve_recursive_base(local, remote, targets)
        assert suffix is None
        assert divergent == ["tank/data/a"]

    def test_local_only(self):
        local, _, targets = self._setup([])
        assert resolve_recursive_base(local, None, targets) == ("@s2", [])
