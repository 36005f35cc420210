"""Tests for zfsh.executor module."""
from __future__ import annotations

import pytest

from zfsh.executor import Executor, ExecutorError, LocalExecutor, Remote, SSHExecutor, parse_remote
from tests.conftest import MockExecutor


@pytest.mark.parametrize("text, expected", [
    ("nas:backup/tank", Remote(host="nas", path="backup/tank")),
    ("root@nas:backup/tank", Remote(host="nas", path="backup/tank", user="root")),
    ("ssh://admin@10.0.0.5:2222/backup/tank", Remote(host="10.0.0.5", path="backup/tank", user="admin", port=2222)),
    ("ssh://nas/backup", Remote(host="nas", path="backup")),
])
def test_parse_remote(text, expected):
    assert parse_remote(text) == expected


@pytest.mark.parametrize("text", ["backup/tank", "", "nas:"])
def test_parse_remote_invalid(text):
    with pytest.raises(ValueError, match="Invalid remote"):
        parse_remote(text)


def test_remote_display_defaults_to_root():
    assert parse_remote("nas:backup").display == "root@nas:backup"


def test_ssh_wrap_quotes_remote_command():
    ssh = SSHExecutor("nas", user="root", port=2222)
    assert ssh.wrap(["zfs", "list", "-H", "my pool"]) == [
        "ssh", "-o", "BatchMode=yes", "-o", "StrictHostKeyChecking=accept-new",
        "-p", "2222", "root@nas", "zfs list -H 'my pool'",
    ]
    assert ssh.wrap_pipeline(["zstd", "-dc"], ["zfs", "receive", "-F", "b/t"])[-1] == (
        "zstd -dc | zfs receive -F b/t"
    )
    assert ssh.label == "ssh://root@nas:2222"


def test_local_executor_missing_binary():
    with pytest.raises(ExecutorError) as exc:
        LocalExecutor().run(["zfsh-test-no-such-binary"])
    assert exc.value.returncode == 127


def test_executors_satisfy_protocol():
    assert isinstance(LocalExecutor(), Executor)
    assert isinstance(SSHExecutor("nas"), Executor)
    assert isinstance(MockExecutor(), Executor)
