"""MockExecutor and shared fixtures for testing."""
from __future__ import annotations

import io
import subprocess
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from zfsh.executor import ExecutorError
from zfsh.output import Console


class MockExecutor:
    """
    Executor that returns pre-scripted responses for commands.

    responses: dict mapping tuple(cmd) -> stdout string (or an Exception to raise)
    If the command isn't found, raises KeyError (to catch unexpected calls in tests).

    popen() never runs anything: it records the call, writes ``stream`` to a
    file passed as stdout, and exits with ``exit_codes.get(cmd[0], 0)``.
    ``missing`` names executables has_command() should report as absent.

    Pass verbose=True to print every command that goes through the executor.
    """

    def __init__(
        self,
        responses: dict | None = None,
        is_verbose: bool = False,
        label: str = "mock",
        missing: tuple[str, ...] = (),
        stream: bytes = b"",
        exit_codes: dict | None = None,
    ):
        self.responses: dict = responses or {}
        self.verbose = is_verbose
        self._label = label
        self.missing = set(missing)
        self.stream = stream
        self.exit_codes = exit_codes or {}
        self.calls: list[list[str]] = []  # record of all commands run
        self.inputs: list[str | None] = []  # stdin passed to run()
        self.popen_calls: list[list[str]] = []

    @property
    def label(self) -> str:
        return self._label

    def _key(self, cmd: list[str]) -> tuple:
        return tuple(cmd)

    def run(self, cmd: list[str], input: str | None = None) -> str:
        self.calls.append(cmd)
        self.inputs.append(input)
        key = self._key(cmd)
        if self.verbose:
            import shlex
            print(f"  [mock.run] {shlex.join(cmd)}")
        if key not in self.responses:
            raise KeyError(f"MockExecutor: unexpected command: {cmd}")
        result = self.responses[key]
        if isinstance(result, Exception):
            raise result
        return result

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        """Record the call and return a mock Popen that finishes immediately."""
        self.calls.append(cmd)
        self.popen_calls.append(cmd)
        if self.verbose:
            import shlex
            print(f"  [mock.popen] {shlex.join(cmd)}")

        out = kwargs.get("stdout")
        if hasattr(out, "write"):
            out.write(self.stream)

        code = self.exit_codes.get(cmd[0], 0)
        mock_proc = MagicMock(spec=subprocess.Popen)
        mock_proc.stdout = io.BytesIO(b"")
        mock_proc.stdin = io.BytesIO(b"")
        mock_proc.returncode = code
        mock_proc.wait.return_value = code
        return mock_proc

    def has_command(self, name: str) -> bool:
        return name not in self.missing


class SnapshotRecorder(MockExecutor):
    """MockExecutor that accepts any `zfs snapshot`/`zfs destroy` call.

    Generated snapshot names depend on the clock, so tests read them back
    from ``calls`` instead of scripting them.
    """

    def run(self, cmd: list[str], input: str | None = None) -> str:
        if cmd[:2] in (["zfs", "snapshot"], ["zfs", "destroy"]):
            self.calls.append(cmd)
            self.inputs.append(input)
            return ""
        return super().run(cmd, input)

    def created(self) -> list[str]:
        return [c[-1] for c in self.calls if c[:2] == ["zfs", "snapshot"]]

    def destroyed(self) -> list[str]:
        return [c[-1] for c in self.calls if c[:2] == ["zfs", "destroy"]]


def fail(cmd: str = "zfs", message: str = "does not exist") -> ExecutorError:
    return ExecutorError([cmd], 1, message)


# ---------------------------------------------------------------------------
# zfs list output
# ---------------------------------------------------------------------------

def ts(*args) -> datetime:
    """UTC datetime shorthand: ts(2026, 1, 27, 14, 30)."""
    return datetime(*args, tzinfo=timezone.utc)


def list_snapshots_cmd(dataset: str) -> tuple:
    return (
        "zfs", "list", "-H", "-p", "-o", "name,creation,used,refer",
        "-t", "snapshot", "-s", "creation", "-r", dataset,
    )


def exists_cmd(dataset: str) -> tuple:
    return ("zfs", "list", "-H", "-o", "name", dataset)


def snapshot_exists_cmd(snapshot: str) -> tuple:
    return ("zfs", "list", "-H", "-o", "name", "-t", "snapshot", snapshot)


def snap_listing(dataset: str, snaps: list[tuple[str, datetime]], used: int = 1024) -> str:
    """`zfs list -H -p` lines for (name, creation) pairs."""
    lines = [
        f"{dataset}@{name}\t{int(created.timestamp())}\t{used}\t{used * 10}"
        for name, created in snaps
    ]
    return "\n".join(lines) + "\n" if lines else ""


# Daily snapshots on tank/data for 2026-01-01 .. 2026-01-10 at 02:00 UTC
DAILY_SNAPS = [(f"backup_202601{day:02d}_020000", ts(2026, 1, day, 2)) for day in range(1, 11)]


@pytest.fixture
def console():
    return Console()


@pytest.fixture
def json_console():
    return Console(json=True)


@pytest.fixture
def verbose(request):
    """True if -v was passed to pytest."""
    return request.config.getoption("--verbose", default=False)
