"""Executor protocol and implementations (local, SSH)."""
from __future__ import annotations

import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


class ExecutorError(Exception):
    """Raised when a command exits with a non-zero status."""
    def __init__(self, cmd: list[str], returncode: int, stderr: str):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command {shlex.join(cmd)!r} exited {returncode}: {stderr.strip()}"
        )


@runtime_checkable
class Executor(Protocol):
    @property
    def label(self) -> str:
        """Short label for display (e.g. 'local', 'ssh://host')."""
        raise NotImplementedError

    def run(self, cmd: list[str], input: str | None = None) -> str:
        """Run a command, return stdout. Raise ExecutorError on failure."""
        raise NotImplementedError

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        """Launch a command as a Popen object for piping."""
        raise NotImplementedError

    def has_command(self, name: str) -> bool:
        """True if ``name`` is an executable on this host's PATH."""
        raise NotImplementedError


class LocalExecutor:
    """Run commands on the local machine."""

    @property
    def label(self) -> str:
        return "local"

    def run(self, cmd: list[str], input: str | None = None) -> str:
        try:
            result = subprocess.run(
                cmd,
                input=input,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise ExecutorError(cmd, 127, str(e)) from e
        if result.returncode != 0:
            raise ExecutorError(cmd, result.returncode, result.stderr)
        return result.stdout

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        return subprocess.Popen(cmd, text=False, **kwargs)

    def has_command(self, name: str) -> bool:
        return shutil.which(name) is not None


class SSHExecutor:
    """Run commands on a remote host via SSH."""

    def __init__(self, host: str, user: str | None = None, port: int = 22):
        self.host = host
        self.user = user
        self.port = port

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    @property
    def label(self) -> str:
        return f"ssh://{self.destination}:{self.port}"

    def ssh_prefix(self) -> list[str]:
        return [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-p", str(self.port),
            self.destination,
        ]

    def wrap(self, cmd: list[str]) -> list[str]:
        """The local argv that runs ``cmd`` on the remote host."""
        return self.ssh_prefix() + [shlex.join(cmd)]

    def wrap_pipeline(self, *cmds: list[str]) -> list[str]:
        """Like wrap(), for a remote ``a | b | c`` pipeline."""
        return self.ssh_prefix() + [" | ".join(shlex.join(c) for c in cmds)]

    def run(self, cmd: list[str], input: str | None = None) -> str:
        full_cmd = self.wrap(cmd)
        try:
            result = subprocess.run(
                full_cmd,
                input=input,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise ExecutorError(full_cmd, 127, str(e)) from e
        if result.returncode != 0:
            raise ExecutorError(full_cmd, result.returncode, result.stderr)
        return result.stdout

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        return subprocess.Popen(self.wrap(cmd), text=False, **kwargs)

    def has_command(self, name: str) -> bool:
        try:
            self.run(["sh", "-c", f"command -v {shlex.quote(name)}"])
            return True
        except ExecutorError:
            return False


@dataclass(frozen=True)
class Remote:
    """A receive target on another host: [user@]host + dataset path."""
    host: str
    path: str
    user: str | None = None
    port: int = 22

    @property
    def display(self) -> str:
        return f"{self.user or 'root'}@{self.host}:{self.path}"

    def executor(self) -> SSHExecutor:
        return SSHExecutor(host=self.host, user=self.user, port=self.port)


_SSH_URL_RE = re.compile(r"^ssh://(?:(?P<user>[^@/]+)@)?(?P<host>[^/:]+)(?::(?P<port>\d+))?/(?P<path>.+)$")
_SCP_RE = re.compile(r"^(?:(?P<user>[^@:]+)@)?(?P<host>[^:/]+):(?P<path>.+)$")


def parse_remote(text: str) -> Remote:
    """Parse ``user@host:pool/ds``, ``host:pool/ds`` or ``ssh://user@host[:port]/pool/ds``."""
    match = _SSH_URL_RE.match(text)
    if match:
        port = int(match.group("port")) if match.group("port") else 22
        return Remote(
            host=match.group("host"),
            path=match.group("path"),
            user=match.group("user"),
            port=port,
        )
    match = _SCP_RE.match(text)
    if match:
        return Remote(host=match.group("host"), path=match.group("path"), user=match.group("user"))
    raise ValueError(f"Invalid remote format: {text!r}")
