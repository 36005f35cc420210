"""Data models for zfsh."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

from zfsh.units import format_duration


@dataclass(frozen=True)
class Artifact:
    """A timestamped, named unit under retention: a snapshot or a backup file.

    ``subject`` is the dataset path the artifact belongs to; ``identity`` is
    the fully qualified snapshot name or the backup file path.
    """
    identity: str
    subject: str
    created_at: datetime
    is_incremental: bool = False
    size_bytes: int | None = None

    @property
    def suffix(self) -> str:
        """Identity with the subject removed, e.g. "@daily-1" for a snapshot.

        Artifacts on different hosts or pools share a suffix when they
        describe the same point in time.
        """
        if self.identity.startswith(self.subject):
            return self.identity[len(self.subject):]
        return self.identity


@dataclass(frozen=True, order=True)
class Snapshot:
    """A ZFS snapshot: pool/dataset@name."""
    dataset: str
    name: str  # just the snapshot name after '@'
    created_at: datetime | None = field(default=None, compare=False)
    used: int | None = field(default=None, compare=False)
    referenced: int | None = field(default=None, compare=False)

    @property
    def full_name(self) -> str:
        return f"{self.dataset}@{self.name}"

    @classmethod
    def parse(cls, full_name: str) -> "Snapshot":
        dataset, _, name = full_name.partition("@")
        if not name or not dataset:
            raise ValueError(f"Not a snapshot: {full_name!r}")
        return cls(dataset=dataset, name=name)

    def to_artifact(self) -> Artifact:
        if self.created_at is None:
            raise ValueError(f"Snapshot {self.full_name} has no creation time")
        return Artifact(
            identity=self.full_name,
            subject=self.dataset,
            created_at=self.created_at,
            size_bytes=self.used,
        )


@dataclass(frozen=True)
class Dataset:
    name: str  # e.g. tank/containers/web

    @property
    def pool(self) -> str:
        return self.name.split("/")[0]


@dataclass(frozen=True)
class BackupName:
    """The fields carried by a backup filename."""
    subject: str
    timestamp: datetime
    is_incremental: bool = False
    extension: str = ""


@dataclass(frozen=True)
class RetentionPolicy:
    """Keep-counts per granularity, or an absolute age cutoff in seconds.

    The two modes are mutually exclusive; see retention.validate_policy.
    """
    keep_last: int = 0
    keep_daily: int = 0
    keep_weekly: int = 0
    keep_monthly: int = 0
    older_than: int | None = None

    @property
    def is_age_based(self) -> bool:
        return self.older_than is not None

    @property
    def is_generational(self) -> bool:
        return any((self.keep_last, self.keep_daily, self.keep_weekly, self.keep_monthly))

    def describe(self) -> list[str]:
        """Human-readable lines for plan output."""
        lines = []
        if self.keep_last:
            lines.append(f"Keep last: {self.keep_last}")
        if self.keep_daily:
            lines.append(f"Keep daily: {self.keep_daily}")
        if self.keep_weekly:
            lines.append(f"Keep weekly: {self.keep_weekly}")
        if self.keep_monthly:
            lines.append(f"Keep monthly: {self.keep_monthly}")
        if self.older_than is not None:
            lines.append(f"Older than: {format_duration(self.older_than)}")
        return lines


@dataclass(frozen=True)
class RetentionDecision:
    """Disjoint keep/delete partition of a timeline, both oldest-first."""
    keep: tuple[Artifact, ...] = ()
    delete: tuple[Artifact, ...] = ()


class Period(enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class PeriodKey:
    """A calendar bucket: (y, m, d) for daily, ISO (y, w) weekly, (y, m) monthly."""
    period: Period
    value: tuple[int, ...]

    def __str__(self) -> str:
        if self.period is Period.DAILY:
            return "%04d-%02d-%02d" % self.value
        if self.period is Period.WEEKLY:
            return "%04d-W%02d" % self.value
        return "%04d-%02d" % self.value


@dataclass
class Settings:
    """Defaults read from the YAML settings file."""
    backup_dir: str = "/root/backups"
    compression: str = "zstd"
    snapshot_prefix: str = "backup"
    log_file: str | None = None
    policies: dict[str, RetentionPolicy] = field(default_factory=dict)
