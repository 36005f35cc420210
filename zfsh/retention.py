"""Grandfather-father-son retention: decide which artifacts to keep.

Nothing here touches ZFS or the filesystem. Callers list a timeline,
call :func:`classify`, show the decision and only then destroy the
``delete`` side, which keeps ``--dry-run`` and the real run identical.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone, tzinfo
from typing import Iterable, Sequence

from zfsh.models import (
    Artifact,
    Period,
    PeriodKey,
    RetentionDecision,
    RetentionPolicy,
)


class PolicyError(ValueError):
    """Raised for a retention policy that selects nothing or mixes modes."""


def validate_policy(policy: RetentionPolicy) -> RetentionPolicy:
    """Reject policies classify() must never see. Returns the policy."""
    counts = {
        "keep_last": policy.keep_last,
        "keep_daily": policy.keep_daily,
        "keep_weekly": policy.keep_weekly,
        "keep_monthly": policy.keep_monthly,
    }
    for name, value in counts.items():
        if value < 0:
            raise PolicyError(f"{name} must be >= 0, got {value}")
    if policy.older_than is not None and policy.older_than < 0:
        raise PolicyError(f"older_than must be >= 0, got {policy.older_than}")
    if policy.is_age_based and policy.is_generational:
        raise PolicyError(
            "--older-than cannot be combined with --keep-* options; "
            "pick age-based or generational retention"
        )
    if not policy.is_age_based and not policy.is_generational:
        raise PolicyError(
            "At least one retention option required (--keep-*, --older-than)"
        )
    return policy


def period_key(period: Period, moment: datetime, tz: tzinfo | None = None) -> PeriodKey:
    """Bucket a moment by civil day, ISO week or month in ``tz`` (default local)."""
    local = moment.astimezone(tz)
    if period is Period.DAILY:
        return PeriodKey(period, (local.year, local.month, local.day))
    if period is Period.WEEKLY:
        iso = local.isocalendar()
        return PeriodKey(period, (iso[0], iso[1]))
    return PeriodKey(period, (local.year, local.month))


class _Bucket:
    """Distinct period keys admitted so far for one granularity."""

    def __init__(self, period: Period, capacity: int):
        self.period = period
        self.capacity = capacity
        self.kept: dict[PeriodKey, Artifact] = {}

    def offer(self, artifact: Artifact, tz: tzinfo | None) -> bool:
        if self.capacity <= 0 or len(self.kept) >= self.capacity:
            return False
        key = period_key(self.period, artifact.created_at, tz)
        if key in self.kept:
            return False
        self.kept[key] = artifact
        return True


def _classify_generational(
    timeline: Sequence[Artifact],
    policy: RetentionPolicy,
    tz: tzinfo | None,
) -> set[int]:
    buckets = [
        _Bucket(Period.DAILY, policy.keep_daily),
        _Bucket(Period.WEEKLY, policy.keep_weekly),
        _Bucket(Period.MONTHLY, policy.keep_monthly),
    ]
    last_kept = 0
    kept: set[int] = set()

    # Newest first: the first artifact seen in a period is its freshest.
    for index in range(len(timeline) - 1, -1, -1):
        artifact = timeline[index]
        dominated = False
        if last_kept < policy.keep_last:
            last_kept += 1
            dominated = True
        for bucket in buckets:
            # Every bucket is offered the artifact so each records its key.
            if bucket.offer(artifact, tz):
                dominated = True
        if dominated:
            kept.add(index)
    return kept


def _classify_by_age(
    timeline: Sequence[Artifact],
    older_than: int,
    now: datetime,
) -> set[int]:
    return {
        index
        for index, artifact in enumerate(timeline)
        if (now - artifact.created_at).total_seconds() <= older_than
    }


def classify(
    timeline: Sequence[Artifact],
    policy: RetentionPolicy,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> RetentionDecision:
    """Partition an oldest-first timeline into keep and delete.

    Generational mode (``older_than`` unset) keeps the ``keep_last`` newest
    artifacts plus the newest artifact of each of the ``keep_daily`` most
    recent days, ``keep_weekly`` ISO weeks and ``keep_monthly`` months that
    have artifacts. Period boundaries are evaluated in ``tz`` (default: the
    local time zone).

    Age mode deletes every artifact strictly older than ``older_than``
    seconds at ``now`` (default: the current time).

    The policy must already have passed :func:`validate_policy`.
    """
    if not timeline:
        return RetentionDecision()

    if policy.older_than is not None:
        if now is None:
            now = datetime.now(timezone.utc)
        kept = _classify_by_age(timeline, policy.older_than, now)
    else:
        kept = _classify_generational(timeline, policy, tz)

    keep = tuple(a for i, a in enumerate(timeline) if i in kept)
    delete = tuple(a for i, a in enumerate(timeline) if i not in kept)
    return RetentionDecision(keep=keep, delete=delete)


def group_by_subject(artifacts: Iterable[Artifact]) -> dict[str, list[Artifact]]:
    """Split artifacts into per-subject timelines sorted oldest-first."""
    grouped: dict[str, list[Artifact]] = defaultdict(list)
    for artifact in artifacts:
        grouped[artifact.subject].append(artifact)
    for timeline in grouped.values():
        timeline.sort(key=lambda a: (a.created_at, a.identity))
    return dict(grouped)
