"""Pick the base artifact for an incremental backup or send.

A return value of ``None`` means "no usable base": the caller must fall
back to a full stream and tell the operator it did so.
"""
from __future__ import annotations

from typing import Mapping, Sequence

from zfsh.models import Artifact


class NotFoundError(LookupError):
    """Raised when an explicitly requested base does not exist locally."""


def _candidates(local: Sequence[Artifact], target: Artifact | None) -> list[Artifact]:
    """Artifacts of the target's subject created before the target, oldest-first."""
    if not local:
        return []
    if target is None:
        target = local[-1]
    same_subject = [a for a in local if a.subject == target.subject]
    for index, artifact in enumerate(same_subject):
        if artifact.identity == target.identity:
            return same_subject[:index]
    # Target not listed yet (e.g. created after listing): everything older.
    return [a for a in same_subject if a.created_at < target.created_at]


def _find_explicit(local: Sequence[Artifact], explicit: str) -> Artifact:
    for artifact in local:
        if explicit in (artifact.identity, artifact.suffix, artifact.suffix.lstrip("@")):
            return artifact
    raise NotFoundError(f"Base snapshot {explicit!r} does not exist")


def resolve_base(
    local: Sequence[Artifact],
    remote: Sequence[Artifact] | None = None,
    explicit: str | None = None,
    target: Artifact | None = None,
) -> Artifact | None:
    """Return the incremental base for ``target`` or None for a full stream.

    local:    oldest-first timeline on the sending side.
    remote:   timeline on the receiving side; None for local-only backups.
    explicit: base named by the operator (identity, "@name" or "name").
    target:   the artifact being sent; defaults to the newest local one.

    Without ``remote`` the base is the artifact just before ``target``.
    With ``remote`` it is the newest artifact before ``target`` whose
    suffix ("@name") also exists remotely.
    """
    if explicit:
        return _find_explicit(local, explicit)

    candidates = _candidates(local, target)
    if remote is None:
        return candidates[-1] if candidates else None

    remote_suffixes = {a.suffix for a in remote}
    for artifact in reversed(candidates):
        if artifact.suffix in remote_suffixes:
            return artifact
    return None


def resolve_recursive_base(
    local_by_subject: Mapping[str, Sequence[Artifact]],
    remote_by_subject: Mapping[str, Sequence[Artifact]] | None,
    targets: Mapping[str, Artifact],
) -> tuple[str | None, list[str]]:
    """Resolve each subject of a recursive send on its own.

    Returns (suffix, divergent). ``suffix`` is the base suffix shared by
    every subject, or None when any subject has no base or subjects
    disagree; ``divergent`` lists the subjects that did not agree with the
    top-level one (first key of ``targets``).
    """
    resolved: dict[str, str | None] = {}
    for subject, target in targets.items():
        remote = None
        if remote_by_subject is not None:
            remote = remote_by_subject.get(subject, [])
        base = resolve_base(local_by_subject.get(subject, []), remote, target=target)
        resolved[subject] = base.suffix if base is not None else None

    if not resolved:
        return None, []
    top = next(iter(resolved.values()))
    divergent = [s for s, suffix in resolved.items() if suffix != top]
    if top is None or divergent:
        return None, divergent
    return top, []
