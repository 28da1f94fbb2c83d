from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

GIT_TIMEOUT_SECONDS = 10
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileDiffStat:
    path: str
    added: int
    removed: int

    def to_dict(self) -> dict[str, str | int]:
        return {"path": self.path, "added": self.added, "removed": self.removed}


@dataclass(frozen=True)
class CommitRange:
    from_hash: str
    to_hash: str

    def to_dict(self) -> dict[str, str]:
        return {"from": self.from_hash, "to": self.to_hash}


def run_git(args: list[str], cwd: Path, timeout: int = GIT_TIMEOUT_SECONDS) -> tuple[int, str, str]:
    """Run a read-only git command; failures come back as a non-zero exit code."""
    if shutil.which("git") is None:
        return 127, "", "git not found in PATH"
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
        return result.returncode, (result.stdout or ""), (result.stderr or "")
    except Exception as exc:
        return 1, "", str(exc)


def _is_safe_revision(revision: str) -> bool:
    # Option-like revisions would be parsed by git as flags.
    return bool(revision) and not revision.startswith("-") and not any(ch.isspace() for ch in revision)


def short_hash(project_root: Path, revision: str = "HEAD") -> str | None:
    if not _is_safe_revision(revision):
        logger.debug("Refusing to resolve suspicious revision %r", revision)
        return None
    rc, out, err = run_git(["rev-parse", "--short", "--verify", f"{revision}^{{commit}}"], project_root)
    if rc != 0:
        logger.debug("git rev-parse %s failed in %s: %s", revision, project_root, (err or out).strip())
        return None
    return out.strip() or None


def current_commit_hash(project_root: Path) -> str | None:
    return short_hash(project_root, "HEAD")


def resolve_commit_range(project_root: Path, from_rev: str, to_rev: str = "HEAD") -> CommitRange | None:
    from_hash = short_hash(project_root, from_rev)
    if from_hash is None:
        return None
    to_hash = short_hash(project_root, to_rev)
    if to_hash is None:
        return None
    return CommitRange(from_hash, to_hash)


def _parse_count(raw: str) -> int:
    # Binary files report "-" for both columns.
    if raw == "-":
        return 0
    try:
        return max(0, int(raw))
    except ValueError:
        return 0


def parse_numstat(output: str) -> list[FileDiffStat]:
    stats: list[FileDiffStat] = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) != 3:
            if line.strip():
                logger.debug("Skipping malformed numstat line: %r", line)
            continue
        added_raw, removed_raw, path = parts
        stats.append(FileDiffStat(path, _parse_count(added_raw.strip()), _parse_count(removed_raw.strip())))
    return stats


def diff_stats(project_root: Path, from_rev: str, to_rev: str = "HEAD") -> list[FileDiffStat] | None:
    if not (_is_safe_revision(from_rev) and _is_safe_revision(to_rev)):
        logger.debug("Refusing to diff suspicious revisions %r..%r", from_rev, to_rev)
        return None
    rc, out, err = run_git(["diff", "--numstat", f"{from_rev}..{to_rev}"], project_root)
    if rc != 0:
        logger.debug(
            "git diff --numstat %s..%s failed in %s: %s",
            from_rev,
            to_rev,
            project_root,
            (err or out).strip(),
        )
        return None
    return parse_numstat(out)
