from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from git_summary import CommitRange, FileDiffStat, current_commit_hash, diff_stats as git_diff_stats
from loop_activity import PhaseInfo, read_phases
from loop_paths import baseline_path, phases_path, summary_path, validate_feature

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_ABANDONED = "abandoned"
BASELINE_PATTERN = re.compile(r"^[0-9a-f]{7,40}$", re.IGNORECASE)
SHORT_HASH_LENGTH = 7
PHASE_LABELS = {
    "planning": "Planning",
    "implementation": "Implementation",
    "e2e_testing": "E2E Testing",
    "verification": "Verification",
    "pr_review": "PR & Review",
}
FINAL_PHASE_STATUSES = ("success", "skipped", "failed")
EPOCH_PREFIX_PATTERN = re.compile(r"\s*(-?\d+)")
logger = logging.getLogger(__name__)

# Optional scalar fields and their JSON keys.
_OPTIONAL_FIELDS = (
    ("head_commit", "headCommit", str),
    ("exit_code", "exitCode", int),
    ("iterations", "iterations", int),
    ("max_iterations", "maxIterations", int),
    ("tasks_done", "tasksDone", int),
    ("tasks_total", "tasksTotal", int),
    ("branch", "branch", str),
    ("log_path", "logPath", str),
    ("error_tail", "errorTail", str),
    ("total_duration_ms", "totalDurationMs", int),
)


def _is_type(value: Any, expected: type) -> bool:
    # JSON true/false decode to bool, which isinstance also accepts as int.
    if expected is int and isinstance(value, bool):
        return False
    return isinstance(value, expected)


@dataclass
class RunSummary:
    feature: str
    status: str
    commit_range: CommitRange | None = None
    diff_stats: list[FileDiffStat] | None = None
    head_commit: str | None = None
    exit_code: int | None = None
    iterations: int | None = None
    max_iterations: int | None = None
    tasks_done: int | None = None
    tasks_total: int | None = None
    branch: str | None = None
    log_path: str | None = None
    error_tail: str | None = None
    total_duration_ms: int | None = None
    phases: list[PhaseInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"feature": self.feature, "status": self.status}
        if self.commit_range is not None:
            data["commitRange"] = self.commit_range.to_dict()
        if self.diff_stats is not None:
            data["diffStats"] = [stat.to_dict() for stat in self.diff_stats]
        for attr, key, _ in _OPTIONAL_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        if self.phases:
            data["phases"] = [phase.to_dict() for phase in self.phases]
        return data

    @classmethod
    def from_dict(cls, payload: Any) -> RunSummary | None:
        if not isinstance(payload, dict):
            return None
        feature = payload.get("feature")
        status = payload.get("status")
        if not isinstance(feature, str) or not isinstance(status, str):
            return None
        summary = cls(feature=feature, status=status)

        raw_range = payload.get("commitRange")
        if isinstance(raw_range, dict):
            from_hash = raw_range.get("from")
            to_hash = raw_range.get("to")
            if isinstance(from_hash, str) and isinstance(to_hash, str):
                summary.commit_range = CommitRange(from_hash, to_hash)

        raw_stats = payload.get("diffStats")
        if isinstance(raw_stats, list):
            summary.diff_stats = [
                FileDiffStat(item["path"], item["added"], item["removed"])
                for item in raw_stats
                if isinstance(item, dict)
                and isinstance(item.get("path"), str)
                and _is_type(item.get("added"), int)
                and _is_type(item.get("removed"), int)
            ]

        for attr, key, expected in _OPTIONAL_FIELDS:
            value = payload.get(key)
            if _is_type(value, expected):
                setattr(summary, attr, value)

        raw_phases = payload.get("phases")
        if isinstance(raw_phases, list):
            summary.phases = [
                phase for phase in (PhaseInfo.from_dict(item) for item in raw_phases) if phase is not None
            ]
        return summary


def write_run_summary(summary: RunSummary) -> Path:
    """Persist the final run summary for the control surface.

    This is a plain write, not temp+rename: a reader racing it can see a
    truncated file, which `read_run_summary` reports as "no summary".
    OS errors propagate; callers are expected to log them and carry on.
    """
    path = summary_path(summary.feature)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), indent=2), encoding="utf-8")
    logger.debug("Summary written to %s", path)
    return path


def read_run_summary(feature: str) -> RunSummary | None:
    path = summary_path(feature)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Failed to read run summary %s: %s", path, exc)
        return None
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, RecursionError) as exc:
        logger.warning("Run summary %s is not valid JSON (possibly still being written): %s", path, exc)
        return None
    summary = RunSummary.from_dict(payload)
    if summary is None:
        logger.warning("Run summary %s is missing feature or status.", path)
    return summary


def delete_run_summary(feature: str) -> None:
    path = summary_path(feature)
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Failed to remove run summary %s: %s", path, exc)


def read_baseline_commit(feature: str) -> str | None:
    path = baseline_path(feature)
    try:
        content = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        logger.debug("Baseline file not found: %s", path)
        return None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Failed to read baseline file %s: %s", path, exc)
        return None
    if not BASELINE_PATTERN.match(content):
        logger.warning("Baseline file %s contains invalid content: %r", path, content[:20])
        return None
    return content[:SHORT_HASH_LENGTH]


def _parse_epoch(raw: str) -> int:
    match = EPOCH_PREFIX_PATTERN.match(raw)
    return int(match.group(1)) if match else 0


def parse_phase_lines(text: str) -> list[PhaseInfo]:
    """Parse `phase_id|status|start|end` lines written by the loop script.

    Start and end are epoch seconds. Repeated phase ids keep the last status
    and add up their durations. Statuses other than success, skipped and
    failed are reported as failed.
    """
    phases: dict[str, PhaseInfo] = {}
    for line in text.strip().splitlines():
        parts = line.split("|")
        if len(parts) < 4:
            logger.warning("Skipping malformed phase line: %s", line)
            continue
        phase_id, status, start_raw, end_raw = parts[:4]
        if status not in FINAL_PHASE_STATUSES:
            logger.warning("Unknown phase status %r for phase %r, treating as failed", status, phase_id)
            status = "failed"
        start = _parse_epoch(start_raw)
        end = _parse_epoch(end_raw)

        phase = phases.get(phase_id)
        if phase is None:
            phase = PhaseInfo(phase_id, PHASE_LABELS.get(phase_id, phase_id), status, duration_ms=0)
            phases[phase_id] = phase
        phase.status = status
        if start > 0 and end > 0:
            phase.duration_ms = (phase.duration_ms or 0) + (end - start) * 1000
    return list(phases.values())


def read_summary_phases(feature: str) -> list[PhaseInfo]:
    """Phases for the summary, from either the pipe-delimited or the JSON phases file."""
    path = phases_path(feature)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.debug("Phases file not found: %s", path)
        return []
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Failed to read phases file %s: %s", path, exc)
        return []
    if content.lstrip().startswith("["):
        return read_phases(feature) or []
    return parse_phase_lines(content)


def build_run_summary(feature: str, project_root: Path, status: str, **fields: Any) -> RunSummary:
    """Assemble the terminal summary from loop files and git metadata.

    Git failures leave the commit range and diff stats unset; they are never
    raised to the caller.
    """
    validate_feature(feature)
    summary = RunSummary(feature=feature, status=status, **fields)

    phases = read_summary_phases(feature)
    if phases:
        summary.phases = phases
        total_ms = sum(phase.duration_ms or 0 for phase in phases)
        if total_ms > 0 and summary.total_duration_ms is None:
            summary.total_duration_ms = total_ms
        implementation = next((phase for phase in phases if phase.id == "implementation"), None)
        if implementation is not None and summary.iterations is not None:
            implementation.iterations = summary.iterations

    head = current_commit_hash(project_root)
    if head is not None:
        summary.head_commit = head
    baseline = read_baseline_commit(feature)
    if head is not None and baseline is not None:
        summary.commit_range = CommitRange(baseline, head)
        summary.diff_stats = git_diff_stats(project_root, baseline, head)
    return summary
