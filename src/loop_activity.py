from __future__ import annotations

import json
import logging
import re
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from loop_paths import phases_path, validate_feature

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_IN_PROGRESS = "in-progress"
DEFAULT_MAX_EVENTS = 10
MAX_MESSAGE_LENGTH = 90
ELLIPSIS = "…"

SUCCESS_KEYWORDS = re.compile(r"completed|passed|success|approved", re.IGNORECASE)
ERROR_KEYWORDS = re.compile(r"error|failed|failure", re.IGNORECASE)
ISO_PREFIX_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})")
BRACKET_PREFIX_PATTERN = re.compile(r"^\[(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})[^\]]*\]\s*")

# Loop chrome that carries no progress information.
SKIP_LINE_PATTERNS = (
    re.compile(r"^=+\s*$"),
    re.compile(r"^-+\s*$"),
    re.compile(r"^={5,}\s+\S+.*={5,}$"),
    re.compile(r"^-{5,}\s+\S+.*-{5,}$"),
    re.compile(r"^#{1,4}\s"),
    re.compile(
        r"^\d+\.\s+(Merge back|Push and create|Keep the branch|Discard this work)",
        re.IGNORECASE,
    ),
    re.compile(r"^Which option\??$", re.IGNORECASE),
    re.compile(r"^Implementation complete\.\s+What would you like", re.IGNORECASE),
    re.compile(r"^Ralph Loop:"),
    re.compile(r"^(Spec|Plan|Branch|App dir|Worktree|Resume|Review|Model|Max):"),
    re.compile(r"^Baseline commit:"),
    re.compile(r"^Creating branch:"),
    re.compile(r'^\{"level"'),
    re.compile(r"^Pending implementation tasks: \d+$"),
)

TERMINAL_PHASE_STATUSES = ("success", "failed")
logger = logging.getLogger(__name__)


def _int_or_none(value: Any) -> int | None:
    # bool is an int subclass; JSON true/false are not counts.
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


@dataclass(frozen=True)
class ActivityEvent:
    timestamp: int
    message: str
    status: str

    @property
    def display_message(self) -> str:
        return truncate_message(self.message)


@dataclass
class PhaseInfo:
    id: str
    label: str
    status: str
    duration_ms: int | None = None
    iterations: int | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> PhaseInfo | None:
        if not isinstance(payload, dict):
            return None
        phase_id = payload.get("id")
        label = payload.get("label")
        status = payload.get("status")
        if not (isinstance(phase_id, str) and isinstance(label, str) and isinstance(status, str)):
            return None
        duration = payload.get("durationMs")
        iterations = payload.get("iterations")
        return cls(
            id=phase_id,
            label=label,
            status=status,
            duration_ms=_int_or_none(duration),
            iterations=_int_or_none(iterations),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "label": self.label, "status": self.status}
        if self.duration_ms is not None:
            data["durationMs"] = self.duration_ms
        if self.iterations is not None:
            data["iterations"] = self.iterations
        return data


def now_ms() -> int:
    return int(time.time() * 1000)


def relative_time(timestamp_ms: int, now: int | None = None) -> str:
    current = now_ms() if now is None else now
    seconds = max(0, (current - timestamp_ms) // 1000)
    if seconds < 60:
        return f"{seconds}s ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def truncate_message(message: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    if len(message) <= limit:
        return message
    return message[: max(0, limit - 1)] + ELLIPSIS


def infer_status(message: str) -> str:
    if SUCCESS_KEYWORDS.search(message):
        return STATUS_SUCCESS
    if ERROR_KEYWORDS.search(message):
        return STATUS_ERROR
    return STATUS_IN_PROGRESS


def strip_markdown(message: str) -> str:
    text = re.sub(r"\*\*([^*]+)\*\*", r"\1", message)
    text = re.sub(r"`([^`]+)`", r"\1", text)
    text = re.sub(r"^\s*[-*]\s+", "", text)
    return text.strip()


def should_skip_line(line: str) -> bool:
    return any(pattern.search(line) for pattern in SKIP_LINE_PATTERNS)


def _parse_local_timestamp(raw: str) -> int | None:
    try:
        return int(datetime.fromisoformat(raw).timestamp() * 1000)
    except ValueError:
        return None


def parse_log_line(line: str, fallback_ms: int) -> ActivityEvent | None:
    """Turn one raw log line into an event, or None for blank and noise lines."""
    stripped = line.strip()
    if not stripped:
        return None

    parsed: int | None = None
    bracket = BRACKET_PREFIX_PATTERN.match(stripped)
    if bracket:
        parsed = _parse_local_timestamp(bracket.group(1))
        raw_message = stripped[bracket.end():].strip()
    else:
        # Bare ISO prefixes stay part of the message; only the timestamp is taken from them.
        iso = ISO_PREFIX_PATTERN.match(stripped)
        if iso:
            parsed = _parse_local_timestamp(iso.group(1))
        raw_message = stripped
    timestamp = fallback_ms if parsed is None else parsed

    if not raw_message or should_skip_line(raw_message):
        return None
    message = strip_markdown(raw_message)
    if not message:
        return None
    return ActivityEvent(timestamp, message, infer_status(message))


def parse_log_lines(lines: Iterable[str], fallback_ms: int, since: int | None = None) -> list[ActivityEvent]:
    events: list[ActivityEvent] = []
    for line in lines:
        event = parse_log_line(line, fallback_ms)
        if event is None:
            continue
        if since is not None and event.timestamp < since:
            continue
        events.append(event)
    return events


def parse_loop_log(log_file: Path, since: int | None = None) -> list[ActivityEvent]:
    try:
        content = log_file.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return []
    except OSError as exc:
        logger.warning("Failed to read loop log %s: %s", log_file, exc)
        return []

    try:
        fallback_ms = int(log_file.stat().st_mtime * 1000)
    except OSError as exc:
        logger.debug("Could not stat %s (%s); using current time for undated lines.", log_file, exc)
        fallback_ms = now_ms()
    return parse_log_lines(content.splitlines(), fallback_ms, since)


def read_phases(feature: str) -> list[PhaseInfo] | None:
    """Read the loop's phases file; None means "nothing new to compare against"."""
    path = phases_path(feature)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Failed to read phases file %s: %s", path, exc)
        return None
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, RecursionError) as exc:
        logger.debug("Invalid JSON in phases file %s: %s", path, exc)
        return None
    if not isinstance(payload, list):
        logger.debug("Expected a list in phases file %s, got %s", path, type(payload).__name__)
        return None

    phases: list[PhaseInfo] = []
    for item in payload:
        phase = PhaseInfo.from_dict(item)
        if phase is None:
            logger.debug("Skipping malformed phase entry in %s: %r", path, item)
            continue
        phases.append(phase)
    return phases


def parse_phase_changes(
    current: list[PhaseInfo],
    last_known: list[PhaseInfo] | None,
    now: int | None = None,
) -> list[ActivityEvent]:
    stamp = now_ms() if now is None else now
    previous = {phase.id: phase for phase in (last_known or [])}
    events: list[ActivityEvent] = []
    for phase in current:
        prev = previous.get(phase.id)
        if prev is None:
            events.append(ActivityEvent(stamp, f"{phase.label} phase started", STATUS_IN_PROGRESS))
            continue
        if prev.status == phase.status or phase.status not in TERMINAL_PHASE_STATUSES:
            continue
        if phase.status == "success":
            events.append(ActivityEvent(stamp, f"{phase.label} phase completed", STATUS_SUCCESS))
        else:
            events.append(ActivityEvent(stamp, f"{phase.label} phase failed", STATUS_ERROR))
    return events


class ActivityFeed:
    """Bounded, arrival-ordered window over the events derived from one loop run."""

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS) -> None:
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        self.max_events = max_events
        self._events: deque[ActivityEvent] = deque(maxlen=max_events)
        self._last_phases: list[PhaseInfo] | None = None
        self._log_offset = 0

    def __len__(self) -> int:
        return len(self._events)

    def append(self, event: ActivityEvent) -> None:
        self._events.append(event)

    def extend(self, events: Iterable[ActivityEvent]) -> None:
        self._events.extend(events)

    def recent(self, limit: int | None = None) -> list[ActivityEvent]:
        events = list(self._events)
        if limit is None:
            return events
        if limit <= 0:
            return []
        return events[-limit:]

    def ingest_lines(self, lines: Iterable[str], fallback_ms: int | None = None) -> list[ActivityEvent]:
        events = parse_log_lines(lines, now_ms() if fallback_ms is None else fallback_ms)
        self.extend(events)
        return events

    def ingest_phases(self, phases: list[PhaseInfo], now: int | None = None) -> list[ActivityEvent]:
        events = parse_phase_changes(phases, self._last_phases, now)
        self._last_phases = list(phases)
        self.extend(events)
        return events

    def poll_phases(self, feature: str, now: int | None = None) -> list[ActivityEvent]:
        validate_feature(feature)
        phases = read_phases(feature)
        if phases is None:
            return []
        return self.ingest_phases(phases, now)

    def poll_log(self, log_file: Path) -> list[ActivityEvent]:
        """Consume complete lines appended to `log_file` since the previous poll."""
        try:
            stat = log_file.stat()
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.warning("Failed to stat loop log %s: %s", log_file, exc)
            return []

        if stat.st_size < self._log_offset:
            logger.debug("Loop log %s shrank; reading from the start.", log_file)
            self._log_offset = 0
        if stat.st_size == self._log_offset:
            return []

        try:
            with log_file.open("rb") as handle:
                handle.seek(self._log_offset)
                chunk = handle.read()
        except OSError as exc:
            logger.warning("Failed to read loop log %s: %s", log_file, exc)
            return []

        end = chunk.rfind(b"\n")
        if end < 0:
            # Wait for the writer to finish the line.
            return []
        self._log_offset += end + 1
        text = chunk[: end + 1].decode("utf-8", errors="replace")
        return self.ingest_lines(text.splitlines(), int(stat.st_mtime * 1000))
