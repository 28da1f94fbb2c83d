from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path

# Feature ids are embedded verbatim into file names, so this is the only traversal guard.
FEATURE_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
FILE_PREFIX = "ralph-loop-"
DEFAULT_COORDINATION_DIR = Path("/tmp")
COORDINATION_DIR_ENV = "RALPH_LOOP_TMP_DIR"
SUMMARY_DIR_ENV = "RALPH_SUMMARY_TMP_DIR"

REQUEST_SUFFIX = ".action.json"
REPLY_SUFFIX = ".action.reply.json"
SUMMARY_SUFFIX = ".summary.json"
LOG_SUFFIX = ".log"
PHASES_SUFFIX = ".phases"
BASELINE_SUFFIX = ".baseline"


class InvalidFeatureIdError(ValueError):
    def __init__(self, feature: object) -> None:
        self.feature = feature
        super().__init__(
            f"Invalid feature name: {feature!r}. "
            "Must contain only letters, numbers, hyphens, and underscores."
        )


def validate_feature(feature: str) -> str:
    if not isinstance(feature, str) or not FEATURE_ID_PATTERN.fullmatch(feature):
        raise InvalidFeatureIdError(feature)
    return feature


def _dir_from_env(name: str) -> Path | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    return Path(raw).expanduser().resolve()


def coordination_dir() -> Path:
    """Directory shared by the loop and the control surface for request/reply/log files."""
    return _dir_from_env(COORDINATION_DIR_ENV) or DEFAULT_COORDINATION_DIR


def summary_dir() -> Path:
    override = _dir_from_env(SUMMARY_DIR_ENV) or _dir_from_env(COORDINATION_DIR_ENV)
    if override is not None:
        return override
    return Path(tempfile.gettempdir()).resolve()


def _artifact_path(directory: Path, feature: str, suffix: str) -> Path:
    validate_feature(feature)
    return directory / f"{FILE_PREFIX}{feature}{suffix}"


def request_path(feature: str) -> Path:
    return _artifact_path(coordination_dir(), feature, REQUEST_SUFFIX)


def reply_path(feature: str) -> Path:
    return _artifact_path(coordination_dir(), feature, REPLY_SUFFIX)


def summary_path(feature: str) -> Path:
    return _artifact_path(summary_dir(), feature, SUMMARY_SUFFIX)


def log_path(feature: str) -> Path:
    return _artifact_path(coordination_dir(), feature, LOG_SUFFIX)


def phases_path(feature: str) -> Path:
    return _artifact_path(coordination_dir(), feature, PHASES_SUFFIX)


def baseline_path(feature: str) -> Path:
    return _artifact_path(coordination_dir(), feature, BASELINE_SUFFIX)
