from __future__ import annotations

import contextlib
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from loop_paths import reply_path, request_path, validate_feature

READ_OK = "ok"
READ_ABSENT = "absent"
READ_MALFORMED = "malformed"
READ_IO_FAILURE = "io_failure"
DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_MAX_POLL_INTERVAL = 5.0
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionChoice:
    id: str
    label: str


@dataclass(frozen=True)
class ActionRequest:
    id: str
    prompt: str
    choices: tuple[ActionChoice, ...]
    default: str

    def choice_ids(self) -> list[str]:
        return [choice.id for choice in self.choices]

    def has_choice(self, choice_id: str) -> bool:
        return choice_id in self.choice_ids()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "choices": [{"id": choice.id, "label": choice.label} for choice in self.choices],
            "default": self.default,
        }


@dataclass(frozen=True)
class ActionReply:
    id: str
    choice: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "choice": self.choice}


@dataclass(frozen=True)
class InboxRead:
    """Outcome of a single read of an inbox file.

    `value` is only set when `kind` is READ_OK; `detail` carries the reason for
    malformed or failed reads so callers can tell them apart from absence.
    """

    kind: str
    value: Any = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.kind == READ_OK


def atomic_write_file(path: Path, content: str) -> None:
    # Readers never see a partial file: write next to the target, then rename over it.
    tmp_path = path.with_name(f"{path.name}.tmp")
    try:
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise


def _read_json(path: Path) -> InboxRead:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return InboxRead(READ_ABSENT)
    except (OSError, UnicodeDecodeError) as exc:
        return InboxRead(READ_IO_FAILURE, detail=f"failed to read {path}: {exc}")
    try:
        return InboxRead(READ_OK, json.loads(raw))
    except (json.JSONDecodeError, RecursionError) as exc:
        return InboxRead(READ_MALFORMED, detail=f"invalid JSON in {path}: {exc}")


def parse_action_request(payload: Any) -> ActionRequest | None:
    if not isinstance(payload, dict):
        return None
    request_id = payload.get("id")
    prompt = payload.get("prompt")
    raw_choices = payload.get("choices")
    default = payload.get("default")
    if not (
        isinstance(request_id, str)
        and isinstance(prompt, str)
        and isinstance(default, str)
        and isinstance(raw_choices, list)
        and raw_choices
    ):
        return None

    choices: list[ActionChoice] = []
    for entry in raw_choices:
        if not isinstance(entry, dict):
            return None
        choice_id = entry.get("id")
        label = entry.get("label")
        if not isinstance(choice_id, str) or not isinstance(label, str):
            return None
        choices.append(ActionChoice(choice_id, label))

    request = ActionRequest(request_id, prompt, tuple(choices), default)
    if not request.has_choice(default):
        return None
    return request


def parse_action_reply(payload: Any) -> ActionReply | None:
    if not isinstance(payload, dict):
        return None
    reply_id = payload.get("id")
    choice = payload.get("choice")
    if not isinstance(reply_id, str) or not isinstance(choice, str):
        return None
    return ActionReply(reply_id, choice)


def _inspect(path: Path, parse: Callable[[Any], Any], what: str) -> InboxRead:
    result = _read_json(path)
    if result.kind == READ_ABSENT:
        return result
    if result.kind != READ_OK:
        logger.warning("Ignoring %s: %s", what, result.detail)
        return result
    parsed = parse(result.value)
    if parsed is None:
        detail = f"{path} is missing required fields or has invalid values"
        logger.warning("Ignoring %s: %s", what, detail)
        return InboxRead(READ_MALFORMED, detail=detail)
    return InboxRead(READ_OK, parsed)


def inspect_request(feature: str) -> InboxRead:
    validate_feature(feature)
    return _inspect(request_path(feature), parse_action_request, "action request")


def read_request(feature: str) -> ActionRequest | None:
    """Return the pending action request, or None when there is nothing usable on disk."""
    return inspect_request(feature).value


def inspect_reply(feature: str) -> InboxRead:
    validate_feature(feature)
    return _inspect(reply_path(feature), parse_action_reply, "action reply")


def read_reply(feature: str) -> ActionReply | None:
    return inspect_reply(feature).value


def write_request(feature: str, request: ActionRequest) -> Path:
    validate_feature(feature)
    if not request.choices:
        raise ValueError("action request needs at least one choice")
    if not request.has_choice(request.default):
        raise ValueError(
            f"default {request.default!r} is not one of the choices {request.choice_ids()}"
        )
    path = request_path(feature)
    # A pending request is replaced, not queued.
    atomic_write_file(path, json.dumps(request.to_dict()))
    logger.debug("Wrote action request %s to %s", request.id, path)
    return path


def write_reply(feature: str, reply: ActionReply) -> Path:
    validate_feature(feature)
    if not isinstance(reply.id, str) or not isinstance(reply.choice, str):
        raise TypeError("action reply id and choice must be strings")
    path = reply_path(feature)
    atomic_write_file(path, json.dumps(reply.to_dict()))
    logger.debug("Wrote action reply %s (choice=%s) to %s", reply.id, reply.choice, path)
    return path


def cleanup(feature: str) -> None:
    validate_feature(feature)
    reply = reply_path(feature)
    for path in (request_path(feature), reply, reply.with_name(f"{reply.name}.tmp")):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Failed to remove %s: %s", path, exc)


def wait_for_reply(
    feature: str,
    request_id: str,
    *,
    timeout_seconds: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    max_poll_interval: float = DEFAULT_MAX_POLL_INTERVAL,
    should_stop: Callable[[], bool] | None = None,
    consume: bool = True,
    sleep_fn: Callable[[float], None] = time.sleep,
    time_fn: Callable[[], float] = time.monotonic,
) -> ActionReply | None:
    """Poll for the reply to `request_id` until it arrives or the wait is abandoned.

    Returns None when the deadline passes, when `should_stop` reports
    cancellation, or when the request file disappears without a reply (the
    control surface abandoned the interaction). Replies for other request ids
    are ignored. With `consume` the request and reply files are removed once
    the matching reply has been read.
    """

    validate_feature(feature)
    deadline = time_fn() + max(0.0, float(timeout_seconds))
    interval = max(0.01, float(poll_interval))
    ceiling = max(interval, float(max_poll_interval))
    warned_ids: set[str] = set()

    while True:
        reply = read_reply(feature)
        if reply is not None:
            if reply.id == request_id:
                logger.info("Received reply for %s: %s", request_id, reply.choice)
                if consume:
                    cleanup(feature)
                return reply
            if reply.id not in warned_ids:
                warned_ids.add(reply.id)
                logger.warning(
                    "Ignoring reply for request %s while waiting for %s.", reply.id, request_id
                )
        elif not request_path(feature).exists():
            logger.info("Action request %s was withdrawn before a reply arrived.", request_id)
            return None

        if should_stop is not None and should_stop():
            logger.info("Stopped waiting for reply to %s.", request_id)
            return None
        remaining = deadline - time_fn()
        if remaining <= 0:
            logger.warning("Timed out waiting for reply to %s after %ss.", request_id, timeout_seconds)
            return None
        sleep_fn(min(interval, remaining))
        interval = min(ceiling, interval * 2)
