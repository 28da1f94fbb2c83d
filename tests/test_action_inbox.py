from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

import action_inbox
import loop_paths
from action_inbox import (
    READ_ABSENT,
    READ_MALFORMED,
    READ_OK,
    ActionChoice,
    ActionReply,
    ActionRequest,
    cleanup,
    inspect_request,
    read_reply,
    read_request,
    wait_for_reply,
    write_reply,
    write_request,
)
from loop_paths import InvalidFeatureIdError, reply_path, request_path

FEATURE = "demo-feature"
VALID_REQUEST = {
    "id": "r1",
    "prompt": "Continue?",
    "choices": [{"id": "y", "label": "Yes"}, {"id": "n", "label": "No"}],
    "default": "y",
}


@pytest.fixture(autouse=True)
def loop_dir(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv(loop_paths.COORDINATION_DIR_ENV, str(tmp_path))
    return tmp_path.resolve()


def _write_raw_request(payload: object) -> None:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    request_path(FEATURE).write_text(text, encoding="utf-8")


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_read_request_returns_none_when_missing(caplog) -> None:
    with caplog.at_level(logging.WARNING):
        assert read_request(FEATURE) is None
    assert caplog.text == ""


def test_read_request_parses_valid_request() -> None:
    _write_raw_request(VALID_REQUEST)

    request = read_request(FEATURE)

    assert request == ActionRequest(
        id="r1",
        prompt="Continue?",
        choices=(ActionChoice("y", "Yes"), ActionChoice("n", "No")),
        default="y",
    )


def test_read_request_returns_none_on_invalid_json(caplog) -> None:
    _write_raw_request("{not json")

    with caplog.at_level(logging.WARNING):
        assert read_request(FEATURE) is None
    assert "invalid JSON" in caplog.text


@pytest.mark.parametrize("missing", ["id", "prompt", "choices", "default"])
def test_read_request_returns_none_when_field_missing(missing: str, caplog) -> None:
    payload = {key: value for key, value in VALID_REQUEST.items() if key != missing}
    _write_raw_request(payload)

    with caplog.at_level(logging.WARNING):
        assert read_request(FEATURE) is None
    assert "missing required fields" in caplog.text


@pytest.mark.parametrize(
    "override",
    [
        {"choices": []},
        {"choices": [{"id": "y"}]},
        {"choices": [{"id": "y", "label": 3}]},
        {"choices": ["y"]},
        {"id": 7},
        {"prompt": None},
        {"default": "maybe"},
    ],
)
def test_read_request_rejects_structural_defects(override: dict) -> None:
    _write_raw_request({**VALID_REQUEST, **override})

    assert read_request(FEATURE) is None


def test_read_request_rejects_non_object_json() -> None:
    _write_raw_request([VALID_REQUEST])

    assert read_request(FEATURE) is None


def test_read_request_treats_deeply_nested_json_as_malformed(caplog) -> None:
    _write_raw_request("[" * 200_000)

    with caplog.at_level(logging.WARNING):
        assert read_request(FEATURE) is None
    assert "invalid JSON" in caplog.text
    assert inspect_request(FEATURE).kind == READ_MALFORMED


def test_inspect_request_distinguishes_absent_and_malformed() -> None:
    assert inspect_request(FEATURE).kind == READ_ABSENT

    _write_raw_request("garbage")
    malformed = inspect_request(FEATURE)
    assert malformed.kind == READ_MALFORMED
    assert malformed.value is None
    assert malformed.detail

    _write_raw_request(VALID_REQUEST)
    found = inspect_request(FEATURE)
    assert found.kind == READ_OK
    assert found.ok
    assert found.value.id == "r1"


def test_later_request_replaces_pending_one() -> None:
    first = ActionRequest("r1", "First?", (ActionChoice("y", "Yes"),), "y")
    second = ActionRequest("r2", "Second?", (ActionChoice("n", "No"),), "n")

    write_request(FEATURE, first)
    write_request(FEATURE, second)

    assert read_request(FEATURE) == second


def test_write_request_rejects_default_outside_choices() -> None:
    request = ActionRequest("r1", "Continue?", (ActionChoice("y", "Yes"),), "n")

    with pytest.raises(ValueError, match="default"):
        write_request(FEATURE, request)
    assert not request_path(FEATURE).exists()


def test_write_request_rejects_empty_choices() -> None:
    with pytest.raises(ValueError):
        write_request(FEATURE, ActionRequest("r1", "Continue?", (), "y"))


def test_write_reply_writes_json_and_leaves_no_temp_file(loop_dir: Path) -> None:
    path = write_reply(FEATURE, ActionReply("r1", "n"))

    assert path == reply_path(FEATURE)
    assert json.loads(path.read_text(encoding="utf-8")) == {"id": "r1", "choice": "n"}
    assert not path.with_name(f"{path.name}.tmp").exists()
    assert [p.name for p in loop_dir.iterdir()] == [path.name]


def test_write_reply_goes_through_temp_file_then_rename(monkeypatch) -> None:
    replaced: list[tuple[str, str]] = []
    real_replace = action_inbox.os.replace

    def spy_replace(src, dst):  # type: ignore[no-untyped-def]
        replaced.append((Path(src).name, Path(dst).name))
        assert json.loads(Path(src).read_text(encoding="utf-8"))["choice"] == "y"
        real_replace(src, dst)

    monkeypatch.setattr(action_inbox.os, "replace", spy_replace)

    write_reply(FEATURE, ActionReply("r9", "y"))

    target = reply_path(FEATURE).name
    assert replaced == [(f"{target}.tmp", target)]


def test_write_reply_propagates_write_errors(monkeypatch) -> None:
    def failing_replace(src, dst):  # type: ignore[no-untyped-def]
        raise PermissionError("denied")

    monkeypatch.setattr(action_inbox.os, "replace", failing_replace)

    with pytest.raises(PermissionError):
        write_reply(FEATURE, ActionReply("r1", "y"))
    target = reply_path(FEATURE)
    assert not target.exists()
    assert not target.with_name(f"{target.name}.tmp").exists()


def test_write_reply_does_not_check_choice_membership() -> None:
    _write_raw_request(VALID_REQUEST)

    write_reply(FEATURE, ActionReply("other-id", "not-a-choice"))

    assert read_reply(FEATURE) == ActionReply("other-id", "not-a-choice")


def test_reply_round_trip_preserves_values() -> None:
    write_reply(FEATURE, ActionReply("r-ü", "choice \"quoted\""))

    raw = json.loads(reply_path(FEATURE).read_text(encoding="utf-8"))

    assert raw["id"] == "r-ü"
    assert raw["choice"] == 'choice "quoted"'


def test_read_reply_tolerates_garbage() -> None:
    reply_path(FEATURE).write_text('{"id": 1}', encoding="utf-8")

    assert read_reply(FEATURE) is None


def test_cleanup_removes_both_files() -> None:
    _write_raw_request(VALID_REQUEST)
    write_reply(FEATURE, ActionReply("r1", "y"))

    cleanup(FEATURE)

    assert not request_path(FEATURE).exists()
    assert not reply_path(FEATURE).exists()


def test_cleanup_without_files_is_fine() -> None:
    cleanup(FEATURE)
    cleanup(FEATURE)


@pytest.mark.parametrize(
    "operation",
    [
        lambda feature: read_request(feature),
        lambda feature: inspect_request(feature),
        lambda feature: read_reply(feature),
        lambda feature: write_reply(feature, ActionReply("r1", "y")),
        lambda feature: write_request(feature, ActionRequest("r1", "?", (ActionChoice("y", "Y"),), "y")),
        lambda feature: cleanup(feature),
        lambda feature: wait_for_reply(feature, "r1", timeout_seconds=0),
    ],
)
def test_every_operation_validates_feature_first(operation, loop_dir: Path) -> None:
    with pytest.raises(InvalidFeatureIdError):
        operation("../escape")
    assert list(loop_dir.iterdir()) == []
    assert not (loop_dir.parent / "escape.action.json").exists()


def test_wait_for_reply_returns_matching_reply_and_consumes_files() -> None:
    _write_raw_request(VALID_REQUEST)
    write_reply(FEATURE, ActionReply("r1", "n"))
    clock = _FakeClock()

    reply = wait_for_reply(FEATURE, "r1", timeout_seconds=5, sleep_fn=clock.sleep, time_fn=clock.time)

    assert reply == ActionReply("r1", "n")
    assert clock.sleeps == []
    assert not request_path(FEATURE).exists()
    assert not reply_path(FEATURE).exists()


def test_wait_for_reply_keeps_files_without_consume() -> None:
    _write_raw_request(VALID_REQUEST)
    write_reply(FEATURE, ActionReply("r1", "y"))

    reply = wait_for_reply(FEATURE, "r1", timeout_seconds=1, consume=False)

    assert reply is not None
    assert request_path(FEATURE).exists()
    assert reply_path(FEATURE).exists()


def test_wait_for_reply_times_out_with_backoff(caplog) -> None:
    _write_raw_request(VALID_REQUEST)
    clock = _FakeClock()

    with caplog.at_level(logging.WARNING):
        reply = wait_for_reply(
            FEATURE,
            "r1",
            timeout_seconds=10,
            poll_interval=1,
            max_poll_interval=4,
            sleep_fn=clock.sleep,
            time_fn=clock.time,
        )

    assert reply is None
    assert clock.sleeps == [1, 2, 4, 3]
    assert "Timed out" in caplog.text
    assert request_path(FEATURE).exists()


def test_wait_for_reply_ignores_mismatched_id_until_match() -> None:
    _write_raw_request(VALID_REQUEST)
    write_reply(FEATURE, ActionReply("stale", "y"))
    clock = _FakeClock()

    def sleep(seconds: float) -> None:
        clock.sleep(seconds)
        write_reply(FEATURE, ActionReply("r1", "n"))

    reply = wait_for_reply(FEATURE, "r1", timeout_seconds=30, sleep_fn=sleep, time_fn=clock.time)

    assert reply == ActionReply("r1", "n")
    assert len(clock.sleeps) == 1


def test_wait_for_reply_stops_when_request_is_withdrawn() -> None:
    clock = _FakeClock()

    reply = wait_for_reply(FEATURE, "r1", timeout_seconds=30, sleep_fn=clock.sleep, time_fn=clock.time)

    assert reply is None
    assert clock.sleeps == []


def test_wait_for_reply_honours_should_stop() -> None:
    _write_raw_request(VALID_REQUEST)
    clock = _FakeClock()
    checks = {"count": 0}

    def should_stop() -> bool:
        checks["count"] += 1
        return checks["count"] >= 3

    reply = wait_for_reply(
        FEATURE,
        "r1",
        timeout_seconds=300,
        poll_interval=1,
        should_stop=should_stop,
        sleep_fn=clock.sleep,
        time_fn=clock.time,
    )

    assert reply is None
    assert len(clock.sleeps) == 2


def test_end_to_end_decision_flow() -> None:
    # Loop side publishes the question.
    write_request(
        FEATURE,
        ActionRequest(
            "r1",
            "Continue?",
            (ActionChoice("y", "Yes"), ActionChoice("n", "No")),
            "y",
        ),
    )

    # Control surface sees it and answers.
    pending = read_request(FEATURE)
    assert pending is not None
    assert pending.has_choice("n")
    write_reply(FEATURE, ActionReply(pending.id, "n"))

    # Loop side picks up the answer and proceeds.
    reply = read_reply(FEATURE)
    assert reply is not None
    assert reply.id == "r1"
    assert reply.choice == "n"

    cleanup(FEATURE)
    assert read_request(FEATURE) is None
    assert read_reply(FEATURE) is None
