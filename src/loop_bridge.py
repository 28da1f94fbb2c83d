#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Callable

from action_inbox import (
    ActionChoice,
    ActionReply,
    ActionRequest,
    DEFAULT_MAX_POLL_INTERVAL,
    DEFAULT_POLL_INTERVAL,
    cleanup,
    read_request,
    wait_for_reply,
    write_reply,
    write_request,
)
from loop_activity import DEFAULT_MAX_EVENTS, ActivityFeed, relative_time
from loop_paths import InvalidFeatureIdError, log_path
from run_summary import (
    STATUS_ABANDONED,
    STATUS_FAILURE,
    STATUS_SUCCESS,
    build_run_summary,
    delete_run_summary,
    read_run_summary,
    write_run_summary,
)

EXIT_OK = 0
EXIT_UNAVAILABLE = 1
EXIT_INVALID = 2
DEFAULT_REPLY_TIMEOUT_SECONDS = 3600.0
STATUS_ICONS = {"success": "✓", "error": "✗", "in-progress": "◐"}
logger = logging.getLogger(__name__)


def parse_choice(raw: str) -> ActionChoice:
    choice_id, sep, label = raw.partition("=")
    choice_id = choice_id.strip()
    if not choice_id:
        raise argparse.ArgumentTypeError(f"invalid choice {raw!r}; expected ID=LABEL")
    return ActionChoice(choice_id, label.strip() if sep else choice_id)


def cmd_request(args: argparse.Namespace) -> int:
    choices = tuple(args.choice)
    request = ActionRequest(
        id=args.id,
        prompt=args.prompt,
        choices=choices,
        default=args.default or choices[0].id,
    )
    path = write_request(args.feature, request)
    logger.info("Action request %s written to %s", request.id, path)
    return EXIT_OK


def cmd_await_reply(args: argparse.Namespace) -> int:
    reply = wait_for_reply(
        args.feature,
        args.id,
        timeout_seconds=args.timeout,
        poll_interval=args.poll_interval,
        max_poll_interval=args.max_poll_interval,
        consume=not args.keep,
    )
    if reply is None:
        return EXIT_UNAVAILABLE
    print(reply.choice)
    return EXIT_OK


def cmd_pending(args: argparse.Namespace) -> int:
    request = read_request(args.feature)
    if request is None:
        logger.info("No pending action for %s.", args.feature)
        return EXIT_UNAVAILABLE
    print(json.dumps(request.to_dict(), indent=2))
    return EXIT_OK


def cmd_reply(args: argparse.Namespace) -> int:
    pending = read_request(args.feature)
    if pending is not None and pending.id == args.id and not pending.has_choice(args.choice):
        logger.error(
            "Choice %r is not offered by request %s (choices: %s).",
            args.choice,
            args.id,
            ", ".join(pending.choice_ids()),
        )
        return EXIT_INVALID
    if pending is not None and pending.id != args.id:
        logger.warning("Replying to %s while the pending request is %s.", args.id, pending.id)
    path = write_reply(args.feature, ActionReply(args.id, args.choice))
    logger.info("Reply %s=%s written to %s", args.id, args.choice, path)
    return EXIT_OK


def cmd_cleanup(args: argparse.Namespace) -> int:
    cleanup(args.feature)
    logger.info("Removed action files for %s.", args.feature)
    return EXIT_OK


def cmd_feed(args: argparse.Namespace) -> int:
    feed = ActivityFeed(max_events=args.max_events)
    feed.poll_phases(args.feature)
    feed.poll_log(Path(args.log_file) if args.log_file else log_path(args.feature))
    events = feed.recent()
    if not events:
        logger.info("No activity yet for %s.", args.feature)
        return EXIT_UNAVAILABLE
    for event in events:
        print(f"{relative_time(event.timestamp):>8} {STATUS_ICONS.get(event.status, '?')} {event.display_message}")
    return EXIT_OK


def cmd_write_summary(args: argparse.Namespace) -> int:
    summary = build_run_summary(
        args.feature,
        Path(args.project_root),
        args.status,
        exit_code=args.exit_code,
        iterations=args.iterations,
        branch=args.branch,
    )
    try:
        path = write_run_summary(summary)
    except OSError as exc:
        logger.error("Failed to write run summary for %s: %s", args.feature, exc)
        return EXIT_UNAVAILABLE
    logger.info("Run summary written to %s", path)
    return EXIT_OK


def cmd_show_summary(args: argparse.Namespace) -> int:
    summary = read_run_summary(args.feature)
    if summary is None:
        logger.info("No run summary available for %s.", args.feature)
        return EXIT_UNAVAILABLE
    print(json.dumps(summary.to_dict(), indent=2))
    if args.delete:
        delete_run_summary(args.feature)
    return EXIT_OK


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="File-based coordination between a feature loop and its control surface."
    )
    level_group = parser.add_mutually_exclusive_group()
    level_group.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    level_group.add_argument(
        "--quiet",
        action="store_true",
        help="Show warnings and errors only.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_command(
        name: str, help_text: str, handler: Callable[[argparse.Namespace], int]
    ) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--feature", required=True, help="Feature identifier of the loop run.")
        sub.set_defaults(handler=handler)
        return sub

    request = add_command("request", "Write an action request (loop side).", cmd_request)
    request.add_argument("--id", required=True, help="Correlation id for this request.")
    request.add_argument("--prompt", required=True, help="Question shown to the operator.")
    request.add_argument(
        "--choice",
        action="append",
        type=parse_choice,
        required=True,
        help="Choice as ID=LABEL; repeat for each option.",
    )
    request.add_argument("--default", help="Default choice id (default: first choice).")

    await_reply = add_command("await-reply", "Wait for the reply to a request (loop side).", cmd_await_reply)
    await_reply.add_argument("--id", required=True, help="Request id to wait for.")
    await_reply.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_REPLY_TIMEOUT_SECONDS,
        help=f"Seconds to wait before giving up (default: {DEFAULT_REPLY_TIMEOUT_SECONDS:g}).",
    )
    await_reply.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help=f"Initial polling interval in seconds (default: {DEFAULT_POLL_INTERVAL}).",
    )
    await_reply.add_argument(
        "--max-poll-interval",
        type=float,
        default=DEFAULT_MAX_POLL_INTERVAL,
        help=f"Upper bound for the backoff interval (default: {DEFAULT_MAX_POLL_INTERVAL}).",
    )
    await_reply.add_argument(
        "--keep",
        action="store_true",
        help="Leave the request and reply files in place after a reply arrives.",
    )

    add_command("pending", "Print the pending action request, if any.", cmd_pending)

    reply = add_command("reply", "Answer a pending action request.", cmd_reply)
    reply.add_argument("--id", required=True, help="Id of the request being answered.")
    reply.add_argument("--choice", required=True, help="Chosen option id.")

    add_command("cleanup", "Remove the action request and reply files.", cmd_cleanup)

    feed = add_command("feed", "Print recent loop activity.", cmd_feed)
    feed.add_argument(
        "--max-events",
        type=int,
        default=DEFAULT_MAX_EVENTS,
        help=f"Number of events to show (default: {DEFAULT_MAX_EVENTS}).",
    )
    feed.add_argument("--log-file", help="Loop log to read (default: the feature's log file).")

    write_summary = add_command("write-summary", "Write the final run summary.", cmd_write_summary)
    write_summary.add_argument(
        "--status",
        required=True,
        help=f"Terminal status, e.g. {STATUS_SUCCESS}, {STATUS_FAILURE} or {STATUS_ABANDONED}.",
    )
    write_summary.add_argument("--project-root", default=".", help="Git working directory (default: .).")
    write_summary.add_argument("--exit-code", type=int, help="Loop exit code.")
    write_summary.add_argument("--iterations", type=int, help="Completed loop iterations.")
    write_summary.add_argument("--branch", help="Branch the loop worked on.")

    show_summary = add_command("show-summary", "Print the run summary, if one was written.", cmd_show_summary)
    show_summary.add_argument(
        "--delete",
        action="store_true",
        help="Delete the summary file after printing it.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    log_level = logging.INFO
    if args.verbose:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.WARNING
    logging.basicConfig(level=log_level, format="[%(levelname)s] %(message)s")

    try:
        return args.handler(args)
    except InvalidFeatureIdError as exc:
        logger.error("%s", exc)
        return EXIT_INVALID
    except ValueError as exc:
        logger.error("Invalid input: %s", exc)
        return EXIT_INVALID
    except OSError as exc:
        logger.error("File operation failed: %s", exc)
        return EXIT_UNAVAILABLE


if __name__ == "__main__":
    raise SystemExit(main())
