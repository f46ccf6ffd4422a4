#!/usr/bin/env python3

# ruff: noqa: T201

from __future__ import annotations

import argparse
import json
import logging
import sys
from signal import SIGINT, signal
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from converge.app import (
    apply_changes,
    destroy_all,
    force_unlock,
    list_state,
    plan_changes,
    read_outputs,
)
from converge.common import configure_logging, level_for_verbosity
from converge.domain.errors import ConfigurationError, PlanningError, StateStoreError
from converge.domain.reconciliation import ActionStatus, ChangeKind

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import FrameType

    from converge.domain.reconciliation import Plan, ReconciliationEngine, RunReport

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "converge.toml"

_SYMBOLS = {
    ChangeKind.CREATE: "+",
    ChangeKind.UPDATE: "~",
    ChangeKind.REPLACE: "-/+",
    ChangeKind.DESTROY: "-",
    ChangeKind.NOOP: " ",
}

_active_engines: list[ReconciliationEngine] = []


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return parsed


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="converge", description="Reconcile declared resources with reality"
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Declaration file, TOML or JSON (default: %(default)s)",
    )
    parser.add_argument(
        "--state",
        dest="state_uri",
        help="SQLAlchemy URI of the state database (defaults to CONVERGE_STATE_URI)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log output (-v for info, -vv for debug)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan = subparsers.add_parser("plan", help="Show the changes an apply would make")
    plan.add_argument(
        "--strict",
        action="store_true",
        help="Exit with status 2 when the plan contains changes",
    )
    plan.add_argument("--destroy", action="store_true", help="Plan a full teardown")
    plan.add_argument(
        "--no-refresh", action="store_true", help="Do not read resources back before planning"
    )

    apply = subparsers.add_parser("apply", help="Apply the declared configuration")
    apply.add_argument(
        "--parallelism",
        type=_positive_int,
        help="Maximum concurrent provider calls (defaults to CONVERGE_PARALLELISM or 10)",
    )
    apply.add_argument(
        "--no-refresh", action="store_true", help="Do not read resources back before planning"
    )

    destroy = subparsers.add_parser("destroy", help="Destroy every resource in state")
    destroy.add_argument("--parallelism", type=_positive_int, help="Maximum concurrent calls")

    output = subparsers.add_parser("output", help="Print resource outputs from state as JSON")
    output.add_argument("address", nargs="?", help='Resource address, e.g. bucket.site["a"]')

    state = subparsers.add_parser("state", help="State maintenance commands")
    state_sub = state.add_subparsers(dest="state_command", required=True)
    state_sub.add_parser("list", help="List resource addresses recorded in state")

    unlock = subparsers.add_parser("force-unlock", help="Release a stale state lock")
    unlock.add_argument("token", help="Lock token reported by the failed run")

    return parser.parse_args(list(argv))


def format_plan(plan: Plan) -> list[str]:
    """Render a plan for humans, one change per line."""

    counts = plan.summary()
    lines = [
        f"Plan: {counts[ChangeKind.CREATE]} to create, {counts[ChangeKind.UPDATE]} to update, "
        f"{counts[ChangeKind.REPLACE]} to replace, {counts[ChangeKind.DESTROY]} to destroy."
    ]
    for change in plan.changes:
        if change.kind is ChangeKind.NOOP:
            continue
        line = f"  {_SYMBOLS[change.kind]:>3} {change.kind:<8} {change.state_id}"
        if change.replace_attributes:
            line += f" (forces replacement: {', '.join(change.replace_attributes)})"
        elif change.changed_attributes:
            line += f" ({', '.join(change.changed_attributes)})"
        elif change.reason:
            line += f" ({change.reason})"
        lines.append(line)
    if plan.actions:
        lines.append("Actions:")
        lines.extend(
            f"  {index}. {action.key}"
            + (f" after {', '.join(action.depends_on)}" if action.depends_on else "")
            for index, action in enumerate(plan.actions, start=1)
        )
    return lines


def _print_plan(report: RunReport) -> None:
    if report.refresh is not None and report.refresh.drifted:
        for state_id in report.refresh.missing:
            print(f"Drift: {state_id} no longer exists")
        for state_id in report.refresh.changed:
            print(f"Drift: {state_id} changed outside converge")
    if not report.plan.has_changes:
        print("No changes. Infrastructure matches the configuration.")
        return
    for line in format_plan(report.plan):
        print(line)


def _print_result(report: RunReport) -> None:
    _print_plan(report)
    result = report.result
    if result is None:
        return
    counts = result.summary()
    print(
        f"Apply complete: {counts[ActionStatus.SUCCEEDED]} succeeded, "
        f"{counts[ActionStatus.FAILED]} failed, {counts[ActionStatus.SKIPPED]} skipped, "
        f"{counts[ActionStatus.CANCELLED]} cancelled."
    )
    for outcome in result.outcomes.values():
        if outcome.status is ActionStatus.FAILED:
            print(f"  failed  {outcome.action.key}: {outcome.error}", file=sys.stderr)
        elif outcome.status is ActionStatus.SKIPPED:
            print(f"  skipped {outcome.action.key}: {outcome.reason}", file=sys.stderr)


def _track_engine(engine: ReconciliationEngine) -> None:
    _active_engines.append(engine)


def main(argv: Sequence[str] | None = None) -> None:
    """Main application entry point."""
    args_list = list(argv) if argv is not None else list(sys.argv[1:])
    parsed_args = _parse_args(args_list)
    configure_logging(level=level_for_verbosity(parsed_args.verbose), force=True)

    try:
        exit_code = _dispatch(parsed_args)
    except (ConfigurationError, PlanningError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    except StateStoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception:
        log.exception("Fatal error during %s", parsed_args.command)
        sys.exit(1)
    finally:
        _active_engines.clear()

    if exit_code:
        sys.exit(exit_code)


def _dispatch(args: argparse.Namespace) -> int:
    if args.command == "plan":
        report = plan_changes(
            args.config,
            state_uri=args.state_uri,
            destroy=args.destroy,
            refresh=not args.no_refresh,
            engine_hook=_track_engine,
        )
        _print_plan(report)
        return 2 if args.strict and report.plan.has_changes else 0

    if args.command in ("apply", "destroy"):
        if args.command == "apply":
            report = apply_changes(
                args.config,
                state_uri=args.state_uri,
                parallelism=args.parallelism,
                refresh=not args.no_refresh,
                engine_hook=_track_engine,
            )
        else:
            report = destroy_all(
                args.config,
                state_uri=args.state_uri,
                parallelism=args.parallelism,
                engine_hook=_track_engine,
            )
        _print_result(report)
        return 0 if report.succeeded else 1

    if args.command == "output":
        print(json.dumps(read_outputs(args.address, state_uri=args.state_uri), indent=2))
        return 0

    if args.command == "state" and args.state_command == "list":
        for record in list_state(state_uri=args.state_uri):
            print(record.state_id)
        return 0

    if args.command == "force-unlock":
        force_unlock(args.token, state_uri=args.state_uri)
        print(f"Lock {args.token} released.")
        return 0

    raise ValueError(f"Unsupported command: {args.command}")


def sigint_handler(_signal_received: int, _frame: FrameType | None) -> None:
    """Cancel running reconciliations on Ctrl+C; exit right away when idle."""
    if _active_engines and not all(engine.executor.cancelled for engine in _active_engines):
        log.warning("Interrupted: finishing in-flight actions, no new actions will start")
        for engine in _active_engines:
            engine.cancel()
        return
    log.info("Closed by user (Ctrl+C)")
    sys.exit(130)


def run() -> None:
    """Console script entry point."""
    load_dotenv()
    signal(SIGINT, sigint_handler)
    main()


if __name__ == "__main__":
    run()
