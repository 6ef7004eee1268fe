"""
Command-line interface.

    selfupdate [--config PATH] [--log-level LEVEL] [--debug] [--json] COMMAND

Commands:
    check      Report pending work per participant (read-only)
    update     Run the update pipeline
    rollback   Roll every participant back to its latest backup
    backups    List the restorable backups of every participant
    history    Show recorded update and rollback runs

Exit codes: 0 success, 1 failed, 2 failed with a degraded rollback,
3 busy or configuration error.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import pydantic
import yaml

from selfupdate.config import AppConfig, load_config
from selfupdate.errors import OrchestratorBusyError, StateError, UpdateError
from selfupdate.logging import get_logger, setup_logging
from selfupdate.monitor import SystemResourceMonitor
from selfupdate.process import ProcessRunner
from selfupdate.regression import CommandTestRunner
from selfupdate.store import SqliteStore
from selfupdate.updates.history import UpdateHistory
from selfupdate.updates.models import CheckSummary, PipelineResult, RollbackResult, UpdateOptions
from selfupdate.updates.registry import build_participants
from selfupdate.updates.snapshot_participant import SnapshotParticipant
from selfupdate.updates.state_machine import UpdateOrchestrator

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEGRADED = 2
EXIT_ERROR = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="selfupdate",
        description="Self-update orchestrator",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--json", action="store_true", help="Print the full result as JSON"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    check = commands.add_parser("check", help="Report pending work (read-only)")
    check.add_argument("--branch", type=str, help="Branch to check against")

    update = commands.add_parser("update", help="Run the update pipeline")
    update.add_argument("--branch", type=str, help="Branch to update to")
    update.add_argument(
        "--force", action="store_true", help="Update even without pending work"
    )
    update.add_argument("--skip-backup", action="store_true", help="Skip the backup phase")
    update.add_argument(
        "--skip-container-redeploy",
        action="store_true",
        help="Do not redeploy the container",
    )
    update.add_argument(
        "--skip",
        action="append",
        default=[],
        metavar="NAME",
        help="Skip a participant (repeatable)",
    )
    update.add_argument("--run-tests", action="store_true", help="Run regression tests")
    update.add_argument(
        "--no-check", action="store_true", help="Do not check for pending work first"
    )

    rollback = commands.add_parser("rollback", help="Roll back every participant")
    rollback.add_argument(
        "--no-tests", action="store_true", help="Skip post-rollback tests"
    )
    rollback.add_argument(
        "--snapshot",
        type=str,
        metavar="NAME",
        help="Restore this snapshot instead of the latest one",
    )

    commands.add_parser("backups", help="List restorable backups")

    history = commands.add_parser("history", help="Show recorded runs")
    history.add_argument("--limit", type=int, default=10, help="Number of entries")
    history.add_argument(
        "--operation", choices=["update", "rollback"], help="Only show this operation"
    )

    return parser


def _overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}
    if args.debug:
        overrides["logging"] = {"level": "debug"}
    return overrides


def build_history(config: AppConfig) -> UpdateHistory | None:
    if not config.orchestrator.history_path:
        return None
    return UpdateHistory(config.orchestrator.history_path)


def build_orchestrator(config: AppConfig) -> UpdateOrchestrator:
    """
    Wire the orchestrator and its optional collaborators from ``config``.

    Raises:
        ValueError: If the participant order is invalid.
    """
    runner = ProcessRunner(default_timeout=config.process.default_timeout_seconds)
    participants = build_participants(config, runner)

    store = None
    if config.store.enabled:
        store = SqliteStore(config.store.db_path, config.store.backup_dir)

    monitor = None
    if config.monitor.enabled:
        monitor = SystemResourceMonitor.from_config(config.monitor)

    tests = config.tests
    test_runner = CommandTestRunner(
        runner,
        pre_update=tests.pre_update,
        post_update=tests.post_update,
        post_rollback=tests.post_rollback,
        cwd=tests.cwd,
        timeout=tests.timeout_seconds,
    )

    return UpdateOrchestrator(
        participants,
        test_runner=test_runner,
        monitor=monitor,
        store=store,
        history=build_history(config),
    )


def _summarize_check(summary: CheckSummary) -> str:
    if summary.errors:
        return f"check failed for: {', '.join(sorted(summary.errors))}"
    if summary.has_updates:
        return f"updates available: {', '.join(summary.available)}"
    return "no updates available"


def _summarize_update(result: PipelineResult) -> str:
    line = f"{result.state}: {result.message}"
    if result.failed_participant:
        line += f" (failed participant: {result.failed_participant})"
    if result.rollback is not None and result.rollback.failed_participants:
        line += f" (rollback failed: {', '.join(result.rollback.failed_participants)})"
    return line


def _summarize_rollback(result: RollbackResult) -> str:
    if not result.degraded:
        return "rolled back"
    problems = list(result.failed_participants)
    if result.store_integrity is False:
        problems.append("store integrity")
    if result.tests_passed is False:
        problems.append("post-rollback tests")
    return f"rollback degraded: {', '.join(problems)}"


def _update_exit_code(result: PipelineResult) -> int:
    if result.success:
        return EXIT_OK
    if result.rollback is not None and result.rollback.degraded:
        return EXIT_DEGRADED
    return EXIT_FAILED


def _select_snapshot(orchestrator: UpdateOrchestrator, name: str) -> None:
    participant = orchestrator.registry.get(SnapshotParticipant.name)
    if not isinstance(participant, SnapshotParticipant):
        raise StateError(
            "Snapshot participant is not enabled", details={"snapshot": name}
        )
    participant.select_backup(name)


async def _run_command(
    args: argparse.Namespace, config: AppConfig, orchestrator: UpdateOrchestrator
) -> int:
    if args.command == "check":
        summary = await orchestrator.check_for_updates(UpdateOptions(branch=args.branch))
        print(summary.model_dump_json(indent=2) if args.json else _summarize_check(summary))
        return EXIT_FAILED if summary.errors else EXIT_OK

    if args.command == "update":
        options = UpdateOptions(
            branch=args.branch,
            force=args.force,
            skip_backup=args.skip_backup,
            skip_container_redeploy=args.skip_container_redeploy,
            skip_participants=frozenset(args.skip),
            run_tests=args.run_tests,
            check_first=config.orchestrator.check_before_update and not args.no_check,
        )
        result = await orchestrator.update(options)
        print(result.model_dump_json(indent=2) if args.json else _summarize_update(result))
        return _update_exit_code(result)

    if args.command == "backups":
        listing = await orchestrator.list_backups()
        if args.json:
            print(json.dumps(listing, indent=2))
            return EXIT_OK
        for participant, names in listing.items():
            for name in names:
                print(f"{participant} {name}")
        return EXIT_OK

    if args.snapshot:
        _select_snapshot(orchestrator, args.snapshot)
    rollback = await orchestrator.rollback(run_tests=not args.no_tests)
    print(rollback.model_dump_json(indent=2) if args.json else _summarize_rollback(rollback))
    return EXIT_DEGRADED if rollback.degraded else EXIT_OK


def _show_history(args: argparse.Namespace, config: AppConfig) -> int:
    history = build_history(config)
    if history is None:
        print("history is disabled (orchestrator.history_path is not set)")
        return EXIT_ERROR
    entries = history.entries(limit=args.limit, operation=args.operation)
    for entry in entries:
        if args.json:
            print(entry.model_dump_json())
            continue
        outcome = "ok" if entry.success else "failed"
        commits = ""
        if entry.from_commit or entry.to_commit:
            commits = f" {entry.from_commit or '?'}..{entry.to_commit or '?'}"
        print(f"{entry.timestamp} {entry.operation} {outcome}{commits} {entry.message or ''}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Entry point of the ``selfupdate`` command."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(
            Path(args.config) if args.config else None,
            overrides=_overrides_from_args(args),
        )
    except (FileNotFoundError, yaml.YAMLError, pydantic.ValidationError) as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return EXIT_ERROR

    setup_logging(config.logging, stream=sys.stderr)

    if args.command == "history":
        try:
            return _show_history(args, config)
        except UpdateError as e:
            print(f"error: {e.message}", file=sys.stderr)
            return EXIT_ERROR

    try:
        orchestrator = build_orchestrator(config)
    except ValueError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return EXIT_ERROR

    try:
        return asyncio.run(_run_command(args, config, orchestrator))
    except OrchestratorBusyError as e:
        print(f"busy: {e.message}", file=sys.stderr)
        return EXIT_ERROR
    except UpdateError as e:
        logger.error("Command failed", extra={"error": e.to_dict()})
        print(f"error: {e.message}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
