"""
Command-line interface for the Azure DevOps to GitHub migration tool.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from . import __version__
from .ado_utils import AzureDevOpsSource
from .checkpoint import save_report
from .config import DEFAULT_CONFIG_PATH, Config, default_config, load_config, save_config
from .engine import MigrationEngine
from .exceptions import MigrationCancelledError, MigrationError
from .github_utils import GitHubTarget
from .mapper import FieldMapper
from .utils import setup_logging

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .models import MigrationReport

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="ado-to-github-migrator",
        description="Migrate Azure DevOps work items to GitHub issues",
    )
    _ = parser.add_argument(
        "--config", "-c", default=DEFAULT_CONFIG_PATH, help=f"Config file path (default: {DEFAULT_CONFIG_PATH})"
    )
    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate_parser = subparsers.add_parser("migrate", help="Start the migration process")
    _ = migrate_parser.add_argument("--dry-run", action="store_true", help="Preview migration without creating issues")
    _ = migrate_parser.add_argument("--resume", action="store_true", help="Resume from the last checkpoint")
    _ = migrate_parser.add_argument(
        "--batch-size", type=int, default=0, help="Number of work items per batch (0 = use config)"
    )
    _ = migrate_parser.add_argument("--report", help="Output file for the migration report")
    _ = migrate_parser.add_argument("--no-comments", action="store_true", help="Do not migrate work item comments")

    _ = subparsers.add_parser("validate", help="Validate configuration and test connections")

    config_parser = subparsers.add_parser("config", help="Configuration management commands")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    init_parser = config_subparsers.add_parser("init", help="Create a configuration file with default settings")
    _ = init_parser.add_argument("--force", action="store_true", help="Overwrite an existing configuration file")

    _ = subparsers.add_parser("version", help="Show version information")

    return parser.parse_args(argv)


def _apply_overrides(config: Config, args: argparse.Namespace) -> None:
    if args.dry_run:
        config.migration.dry_run = True
    if args.resume:
        config.migration.resume_from_checkpoint = True
    if args.batch_size > 0:
        config.migration.batch_size = args.batch_size
    if args.no_comments:
        config.migration.include_comments = False


def build_engine(config: Config) -> MigrationEngine:
    """Wire the clients, the mapper and the engine from configuration."""
    source = AzureDevOpsSource(config.azure_devops)
    sink = GitHubTarget(config.github)
    mapper = FieldMapper(config.migration.field_mapping, config.migration.user_mapping)
    return MigrationEngine(source, sink, mapper, config.migration)


class _InterruptHandler:
    """Turns SIGINT/SIGTERM into a cancellation event for the duration of a run."""

    def __init__(self) -> None:
        self.event: threading.Event = threading.Event()
        self._previous: dict[int, Any] = {}

    def _handle(self, signum: int, _frame: object) -> None:
        logger.warning(f"Received signal {signum}, finishing the current batch before stopping...")
        self.event.set()

    def __enter__(self) -> threading.Event:
        self._previous = {sig: signal.signal(sig, self._handle) for sig in (signal.SIGINT, signal.SIGTERM)}
        return self.event

    def __exit__(self, *_exc: object) -> None:
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)


def _print_migration_summary(report: MigrationReport) -> None:
    """Print the outcome of a run."""
    for line in _summary_lines(report):
        print(line)


def _summary_lines(report: MigrationReport) -> Iterator[str]:
    yield ""
    yield "=== Migration Summary ==="
    if report.dry_run:
        yield "Mode: DRY RUN (no issues created)"
    yield (
        f"Total={report.total_items} Successful={report.successful_count} "
        f"Failed={report.failed_count} Skipped={report.skipped_count}"
    )
    if report.duration is not None:
        yield f"Duration: {report.duration}"
    if report.cancelled:
        yield "Run was cancelled; resume with --resume to continue."
    if report.errors:
        yield "Errors:"
        yield from (f"  - {error}" for error in report.errors)


def run_migration(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    _apply_overrides(config, args)

    logger.info("Starting Azure DevOps to GitHub migration...")
    logger.info(f"Azure DevOps: {config.azure_devops.organization_url}/{config.azure_devops.project}")
    logger.info(f"GitHub: {config.github.repo_path}")

    engine = build_engine(config)
    with _InterruptHandler() as cancel_event:
        report = engine.run(cancel_event)

    try:
        save_report(report, args.report)
    except OSError as e:
        logger.warning(f"Failed to save migration report: {e}")

    _print_migration_summary(report)
    return EXIT_OK


def validate(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    logger.info("Configuration file is valid")

    AzureDevOpsSource(config.azure_devops).test_connection()
    GitHubTarget(config.github).test_connection()

    logger.info("All connections successful; configuration is ready for migration")
    return EXIT_OK


def init_config(args: argparse.Namespace) -> int:
    path = Path(args.config)
    if path.exists() and not args.force:
        logger.error(f"Configuration file already exists: {path} (use --force to overwrite)")
        return EXIT_FAILURE

    try:
        save_config(default_config(), path)
    except OSError as e:
        logger.error(f"Failed to write configuration file {path}: {e}")  # noqa: TRY400
        return EXIT_FAILURE

    logger.info(f"Configuration file created: {path}")
    logger.info("Please edit the configuration file with your Azure DevOps and GitHub settings")
    return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    if args.command == "version":
        print(f"ado-to-github-migrator version {__version__}")
        sys.exit(EXIT_OK)

    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        if args.command == "migrate":
            exit_code = run_migration(args)
        elif args.command == "validate":
            exit_code = validate(args)
        else:
            exit_code = init_config(args)
    except MigrationCancelledError:
        logger.warning("Migration cancelled")
        sys.exit(EXIT_CANCELLED)
    except MigrationError:
        logger.exception("Migration failed")
        sys.exit(EXIT_FAILURE)

    sys.exit(exit_code)
