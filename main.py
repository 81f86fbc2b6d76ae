#!/usr/bin/env python3
"""
snapsync: rsync backups with hard-linked snapshots and retention pruning.

Main entry point for the backup application.
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from snapsync.config import AppConfig, PruneConfig, SnapshotOptions, TargetConfig, load_config
from snapsync.controller import Controller, ControllerBuilder, abort
from snapsync.errors import SnapsyncError
from snapsync.methods import RSyncMethod, RSyncSnapshotMethod, create_method
from snapsync.rotation import RetentionDecision, RetentionEngine, load_policy, rotate_snapshot
from snapsync.schedule_checker import ScheduleChecker
from snapsync.scope import Directory, Scope, Server


class SyncResult:
    """Result of backing up all directories to one target."""

    def __init__(
        self,
        target_name: str,
        success: bool,
        directories: int = 0,
        error_message: str = "",
        execution_time: float = 0.0,
        aborted: bool = False,
    ):
        self.target_name = target_name
        self.success = success
        self.directories = directories
        self.error_message = error_message
        self.execution_time = execution_time
        self.aborted = aborted


class SyncJob:
    """Everything the sync hooks need to know about one target's backup."""

    def __init__(
        self,
        master: Server,
        target: Server,
        directories: List[Directory],
        method: RSyncMethod,
    ):
        self.master = master
        self.target = target
        self.directories = directories
        self.method = method
        self.start_time = datetime.now()
        self.completed = 0
        self.result: Optional[SyncResult] = None

    @property
    def elapsed(self) -> float:
        return (datetime.now() - self.start_time).total_seconds()

    def run(self) -> int:
        for directory in self.directories:
            self.method.call(Scope(self.master, self.target, directory))
            self.completed += 1
        return self.completed


def setup_logging(config: AppConfig, cli_mode: bool = False) -> logging.Logger:
    """Set up logging configuration."""
    log_file_path = Path(config.log_file)
    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter("%(asctime)s %(levelname)-8s %(message)s")

    logger = logging.getLogger()
    logger.setLevel(config.log_level)

    file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if cli_mode:
        # In CLI mode, log to both console and file
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def build_sync_controller(logger: logging.Logger) -> Controller:
    """Create the controller whose hooks log and record each target's backup."""
    builder = ControllerBuilder()

    @builder.on("prepare")
    def check_sources(job: SyncJob):
        logger.info(f"Starting backup to '{job.target.name}' ({job.target.host})")
        job.start_time = datetime.now()

        missing = [
            str(directory)
            for directory in job.directories
            if not Path(job.master.full_path(directory)).is_dir()
        ]
        if missing:
            logger.warning(f"Skipping '{job.target.name}', missing source directories: {missing}")
            job.result = SyncResult(job.target.name, False, aborted=True,
                                    error_message=f"Missing source directories: {missing}")
            return abort()

    @builder.on("success")
    def rotate(job: SyncJob):
        if isinstance(job.method, RSyncSnapshotMethod) and job.method.options.rotate_command:
            job.target.run(*job.method.options.rotate_command, on=job.master)

    @builder.on("success")
    def record_success(job: SyncJob):
        job.result = SyncResult(job.target.name, True, directories=job.completed)

    @builder.on("failure")
    def record_failure(job: SyncJob, error: Exception):
        logger.error(f"Backup to '{job.target.name}' failed: {error}")
        job.result = SyncResult(job.target.name, False, directories=job.completed,
                                error_message=str(error))

    @builder.on("finish")
    def log_finish(job: SyncJob):
        if job.result is not None:
            job.result.execution_time = job.elapsed
        logger.info(f"Backup to '{job.target.name}' finished in {job.elapsed:.2f}s")

    return builder.build()


def format_sync_summary(results: List[SyncResult], total_execution_time: float) -> str:
    """Format sync results into a readable summary."""
    summary = []
    summary.append("=== Backup Summary ===\n")

    successful_count = sum(1 for r in results if r.success)
    failed_count = len(results) - successful_count

    summary.append(f"Total targets processed: {len(results)}")
    summary.append(f"Successful: {successful_count}")
    summary.append(f"Failed: {failed_count}")
    summary.append(f"Total execution time: {total_execution_time:.2f} seconds")
    summary.append("")

    summary.append("=== Individual Target Results ===")
    for result in results:
        if result.success:
            status = "SUCCESS"
        elif result.aborted:
            status = "SKIPPED"
        else:
            status = "FAILED"
        summary.append(f"\n[{status}] {result.target_name}")
        summary.append(f"  Execution time: {result.execution_time:.2f} seconds")
        summary.append(f"  Directories transferred: {result.directories}")

        if not result.success:
            summary.append(f"  Error: {result.error_message}")

    return "\n".join(summary)


def select_targets(
    config: AppConfig, run_all: bool, logger: logging.Logger
) -> List[TargetConfig]:
    """Pick the targets to back up now."""
    if run_all:
        logger.info("Processing all targets (schedule and enabled flag ignored)")
        return list(config.targets)

    disabled = [target.name for target in config.targets if not target.enabled]
    if disabled:
        logger.info(f"Skipping {len(disabled)} disabled targets: {disabled}")

    scheduled = ScheduleChecker.get_scheduled_targets(config.targets)
    for target in config.targets:
        if target.enabled and target not in scheduled:
            logger.info(
                f"Target '{target.name}' not scheduled today, next run at "
                f"{ScheduleChecker.next_run_time(target)}"
            )
    return scheduled


def run_sync(config: AppConfig, run_all: bool, logger: logging.Logger) -> int:
    """Back up every configured directory to each selected target."""
    start_time = datetime.now()

    if not config.targets:
        logger.warning("No targets configured")
        return 0
    if not config.directories:
        logger.warning("No directories configured")
        return 0

    targets = select_targets(config, run_all, logger)
    if not targets:
        logger.info("No targets scheduled to run today")
        return 0

    master = Server.from_config(config.master)
    directories = [Directory.from_config(directory) for directory in config.directories]
    method = create_method(config)
    controller = build_sync_controller(logger)

    results = []
    for target_config in targets:
        job = SyncJob(master, Server.from_config(target_config), directories, method)
        controller.try_(job.run, job)
        if job.result is not None:
            results.append(job.result)

    total_execution_time = (datetime.now() - start_time).total_seconds()
    logger.info("\n" + format_sync_summary(results, total_execution_time))

    if any(not result.success for result in results):
        logger.warning("Some backups failed - check logs for details")
        return 2

    logger.info("All backups completed successfully")
    return 0


def print_rotation(decision: RetentionDecision) -> None:
    """Print the keep/erase partition of a dry run."""
    print("*** Dry Run ***")
    print("\tKeeping:")
    for rotation in decision.sorted_keep:
        print(f"\t\t{rotation.path}")
    print("\tErasing:")
    for rotation in decision.sorted_erase:
        print(f"\t\t{rotation.path}")


def run_prune(config: AppConfig, root: str, logger: logging.Logger) -> int:
    """Prune the rotations in `root` according to the retention policy."""
    prune = config.prune
    engine = RetentionEngine(root, prune.format, prune.latest)

    decision, failures = engine.prune(load_policy(prune), dry=prune.dry)

    if prune.dry:
        print_rotation(decision)
        return 0

    if failures:
        logger.warning(f"{len(failures)} backups could not be erased")
        return 2
    return 0


def run_rotate(config: AppConfig, root: str, logger: logging.Logger) -> int:
    """Turn the in-progress snapshot in `root` into the latest rotation."""
    name = rotate_snapshot(
        root,
        snapshot_name=config.snapshot.snapshot_name,
        latest_name=config.snapshot.latest_name,
        format=config.prune.format,
    )
    logger.info(f"Rotated snapshot to {name}")
    return 0


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Back up directories with rsync snapshots and prune old ones",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sync                       # Back up to the targets scheduled today
  python main.py sync --all                 # Back up to every target
  python main.py rotate --root /backups     # Name the in-progress snapshot, update latest
  python main.py prune --root /backups --dry
        """,
    )
    parser.add_argument(
        "--config", default="config.yaml", help="Path to the YAML configuration file"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Transfer directories to the targets")
    sync_parser.add_argument(
        "--all", action="store_true", help="Ignore target schedules and enabled flags"
    )

    rotate_parser = subparsers.add_parser(
        "rotate", help="Rename the in-progress snapshot and point latest at it"
    )
    rotate_parser.add_argument("--root", default=".", help="Directory holding the snapshots")
    rotate_parser.add_argument("--format", help="strftime format of the rotation name")
    rotate_parser.add_argument("--latest", help="Name of the latest backup symlink")
    rotate_parser.add_argument("--snapshot", help="Name of the in-progress snapshot")

    prune_parser = subparsers.add_parser(
        "prune", help="Prune old backups according to the retention policy"
    )
    prune_parser.add_argument("--root", default=".", help="Directory holding the snapshots")
    for period in ("hourly", "daily", "weekly", "monthly", "quarterly", "yearly"):
        prune_parser.add_argument(
            f"--{period}", type=int, help=f"Number of {period} backups to keep"
        )
    prune_parser.add_argument("--format", help="strftime format of the rotation names")
    prune_parser.add_argument("--latest", help="Name of the latest backup symlink")
    prune_parser.add_argument(
        "--keep", choices=["youngest", "oldest"],
        help="Keep the younger or older backups within the same period division",
    )
    prune_parser.add_argument("--policy", help="Retention policy factory as 'module:attribute'")
    prune_parser.add_argument(
        "--dry", action="store_true", default=None,
        help="Print out what would be done rather than doing it",
    )

    return parser.parse_args(argv)


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Apply command line flags on top of the loaded configuration."""
    if args.command == "prune":
        fields = ("hourly", "daily", "weekly", "monthly", "quarterly", "yearly",
                  "format", "latest", "keep", "policy", "dry")
        overrides = {name: getattr(args, name) for name in fields if getattr(args, name) is not None}
        prune = PruneConfig.model_validate({**config.prune.model_dump(), **overrides})
        return config.model_copy(update={"prune": prune})

    if args.command == "rotate":
        names = {"snapshot_name": args.snapshot, "latest_name": args.latest}
        overrides = {name: value for name, value in names.items() if value is not None}
        snapshot = SnapshotOptions.model_validate({**config.snapshot.model_dump(), **overrides})

        prune = config.prune
        if args.format is not None:
            prune = PruneConfig.model_validate({**prune.model_dump(), "format": args.format})
        return config.model_copy(update={"snapshot": snapshot, "prune": prune})

    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point."""
    start_time = datetime.now()
    logger = None

    try:
        args = parse_arguments(argv)

        # Only sync needs a configuration file; rotate and prune run on defaults.
        if args.command == "sync" or Path(args.config).exists():
            config = load_config(args.config)
        else:
            config = AppConfig()
        config = apply_overrides(config, args)

        logger = setup_logging(config, cli_mode=sys.stdout.isatty() or args.command != "sync")
        logger.info(f"Starting snapsync {args.command}")

        if args.command == "sync":
            return run_sync(config, args.all, logger)
        elif args.command == "rotate":
            return run_rotate(config, args.root, logger)
        else:
            return run_prune(config, args.root, logger)

    except FileNotFoundError as e:
        error_msg = f"Configuration file error: {e}"
        print(f"ERROR: {error_msg}", file=sys.stderr)
        if logger:
            logger.critical(error_msg)
        return 1

    except ValueError as e:
        error_msg = f"Configuration validation error: {e}"
        print(f"ERROR: {error_msg}", file=sys.stderr)
        if logger:
            logger.critical(error_msg)
        return 1

    except SnapsyncError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        if logger:
            logger.error(str(e))
        return 1

    except KeyboardInterrupt:
        error_msg = "Backup process interrupted by user"
        print(f"\nINTERRUPTED: {error_msg}", file=sys.stderr)
        if logger:
            logger.warning(error_msg)
        return 130

    except Exception as e:
        error_msg = f"Unexpected error: {e}"
        print(f"ERROR: {error_msg}", file=sys.stderr)
        if logger:
            logger.critical(error_msg, exc_info=True)
        return 1

    finally:
        if logger:
            total_time = (datetime.now() - start_time).total_seconds()
            logger.info(f"snapsync completed in {total_time:.2f} seconds")


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
