"""CLI entry point for running incremental loads.

Usage:
    python -m batchload run orders.yaml
    python -m batchload run orders.yaml --batch-size 500000 --max-iterations 10
    python -m batchload run orders.yaml --dry-run
    python -m batchload check orders.yaml
    python -m batchload explain orders.yaml
    python -m batchload watermark orders.yaml

Exit codes:
    0  source exhausted (or command succeeded)
    3  iteration cap reached; more data may remain, run again
    1  load failed or configuration invalid
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from batchload.lib.config import LoadConfig, LoadSettings, load_config
from batchload.lib.connections import close_all_connections, get_connection
from batchload.lib.controller import LoadResult, StopReason
from batchload.lib.env import load_env_file
from batchload.lib.errors import LoadError
from batchload.lib.observability import setup_logging
from batchload.lib.runner import run_incremental_load
from batchload.lib.validate import ValidationSeverity, format_validation_report, validate_load
from batchload.lib.watermark import format_watermark, resolve_watermark

logger = logging.getLogger("batchload")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CAPPED = 3
EXIT_INTERRUPTED = 130

EXIT_CODES = {
    StopReason.EXHAUSTED: EXIT_OK,
    StopReason.CAPPED: EXIT_CAPPED,
    StopReason.FAILED: EXIT_FAILED,
}


def print_result(result: LoadResult) -> None:
    """Print a load result in a readable format."""
    print()
    print("=" * 60)
    print(f"Load: {result.load_name}")
    print("=" * 60)
    print(f"Stop reason:     {result.stop_reason.value}")
    print(f"Rows loaded:     {result.rows_loaded:,}")
    print(f"Iterations:      {result.iterations}")
    print(f"Start watermark: {format_watermark(result.initial_watermark)}")
    print(f"Final watermark: {format_watermark(result.final_watermark)}")

    elapsed = result.timing.get("total_seconds")
    if elapsed is not None:
        print(f"Elapsed:         {elapsed:.2f}s")

    if result.stop_reason is StopReason.CAPPED:
        print()
        print("Iteration cap reached; more data may remain. Run the load again to continue.")

    if result.error is not None:
        print()
        print(f"Error: {result.error}")

    print("=" * 60)


def print_plan(plan: Dict[str, Any]) -> None:
    """Print a dry-run plan."""
    print()
    print("=" * 60)
    print(f"Load: {plan['load']}")
    print("=" * 60)
    print("DRY RUN - No data was written")
    print(f"  Watermark:          {plan['watermark']}")
    print(f"  Target exists:      {plan['target_exists']}")
    print(f"  Pending rows:       {plan['pending_rows']:,}")
    print(f"  Planned iterations: {plan['planned_iterations']}")
    print(f"  Rows this run:      {plan['rows_this_run']:,}")
    if plan["will_cap"]:
        print("  The iteration cap will be reached; more runs are needed.")
    print("=" * 60)


def explain_load(config: LoadConfig) -> None:
    """Explain what the load would do without touching any backend."""
    print()
    print("=" * 60)
    print("LOAD EXPLANATION")
    print("=" * 60)
    print(f"Name:            {config.name}")
    print(f"Source:          {config.source.display}")
    if config.query:
        print(f"  Query:         {config.query.strip()}")
    else:
        print(f"  Table:         {config.source_table}")
    print(f"Target:          {config.sink.display}")
    print(f"  Table:         {config.target_table}")
    print(f"Ordering column: {config.timestamp_column}")
    print(f"Batch size:      {config.batch_size:,}")
    print(f"Max iterations:  {config.max_iterations}")
    print(f"Rows per run:    up to {config.batch_size * config.max_iterations:,}")
    print(f"Recreate target: {config.recreate_target}")
    print()

    print("EXECUTION FLOW:")
    print("-" * 40)
    if config.recreate_target:
        print(f"  1. Start from floor watermark {format_watermark(config.floor_watermark)}")
    else:
        print(f"  1. Read MAX({config.timestamp_column}) from {config.target_table}")
        print(f"     (floor {format_watermark(config.floor_watermark)} if missing or empty)")
    print(f"  2. Fetch up to {config.batch_size:,} rows with {config.timestamp_column} > watermark")
    if config.recreate_target:
        print(f"  3. First batch recreates {config.target_table}; later batches append")
    else:
        print(f"  3. Append the batch to {config.target_table}")
    print("  4. Re-read the watermark from the target")
    print(f"  5. Repeat until a short batch or {config.max_iterations} iterations")
    print()
    print("=" * 60)


def check_load(config: LoadConfig) -> int:
    """Validate configuration and connectivity; return the exit code."""
    print()
    print("=" * 60)
    print("LOAD VALIDATION")
    print("=" * 60)
    print(f"Load: {config.name}")
    print("-" * 40)

    issues = validate_load(config)
    print(format_validation_report(issues))
    print("=" * 60)

    if any(i.severity == ValidationSeverity.ERROR for i in issues):
        return EXIT_FAILED
    return EXIT_OK


def show_watermark(config: LoadConfig, as_json: bool) -> int:
    """Print the watermark the next run would resume from."""
    sink = get_connection(config.sink)
    value = resolve_watermark(
        sink,
        config.target_table,
        config.timestamp_column,
        floor=config.floor_watermark,
        schema=config.sink.schema_name,
    )
    if as_json:
        print(json.dumps({"load": config.name, "watermark": format_watermark(value)}))
    else:
        print(f"{config.target_table}.{config.timestamp_column}: {format_watermark(value)}")
    return EXIT_OK


def run_load(config: LoadConfig, *, dry_run: bool, as_json: bool) -> int:
    """Run the load and report; return the exit code."""
    outcome = run_incremental_load(config, dry_run=dry_run)

    if isinstance(outcome, dict):
        if as_json:
            print(json.dumps(outcome, default=str))
        else:
            print_plan(outcome)
        return EXIT_OK

    if as_json:
        print(json.dumps(outcome.to_dict(), default=str))
    else:
        print_result(outcome)
    return EXIT_CODES[outcome.stop_reason]


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("config", help="Path to the load YAML file")
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    common.add_argument(
        "--log-file",
        help="Write logs to a file in addition to console",
    )
    common.add_argument(
        "--log-format",
        choices=["console", "json"],
        help="Log output format (default: BATCHLOAD_LOG_FORMAT or console)",
    )
    common.add_argument(
        "--env-file",
        help="Load environment variables from this .env file",
    )

    parser = argparse.ArgumentParser(
        prog="batchload",
        description="Batched, watermark-driven incremental loads",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run a load (resumes from the target's current watermark)
    python -m batchload run orders.yaml

    # Smaller batches for this run only
    python -m batchload run orders.yaml --batch-size 100000

    # Show the plan without writing
    python -m batchload run orders.yaml --dry-run

    # Validate configuration and connectivity
    python -m batchload check orders.yaml

Exit codes: 0 exhausted, 3 capped (run again), 1 failed
        """,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", parents=[common], help="Run the load")
    run.add_argument("--batch-size", type=int, help="Rows per iteration")
    run.add_argument("--max-iterations", type=int, help="Iteration cap for this run")
    run.add_argument(
        "--recreate-target",
        action="store_true",
        default=None,
        help="Drop and recreate the target with the first batch",
    )
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the plan without writing anything",
    )
    run.add_argument("--json", action="store_true", help="Print the result as JSON")

    commands.add_parser("check", parents=[common], help="Validate configuration and connectivity")
    commands.add_parser("explain", parents=[common], help="Show what the load would do")

    watermark = commands.add_parser(
        "watermark", parents=[common], help="Show the current target watermark"
    )
    watermark.add_argument("--json", action="store_true", help="Print as JSON")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)
    as_json = getattr(args, "json", False)

    try:
        load_env_file(args.env_file)
        settings = LoadSettings()
        setup_logging(
            verbose=args.verbose,
            json_format=(args.log_format or settings.log_format) == "json",
            log_file=args.log_file or settings.log_file,
            level=settings.log_level,
            stream=sys.stderr if as_json else None,
        )

        overrides: Dict[str, Any] = {}
        if args.command == "run":
            overrides = {
                "batch_size": args.batch_size,
                "max_iterations": args.max_iterations,
                "recreate_target": args.recreate_target,
            }
        config = load_config(args.config, settings=settings, **overrides)

        if args.command == "explain":
            explain_load(config)
            code = EXIT_OK
        elif args.command == "check":
            code = check_load(config)
        elif args.command == "watermark":
            code = show_watermark(config, as_json)
        else:
            code = run_load(config, dry_run=args.dry_run, as_json=as_json)

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        code = EXIT_INTERRUPTED

    except LoadError as e:
        logger.error("%s", e.message)
        print(f"\nError: {e}", file=sys.stderr)
        code = EXIT_FAILED

    except Exception as e:
        logger.exception("Load failed: %s", e)
        print(f"\nError: {e}", file=sys.stderr)
        code = EXIT_FAILED

    finally:
        close_all_connections()

    sys.exit(code)


if __name__ == "__main__":
    main()
