"""
Command-line entry point: ``python -m ticketload`` / ``ticketload``.

Loads the run configuration, runs the coordinator, prints the threshold
table and maps the outcome onto the three-state exit code used by CI.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from ticketload.config import load_run_config
from ticketload.coordinator import RunCoordinator
from ticketload.exceptions import ConfigurationError, SetupError
from ticketload.scheduler import parse_stages
from ticketload.thresholds import (
    EXIT_RUN_ABORTED,
    parse_threshold_string,
    parse_thresholds,
    print_summary,
)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for a load-test run."""
    parser = argparse.ArgumentParser(
        prog="ticketload",
        description="Ramp virtual users through a queue-gated ticket reservation API.",
    )
    parser.add_argument("--base-url", help="Ticketing backend URL (env: BASE_URL)")
    parser.add_argument("--seat-count", type=int, help="Seats to provision (env: SEAT_COUNT)")
    parser.add_argument(
        "--stages",
        help='Ramp profile, e.g. "10s:500,50s:500,10s:0" (env: STAGES)',
    )
    parser.add_argument(
        "--threshold",
        action="append",
        default=[],
        metavar="METRIC=EXPR",
        help='Pass/fail threshold, e.g. "http_req_duration=p(95)<5000"; repeatable',
    )
    parser.add_argument("--profile", type=Path, help="YAML profile with stages and thresholds")
    parser.add_argument("--env", help="Configuration environment (env: LOADGEN_ENV)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Run one load test.

    Returns:
        ``0`` if every threshold passed, ``1`` if any was breached, or
        ``2`` if the run was aborted by setup or configuration errors.
    """
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    try:
        overrides = {
            "base_url": args.base_url,
            "seat_count": args.seat_count,
            "stages": tuple(parse_stages(args.stages)) if args.stages else None,
            "thresholds": (
                parse_thresholds(parse_threshold_string(";".join(args.threshold)))
                if args.threshold
                else None
            ),
        }
        run_config = load_run_config(args.env, profile=args.profile, overrides=overrides)
        coordinator = RunCoordinator(run_config)
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_RUN_ABORTED

    try:
        result = coordinator.run()
    except SetupError as exc:
        print(f"Run aborted: {exc}", file=sys.stderr)
        return EXIT_RUN_ABORTED
    finally:
        coordinator.close()

    print_summary(result.verdict)
    return result.verdict.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
