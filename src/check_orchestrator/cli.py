"""Command line entry point for the check orchestrator.

Usage:
    check-orchestrator run [--config SRC] [--only NAME]... [--max-parallel N]
                           [--timeout SECONDS] [--json-report PATH] [--log-level LEVEL]
    check-orchestrator list [--config SRC]

SRC is a path to a stage file or GitHub Actions workflow, or an http(s) URL.

Exit codes:
    0: every stage passed
    1: at least one stage failed
    2: configuration error
    130: run cancelled or deadline exceeded
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from pydantic import ValidationError

from check_orchestrator.config import Settings, get_settings
from check_orchestrator.errors import Cancelled, ConfigError
from check_orchestrator.loader import LoadedConfig, load_config
from check_orchestrator.orchestrator import CheckOrchestrator, configure, select_stages
from check_orchestrator.reporting import render_report, write_json_report

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_CANCELLED = 130

logger = logging.getLogger("check_orchestrator")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="check-orchestrator",
        description="Run independent verification stages and gate on all of them.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the configured stages")
    _add_config_argument(run_parser)
    run_parser.add_argument(
        "--only",
        action="append",
        default=[],
        metavar="NAME",
        help="Run only the named stage (repeatable)",
    )
    run_parser.add_argument(
        "--max-parallel",
        type=_non_negative_int,
        default=None,
        help="Maximum concurrent stages (0 = no limit)",
    )
    run_parser.add_argument(
        "--timeout",
        type=_positive_float,
        default=None,
        help="Cancel the run after this many seconds",
    )
    run_parser.add_argument("--json-report", default=None, help="Also write a JSON report here")
    run_parser.add_argument("--log-level", default=None, help="Override CHECKS_LOG_LEVEL")

    list_parser = subparsers.add_parser("list", help="Show the configured stages")
    _add_config_argument(list_parser)
    return parser


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if number < 0:
        raise argparse.ArgumentTypeError("must be 0 or greater")
    return number


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected a number, got {value!r}") from exc
    if not number > 0:
        raise argparse.ArgumentTypeError("must be greater than 0")
    return number


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config", default=None, help="Stage configuration path or URL (default: CHECKS_CONFIG)"
    )


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load(source: str, settings: Settings) -> LoadedConfig:
    return asyncio.run(load_config(source, timeout=settings.http_timeout))


def _cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    loaded = _load(args.config or settings.config_source, settings)
    run = configure(loaded.ambient_env, loaded.stages)
    for stage in run.stages:
        line = f"{stage.name}: {' '.join(stage.command)}"
        if stage.toolchain:
            line += f" [toolchain {stage.toolchain}]"
        print(line)
    return EXIT_SUCCESS


def _cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    loaded = _load(args.config or settings.config_source, settings)
    run = select_stages(configure(loaded.ambient_env, loaded.stages), args.only)
    orchestrator = CheckOrchestrator(settings, max_parallel=args.max_parallel)
    result = orchestrator.execute(run, timeout=args.timeout)
    print(render_report(result))
    if args.json_report:
        path = write_json_report(result, args.json_report)
        logger.info("Wrote JSON report to %s", path)
    return EXIT_SUCCESS if result.success else EXIT_FAILURE


COMMANDS = {
    "run": _cmd_run,
    "list": _cmd_list,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        settings = get_settings()
    except ValidationError as exc:
        print(f"Invalid settings: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    _configure_logging(getattr(args, "log_level", None) or settings.log_level)

    try:
        return COMMANDS[args.command](args, settings)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR
    except Cancelled as exc:
        logger.error("%s", exc)
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
