from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import dotenv_values

from loadstage.config import get_settings, parse_config, read_run_file
from loadstage.engine import LoadTest
from loadstage.exceptions import ConfigurationError, LifecycleError
from loadstage.report import format_summary, prometheus_format

# Exit code when the run completed but at least one threshold failed.
EXIT_THRESHOLDS_FAILED = 99
# Exit code when setup or teardown raised.
EXIT_LIFECYCLE_FAILED = 107


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="loadstage",
        description="Run staged load tests described by a JSON run file.",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--log-level", help="Logging level (default: LOADSTAGE_LOG_LEVEL or INFO)."
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser(
        "run", parents=[common], help="Run a load test and print its summary."
    )
    run.add_argument("config", help="Path to the JSON run file.")
    run.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Variable passed to probes (repeatable; wins over the run file).",
    )
    run.add_argument("--env-file", help="dotenv file with variables for probes.")
    run.add_argument("--max-vus", type=int, help="Global ceiling on active users.")
    run.add_argument("--seed", type=int, help="Seed for behavior selection.")
    run.add_argument("--timeout", help="Run-level timeout, e.g. 90s or 5m.")
    run.add_argument(
        "--summary-export", help="Write the full report as JSON to this path."
    )
    run.add_argument(
        "--prometheus",
        action="store_true",
        help="Print Prometheus exposition instead of the text summary.",
    )

    validate = commands.add_parser(
        "validate",
        parents=[common],
        help="Validate a run file and its behavior references.",
    )
    validate.add_argument("config", help="Path to the JSON run file.")
    return parser.parse_args(argv)


def _parse_env_pairs(pairs: List[str]) -> Dict[str, str]:
    env: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigurationError(
                f"--env expects KEY=VALUE, got {pair!r}", details={"env": pair}
            )
        env[key] = value
    return env


def _build_payload(args: argparse.Namespace) -> Dict[str, Any]:
    data = read_run_file(args.config)
    if args.command != "run":
        return data

    env: Dict[str, Any] = dict(data.get("env") or {})
    if args.env_file:
        if not Path(args.env_file).is_file():
            raise ConfigurationError(
                f"env file not found: {args.env_file}",
                details={"path": args.env_file},
            )
        env.update(
            {k: v for k, v in dotenv_values(args.env_file).items() if v is not None}
        )
    env.update(_parse_env_pairs(args.env))
    data["env"] = env

    if args.max_vus is not None:
        data["max_vus"] = args.max_vus
    if args.seed is not None:
        data["seed"] = args.seed
    if args.timeout is not None:
        data["timeout"] = args.timeout
    return data


def _configure_logging(level: Optional[str]) -> None:
    name = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.log_level)
    try:
        config = parse_config(_build_payload(args))
        test = LoadTest(config)
        if args.command == "validate":
            print(
                f"OK: {len(config.scenarios)} scenario(s), "
                f"{len(config.thresholds)} threshold(s)"
            )
            return 0

        report = asyncio.run(test.run())
    except ConfigurationError as exc:
        print(f"configuration error: {exc.message}", file=sys.stderr)
        return 1
    except LifecycleError as exc:
        print(f"{exc.stage} error: {exc.message}", file=sys.stderr)
        return EXIT_LIFECYCLE_FAILED

    if args.summary_export:
        Path(args.summary_export).write_text(
            json.dumps(report.to_log_dict(), indent=2, ensure_ascii=True),
            encoding="utf-8",
        )
    if args.prometheus:
        print(prometheus_format(report), end="")
    else:
        print(format_summary(report))
    if report.errors:
        return EXIT_LIFECYCLE_FAILED
    return 0 if report.passed else EXIT_THRESHOLDS_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
