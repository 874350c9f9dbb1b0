"""scanrelay command line.

Usage:
    scanrelay run [--config PATH] [--workdir DIR] [--json]
    scanrelay deliver --report KIND=PATH [--report KIND=PATH ...] [--config PATH] [--json]
    scanrelay check-config [--config PATH]
    scanrelay relay [--config PATH]

Exit codes:
    run           0 — run succeeded, reports handed off (dispatch failures are logged only)
                  1 — run aborted, or a report from a blocking stage could not be stored
    deliver       0 — every given report DELIVERED; 1 — at least one was not
    check-config  0 — config valid; 1 — CONFIG ERROR (stderr)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from scanrelay import __version__
from scanrelay.config import Config, load_config
from scanrelay.errors import ConfigError
from scanrelay.pipeline.delivery import DeliveryStatus, DeliverySummary, ReportDelivery
from scanrelay.pipeline.models import Report, ReportKind
from scanrelay.pipeline.runner import PipelineResult, run_pipeline
from scanrelay.utils.logger import configure_logging
from scanrelay.utils.ulid import generate_ulid


def _parse_report_arg(value: str) -> tuple[ReportKind, Path]:
    kind, sep, path = value.partition("=")
    if not sep or not path:
        raise argparse.ArgumentTypeError(f"expected KIND=PATH, got {value!r}")
    try:
        return ReportKind.parse(kind), Path(path)
    except ConfigError as exc:
        raise argparse.ArgumentTypeError(exc.message) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scanrelay",
        description="Gated pipeline stages and decoupled delivery of security scan reports",
    )
    parser.add_argument("--version", action="version", version=f"scanrelay {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the configured pipeline and deliver its reports")
    run.add_argument("--config", help="Path to config.yaml")
    run.add_argument("--workdir", help="Working directory for stage commands (default: cwd)")
    run.add_argument("--json", action="store_true", help="Print the run summary as JSON")

    deliver = sub.add_parser("deliver", help="Deliver already-produced report files")
    deliver.add_argument(
        "--report",
        dest="reports",
        action="append",
        type=_parse_report_arg,
        required=True,
        metavar="KIND=PATH",
        help="Report kind (SECRET_SCAN, DEPENDENCY_SCAN, IMAGE_SCAN, DYNAMIC_SCAN) and file",
    )
    deliver.add_argument("--config", help="Path to config.yaml")
    deliver.add_argument("--json", action="store_true", help="Print the delivery summary as JSON")

    check = sub.add_parser("check-config", help="Validate the config file and exit")
    check.add_argument("--config", help="Path to config.yaml")

    relay = sub.add_parser("relay", help="Serve the relay service")
    relay.add_argument("--config", help="Path to config.yaml")

    return parser


# ─── Output ───────────────────────────────────────────────────────────────────


def _print_delivery(summary: DeliverySummary) -> None:
    for kind, entry in summary.entries.items():
        line = f"  {kind.value:<16} {entry.status.value}"
        if entry.ack is not None and entry.ack.relay_job_id:
            line += f" (relay job {entry.ack.relay_job_id})"
        if entry.error:
            line += f" — {entry.error}"
        print(line)


def _print_result(result: PipelineResult) -> None:
    outcome = result.outcome
    print(f"Run {outcome.run_id}: {outcome.status.value}")
    for stage in outcome.results:
        line = f"  {stage.name:<24} {stage.policy.value:<13} {stage.status.value:<10} {stage.duration_s:.1f}s"
        if stage.error:
            line += f" — {stage.error}"
        print(line)
    for name in outcome.skipped:
        print(f"  {name:<24} {'':<13} SKIPPED")
    if result.delivery is not None:
        print("Delivery:")
        _print_delivery(result.delivery)
    print(f"Exit code: {result.exit_code}")


# ─── Commands ─────────────────────────────────────────────────────────────────


def _cmd_run(args: argparse.Namespace, config: Config) -> int:
    workdir = Path(args.workdir) if args.workdir else None
    try:
        result = asyncio.run(run_pipeline(config, workdir=workdir))
    except ConfigError as exc:
        print(f"CONFIG ERROR: {exc.message}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        _print_result(result)
    return result.exit_code


async def _deliver_files(config: Config, reports: Sequence[Report]) -> DeliverySummary:
    delivery = ReportDelivery.from_config(config)
    try:
        return await delivery.deliver_reports(generate_ulid(), reports)
    finally:
        await delivery.close()


def _cmd_deliver(args: argparse.Namespace, config: Config) -> int:
    reports: list[Report] = []
    seen: set[ReportKind] = set()
    for kind, path in args.reports:
        if kind in seen:
            print(f"ERROR: {kind.value} given more than once", file=sys.stderr)
            return 1
        seen.add(kind)
        try:
            payload = path.read_bytes()
        except OSError as exc:
            print(f"ERROR: cannot read {path}: {exc}", file=sys.stderr)
            return 1
        reports.append(
            Report(
                kind=kind,
                format=path.suffix.lstrip(".").lower() or "bin",
                payload=payload,
                stage="deliver",
                filename=path.name,
            )
        )

    try:
        summary = asyncio.run(_deliver_files(config, reports))
    except ConfigError as exc:
        print(f"CONFIG ERROR: {exc.message}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        _print_delivery(summary)
    delivered = all(summary.status_of(kind) is DeliveryStatus.DELIVERED for kind in seen)
    return 0 if delivered else 1


def _cmd_check_config(config: Config) -> int:
    print(f"Config OK: {config.path or '(defaults)'}")
    print(f"  stages:   {', '.join(s.name for s in config.pipeline.stages) or '(none)'}")
    print(f"  delivery: {config.delivery.mode} (store: {config.store.backend})")
    print(f"  relay:    {config.relay.host}:{config.relay.port}, {config.relay.workers} workers")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command != "relay":
        debug = os.getenv("DEBUG", "false").lower() == "true"
        configure_logging(
            log_level=os.getenv("LOG_LEVEL", "DEBUG" if debug else "INFO"),
            json_output=os.getenv("JSON_LOGS", "true").lower() == "true",
            stream=sys.stderr,
        )

    if args.command == "relay":
        from scanrelay.relay.run import main as run_relay

        run_relay(args.config)
        return 0

    config = load_config(args.config)

    if args.command == "check-config":
        return _cmd_check_config(config)
    if args.command == "run":
        return _cmd_run(args, config)
    return _cmd_deliver(args, config)


if __name__ == "__main__":
    sys.exit(main())
