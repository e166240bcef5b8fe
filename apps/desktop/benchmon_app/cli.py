"""CLI entrypoints for live monitoring, capability diagnostics, and benchmark result import."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

from benchmon_core import (
    MalformedImportInput,
    build_doctor_payload,
    build_monitor,
    import_benchmark_metrics,
    load_config,
    snapshot_payload,
)
from benchmon_core.logging_setup import configure_logging, install_crash_hooks
from benchmon_telemetry import MetricId


DEFAULT_METRICS = [
    MetricId.CPU_UTILIZATION.value,
    MetricId.MEMORY_USAGE.value,
    MetricId.POWER.value,
    MetricId.CPU_TEMPERATURE.value,
]


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def cmd_monitor(args: argparse.Namespace) -> int:
    cfg = load_config()
    controller = build_monitor(cfg)
    metrics = [MetricId(m) for m in (args.metric or DEFAULT_METRICS)]

    deadline = time.monotonic() + args.seconds
    try:
        with controller.attach_many(metrics):
            while time.monotonic() < deadline:
                time.sleep(min(args.interval, max(deadline - time.monotonic(), 0.0)))
                snap = controller.publisher.latest()
                print(json.dumps(snapshot_payload(snap, series=args.series), sort_keys=True, default=str), flush=True)
    except KeyboardInterrupt:
        pass
    finally:
        controller.shutdown()
    return 0


def cmd_doctor(_args: argparse.Namespace) -> int:
    cfg = load_config()
    _print_json(build_doctor_payload(cfg))
    return 0


def cmd_import_results(args: argparse.Namespace) -> int:
    if args.file and args.file != "-":
        blob = Path(args.file).expanduser().read_text(encoding="utf-8")
    else:
        blob = sys.stdin.read()

    try:
        bundle = import_benchmark_metrics(blob)
    except MalformedImportInput as exc:
        _print_json({"success": False, "error": str(exc)})
        return 2

    payload = bundle.summary()
    payload["success"] = True
    _print_json(payload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="benchmon", description="Hardware telemetry monitor and benchmark result tools")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG regardless of the configured level")
    sub = parser.add_subparsers(dest="command", required=True)

    monitor_cmd = sub.add_parser("monitor", help="Sample metrics and print JSON snapshots")
    monitor_cmd.add_argument(
        "--metric",
        action="append",
        choices=[m.value for m in MetricId],
        help="Metric to watch (repeatable); defaults to cpu, memory, power and cpu temperature",
    )
    monitor_cmd.add_argument("--seconds", type=float, default=10.0)
    monitor_cmd.add_argument("--interval", type=float, default=1.0, help="Seconds between printed snapshots")
    monitor_cmd.add_argument("--series", action="store_true", help="Include buffered points in each snapshot")
    monitor_cmd.set_defaults(func=cmd_monitor)

    doctor_cmd = sub.add_parser("doctor", help="Probe every metric reader once and print capabilities")
    doctor_cmd.set_defaults(func=cmd_doctor)

    import_cmd = sub.add_parser("import-results", help="Convert a benchmark metrics blob into series statistics")
    import_cmd.add_argument("--file", default=None, help="Path to metrics JSON; '-' or omitted reads stdin")
    import_cmd.set_defaults(func=cmd_import_results)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    cfg = load_config()
    configure_logging(cfg.diagnostics, console=False, level="DEBUG" if args.verbose else None)
    install_crash_hooks()
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
