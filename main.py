"""
perfbench: A/B benchmark harness for Argo CD configurations.

Usage:
    perfbench preflight
    perfbench run baseline --count 30 --timeout 300
    perfbench run tuned --count 30 --timeout 300
    perfbench compare baseline tuned
    perfbench disk-pressure --component repo-server
    perfbench cleanup baseline tuned
"""
import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from types import FrameType
from typing import List, Optional

import structlog

from perfbench.comparator import Comparator, render_json, render_table
from perfbench.config import Config
from perfbench.control_plane import ArgoApplicationControlPlane
from perfbench.disk_pressure import COMPONENTS, DiskPressureScenario
from perfbench.errors import PerfBenchError, RecordNotFound
from perfbench.kubectl import Kubectl
from perfbench.metrics import export_textfile
from perfbench.models import RunRecord, validate_label
from perfbench.preflight import run_preflight
from perfbench.runner import ScenarioRunner, ScenarioSettings
from perfbench.sampler import MetricSampler, default_probes
from perfbench.store import ResultStore

logger = structlog.get_logger(__name__)


def configure_logging(log_format: str = "console", verbose: bool = False) -> None:
    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if verbose else logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def install_cancel_handlers(cancel: threading.Event) -> None:
    def handle_signal(signum: int, frame: Optional[FrameType]) -> None:
        logger.info("Received shutdown signal, finishing with partial results", signal=signum)
        cancel.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)


def _print_run_summary(record: RunRecord, path: Path) -> None:
    print(f"Run '{record.label}' started {record.timestamp.isoformat()}")
    print(f"  Completed: {record.completed}/{record.target}"
          + (" (timed out)" if record.timed_out else "")
          + (" (cancelled)" if record.cancelled else ""))
    for m in record.measurements:
        value = "N/A" if m.value is None else f"{m.value:.2f}"
        print(f"  {m.name}: {value} {m.unit}".rstrip())
    print(f"Results saved to: {path}")


def cmd_run(args: argparse.Namespace, config: Config) -> int:
    kubectl = Kubectl(config.kube_context, config.kubectl_timeout_seconds)
    control_plane = ArgoApplicationControlPlane(kubectl, config.argocd_namespace)
    sampler = MetricSampler(default_probes(kubectl, config))
    settings = ScenarioSettings.from_config(
        config,
        args.label,
        count=args.count,
        timeout_seconds=args.timeout,
        poll_interval_seconds=args.poll_interval,
        refresh_burst=False if args.no_refresh_burst else None,
    )
    store = ResultStore(config.results_dir)

    cancel = threading.Event()
    install_cancel_handlers(cancel)
    logger.info("Starting benchmark", label=settings.label, count=settings.count, timeout=settings.timeout_seconds)
    record = ScenarioRunner(control_plane, sampler, settings).run(cancel)
    path = store.put(record)
    _print_run_summary(record, path)
    return 0


def cmd_compare(args: argparse.Namespace, config: Config) -> int:
    report = Comparator(ResultStore(config.results_dir)).compare(args.before, args.after)
    render = render_json if args.format == "json" else render_table
    sys.stdout.write(render(report))
    return 0


def cmd_preflight(args: argparse.Namespace, config: Config) -> int:
    results = run_preflight(Kubectl(config.kube_context, config.kubectl_timeout_seconds), config)
    for r in results:
        status = "OK  " if r.passed else "FAIL"
        print(f"{status} {r.name}" + (f": {r.detail}" if r.detail else ""))
    passed = sum(1 for r in results if r.passed)
    print(f"{passed}/{len(results)} checks passed")
    return 0 if passed == len(results) else 1


def cmd_disk_pressure(args: argparse.Namespace, config: Config) -> int:
    scenario = DiskPressureScenario(
        Kubectl(config.kube_context, config.kubectl_timeout_seconds),
        namespace=config.argocd_namespace,
        write_mb=args.write_mb or config.disk_write_mb,
        settle_seconds=config.disk_settle_seconds,
        write_timeout_seconds=config.disk_write_timeout_seconds,
    )
    cancel = threading.Event()
    install_cancel_handlers(cancel)
    all_passed = True
    for key in args.component or list(COMPONENTS):
        result = scenario.run(key, cancel)
        outcome = result.outcome.value if result.outcome else "not run"
        print(f"{key}: outcome={outcome} sizeLimit={result.size_limit or 'none'}")
        for c in result.checks:
            print(f"  {'PASS' if c.passed else 'FAIL'}  {c.name}" + (f": {c.detail}" if c.detail else ""))
        all_passed = all_passed and result.passed
    return 0 if all_passed else 1


def cmd_cleanup(args: argparse.Namespace, config: Config) -> int:
    control_plane = ArgoApplicationControlPlane(
        Kubectl(config.kube_context, config.kubectl_timeout_seconds), config.argocd_namespace
    )
    control_plane.ping()
    for label in args.labels:
        control_plane.delete_suite(validate_label(label))
    return 0


def cmd_prune(args: argparse.Namespace, config: Config) -> int:
    removed = ResultStore(config.results_dir).prune(args.label, args.keep)
    print(f"Removed {len(removed)} record(s) for '{args.label}'")
    return 0


def cmd_export(args: argparse.Namespace, config: Config) -> int:
    record = ResultStore(config.results_dir).latest(args.label)
    if record is None:
        raise RecordNotFound(f"no results stored for label '{args.label}'")
    skipped = export_textfile(record, args.output)
    print(f"Wrote {args.output}" + (f" ({skipped} N/A measurement(s) skipped)" if skipped else ""))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="perfbench", description="Benchmark and compare Argo CD configurations")
    parser.add_argument("--results-dir", type=Path, help="Directory holding run records")
    parser.add_argument("--context", help="kubectl context to use")
    parser.add_argument("--namespace", help="Argo CD namespace")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the benchmark scenario and store a record")
    run.add_argument("label")
    run.add_argument("--count", type=int, help="Number of applications to create")
    run.add_argument("--timeout", type=float, help="Seconds to wait for applications to sync")
    run.add_argument("--poll-interval", type=float, help="Seconds between status polls")
    run.add_argument("--no-refresh-burst", action="store_true", help="Skip the hard-refresh burst")
    run.set_defaults(func=cmd_run)

    compare = sub.add_parser("compare", help="Compare the latest records of two labels")
    compare.add_argument("before")
    compare.add_argument("after")
    compare.add_argument("--format", choices=["table", "json"], default="table")
    compare.set_defaults(func=cmd_compare)

    preflight = sub.add_parser("preflight", help="Check tooling and cluster prerequisites")
    preflight.set_defaults(func=cmd_preflight)

    disk = sub.add_parser("disk-pressure", help="Exceed the emptyDir sizeLimit and report the outcome")
    disk.add_argument("--component", action="append", choices=sorted(COMPONENTS))
    disk.add_argument("--write-mb", type=int, help="MiB to write into /tmp")
    disk.set_defaults(func=cmd_disk_pressure)

    cleanup = sub.add_parser("cleanup", help="Delete test applications for the given labels")
    cleanup.add_argument("labels", nargs="+")
    cleanup.set_defaults(func=cmd_cleanup)

    prune = sub.add_parser("prune", help="Delete old run records, keeping the newest")
    prune.add_argument("label")
    prune.add_argument("--keep", type=int, required=True)
    prune.set_defaults(func=cmd_prune)

    export = sub.add_parser("export", help="Write the latest record as a Prometheus textfile")
    export.add_argument("label")
    export.add_argument("--output", type=Path, required=True)
    export.set_defaults(func=cmd_export)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = Config()
    if args.results_dir:
        config.results_dir = args.results_dir
    if args.context:
        config.kube_context = args.context
    if args.namespace:
        config.argocd_namespace = args.namespace
    configure_logging(config.log_format, args.verbose)

    try:
        return args.func(args, config)
    except PerfBenchError as e:
        print(f"{e.kind}: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"InvalidArgument: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
