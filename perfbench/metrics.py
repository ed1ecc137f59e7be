import re
from pathlib import Path

import structlog
from prometheus_client import CollectorRegistry, Gauge, write_to_textfile

from perfbench.models import RunRecord

logger = structlog.get_logger(__name__)

METRIC_PREFIX = "perfbench"
_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9_]")


def metric_name(measurement: str) -> str:
    return f"{METRIC_PREFIX}_{_INVALID_CHARS.sub('_', measurement)}"


def build_registry(record: RunRecord) -> CollectorRegistry:
    """Gauges for one run, suitable for the node-exporter textfile collector."""
    registry = CollectorRegistry()

    completed = Gauge(
        f"{METRIC_PREFIX}_run_completed",
        "Workloads that reached a terminal state",
        ["label"],
        registry=registry,
    )
    completed.labels(label=record.label).set(record.completed)
    target = Gauge(
        f"{METRIC_PREFIX}_run_target",
        "Workloads the scenario created",
        ["label"],
        registry=registry,
    )
    target.labels(label=record.label).set(record.target)
    started = Gauge(
        f"{METRIC_PREFIX}_run_timestamp_seconds",
        "Unix time the scenario started",
        ["label"],
        registry=registry,
    )
    started.labels(label=record.label).set(record.timestamp.timestamp())

    for m in record.measurements:
        if not m.available:
            continue
        gauge = Gauge(metric_name(m.name), f"Benchmark measurement {m.name}", ["label", "unit"], registry=registry)
        gauge.labels(label=record.label, unit=m.unit).set(m.value)
    return registry


def export_textfile(record: RunRecord, path: Path) -> int:
    """Write available measurements to ``path``; returns how many were skipped as N/A."""
    write_to_textfile(str(path), build_registry(record))
    skipped = sum(1 for m in record.measurements if not m.available)
    logger.info("Exported run record", label=record.label, path=str(path), skipped=skipped)
    return skipped
