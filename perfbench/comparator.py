from typing import List, Optional

import structlog

from perfbench.errors import RecordNotFound
from perfbench.models import ComparisonReport, ComparisonStatus, MetricComparison, RunRecord, Verdict
from perfbench.store import ResultStore

logger = structlog.get_logger(__name__)

NOT_COMPUTABLE = "not computable"
NOT_AVAILABLE = "N/A"

# Everything else is better when it goes down (time, failures, restarts, usage)
HIGHER_IS_BETTER = frozenset({"apps_synced", "apps_completed"})


def verdict(name: str, before: float, after: float) -> Verdict:
    if after == before:
        return Verdict.UNCHANGED
    went_down = after < before
    if went_down != (name in HIGHER_IS_BETTER):
        return Verdict.IMPROVED
    return Verdict.REGRESSED


def percent_delta(before: float, after: float) -> Optional[float]:
    """Reduction from ``before`` to ``after`` in percent; None when before is zero."""
    if before == 0:
        return None
    return (before - after) / before * 100


def compare_records(before: RunRecord, after: RunRecord) -> ComparisonReport:
    before_by_name = {m.name: m for m in before.measurements}
    after_by_name = {m.name: m for m in after.measurements}

    rows: List[MetricComparison] = []
    for name in sorted(before_by_name.keys() & after_by_name.keys()):
        b = before_by_name[name]
        a = after_by_name[name]
        unit = b.unit or a.unit
        if b.value is None or a.value is None:
            rows.append(MetricComparison(
                name=name, unit=unit, before=b.value, after=a.value,
                status=ComparisonStatus.NOT_AVAILABLE,
            ))
            continue
        delta = percent_delta(b.value, a.value)
        rows.append(MetricComparison(
            name=name,
            unit=unit,
            before=b.value,
            after=a.value,
            percent_delta=delta,
            status=ComparisonStatus.COMPARED if delta is not None else ComparisonStatus.NOT_COMPUTABLE,
            verdict=verdict(name, b.value, a.value),
        ))

    return ComparisonReport(
        before_label=before.label,
        after_label=after.label,
        before_timestamp=before.timestamp,
        after_timestamp=after.timestamp,
        rows=rows,
        before_only=sorted(before_by_name.keys() - after_by_name.keys()),
        after_only=sorted(after_by_name.keys() - before_by_name.keys()),
    )


class Comparator:
    """Builds reports from the latest stored records of two labels."""

    def __init__(self, store: ResultStore) -> None:
        self._store = store

    def _latest(self, label: str) -> RunRecord:
        record = self._store.latest(label)
        if record is None:
            raise RecordNotFound(f"no results stored for label '{label}'; run it first")
        return record

    def compare(self, before_label: str, after_label: str) -> ComparisonReport:
        before = self._latest(before_label)
        after = self._latest(after_label)
        report = compare_records(before, after)
        logger.info(
            "Compared runs",
            before=before_label,
            after=after_label,
            metrics=len(report.rows),
            before_only=len(report.before_only),
            after_only=len(report.after_only),
        )
        return report


def _fmt_value(value: Optional[float]) -> str:
    if value is None:
        return NOT_AVAILABLE
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


def _fmt_delta(row: MetricComparison) -> str:
    if row.status is ComparisonStatus.NOT_AVAILABLE:
        return NOT_AVAILABLE
    if row.status is ComparisonStatus.NOT_COMPUTABLE or row.percent_delta is None:
        return NOT_COMPUTABLE
    return f"{row.percent_delta:.1f}%"


def render_table(report: ComparisonReport) -> str:
    """Render a report as a fixed-layout text table.

    Output depends only on the report, so two renders of the same records are
    byte-identical.
    """
    header = ["Metric", "Unit", report.before_label, report.after_label, "Improvement"]
    body = [
        [row.name, row.unit or "-", _fmt_value(row.before), _fmt_value(row.after), _fmt_delta(row)]
        for row in report.rows
    ]
    widths = [max(len(r[i]) for r in [header] + body) for i in range(len(header))]

    def line(cells: List[str]) -> str:
        first = cells[0].ljust(widths[0])
        rest = [c.rjust(w) for c, w in zip(cells[1:], widths[1:])]
        return "| " + " | ".join([first] + rest) + " |"

    rule = "+" + "+".join("-" * (w + 2) for w in widths) + "+"
    out = [
        "PERFORMANCE COMPARISON REPORT",
        f"{report.before_label}: {report.before_timestamp.isoformat()}",
        f"{report.after_label}: {report.after_timestamp.isoformat()}",
        "",
        rule,
        line(header),
        rule,
    ]
    out += [line(cells) for cells in body]
    out.append(rule)
    if report.before_only:
        out.append(f"Only in {report.before_label}: {', '.join(report.before_only)}")
    if report.after_only:
        out.append(f"Only in {report.after_label}: {', '.join(report.after_only)}")
    out.append("Improvement = (before - after) / before; positive means the value went down.")

    judged = [row for row in report.rows if row.verdict is not None]
    if judged:
        out += ["", "SUMMARY"]
        for row in judged:
            direction = "higher is better" if row.name in HIGHER_IS_BETTER else "lower is better"
            out.append(
                f"  {row.verdict.value:<9}  {row.name}: {_fmt_value(row.before)} -> {_fmt_value(row.after)}"
                f" ({direction})"
            )
    return "\n".join(out) + "\n"


def render_json(report: ComparisonReport) -> str:
    return report.model_dump_json(indent=2) + "\n"
