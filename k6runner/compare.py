"""Trend computation and table/Markdown rendering over saved results."""

from datetime import datetime
from typing import List, Sequence

from k6runner.models import (
    DEGRADED,
    IMPROVED,
    UNCHANGED,
    MetricTrend,
    ResultRecord,
    TrendReport,
)

ZERO_GUARD = 0.001

_TABLE_ROW = "{:<20} {:<10} {:<12} {:<12} {:<12} {:<10} {:<10}"


def percent_change(old: float, new: float) -> float:
    """``(new - old) / old * 100`` rounded to two places; a zero old value is nudged."""
    divisor = old if old != 0 else old + ZERO_GUARD
    return round((new - old) / divisor * 100, 2)


def classify(delta: float) -> str:
    # Lower latency and error rate are better
    if delta < 0:
        return IMPROVED
    if delta > 0:
        return DEGRADED
    return UNCHANGED


def compare(records: Sequence[ResultRecord]) -> TrendReport:
    """Compare the oldest and newest record of a newest-first window.

    Fewer than two records produce a report without trends.
    """
    if not records:
        raise ValueError("compare() needs at least one record")
    newest, oldest = records[0], records[-1]
    trends: List[MetricTrend] = []
    if len(records) >= 2:
        for metric in ("p95", "error_rate"):
            old = getattr(oldest, metric)
            new = getattr(newest, metric)
            delta = percent_change(old, new)
            trends.append(MetricTrend(metric, old, new, delta, classify(delta)))
    return TrendReport(
        test_type=newest.test_type,
        rate=newest.rate,
        window=len(records),
        trends=trends,
    )


def format_table(records: Sequence[ResultRecord]) -> str:
    lines = [
        _TABLE_ROW.format("Timestamp", "Requests", "Errors", "P95 (ms)",
                          "P99 (ms)", "Avg (ms)", "RPS"),
        "-" * 89,
    ]
    for r in records:
        lines.append(_TABLE_ROW.format(
            r.timestamp,
            str(r.total_requests),
            f"{r.error_rate * 100:.2f}%",
            f"{r.p95:.2f}",
            f"{r.p99:.2f}",
            f"{r.avg:.2f}",
            f"{r.achieved_rate:.2f}",
        ))
    return "\n".join(lines)


_LABELS = {"p95": "P95 Latency", "error_rate": "Error Rate"}


def format_trends(report: TrendReport) -> str:
    if not report.trends:
        return "Not enough runs to compute trends (need at least 2)."
    lines = []
    for t in report.trends:
        lines.append(f"{_LABELS[t.metric]}:")
        if t.classification == IMPROVED:
            lines.append(f"  ▼ Improved by {abs(t.delta_percent):.2f}%")
        elif t.classification == DEGRADED:
            verb = "Increased" if t.metric == "error_rate" else "Degraded"
            lines.append(f"  ▲ {verb} by {t.delta_percent:.2f}%")
        else:
            lines.append("  ✓ No change")
    return "\n".join(lines)


def render_report(records: Sequence[ResultRecord], test_type: str, rate: int,
                  generated_at: datetime) -> str:
    """Build the Markdown report for a newest-first window of records."""
    out = [
        "# K6 Load Test Report",
        "",
        f"**Test Type:** {test_type}",
        f"**Target RPS:** {rate}",
        f"**Report Generated:** {generated_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Test Runs Analyzed:** {len(records)}",
        "",
        "---",
        "",
        "## Summary",
        "",
    ]

    if records:
        latest = records[0]
        out += [
            "### Latest Test Results",
            "",
            f"- **Total Requests:** {latest.total_requests}",
            f"- **Actual RPS:** {latest.achieved_rate:.2f}",
            f"- **Error Rate:** {latest.error_rate * 100:.2f}%",
            f"- **P50 Latency:** {latest.p50:.2f} ms",
            f"- **P95 Latency:** {latest.p95:.2f} ms",
            f"- **P99 Latency:** {latest.p99:.2f} ms",
            "",
            "---",
            "",
            "## Historical Performance",
            "",
            "| Timestamp | Requests | Error Rate | P95 (ms) | P99 (ms) | Avg (ms) | RPS |",
            "|-----------|----------|------------|----------|----------|----------|-----|",
        ]
        for r in records:
            out.append(
                f"| {r.timestamp} | {r.total_requests} | {r.error_rate * 100:.2f}% | "
                f"{r.p95:.2f} | {r.p99:.2f} | {r.avg:.2f} | {r.achieved_rate:.2f} |"
            )
        out += ["", "---", "", "## Performance Trends", ""]

        report = compare(records)
        p95 = report.get("p95")
        errors = report.get("error_rate")
        if p95 is None:
            out.append("Not enough runs to compute trends.")
        else:
            out.append("### P95 Latency Trend")
            values = f"({p95.old:.2f}ms → {p95.new:.2f}ms)"
            if p95.classification == IMPROVED:
                out.append(f"✅ **Improved by {abs(p95.delta_percent):.2f}%** {values}")
            elif p95.classification == DEGRADED:
                out.append(f"⚠️ **Degraded by {p95.delta_percent:.2f}%** {values}")
            else:
                out.append("✓ No significant change")
            out += ["", "### Error Rate Trend"]
            if errors.classification == IMPROVED:
                out.append(f"✅ **Improved by {abs(errors.delta_percent):.2f}%**")
            elif errors.classification == DEGRADED:
                out.append(f"⚠️ **Increased by {errors.delta_percent:.2f}%**")
            else:
                out.append("✓ No significant change")

    out += [
        "",
        "---",
        "",
        "## Test Configuration",
        "",
        f"- **Test Type:** {test_type}",
        f"- **Target RPS:** {rate}",
        f"- **Number of Runs:** {len(records)}",
        "",
        "---",
        "",
        "*Report generated by k6runner*",
        "",
    ]
    return "\n".join(out)
