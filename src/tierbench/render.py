# Copyright (c) Syntropy Systems
"""Report rendering: JSON interchange, markdown, and rich console output.

Markdown and console output show every field of the JSON document.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from tierbench.models.report import ComparisonReport

if TYPE_CHECKING:
    from tierbench.models.report import RunSummary
    from tierbench.models.run import Metrics

VERDICT_STYLES = {
    "improved": "green",
    "regressed": "red",
    "inconclusive": "yellow",
}


def to_json(report: ComparisonReport, indent: int | None = 2) -> str:
    """Serialize a report to its camelCase interchange JSON."""
    return report.model_dump_json(by_alias=True, indent=indent)


def from_json(text: str | bytes) -> ComparisonReport:
    """Load a report previously written by ``to_json``."""
    return ComparisonReport.model_validate_json(text)


def _fmt_pct(value: float | None) -> str:
    return "-" if value is None else f"{value:+.2f}%"


def _fmt_num(value: float | None, digits: int = 2) -> str:
    return "-" if value is None else f"{value:.{digits}f}"


def _metric_rows(metrics: Metrics) -> list[tuple[str, str]]:
    resources = metrics.resources
    return [
        ("Requests/s", _fmt_num(metrics.requests_per_second)),
        ("Requests/s stddev", _fmt_num(metrics.rps_stddev)),
        ("Throughput windows", str(metrics.throughput_windows)),
        ("Latency p50 (ms)", _fmt_num(metrics.latency.p50)),
        ("Latency p95 (ms)", _fmt_num(metrics.latency.p95)),
        ("Latency p99 (ms)", _fmt_num(metrics.latency.p99)),
        ("Latency max (ms)", _fmt_num(metrics.latency.max)),
        ("Requests", str(metrics.sample_count)),
        ("Errors", str(metrics.errors)),
        ("Duration (ms)", _fmt_num(metrics.duration_millis, 0)),
        ("Metrics complete", "yes" if metrics.complete else "no"),
        ("CPU avg %", _fmt_num(resources.cpu_percent_avg if resources else None, 1)),
        ("CPU max %", _fmt_num(resources.cpu_percent_max if resources else None, 1)),
        ("RSS max (MB)", _fmt_num(resources.rss_max_mb if resources else None, 1)),
        ("Resource samples", str(resources.samples) if resources else "-"),
    ]


def _summary_rows(summary: RunSummary) -> list[tuple[str, str]]:
    failure = summary.failure
    rows = [
        ("Exit status", summary.exit_status.describe()),
        (
            "Failure",
            f"{failure.error} in {failure.state}: {failure.message}" if failure else "-",
        ),
    ]
    rows.extend(_metric_rows(summary.metrics))
    rows.append(("Events", str(sum(summary.event_counts.values()))))
    rows.extend(
        (f"Events: {kind}", str(count))
        for kind, count in summary.event_count_by_kind.items()
    )
    rows.append(("Skipped lines", str(summary.skipped_lines)))
    return rows


def _paired_rows(report: ComparisonReport) -> list[tuple[str, str, str]]:
    base = dict(_summary_rows(report.baseline))
    cand = dict(_summary_rows(report.candidate))
    labels = list(base)
    labels.extend(label for label in cand if label not in base)
    return [(label, base.get(label, "-"), cand.get(label, "-")) for label in labels]


def _delta_rows(report: ComparisonReport) -> list[tuple[str, str]]:
    deltas = report.deltas
    interval = deltas.throughput_ci_pct
    thresholds = report.thresholds
    return [
        ("Throughput", _fmt_pct(deltas.throughput_pct)),
        (
            "Throughput 95% CI",
            "-" if interval is None else f"[{interval[0]:+.2f}%, {interval[1]:+.2f}%]",
        ),
        ("Latency p95", _fmt_pct(deltas.latency_p95_pct)),
        (
            "Thresholds",
            f"improve > +{thresholds.improvement_pct:g}%, "
            f"regress < -{thresholds.regression_pct:g}%, "
            f"latency tolerance {thresholds.latency_tolerance_pct:g}%, "
            f"z = {thresholds.confidence_z:g}",
        ),
    ]


def _md(text: str) -> str:
    return text.replace("|", "\\|")


def to_markdown(report: ComparisonReport) -> str:
    """Render a report as a markdown document."""
    lines = [
        "# Comparison report",
        "",
        f"**Verdict:** {report.verdict}",
        "",
        "## Runs",
        "",
        f"| | {report.baseline.variant} | {report.candidate.variant} |",
        "|---|---|---|",
    ]
    lines.extend(
        f"| {label} | {_md(base)} | {_md(cand)} |"
        for label, base, cand in _paired_rows(report)
    )

    lines.extend(["", "## Deltas", "", "| | |", "|---|---|"])
    lines.extend(f"| {label} | {_md(value)} |" for label, value in _delta_rows(report))

    lines.extend(["", "## Trace events by subject", ""])
    if report.event_diff:
        lines.extend(["| Subject | Baseline | Candidate |", "|---|---|---|"])
        lines.extend(
            f"| `{_md(subject)}` | {pair.baseline_count} | {pair.candidate_count} |"
            for subject, pair in report.event_diff.items()
        )
    else:
        lines.append("No trace events captured.")

    if report.annotations:
        lines.extend(["", "## Notes", ""])
        lines.extend(f"- {note}" for note in report.annotations)

    lines.append("")
    return "\n".join(lines)


def print_report(report: ComparisonReport, console: Console | None = None) -> None:
    """Print a report as rich tables."""
    if console is None:
        console = Console()

    style = VERDICT_STYLES.get(report.verdict, "white")
    console.print(f"\n[bold]Verdict:[/bold] [{style}]{report.verdict}[/{style}]\n")

    runs_table = Table(show_header=True, header_style="bold")
    runs_table.add_column("", style="dim")
    runs_table.add_column(report.baseline.variant, style="cyan")
    runs_table.add_column(report.candidate.variant, style="cyan")
    for label, base, cand in _paired_rows(report):
        runs_table.add_row(label, escape(base), escape(cand))
    console.print(runs_table)

    console.print("\n[bold]Deltas[/bold]")
    deltas_table = Table(show_header=False)
    deltas_table.add_column("", style="dim")
    deltas_table.add_column("")
    for label, value in _delta_rows(report):
        deltas_table.add_row(label, escape(value))
    console.print(deltas_table)

    console.print("\n[bold]Trace events by subject[/bold]")
    if report.event_diff:
        events_table = Table(show_header=True, header_style="bold")
        events_table.add_column("Subject", style="dim")
        events_table.add_column("Baseline", justify="right")
        events_table.add_column("Candidate", justify="right")
        for subject, pair in report.event_diff.items():
            base = str(pair.baseline_count)
            cand = str(pair.candidate_count)
            if pair.baseline_count != pair.candidate_count:
                # Counts differ - highlight
                base, cand = f"[yellow]{base}[/yellow]", f"[yellow]{cand}[/yellow]"
            events_table.add_row(escape(subject), base, cand)
        console.print(events_table)
    else:
        console.print("[dim]No trace events captured[/dim]")

    if report.annotations:
        console.print("\n[bold]Notes[/bold]")
        for note in report.annotations:
            console.print(f"  - {note}", markup=False, highlight=False)
