# Copyright (c) Syntropy Systems
"""Correlation of two runs into a ComparisonReport.

Everything here is pure: no I/O, no clock, no randomness. ``correlate``
never raises for well-typed inputs; anything it cannot judge becomes an
inconclusive verdict with an annotation saying why.
"""
from __future__ import annotations

import math
from typing import TYPE_CHECKING

from tierbench.models.report import (
    ComparisonReport,
    Deltas,
    EventCountPair,
    RunSummary,
    Thresholds,
    Verdict,
)

if TYPE_CHECKING:
    from tierbench.models.run import Metrics, RunResult


def pct_change(before: float, after: float) -> float | None:
    """Relative change in percent, or None when ``before`` is zero."""
    if before == 0:
        return None
    return (after - before) / before * 100.0


def throughput_interval(
    baseline: Metrics, candidate: Metrics, z: float = 1.96
) -> tuple[float, float] | None:
    """Confidence interval of the throughput delta, in percent of baseline.

    Uses the per-window standard deviations of both runs (Welch standard
    error of the difference of means). None when baseline throughput is zero.
    """
    if baseline.requests_per_second == 0:
        return None
    n_base = max(1, baseline.throughput_windows)
    n_cand = max(1, candidate.throughput_windows)
    se = math.sqrt(
        baseline.rps_stddev**2 / n_base + candidate.rps_stddev**2 / n_cand
    )
    diff = candidate.requests_per_second - baseline.requests_per_second
    scale = 100.0 / baseline.requests_per_second
    return ((diff - z * se) * scale, (diff + z * se) * scale)


def summarize_run(run: RunResult) -> RunSummary:
    """Project a RunResult onto its report summary."""
    return RunSummary(
        variant=run.variant,
        metrics=run.metrics,
        event_counts=run.event_counts(),
        event_count_by_kind=run.event_counts_by_kind(),
        exit_status=run.exit_status,
        failure=run.failure,
        skipped_lines=run.skipped_lines,
    )


def event_diff(baseline: RunResult, candidate: RunResult) -> dict[str, EventCountPair]:
    """Per-subject event counts over the union of both runs' subjects."""
    base_counts = baseline.event_counts()
    cand_counts = candidate.event_counts()
    return {
        subject: EventCountPair(
            baseline_count=base_counts.get(subject, 0),
            candidate_count=cand_counts.get(subject, 0),
        )
        for subject in sorted(base_counts.keys() | cand_counts.keys())
    }


def _failure_note(run: RunResult) -> str:
    note = f"{run.variant} run {run.exit_status.describe()}"
    if run.failure is not None:
        note = f"{note} in {run.failure.state}: {run.failure.error}: {run.failure.message}"
    elif not run.metrics.complete:
        note = f"{note} with incomplete metrics"
    return note


def classify(
    throughput_pct: float,
    latency_p95_pct: float | None,
    thresholds: Thresholds,
) -> Verdict:
    """Apply the verdict thresholds to computed deltas.

    Latency improves when it goes down, so its sign is the opposite of
    throughput's. A missing latency delta does not block a verdict.
    """
    tolerance = thresholds.latency_tolerance_pct
    if throughput_pct > thresholds.improvement_pct and (
        latency_p95_pct is None or latency_p95_pct <= tolerance
    ):
        return "improved"
    if throughput_pct < -thresholds.regression_pct and (
        latency_p95_pct is None or latency_p95_pct >= -tolerance
    ):
        return "regressed"
    return "inconclusive"


def correlate(
    baseline: RunResult,
    candidate: RunResult,
    thresholds: Thresholds | None = None,
) -> ComparisonReport:
    """Compare a baseline run with a candidate run."""
    if thresholds is None:
        thresholds = Thresholds()

    annotations: list[str] = []
    deltas = Deltas()
    verdict: Verdict = "inconclusive"

    unusable = [run for run in (baseline, candidate) if not run.usable]
    if unusable:
        annotations.extend(_failure_note(run) for run in unusable)
    else:
        base, cand = baseline.metrics, candidate.metrics
        throughput_pct = pct_change(base.requests_per_second, cand.requests_per_second)
        latency_pct = pct_change(base.latency.p95, cand.latency.p95)
        interval = throughput_interval(base, cand, thresholds.confidence_z)
        deltas = Deltas(
            throughput_pct=throughput_pct,
            latency_p95_pct=latency_pct,
            throughput_ci_pct=interval,
        )

        if throughput_pct is None:
            annotations.append("baseline throughput is 0; throughput delta undefined")
        elif interval is not None and interval[0] <= 0 <= interval[1]:
            annotations.append(
                f"throughput delta confidence interval "
                f"[{interval[0]:+.1f}%, {interval[1]:+.1f}%] spans zero"
            )
        else:
            verdict = classify(throughput_pct, latency_pct, thresholds)
            if verdict == "inconclusive":
                annotations.append(
                    "changes meet neither the improvement nor the regression thresholds"
                )

        if latency_pct is None:
            annotations.append("baseline p95 latency is 0; latency delta undefined")

    return ComparisonReport(
        baseline=summarize_run(baseline),
        candidate=summarize_run(candidate),
        deltas=deltas,
        event_diff=event_diff(baseline, candidate),
        verdict=verdict,
        annotations=annotations,
        thresholds=thresholds,
    )
