# Copyright (c) Syntropy Systems
"""Pydantic models for the comparison report (the interchange format)."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from typing_extensions import TypeAlias

from .base import FrozenModel
from .run import ExitStatus, Metrics, RunFailure, Variant

Verdict: TypeAlias = Literal["improved", "regressed", "inconclusive"]


class Thresholds(FrozenModel):
    """Percentages used to classify a comparison."""

    improvement_pct: float = 10.0
    regression_pct: float = 10.0
    latency_tolerance_pct: float = 10.0
    confidence_z: float = 1.96


class RunSummary(FrozenModel):
    """Per-variant projection of a RunResult."""

    variant: Variant
    metrics: Metrics
    event_counts: dict[str, int] = Field(default_factory=dict)
    event_count_by_kind: dict[str, int] = Field(default_factory=dict)
    exit_status: ExitStatus
    failure: RunFailure | None = None
    skipped_lines: int = 0


class Deltas(FrozenModel):
    """Relative change from baseline to candidate, in percent."""

    throughput_pct: float | None = None
    latency_p95_pct: float | None = None
    throughput_ci_pct: tuple[float, float] | None = None


class EventCountPair(FrozenModel):
    """Event counts for one subject across both runs."""

    baseline_count: int = 0
    candidate_count: int = 0


class ComparisonReport(FrozenModel):
    """Result of correlating a baseline run with a candidate run."""

    baseline: RunSummary
    candidate: RunSummary
    deltas: Deltas = Field(default_factory=Deltas)
    event_diff: dict[str, EventCountPair] = Field(default_factory=dict)
    verdict: Verdict = "inconclusive"
    annotations: list[str] = Field(default_factory=list)
    thresholds: Thresholds = Field(default_factory=Thresholds)
