# Copyright (c) Syntropy Systems
"""Pydantic models for benchmark runs and their metrics."""

from __future__ import annotations

from collections import Counter
from typing import Literal

from pydantic import Field
from typing_extensions import TypeAlias

from .base import FrozenModel
from .events import TraceEvent

Variant: TypeAlias = Literal["baseline", "candidate"]
ExitKind: TypeAlias = Literal["success", "crashed", "timed_out", "startup_failed"]

VARIANTS: tuple[Variant, ...] = ("baseline", "candidate")


class LatencyPercentiles(FrozenModel):
    """Latency distribution summary in milliseconds."""

    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    max: float = 0.0


class ResourceUsage(FrozenModel):
    """CPU and memory usage of the workload process during measurement."""

    cpu_percent_avg: float | None = None
    cpu_percent_max: float | None = None
    rss_max_mb: float | None = None
    samples: int = 0


class Metrics(FrozenModel):
    """Load generator results for one run."""

    requests_per_second: float = 0.0
    latency: LatencyPercentiles = Field(default_factory=LatencyPercentiles)
    sample_count: int = 0
    duration_millis: float = 0.0
    rps_stddev: float = 0.0
    throughput_windows: int = 0
    errors: int = 0
    complete: bool = True
    resources: ResourceUsage | None = None

    @classmethod
    def incomplete(cls) -> Metrics:
        """Empty metrics for a run that never produced a valid measurement."""
        return cls(complete=False)


class ExitStatus(FrozenModel):
    """How a run's workload process ended."""

    kind: ExitKind
    code: int | None = None

    @classmethod
    def success(cls) -> ExitStatus:
        return cls(kind="success")

    @classmethod
    def crashed(cls, code: int | None) -> ExitStatus:
        return cls(kind="crashed", code=code)

    @classmethod
    def timed_out(cls) -> ExitStatus:
        return cls(kind="timed_out")

    @classmethod
    def startup_failed(cls) -> ExitStatus:
        return cls(kind="startup_failed")

    @property
    def is_success(self) -> bool:
        return self.kind == "success"

    def describe(self) -> str:
        """Short human-readable form, e.g. ``crashed(1)``."""
        if self.kind == "crashed" and self.code is not None:
            return f"crashed({self.code})"
        return self.kind


class RunFailure(FrozenModel):
    """Why a run did not reach DONE cleanly."""

    error: str
    message: str
    state: str


class RunResult(FrozenModel):
    """Everything captured for one variant."""

    variant: Variant
    events: tuple[TraceEvent, ...] = ()
    metrics: Metrics = Field(default_factory=Metrics.incomplete)
    exit_status: ExitStatus
    failure: RunFailure | None = None
    attempts: int = 1
    skipped_lines: int = 0
    state_history: tuple[str, ...] = ()

    @property
    def usable(self) -> bool:
        """Whether this run's metrics may be used to compute deltas."""
        return self.exit_status.is_success and self.metrics.complete

    def event_counts(self) -> dict[str, int]:
        """Number of events per subject, sorted by subject."""
        counts = Counter(event.subject_id for event in self.events)
        return dict(sorted(counts.items()))

    def event_counts_by_kind(self) -> dict[str, int]:
        """Number of events per kind, sorted by kind."""
        counts = Counter(event.kind for event in self.events)
        return dict(sorted(counts.items()))
