# Copyright (c) Syntropy Systems
"""Pytest fixtures for tierbench tests."""

import socket
import sys
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from tierbench.config import BenchConfig, WorkloadSpec
from tierbench.models.run import ExitStatus, LatencyPercentiles, Metrics, RunResult

FAKE_WORKLOAD = Path(__file__).parent / "fake_workload.py"


def free_port() -> int:
    """Ask the kernel for a port nobody is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def make_run(
    variant="baseline",
    rps=1000.0,
    p95=10.0,
    *,
    rps_stddev=0.0,
    windows=10,
    events=(),
    exit_status=None,
    complete=True,
) -> RunResult:
    """Build a RunResult without running anything."""
    return RunResult(
        variant=variant,
        events=tuple(events),
        metrics=Metrics(
            requests_per_second=rps,
            latency=LatencyPercentiles(p50=p95 / 2, p95=p95, p99=p95 * 1.5, max=p95 * 2),
            sample_count=int(rps * windows),
            duration_millis=windows * 1000.0,
            rps_stddev=rps_stddev,
            throughput_windows=windows,
            complete=complete,
        ),
        exit_status=exit_status or ExitStatus.success(),
    )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_workload() -> WorkloadSpec:
    """A tiny HTTP workload run with the current interpreter.

    The baseline selector is ``steady``; the candidate selector is ``crash``,
    which exits with code 1 after printing three deopt lines when ``/crash``
    is requested.
    """
    port = free_port()
    return WorkloadSpec(
        executable=sys.executable,
        args=[str(FAKE_WORKLOAD), "{port}", "{selector}"],
        url=f"http://127.0.0.1:{port}/",
        selectors={"baseline": "steady", "candidate": "crash"},
    )


@pytest.fixture
def fast_config() -> BenchConfig:
    """Config with every phase shrunk to fractions of a second."""
    return BenchConfig(
        warmup_requests=3,
        warmup_seconds=0.1,
        duration_seconds=0.5,
        connections=2,
        load_tool="builtin",
        run_timeout_seconds=30.0,
        total_timeout_seconds=60.0,
        ready_timeout_seconds=10.0,
        grace_millis=2000.0,
        sample_interval_seconds=0.1,
    )
