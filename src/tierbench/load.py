# Copyright (c) Syntropy Systems
"""Load generator adapters.

The orchestrator only depends on ``LoadDriver.run(target) -> Metrics``. Two
drivers exist: one wrapping the external ``autocannon`` tool, and a built-in
closed-loop generator on httpx for machines without it.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import shutil
import statistics
import time
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import httpx
from pydantic import Field, ValidationError

from tierbench.errors import LoadGeneratorFailure
from tierbench.models.base import ExternalModel
from tierbench.models.run import LatencyPercentiles, Metrics

if TYPE_CHECKING:
    from tierbench.config import BenchConfig

logger = logging.getLogger(__name__)

# Extra time autocannon gets beyond the requested duration before it is killed
AUTOCANNON_SLACK_SECONDS = 15.0
ERROR_BACKOFF_SECONDS = 0.01


@dataclass(frozen=True)
class LoadTarget:
    """What to hit and how hard."""

    url: str
    connections: int = 100
    duration_seconds: float = 10.0
    pipelining: int = 1


class LoadDriver(Protocol):
    async def run(self, target: LoadTarget) -> Metrics:
        ...


def percentile(values: list[float], p: float) -> float:
    """Nearest-rank percentile; 0.0 for no values."""
    if not values:
        return 0.0
    s = sorted(values)
    idx = int(len(s) * p / 100)
    idx = min(idx, len(s) - 1)
    return s[idx]


class AutocannonHistogram(ExternalModel):
    """One of autocannon's ``latency``/``requests``/``throughput`` blocks."""

    average: float = 0.0
    mean: float = 0.0
    stddev: float = 0.0
    min: float = 0.0
    max: float = 0.0
    p50: float = 0.0
    p90: float | None = None
    p95: float | None = None
    p97_5: float | None = None
    p99: float = 0.0
    total: int | None = None
    total_count: int | None = Field(default=None, alias="totalCount")


class AutocannonResult(ExternalModel):
    """The JSON document ``autocannon --json`` prints when it finishes."""

    latency: AutocannonHistogram
    requests: AutocannonHistogram
    duration: float = 0.0
    errors: int = 0
    timeouts: int = 0
    non2xx: int = 0

    def p95_latency(self) -> float:
        """p95 in ms, interpolated between p90 and p97.5 when not reported."""
        lat = self.latency
        if lat.p95 is not None:
            return lat.p95
        if lat.p90 is not None and lat.p97_5 is not None:
            return lat.p90 + (lat.p97_5 - lat.p90) * (95.0 - 90.0) / (97.5 - 90.0)
        if lat.p97_5 is not None:
            return lat.p97_5
        return lat.p99

    def to_metrics(self) -> Metrics:
        completed = self.requests.total
        if completed is None:
            completed = self.latency.total_count or 0
        return Metrics(
            requests_per_second=self.requests.average or self.requests.mean,
            latency=LatencyPercentiles(
                p50=self.latency.p50,
                p95=self.p95_latency(),
                p99=self.latency.p99,
                max=self.latency.max,
            ),
            sample_count=completed,
            duration_millis=self.duration * 1000.0,
            rps_stddev=self.requests.stddev,
            # autocannon samples throughput once per second
            throughput_windows=max(1, round(self.duration)),
            errors=self.errors + self.timeouts + self.non2xx,
        )


def parse_autocannon_output(stdout: str) -> Metrics:
    """Parse the final JSON line of ``autocannon --json`` output.

    Raises:
        LoadGeneratorFailure: no parsable result in the output.

    """
    candidates = [line for line in stdout.splitlines() if line.lstrip().startswith("{")]
    if not candidates:
        msg = "autocannon produced no JSON result"
        raise LoadGeneratorFailure(msg)
    try:
        result = AutocannonResult.model_validate_json(candidates[-1])
    except ValidationError as e:
        msg = f"Unexpected autocannon result: {e.error_count()} validation error(s)"
        raise LoadGeneratorFailure(msg) from e
    return result.to_metrics()


class AutocannonDriver:
    """Runs the external autocannon tool and reads its JSON result."""

    binary: str

    def __init__(self, binary: str = "autocannon") -> None:
        self.binary = binary

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def argv(self, target: LoadTarget) -> list[str]:
        return [
            self.binary,
            "--json",
            "-c",
            str(target.connections),
            "-d",
            str(max(1, math.ceil(target.duration_seconds))),
            "-p",
            str(target.pipelining),
            target.url,
        ]

    async def run(self, target: LoadTarget) -> Metrics:
        argv = self.argv(target)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            msg = f"Could not start {self.binary}: {e}"
            raise LoadGeneratorFailure(msg) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=target.duration_seconds + AUTOCANNON_SLACK_SECONDS,
            )
        except asyncio.TimeoutError as e:
            await _kill(proc)
            msg = f"{self.binary} did not finish in time"
            raise LoadGeneratorFailure(msg) from e
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        if proc.returncode != 0:
            tail = stderr.decode(errors="replace").strip().splitlines()[-1:]
            msg = f"{self.binary} exited with code {proc.returncode}"
            if tail:
                msg = f"{msg}: {tail[0]}"
            raise LoadGeneratorFailure(msg, code=proc.returncode)

        return parse_autocannon_output(stdout.decode(errors="replace"))


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        _ = await proc.wait()


class HttpxLoadDriver:
    """Closed-loop load on httpx: ``connections`` workers issuing GETs back to back.

    Pipelining is not supported by httpx and is ignored.
    """

    _transport: httpx.AsyncBaseTransport | None
    _timeout: float

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._transport = transport
        self._timeout = timeout

    async def run(self, target: LoadTarget) -> Metrics:
        if target.pipelining > 1:
            logger.debug("Built-in load driver ignores pipelining=%d", target.pipelining)

        latencies: list[float] = []
        windows: Counter[int] = Counter()
        errors = 0
        limits = httpx.Limits(
            max_connections=target.connections,
            max_keepalive_connections=target.connections,
        )
        start = time.monotonic()
        deadline = start + target.duration_seconds

        async with httpx.AsyncClient(
            transport=self._transport, limits=limits, timeout=self._timeout
        ) as client:

            async def worker() -> None:
                nonlocal errors
                while time.monotonic() < deadline:
                    sent = time.monotonic()
                    try:
                        resp = await client.get(target.url)
                    except httpx.HTTPError:
                        errors += 1
                        await asyncio.sleep(ERROR_BACKOFF_SECONDS)
                        continue
                    done = time.monotonic()
                    if resp.status_code >= 400:
                        errors += 1
                        continue
                    latencies.append((done - sent) * 1000.0)
                    windows[int(done - start)] += 1

            _ = await asyncio.gather(*(worker() for _ in range(target.connections)))

        elapsed = time.monotonic() - start
        if not latencies:
            msg = f"No successful requests to {target.url} ({errors} errors)"
            raise LoadGeneratorFailure(msg)

        window_count = max(1, math.ceil(target.duration_seconds))
        per_window = [float(windows.get(i, 0)) for i in range(window_count)]
        return Metrics(
            requests_per_second=len(latencies) / elapsed,
            latency=LatencyPercentiles(
                p50=percentile(latencies, 50),
                p95=percentile(latencies, 95),
                p99=percentile(latencies, 99),
                max=max(latencies),
            ),
            sample_count=len(latencies),
            duration_millis=elapsed * 1000.0,
            rps_stddev=statistics.stdev(per_window) if len(per_window) > 1 else 0.0,
            throughput_windows=window_count,
            errors=errors,
        )


def build_load_driver(config: BenchConfig) -> LoadDriver:
    """Pick the driver named by ``config.load_tool``."""
    if config.load_tool == "builtin":
        return HttpxLoadDriver()
    return AutocannonDriver()
