# Copyright (c) Syntropy Systems
"""CPU and memory sampling of the workload process during measurement."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass

import psutil

from tierbench.models.run import ResourceUsage

logger = logging.getLogger(__name__)
BYTES_PER_MB = 1024**2


@dataclass
class ProcessSample:
    """One snapshot of a process tree."""

    cpu_percent: float
    rss_bytes: int


def summarize(samples: list[ProcessSample]) -> ResourceUsage:
    """Reduce snapshots to the ResourceUsage recorded on Metrics."""
    if not samples:
        return ResourceUsage()
    cpu = [s.cpu_percent for s in samples]
    return ResourceUsage(
        cpu_percent_avg=round(sum(cpu) / len(cpu), 2),
        cpu_percent_max=round(max(cpu), 2),
        rss_max_mb=round(max(s.rss_bytes for s in samples) / BYTES_PER_MB, 2),
        samples=len(samples),
    )


class ProcessSampler:
    """Background task that samples a process and its children.

    CPU percentages are relative to one core, summed over the tree. The first
    pass only primes psutil's CPU counters and is not recorded.
    """

    _pid: int
    _interval: float
    _procs: dict[int, psutil.Process]
    _samples: list[ProcessSample]
    _task: asyncio.Task[None] | None

    def __init__(self, pid: int, interval: float = 0.5) -> None:
        """Initialize sampler.

        Args:
            pid: Root process to sample
            interval: Sampling interval in seconds

        """
        self._pid = pid
        self._interval = interval
        self._procs = {}
        self._samples = []
        self._task = None

    def start(self) -> None:
        """Start background sampling."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._sampling_loop())

    async def stop(self) -> ResourceUsage:
        """Stop sampling and return the summary."""
        if self._task is not None:
            _ = self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        return summarize(self._samples)

    def sample_once(self) -> ProcessSample | None:
        """Take one snapshot. Returns None once the root process is gone."""
        try:
            root = self._procs.setdefault(self._pid, psutil.Process(self._pid))
            family = [root, *root.children(recursive=True)]
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

        cpu = 0.0
        rss = 0
        for proc in family:
            cached = self._procs.setdefault(proc.pid, proc)
            try:
                cpu += cached.cpu_percent(None)
                rss += cached.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return ProcessSample(cpu_percent=cpu, rss_bytes=rss)

    async def _sampling_loop(self) -> None:
        primed = False
        while True:
            sample = self.sample_once()
            if sample is None:
                logger.debug("pid %d gone, resource sampling stopped", self._pid)
                return
            if primed:
                self._samples.append(sample)
            primed = True
            await asyncio.sleep(self._interval)
