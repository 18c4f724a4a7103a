# Copyright (c) Syntropy Systems
"""Benchmark orchestration: one state machine per variant, run one after the other.

Each variant goes IDLE -> STARTING -> WARMING_UP -> MEASURING -> DRAINING -> DONE,
or ends in FAILED. Run-local failures never escape ``run_comparison``; they
become the exit status and failure annotation of that variant's RunResult.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from enum import Enum
from typing import TYPE_CHECKING

import httpx

from tierbench import runner
from tierbench.config import BenchConfig
from tierbench.correlate import correlate
from tierbench.errors import (
    InvalidTransition,
    LoadGeneratorFailure,
    RuntimeCrash,
    StartupFailure,
    TierbenchError,
    TimeoutExceeded,
)
from tierbench.load import LoadTarget, build_load_driver
from tierbench.models.run import VARIANTS, ExitStatus, Metrics, RunFailure, RunResult
from tierbench.parser import TraceBuffer
from tierbench.system_metrics import ProcessSampler

if TYPE_CHECKING:
    from tierbench.config import WorkloadSpec
    from tierbench.load import LoadDriver
    from tierbench.models.report import ComparisonReport
    from tierbench.models.run import Variant

logger = logging.getLogger(__name__)

READY_POLL_SECONDS = 0.05
HTTP_TIMEOUT_SECONDS = 5.0
# How long to wait for the output stream to close after the process exited
OUTPUT_DRAIN_SECONDS = 2.0


class RunState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    WARMING_UP = "warming_up"
    MEASURING = "measuring"
    DRAINING = "draining"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.STARTING, RunState.FAILED}),
    RunState.STARTING: frozenset({RunState.WARMING_UP, RunState.FAILED}),
    RunState.WARMING_UP: frozenset({RunState.MEASURING, RunState.FAILED}),
    RunState.MEASURING: frozenset({RunState.DRAINING, RunState.FAILED}),
    RunState.DRAINING: frozenset({RunState.DONE, RunState.FAILED}),
    RunState.DONE: frozenset(),
    RunState.FAILED: frozenset(),
}


class VariantRun:
    """One attempt at running one variant.

    Owns the workload process, the trace buffer fed from its output, and the
    metrics of the measurement window.
    """

    variant: Variant
    state: RunState
    history: list[RunState]
    buffer: TraceBuffer

    def __init__(
        self,
        variant: Variant,
        workload: WorkloadSpec,
        config: BenchConfig,
        load_driver: LoadDriver,
        *,
        attempt: int = 1,
    ) -> None:
        self.variant = variant
        self.workload = workload
        self.config = config
        self.load_driver = load_driver
        self.attempt = attempt
        self.state = RunState.IDLE
        self.history = [RunState.IDLE]
        self.buffer = TraceBuffer()

        self._ready_pattern: re.Pattern[str] | None = None
        self._ready = asyncio.Event()
        self._handle: runner.RunHandle | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[int] | None = None
        self._flushed = False
        self._metrics: Metrics | None = None
        self._exit_status: ExitStatus | None = None
        self._failure: RunFailure | None = None
        self._error: Exception | None = None

    def transition(self, new: RunState) -> None:
        """Move to ``new``, refusing anything the state table does not allow."""
        if new not in TRANSITIONS[self.state]:
            msg = f"{self.variant}: illegal transition {self.state.value} -> {new.value}"
            raise InvalidTransition(msg)
        logger.info("%s: %s -> %s", self.variant, self.state.value, new.value)
        self.state = new
        self.history.append(new)

    @property
    def retryable(self) -> bool:
        """Only failures before measurement began may be retried."""
        return isinstance(self._error, StartupFailure)

    async def execute(self) -> RunResult:
        """Drive the state machine to DONE or FAILED and return the result."""
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as client:
                await self._start(client)
                await self._warm_up(client)
            metrics = await self._measure()
            await self._drain()
            self.transition(RunState.DONE)
            self._metrics = metrics
            self._exit_status = ExitStatus.success()
        except StartupFailure as e:
            self._fail(e, ExitStatus.startup_failed())
        except (RuntimeCrash, LoadGeneratorFailure) as e:
            self._fail(e, ExitStatus.crashed(e.code))
        except Exception as e:
            logger.exception("%s: unexpected error in %s", self.variant, self.state.value)
            if self.state in (RunState.IDLE, RunState.STARTING):
                self._fail(e, ExitStatus.startup_failed())
            else:
                self._fail(e, ExitStatus.crashed(self._exit_code()))
        except asyncio.CancelledError:
            self._fail(
                TimeoutExceeded(f"{self.variant} run cancelled by its time budget"),
                ExitStatus.timed_out(),
            )
            raise
        finally:
            await self._cleanup()
        return self.result()

    def result(self) -> RunResult:
        """Freeze what this attempt captured into a RunResult."""
        exit_status = self._exit_status
        if exit_status is None:
            exit_status = ExitStatus.timed_out()
        return RunResult(
            variant=self.variant,
            events=self.buffer.events,
            metrics=self._metrics if self._metrics is not None else Metrics.incomplete(),
            exit_status=exit_status,
            failure=self._failure,
            attempts=self.attempt,
            skipped_lines=self.buffer.skipped,
            state_history=tuple(state.value for state in self.history),
        )

    def _fail(self, error: Exception, status: ExitStatus) -> None:
        failed_in = self.state
        if failed_in not in (RunState.DONE, RunState.FAILED):
            self.transition(RunState.FAILED)
        self._error = error
        self._exit_status = status
        self._failure = RunFailure(
            error=type(error).__name__,
            message=str(error),
            state=failed_in.value,
        )
        logger.warning("%s failed in %s: %s", self.variant, failed_in.value, error)

    def _exit_code(self) -> int | None:
        if self._exit_task is None or not self._exit_task.done():
            return None
        return self._exit_task.result()

    async def _consume_output(self, handle: runner.RunHandle) -> None:
        async for line in handle.lines():
            _ = self.buffer.feed(line.text, line.timestamp_millis)
            if (
                self._ready_pattern is not None
                and not self._ready.is_set()
                and self._ready_pattern.search(line.text)
            ):
                self._ready.set()

    async def _start(self, client: httpx.AsyncClient) -> None:
        self.transition(RunState.STARTING)
        if self.workload.ready_pattern:
            self._ready_pattern = re.compile(self.workload.ready_pattern)
        handle = await runner.start(
            self.workload.executable,
            self.workload.command(self.variant),
            self.workload.env,
            cwd=self.workload.cwd,
        )
        self._handle = handle
        self._consumer = asyncio.create_task(self._consume_output(handle))
        self._exit_task = asyncio.create_task(handle.wait())
        await self._wait_ready(client)

    async def _wait_ready(self, client: httpx.AsyncClient) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.ready_timeout_seconds
        while True:
            code = self._exit_code()
            if code is not None:
                msg = f"{self.variant} workload exited with code {code} before it was ready"
                raise StartupFailure(msg)
            if self._ready_pattern is not None:
                if self._ready.is_set():
                    return
            else:
                try:
                    _ = await client.get(self.workload.url)
                except httpx.HTTPError:
                    pass
                else:
                    return
            if loop.time() >= deadline:
                msg = (
                    f"{self.variant} workload not ready after "
                    f"{self.config.ready_timeout_seconds:g}s"
                )
                raise StartupFailure(msg)
            await asyncio.sleep(READY_POLL_SECONDS)

    async def _warm_up(self, client: httpx.AsyncClient) -> None:
        self.transition(RunState.WARMING_UP)
        loop = asyncio.get_running_loop()
        total = self.config.warmup_requests
        started = loop.time()
        spacing = self.config.warmup_seconds / total if total else 0.0
        failures = 0

        for i in range(total):
            self._raise_if_exited_during_warm_up()
            try:
                _ = await client.get(self.workload.url)
            except httpx.HTTPError:
                failures += 1
            delay = started + (i + 1) * spacing - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)

        remaining = started + self.config.warmup_seconds - loop.time()
        if remaining > 0:
            await asyncio.sleep(remaining)
        self._raise_if_exited_during_warm_up()
        if failures:
            logger.warning(
                "%s: %d/%d warm-up requests failed", self.variant, failures, total
            )

    def _raise_if_exited_during_warm_up(self) -> None:
        code = self._exit_code()
        if code is not None:
            msg = f"{self.variant} workload exited with code {code} during warm-up"
            raise StartupFailure(msg)

    def _require_process(self) -> tuple[runner.RunHandle, asyncio.Task[int]]:
        if self._handle is None or self._exit_task is None:
            msg = f"{self.variant}: no workload process in {self.state.value}"
            raise InvalidTransition(msg)
        return self._handle, self._exit_task

    async def _measure(self) -> Metrics:
        self.transition(RunState.MEASURING)
        handle, exit_task = self._require_process()

        target = LoadTarget(
            url=self.workload.url,
            connections=self.config.connections,
            duration_seconds=self.config.duration_seconds,
            pipelining=self.config.pipelining,
        )
        sampler = ProcessSampler(handle.pid, self.config.sample_interval_seconds)
        sampler.start()
        load_task = asyncio.create_task(self.load_driver.run(target))
        try:
            done, _ = await asyncio.wait(
                {load_task, exit_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            resources = await sampler.stop()
            if not load_task.done():
                _ = load_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await load_task

        # Finished load wins a tie with the exit; _drain judges the exit code
        if load_task in done and load_task.exception() is None:
            metrics = load_task.result()
            return metrics.model_copy(update={"resources": resources})

        if exit_task.done():
            code = exit_task.result()
            msg = f"{self.variant} workload exited with code {code} during measurement"
            raise RuntimeCrash(msg, code=code)

        error = load_task.exception()
        if isinstance(error, TierbenchError):
            raise error
        msg = f"Load generator failed: {error!r}"
        raise LoadGeneratorFailure(msg) from error

    async def _drain(self) -> None:
        self.transition(RunState.DRAINING)
        handle, _ = self._require_process()
        code = self._exit_code()
        if code is not None and code != 0:
            msg = f"{self.variant} workload exited with code {code} before it was stopped"
            raise RuntimeCrash(msg, code=code)
        _ = await runner.stop(handle, self.config.grace_millis)
        await self._finish_output()

    async def _finish_output(self) -> None:
        """Read the output stream to its end and flush the parser, once."""
        if self._consumer is not None:
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._consumer), timeout=OUTPUT_DRAIN_SECONDS
                )
            except asyncio.TimeoutError:
                # Something else still holds the pipe open
                logger.warning("%s: output did not close, dropping the rest", self.variant)
                _ = self._consumer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._consumer
        if not self._flushed:
            self._flushed = True
            elapsed = self._handle.elapsed_millis() if self._handle is not None else 0.0
            _ = self.buffer.flush(elapsed)

    async def _cleanup(self) -> None:
        if self._handle is not None and self._handle.is_running:
            _ = await runner.stop(self._handle, self.config.grace_millis)
        await self._finish_output()
        if self._exit_task is not None and not self._exit_task.done():
            _ = self._exit_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._exit_task


def _budget_exhausted(variant: Variant, attempts: int) -> RunResult:
    return RunResult(
        variant=variant,
        exit_status=ExitStatus.timed_out(),
        failure=RunFailure(
            error=TimeoutExceeded.__name__,
            message="total time budget exhausted before the run started",
            state=RunState.IDLE.value,
        ),
        attempts=attempts,
        state_history=(RunState.IDLE.value, RunState.FAILED.value),
    )


async def run_variant(
    variant: Variant,
    workload: WorkloadSpec,
    config: BenchConfig,
    load_driver: LoadDriver,
    *,
    deadline: float | None = None,
) -> RunResult:
    """Run one variant, retrying startup failures, within its time budget.

    ``deadline`` is an event-loop time after which nothing may still run.
    """
    loop = asyncio.get_running_loop()
    variant_deadline = loop.time() + config.run_timeout_seconds
    if deadline is not None:
        variant_deadline = min(variant_deadline, deadline)

    max_attempts = 1 + max(0, config.startup_retries)
    result: RunResult | None = None
    attempt = 1
    while True:
        remaining = variant_deadline - loop.time()
        if remaining <= 0:
            logger.warning("%s: no time left, not starting attempt %d", variant, attempt)
            return result if result is not None else _budget_exhausted(variant, attempt)

        run = VariantRun(variant, workload, config, load_driver, attempt=attempt)
        try:
            result = await asyncio.wait_for(run.execute(), timeout=remaining)
        except asyncio.TimeoutError:
            return run.result()

        if not run.retryable or attempt >= max_attempts:
            return result
        logger.warning(
            "%s: startup failed on attempt %d/%d, retrying",
            variant,
            attempt,
            max_attempts,
        )
        attempt += 1


async def run_comparison(
    workload: WorkloadSpec,
    config: BenchConfig | None = None,
    *,
    load_driver: LoadDriver | None = None,
) -> ComparisonReport:
    """Run baseline then candidate and correlate them.

    The variants never overlap: the baseline's process is fully stopped
    before the candidate's is spawned, so the workload port has one owner.
    """
    if config is None:
        config = BenchConfig()
    if load_driver is None:
        load_driver = build_load_driver(config)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + config.total_timeout_seconds

    results: dict[str, RunResult] = {}
    for variant in VARIANTS:
        results[variant] = await run_variant(
            variant, workload, config, load_driver, deadline=deadline
        )
        logger.info(
            "%s finished: %s, %d events",
            variant,
            results[variant].exit_status.describe(),
            len(results[variant].events),
        )

    return correlate(results["baseline"], results["candidate"], config.thresholds())
