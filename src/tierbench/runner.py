# Copyright (c) Syntropy Systems
"""Async process runner with orphan prevention and line-exact output capture."""
from __future__ import annotations

import asyncio
import codecs
import contextlib
import ctypes
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tierbench.errors import StartupFailure

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping, Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 4096


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so child dies when parent dies.

    This prevents orphan workloads when the harness crashes.
    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


@dataclass(frozen=True)
class OutputLine:
    """One complete line of child output."""

    text: str
    timestamp_millis: float


class LineSplitter:
    """Turns arbitrary byte chunks into complete text lines.

    A line is complete only at ``\\n``; a trailing ``\\r`` is dropped. Bytes of
    a multi-byte character split across chunks are decoded once whole.
    """

    _partial: str

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._partial = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return the lines it completed."""
        text = self._partial + self._decoder.decode(chunk)
        *complete, self._partial = text.split("\n")
        return [_strip_cr(line) for line in complete]

    def flush(self) -> list[str]:
        """Return the dangling partial line, if any, at end of stream."""
        text = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        return [_strip_cr(text)] if text else []

    @property
    def pending(self) -> str:
        return self._partial


def _strip_cr(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line


class RunHandle:
    """A running child process and its merged stdout/stderr line stream.

    Output is pumped by a background task as soon as the handle exists, so the
    child never blocks on a full pipe even before anyone iterates ``lines()``.
    """

    argv: list[str]
    _process: asyncio.subprocess.Process
    _started: float
    _queue: asyncio.Queue[OutputLine | None]
    _eof: bool
    _pump: asyncio.Task[None]

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        argv: list[str],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.argv = argv
        self._process = process
        self._chunk_size = chunk_size
        self._started = time.monotonic()
        self._queue = asyncio.Queue()
        self._eof = False
        self._pump = asyncio.create_task(self._read_output())

    def elapsed_millis(self) -> float:
        """Milliseconds since the process was started."""
        return (time.monotonic() - self._started) * 1000.0

    async def _read_output(self) -> None:
        stream = self._process.stdout
        splitter = LineSplitter()
        try:
            if stream is None:
                return
            while True:
                chunk = await stream.read(self._chunk_size)
                if not chunk:
                    break
                now = self.elapsed_millis()
                for text in splitter.feed(chunk):
                    self._queue.put_nowait(OutputLine(text, now))
            for text in splitter.flush():
                self._queue.put_nowait(OutputLine(text, self.elapsed_millis()))
        finally:
            self._queue.put_nowait(None)

    async def lines(self) -> AsyncIterator[OutputLine]:
        """Yield output lines in arrival order until the child closes its output."""
        while not self._eof:
            item = await self._queue.get()
            if item is None:
                self._eof = True
                return
            yield item

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await self._process.wait()

    def send_signal(self, sig: signal.Signals) -> None:
        """Signal the whole process group, falling back to the process."""
        if self._process.returncode is not None:
            return
        pgid = self.pgid
        if pgid is not None:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(pgid, sig)
                return
        with contextlib.suppress(ProcessLookupError):
            self._process.send_signal(sig)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def pgid(self) -> int | None:
        """Get the process group ID."""
        try:
            return os.getpgid(self._process.pid)
        except (OSError, ProcessLookupError):
            return None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def is_running(self) -> bool:
        return self._process.returncode is None


async def start(
    executable_path: str | Path,
    args: Sequence[str] = (),
    env: Mapping[str, str] | None = None,
    *,
    cwd: str | Path | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> RunHandle:
    """Spawn a child in its own process group with stderr merged into stdout.

    Raises:
        StartupFailure: the executable could not be spawned at all.

    """
    merged_env = os.environ.copy()
    if env:
        merged_env.update(env)
    argv = [str(executable_path), *args]

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=merged_env,
            cwd=str(cwd) if cwd is not None else None,
            start_new_session=True,  # Creates new process group
            preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
        )
    except (OSError, ValueError) as e:
        msg = f"Could not start {argv[0]}: {e}"
        raise StartupFailure(msg) from e

    logger.debug("Started %s (pid %d)", " ".join(argv), process.pid)
    return RunHandle(process, argv, chunk_size=chunk_size)


async def stop(handle: RunHandle, grace_millis: float = 5000.0) -> int:
    """Stop the child, escalating from SIGTERM to SIGKILL.

    Args:
        handle: Process to stop
        grace_millis: Milliseconds to wait after SIGTERM before SIGKILL

    Returns:
        Exit code (negative signal number if killed)

    """
    if handle.returncode is not None:
        return handle.returncode

    handle.send_signal(signal.SIGTERM)
    try:
        return await asyncio.wait_for(handle.wait(), timeout=grace_millis / 1000.0)
    except asyncio.TimeoutError:
        logger.warning(
            "pid %d still alive %.0fms after SIGTERM, sending SIGKILL",
            handle.pid,
            grace_millis,
        )

    handle.send_signal(signal.SIGKILL)
    return await handle.wait()
