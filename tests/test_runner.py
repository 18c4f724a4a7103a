# Copyright (c) Syntropy Systems
"""Tests for the process runner and line splitting."""

import signal
import sys

import pytest

from tierbench import runner
from tierbench.errors import StartupFailure
from tierbench.runner import LineSplitter


class TestLineSplitter:
    """Tests for turning byte chunks into lines."""

    def test_lines_only_complete_at_newline(self):
        """Test that a partial line is held back."""
        splitter = LineSplitter()

        assert splitter.feed(b"first\nsec") == ["first"]
        assert splitter.pending == "sec"
        assert splitter.feed(b"ond\n") == ["second"]
        assert splitter.pending == ""

    def test_crlf_is_stripped(self):
        """Test that Windows line endings are normalized."""
        splitter = LineSplitter()

        assert splitter.feed(b"one\r\ntwo\r") == ["one"]
        assert splitter.feed(b"\n") == ["two"]

    def test_multibyte_character_split_across_chunks(self):
        """Test that a UTF-8 sequence split between chunks decodes once whole."""
        data = "[Deoptimizing café reason=x]\n".encode("utf-8")
        split = data.index(b"\xc3") + 1
        splitter = LineSplitter()

        assert splitter.feed(data[:split]) == []
        assert splitter.feed(data[split:]) == ["[Deoptimizing café reason=x]"]

    def test_one_byte_chunks(self):
        """Test feeding a byte at a time."""
        data = b"a\nbb\n\nccc"
        splitter = LineSplitter()
        lines = []

        for i in range(len(data)):
            lines.extend(splitter.feed(data[i : i + 1]))

        assert lines == ["a", "bb", ""]
        assert splitter.flush() == ["ccc"]
        assert splitter.flush() == []

    def test_invalid_bytes_are_replaced(self):
        """Test that undecodable bytes do not raise."""
        splitter = LineSplitter()

        assert splitter.feed(b"bad \xff byte\n") == ["bad � byte"]


class TestRunner:
    """Tests for starting and stopping child processes."""

    @pytest.mark.asyncio
    async def test_start_captures_stdout_and_stderr(self):
        """Test that both streams arrive as lines in order."""
        code = (
            "import sys\n"
            "print('out one', flush=True)\n"
            "print('err one', file=sys.stderr, flush=True)\n"
            "print('out two', flush=True)\n"
        )
        handle = await runner.start(sys.executable, ["-c", code])

        lines = [line.text async for line in handle.lines()]

        assert await handle.wait() == 0
        assert lines == ["out one", "err one", "out two"]

    @pytest.mark.asyncio
    async def test_line_timestamps_do_not_decrease(self):
        """Test that output timestamps are monotonic."""
        handle = await runner.start(
            sys.executable, ["-c", "for i in range(20): print(i, flush=True)"]
        )

        stamps = [line.timestamp_millis async for line in handle.lines()]

        assert len(stamps) == 20
        assert stamps == sorted(stamps)

    @pytest.mark.asyncio
    async def test_env_is_passed(self):
        """Test that extra environment variables reach the child."""
        handle = await runner.start(
            sys.executable,
            ["-c", "import os; print(os.environ['TIERBENCH_TEST'])"],
            {"TIERBENCH_TEST": "hello"},
        )

        lines = [line.text async for line in handle.lines()]

        assert lines == ["hello"]

    @pytest.mark.asyncio
    async def test_missing_executable_is_startup_failure(self, temp_dir):
        """Test that spawning a nonexistent binary raises StartupFailure."""
        with pytest.raises(StartupFailure):
            _ = await runner.start(temp_dir / "no-such-binary")

    @pytest.mark.asyncio
    async def test_stop_terminates_process(self):
        """Test that SIGTERM stops a well-behaved child."""
        handle = await runner.start(sys.executable, ["-c", "import time; time.sleep(60)"])

        code = await runner.stop(handle, grace_millis=5000)

        assert code == -signal.SIGTERM
        assert not handle.is_running

    @pytest.mark.asyncio
    async def test_stop_escalates_to_sigkill(self):
        """Test that a child ignoring SIGTERM is killed after the grace period."""
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(60)\n"
        )
        handle = await runner.start(sys.executable, ["-c", code])
        lines = handle.lines()
        first = await lines.__anext__()
        assert first.text == "ready"

        result = await runner.stop(handle, grace_millis=200)

        assert result == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_stop_after_exit_returns_code(self):
        """Test stopping a process that already exited."""
        handle = await runner.start(sys.executable, ["-c", "raise SystemExit(3)"])
        _ = await handle.wait()

        assert await runner.stop(handle) == 3
