# Copyright (c) Syntropy Systems
"""Tests for tierbench CLI commands."""

import json
import sys

from conftest import FAKE_WORKLOAD, free_port, make_run
from typer.testing import CliRunner

from tierbench.cli.main import app
from tierbench.correlate import correlate
from tierbench.render import to_json

runner = CliRunner()

TRACE = """\
[marking 0x1a2b <JSFunction foo (sfi = 0x2a)> for optimization to TURBOFAN, reason: hot and stable]
[completed optimizing 0x1a2b <JSFunction foo (sfi = 0x2a)> (target TURBOFAN)]
[Deoptimizing foo reason=wrong map]
[Deoptimizing bar reason=not a Smi]
some unrelated output
"""


def write_workload_config(directory, load_tool="builtin", executable=None):
    path = directory / "tierbench.yaml"
    port = free_port()
    _ = path.write_text(
        f"""\
workload:
  executable: {json.dumps(executable or sys.executable)}
  args: [{json.dumps(str(FAKE_WORKLOAD))}, "{{port}}", "{{selector}}"]
  url: http://127.0.0.1:{port}/
  selectors:
    baseline: steady
    candidate: steady
bench:
  warmup_requests: 2
  warmup_seconds: 0.1
  duration_seconds: 0.5
  connections: 2
  load_tool: {load_tool}
  ready_timeout_seconds: 10
  grace_millis: 2000
  sample_interval_seconds: 0.1
"""
    )
    return path


class TestParseCommand:
    """Tests for tierbench parse."""

    def test_parse_table(self, temp_dir):
        """Test the per-subject table."""
        trace = temp_dir / "trace.log"
        _ = trace.write_text(TRACE)

        result = runner.invoke(app, ["parse", str(trace)])

        assert result.exit_code == 0
        assert "foo" in result.stdout
        assert "bar" in result.stdout
        assert "3 events, 1 unrecognized lines" in result.stdout

    def test_parse_json(self, temp_dir):
        """Test --json output."""
        trace = temp_dir / "trace.log"
        _ = trace.write_text(TRACE)

        result = runner.invoke(app, ["parse", str(trace), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["events"] == 3
        assert data["skippedLines"] == 1
        assert data["byKind"] == {"deoptimize": 2, "optimize": 1}
        assert data["bySubject"]["foo"] == {"deoptimize": 1, "optimize": 1}

    def test_parse_missing_file(self, temp_dir):
        """Test a nonexistent trace file."""
        result = runner.invoke(app, ["parse", str(temp_dir / "missing.log")])

        assert result.exit_code == 1
        assert "File not found" in result.stdout


class TestRenderCommand:
    """Tests for tierbench render."""

    def write_report(self, temp_dir):
        report = correlate(
            make_run("baseline", rps=5000, p95=45),
            make_run("candidate", rps=12000, p95=18),
        )
        path = temp_dir / "report.json"
        _ = path.write_text(to_json(report))
        return path

    def test_render_console(self, temp_dir):
        """Test the default console rendering."""
        result = runner.invoke(app, ["render", str(self.write_report(temp_dir))])

        assert result.exit_code == 0
        assert "improved" in result.stdout

    def test_render_markdown(self, temp_dir):
        """Test --format markdown."""
        result = runner.invoke(
            app, ["render", str(self.write_report(temp_dir)), "--format", "markdown"]
        )

        assert result.exit_code == 0
        assert "# Comparison report" in result.stdout

    def test_render_json(self, temp_dir):
        """Test --format json reproduces the report."""
        path = self.write_report(temp_dir)

        result = runner.invoke(app, ["render", str(path), "--format", "json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == json.loads(path.read_text())

    def test_render_bad_format(self, temp_dir):
        """Test an unknown format."""
        result = runner.invoke(
            app, ["render", str(self.write_report(temp_dir)), "--format", "html"]
        )

        assert result.exit_code == 1

    def test_render_not_a_report(self, temp_dir):
        """Test a JSON file that is not a report."""
        path = temp_dir / "other.json"
        _ = path.write_text('{"hello": "world"}')

        result = runner.invoke(app, ["render", str(path)])

        assert result.exit_code == 1
        assert "Not a comparison report" in result.stdout


class TestDoctorCommand:
    """Tests for tierbench doctor."""

    def test_doctor_ok(self, temp_dir):
        """Test a config whose executable resolves."""
        config = write_workload_config(temp_dir)

        result = runner.invoke(app, ["doctor", str(config)])

        assert result.exit_code == 0
        assert "All checks passed" in result.stdout

    def test_doctor_missing_executable(self, temp_dir):
        """Test a config pointing at a missing executable."""
        config = write_workload_config(temp_dir, executable=str(temp_dir / "missing"))

        result = runner.invoke(app, ["doctor", str(config)])

        assert result.exit_code == 1
        assert "Workload executable not found" in result.stdout

    def test_doctor_bad_config(self, temp_dir):
        """Test a config that fails to load."""
        path = temp_dir / "tierbench.yaml"
        _ = path.write_text("bench:\n  load_tool: wrk\n")

        result = runner.invoke(app, ["doctor", str(path)])

        assert result.exit_code == 1


class TestCompareCommand:
    """Tests for tierbench compare."""

    def test_compare_writes_reports(self, temp_dir):
        """Test a full comparison with the built-in load driver."""
        config = write_workload_config(temp_dir)
        output = temp_dir / "report.json"
        markdown = temp_dir / "report.md"

        result = runner.invoke(
            app,
            ["compare", str(config), "--output", str(output), "--markdown", str(markdown)],
        )

        assert result.exit_code == 0, result.stdout
        data = json.loads(output.read_text())
        assert data["baseline"]["exitStatus"]["kind"] == "success"
        assert data["candidate"]["exitStatus"]["kind"] == "success"
        assert data["eventDiff"]["handle"] == {"baselineCount": 1, "candidateCount": 1}
        assert markdown.read_text().startswith("# Comparison report")

    def test_compare_missing_config(self, temp_dir):
        """Test a missing config file."""
        result = runner.invoke(app, ["compare", str(temp_dir / "missing.yaml")])

        assert result.exit_code == 1
        assert "Error" in result.stdout

    def test_compare_unknown_load_tool_override(self, temp_dir):
        """Test that --load-tool is validated before anything runs."""
        config = write_workload_config(temp_dir)

        result = runner.invoke(app, ["compare", str(config), "--load-tool", "wrk"])

        assert result.exit_code == 1
        assert "Unknown load tool" in result.stdout
