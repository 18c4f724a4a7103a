# Copyright (c) Syntropy Systems
"""Tests for YAML configuration loading."""

import os
from pathlib import Path

import pytest

from tierbench.config import (
    CONFIG_FILENAME,
    BenchConfig,
    WorkloadSpec,
    find_config_file,
    load_config,
    load_workload,
)
from tierbench.errors import ConfigError

CONFIG = """\
workload:
  executable: node
  args: ["server.js", "--port", "{port}", "--mode", "{selector}"]
  url: http://127.0.0.1:8080/
  selectors:
    baseline: megamorphic
    candidate: monomorphic
  env:
    NODE_OPTIONS: --trace-opt --trace-deopt
  cwd: app
bench:
  duration_seconds: 20
  connections: 50
  load_tool: builtin
  improvement_pct: 5
"""


def write_config(directory: Path, text: str = CONFIG) -> Path:
    path = directory / CONFIG_FILENAME
    _ = path.write_text(text)
    return path


class TestLoadConfig:
    """Tests for the bench section."""

    def test_defaults(self):
        """Test the default knobs."""
        config = BenchConfig()

        assert config.warmup_requests == 200
        assert config.duration_seconds == 10.0
        assert config.connections == 100
        assert config.startup_retries == 1
        assert config.grace_millis == 5000.0
        assert config.load_tool == "autocannon"

    def test_values_override_defaults(self, temp_dir):
        """Test that YAML values replace defaults and keep their types."""
        config = load_config(write_config(temp_dir))

        assert config.duration_seconds == 20.0
        assert isinstance(config.duration_seconds, float)
        assert config.connections == 50
        assert config.load_tool == "builtin"
        assert config.warmup_requests == 200
        assert config.thresholds().improvement_pct == 5.0

    def test_missing_bench_section(self, temp_dir):
        """Test a file with only a workload section."""
        config = load_config(write_config(temp_dir, "workload:\n  executable: node\n"))

        assert config == BenchConfig()

    def test_bad_type(self, temp_dir):
        """Test that a non-numeric knob is rejected."""
        path = write_config(temp_dir, "bench:\n  connections: lots\n")

        with pytest.raises(ConfigError, match="connections"):
            _ = load_config(path)

    def test_bool_is_not_a_number(self, temp_dir):
        """Test that YAML booleans are rejected for numeric knobs."""
        path = write_config(temp_dir, "bench:\n  startup_retries: true\n")

        with pytest.raises(ConfigError):
            _ = load_config(path)

    def test_unknown_load_tool(self, temp_dir):
        """Test that load_tool is validated."""
        path = write_config(temp_dir, "bench:\n  load_tool: wrk\n")

        with pytest.raises(ConfigError, match="load_tool"):
            _ = load_config(path)

    def test_invalid_yaml(self, temp_dir):
        """Test that unparsable YAML becomes ConfigError."""
        path = write_config(temp_dir, "bench: [unclosed\n")

        with pytest.raises(ConfigError):
            _ = load_config(path)

    def test_missing_file(self, temp_dir):
        """Test that an explicit missing path is an error."""
        with pytest.raises(ConfigError, match="not found"):
            _ = load_config(temp_dir / "nope.yaml")

    def test_find_config_walks_up(self, temp_dir):
        """Test that the nearest config file above a directory is found."""
        path = write_config(temp_dir)
        nested = temp_dir / "a" / "b"
        nested.mkdir(parents=True)

        assert find_config_file(nested) == path.resolve()

    def test_load_config_without_path_uses_cwd(self, temp_dir):
        """Test discovery from the working directory."""
        _ = write_config(temp_dir)
        original = Path.cwd()
        os.chdir(temp_dir)
        try:
            config = load_config()
        finally:
            os.chdir(original)

        assert config.connections == 50


class TestLoadWorkload:
    """Tests for the workload section."""

    def test_full_workload(self, temp_dir):
        """Test every workload field."""
        workload = load_workload(write_config(temp_dir))

        assert workload.executable == "node"
        assert workload.url == "http://127.0.0.1:8080/"
        assert workload.port == 8080
        assert workload.selector("baseline") == "megamorphic"
        assert workload.env == {"NODE_OPTIONS": "--trace-opt --trace-deopt"}
        assert workload.cwd == str((temp_dir / "app").resolve())

    def test_command_placeholders(self, temp_dir):
        """Test that args are filled in per variant."""
        workload = load_workload(write_config(temp_dir))

        assert workload.command("candidate") == [
            "server.js",
            "--port",
            "8080",
            "--mode",
            "monomorphic",
        ]

    def test_bad_placeholder(self):
        """Test that an unknown placeholder is a ConfigError."""
        workload = WorkloadSpec(executable="node", args=["{nope}"])

        with pytest.raises(ConfigError, match="placeholder"):
            _ = workload.command("baseline")

    def test_default_port(self):
        """Test the scheme's default port."""
        assert WorkloadSpec(executable="x", url="http://localhost/").port == 80
        assert WorkloadSpec(executable="x", url="https://localhost/").port == 443

    def test_executable_required(self, temp_dir):
        """Test that a workload without an executable is rejected."""
        path = write_config(temp_dir, "workload:\n  args: [a]\n")

        with pytest.raises(ConfigError, match="executable"):
            _ = load_workload(path)

    def test_args_must_be_list(self, temp_dir):
        """Test that a string args value is rejected."""
        path = write_config(temp_dir, "workload:\n  executable: node\n  args: server.js\n")

        with pytest.raises(ConfigError, match="args"):
            _ = load_workload(path)

    def test_port_out_of_range(self, temp_dir):
        """Test that a URL port above 65535 is rejected at load time."""
        path = write_config(
            temp_dir, "workload:\n  executable: node\n  url: http://127.0.0.1:99999/\n"
        )

        with pytest.raises(ConfigError, match="workload.url"):
            _ = load_workload(path)

    def test_non_http_url(self, temp_dir):
        """Test that only http and https URLs are accepted."""
        path = write_config(
            temp_dir, "workload:\n  executable: node\n  url: ftp://127.0.0.1:21/\n"
        )

        with pytest.raises(ConfigError, match="http"):
            _ = load_workload(path)

    def test_invalid_ready_pattern(self, temp_dir):
        """Test that a ready_pattern that does not compile is rejected."""
        path = write_config(
            temp_dir, 'workload:\n  executable: node\n  ready_pattern: "[unclosed"\n'
        )

        with pytest.raises(ConfigError, match="ready_pattern"):
            _ = load_workload(path)

    def test_valid_ready_pattern(self, temp_dir):
        """Test that a compiling ready_pattern is kept."""
        path = write_config(
            temp_dir, 'workload:\n  executable: node\n  ready_pattern: "listening on \\\\d+"\n'
        )

        assert load_workload(path).ready_pattern == r"listening on \d+"

    def test_non_mapping_file(self, temp_dir):
        """Test that a YAML list at the top level is rejected."""
        path = write_config(temp_dir, "- one\n- two\n")

        with pytest.raises(ConfigError, match="mapping"):
            _ = load_workload(path)
