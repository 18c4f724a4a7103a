# Copyright (c) Syntropy Systems
"""Configuration management for tierbench."""
from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, cast

import httpx
import yaml

from tierbench.errors import ConfigError
from tierbench.models.report import Thresholds

if TYPE_CHECKING:
    from tierbench.models.run import Variant

CONFIG_FILENAME = "tierbench.yaml"
LOAD_TOOLS = ("autocannon", "builtin")


@dataclass
class BenchConfig:
    """Knobs for one comparison. Every field has a usable default."""

    # Warm-up: requests spread over warmup_seconds before measuring
    warmup_requests: int = 200
    warmup_seconds: float = 5.0

    # Measurement window handed to the load generator
    duration_seconds: float = 10.0
    connections: int = 100
    pipelining: int = 1
    load_tool: str = "autocannon"

    # Budgets
    run_timeout_seconds: float = 120.0
    total_timeout_seconds: float = 300.0
    ready_timeout_seconds: float = 30.0

    # Retries after a startup failure (never after measuring began)
    startup_retries: int = 1

    # Grace period before SIGKILL after SIGTERM (milliseconds)
    grace_millis: float = 5000.0

    # Verdict thresholds, in percent
    improvement_pct: float = 10.0
    regression_pct: float = 10.0
    latency_tolerance_pct: float = 10.0

    # Workload CPU/RSS sampling interval during measurement
    sample_interval_seconds: float = 0.5

    def thresholds(self) -> Thresholds:
        """Verdict thresholds as the report model."""
        return Thresholds(
            improvement_pct=self.improvement_pct,
            regression_pct=self.regression_pct,
            latency_tolerance_pct=self.latency_tolerance_pct,
        )


@dataclass
class WorkloadSpec:
    """How to launch the workload and where it listens.

    ``args`` entries may use ``{variant}``, ``{selector}``, ``{port}`` and
    ``{url}`` placeholders.
    """

    executable: str
    args: list[str] = field(default_factory=list)
    url: str = "http://127.0.0.1:3000/"
    selectors: dict[str, str] = field(
        default_factory=lambda: {"baseline": "baseline", "candidate": "candidate"}
    )
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    ready_pattern: str | None = None

    @property
    def port(self) -> int | None:
        url = httpx.URL(self.url)
        return url.port or {"http": 80, "https": 443}.get(url.scheme)

    def selector(self, variant: Variant) -> str:
        return self.selectors.get(variant, variant)

    def command(self, variant: Variant) -> list[str]:
        """Argument list for one variant with placeholders filled in."""
        values = {
            "variant": variant,
            "selector": self.selector(variant),
            "port": "" if self.port is None else str(self.port),
            "url": self.url,
        }
        try:
            return [arg.format(**values) for arg in self.args]
        except (KeyError, IndexError, ValueError) as e:
            msg = f"Bad placeholder in workload args: {e}"
            raise ConfigError(msg) from e


def find_config_file(start_path: Path | None = None) -> Path | None:
    """Find the nearest tierbench.yaml by walking up from start_path.

    Returns None if no config file is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        current = current.parent

    # Check root
    candidate = current / CONFIG_FILENAME
    if candidate.is_file():
        return candidate

    return None


def _read_yaml(path: Path) -> dict[str, object]:
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        msg = f"Config file not found: {path}"
        raise ConfigError(msg) from e
    except yaml.YAMLError as e:
        msg = f"Unable to parse YAML config {path}: {e}"
        raise ConfigError(msg) from e

    if not isinstance(data, dict):
        msg = f"Config {path} must be a mapping"
        raise ConfigError(msg)
    return cast("dict[str, object]", data)


def _section(data: dict[str, object], name: str, path: Path) -> dict[str, object]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        msg = f"'{name}' in {path} must be a mapping"
        raise ConfigError(msg)
    return cast("dict[str, object]", section)


def load_config(path: Path | None = None) -> BenchConfig:
    """Load the ``bench:`` section of a config file over the defaults.

    Looks for config in:
    1. Provided path
    2. Nearest tierbench.yaml walking up from the working directory
    3. Defaults
    """
    config = BenchConfig()

    if path is None:
        path = find_config_file()
    if path is None:
        return config

    bench = _section(_read_yaml(path), "bench", path)
    for knob in fields(BenchConfig):
        if knob.name not in bench:
            continue
        value = bench[knob.name]
        default = getattr(config, knob.name)
        if isinstance(default, str):
            if not isinstance(value, str):
                msg = f"bench.{knob.name} must be a string"
                raise ConfigError(msg)
        elif isinstance(value, bool) or not isinstance(value, (int, float)):
            msg = f"bench.{knob.name} must be a number"
            raise ConfigError(msg)
        elif isinstance(default, int):
            value = int(value)
        else:
            value = float(value)
        setattr(config, knob.name, value)

    if config.load_tool not in LOAD_TOOLS:
        msg = f"bench.load_tool must be one of {', '.join(LOAD_TOOLS)}"
        raise ConfigError(msg)

    return config


def _check_url(url: str) -> None:
    try:
        parsed = httpx.URL(url)
        port = parsed.port
    except (httpx.InvalidURL, ValueError) as e:
        msg = f"workload.url is not a valid URL: {url}"
        raise ConfigError(msg) from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        msg = f"workload.url must be an http(s) URL with a host: {url}"
        raise ConfigError(msg)
    if port is not None and not 0 < port < 65536:
        msg = f"workload.url port out of range: {port}"
        raise ConfigError(msg)


def load_workload(path: Path) -> WorkloadSpec:
    """Load the ``workload:`` section of a config file."""
    workload = _section(_read_yaml(path), "workload", path)

    executable = workload.get("executable")
    if not executable or not isinstance(executable, str):
        msg = f"workload.executable is required in {path}"
        raise ConfigError(msg)

    args = workload.get("args", [])
    if not isinstance(args, list):
        msg = "workload.args must be a list"
        raise ConfigError(msg)

    workload_spec = WorkloadSpec(executable=executable, args=[str(a) for a in args])

    url = workload.get("url")
    if isinstance(url, str):
        _check_url(url)
        workload_spec.url = url
    selectors = workload.get("selectors")
    if isinstance(selectors, dict):
        workload_spec.selectors.update({str(k): str(v) for k, v in selectors.items()})
    env = workload.get("env")
    if isinstance(env, dict):
        workload_spec.env = {str(k): str(v) for k, v in env.items()}
    cwd = workload.get("cwd")
    if isinstance(cwd, str):
        # Relative to the config file, not the shell
        workload_spec.cwd = str((path.parent / cwd).resolve())
    ready_pattern = workload.get("ready_pattern")
    if isinstance(ready_pattern, str):
        try:
            _ = re.compile(ready_pattern)
        except re.error as e:
            msg = f"workload.ready_pattern is not a valid regex: {e}"
            raise ConfigError(msg) from e
        workload_spec.ready_pattern = ready_pattern

    return workload_spec
