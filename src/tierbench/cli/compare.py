# Copyright (c) Syntropy Systems
"""Compare command - run baseline and candidate and report the difference."""

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from tierbench.config import LOAD_TOOLS, load_config, load_workload
from tierbench.errors import ConfigError
from tierbench.orchestrator import run_comparison
from tierbench.render import print_report, to_json, to_markdown

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def compare(
    config_path: Path = typer.Argument(
        ...,
        help="YAML file with 'workload' and 'bench' sections",
    ),
    duration: Optional[float] = typer.Option(
        None, "--duration", "-d", help="Measurement window in seconds"
    ),
    connections: Optional[int] = typer.Option(
        None, "--connections", "-c", help="Concurrent load connections"
    ),
    warmup_requests: Optional[int] = typer.Option(
        None, "--warmup-requests", help="Requests issued during warm-up"
    ),
    warmup_seconds: Optional[float] = typer.Option(
        None, "--warmup-seconds", help="Length of the warm-up phase"
    ),
    load_tool: Optional[str] = typer.Option(
        None, "--load-tool", "-l", help="autocannon or builtin"
    ),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write the JSON report here"
    ),
    markdown: Optional[Path] = typer.Option(
        None, "--markdown", "-m", help="Write a markdown report here"
    ),
    fail_on_regression: bool = typer.Option(
        False,
        "--fail-on-regression",
        help="Exit with code 2 when the verdict is 'regressed'",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Benchmark the baseline and candidate variants and compare them.

    Example:
        tierbench compare tierbench.yaml --duration 20 -o report.json

    """
    _configure_logging(verbose)

    try:
        config = load_config(config_path)
        workload = load_workload(config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if load_tool is not None and load_tool not in LOAD_TOOLS:
        console.print(f"[red]Unknown load tool:[/red] {load_tool}")
        raise typer.Exit(1)

    overrides = {
        "duration_seconds": duration,
        "connections": connections,
        "warmup_requests": warmup_requests,
        "warmup_seconds": warmup_seconds,
        "load_tool": load_tool,
    }
    config = replace(config, **{k: v for k, v in overrides.items() if v is not None})

    console.print(
        f"[blue]Comparing[/blue] {workload.selector('baseline')} vs "
        f"{workload.selector('candidate')} at {workload.url}"
    )
    report = asyncio.run(run_comparison(workload, config))

    print_report(report, console)

    if output is not None:
        _ = output.write_text(to_json(report))
        console.print(f"[dim]JSON report written to {output}[/dim]")
    if markdown is not None:
        _ = markdown.write_text(to_markdown(report))
        console.print(f"[dim]Markdown report written to {markdown}[/dim]")

    if fail_on_regression and report.verdict == "regressed":
        raise typer.Exit(2)
