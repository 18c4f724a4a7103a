# Copyright (c) Syntropy Systems
"""tierbench doctor command."""

import shutil
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from tierbench.config import find_config_file, load_config, load_workload
from tierbench.errors import ConfigError
from tierbench.load import AutocannonDriver

console = Console()


def doctor(
    config_path: Optional[Path] = typer.Argument(
        None,
        help="Config to check (default: nearest tierbench.yaml)",
    ),
) -> None:
    """Check that a comparison can run.

    Verifies:
    - config file exists and parses
    - workload executable resolves
    - load tool is installed (when autocannon is selected)
    """
    issues: list[str] = []

    if config_path is None:
        config_path = find_config_file()
    if config_path is None:
        console.print("[red]✗[/red] No tierbench.yaml found")
        console.print("  Pass a config path or create tierbench.yaml")
        raise typer.Exit(1)

    try:
        config = load_config(config_path)
        workload = load_workload(config_path)
    except ConfigError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Config: {config_path}")

    # Check workload executable
    executable = workload.executable
    resolved = shutil.which(executable)
    if resolved is None and workload.cwd is not None:
        resolved = shutil.which(executable, path=workload.cwd)
    if resolved is None:
        console.print(f"[red]✗[/red] Workload executable not found: {executable}")
        issues.append("Workload executable missing")
    else:
        console.print(f"[green]✓[/green] Workload executable: {resolved}")

    # Check load tool
    if config.load_tool == "autocannon":
        driver = AutocannonDriver()
        if driver.available():
            console.print(f"[green]✓[/green] Load tool: {shutil.which(driver.binary)}")
        else:
            console.print("[red]✗[/red] autocannon not found on PATH")
            console.print("  Install with [bold]npm i -g autocannon[/bold] or set load_tool: builtin")
            issues.append("Load tool missing")
    else:
        console.print("[green]✓[/green] Load tool: built-in (httpx)")

    for variant in ("baseline", "candidate"):
        try:
            argv = workload.command(variant)
        except ConfigError as e:
            console.print(f"[red]✗[/red] {variant}: {e}")
            issues.append(f"Bad {variant} command")
            continue
        console.print(f"[dim]  {variant}: {executable} {' '.join(argv)}[/dim]")

    if issues:
        console.print(f"\n[red]{len(issues)} issue(s) found[/red]")
        raise typer.Exit(1)
    console.print("\n[green]All checks passed[/green]")
