# Copyright (c) Syntropy Systems
"""Render command - show a saved JSON report."""

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console

from tierbench.render import from_json, print_report, to_json, to_markdown

console = Console()

FORMATS = ("console", "markdown", "json")


def render(
    report_path: Path = typer.Argument(..., help="JSON report written by 'compare -o'"),
    fmt: str = typer.Option(
        "console",
        "--format",
        "-f",
        help="console, markdown or json",
    ),
) -> None:
    """Render a saved comparison report.

    Examples:
        tierbench render report.json
        tierbench render report.json --format markdown > report.md

    """
    if fmt not in FORMATS:
        console.print(f"[red]Format must be one of {', '.join(FORMATS)}[/red]")
        raise typer.Exit(1)

    if not report_path.is_file():
        console.print(f"[red]Report not found: {report_path}[/red]")
        raise typer.Exit(1)

    try:
        report = from_json(report_path.read_text())
    except ValidationError as e:
        console.print(f"[red]Not a comparison report:[/red] {e.error_count()} error(s)")
        raise typer.Exit(1)

    if fmt == "markdown":
        typer.echo(to_markdown(report))
    elif fmt == "json":
        typer.echo(to_json(report))
    else:
        print_report(report, console)
