# Copyright (c) Syntropy Systems
"""Parse command - summarize a captured trace log."""
from __future__ import annotations

from collections import Counter, defaultdict
from pathlib import Path

import typer
from pydantic import TypeAdapter
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from tierbench.models.events import EVENT_KINDS
from tierbench.parser import parse_lines

console = Console()
_SUMMARY_ADAPTER = TypeAdapter(dict[str, object])


def parse(
    trace_file: Path = typer.Argument(..., help="Captured diagnostic output"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
) -> None:
    """Count trace events per subject in a captured log.

    Example:
        node --trace-opt --trace-deopt app.js > trace.log
        tierbench parse trace.log

    """
    if not trace_file.is_file():
        console.print(f"[red]File not found: {trace_file}[/red]")
        raise typer.Exit(1)

    with trace_file.open(encoding="utf-8", errors="replace") as f:
        buffer = parse_lines(f)

    by_subject: dict[str, Counter[str]] = defaultdict(Counter)
    for event in buffer.events:
        by_subject[event.subject_id][event.kind] += 1

    if as_json:
        summary: dict[str, object] = {
            "events": len(buffer.events),
            "skippedLines": buffer.skipped,
            "byKind": dict(sorted(Counter(e.kind for e in buffer.events).items())),
            "bySubject": {
                subject: dict(sorted(counts.items()))
                for subject, counts in sorted(by_subject.items())
            },
        }
        typer.echo(_SUMMARY_ADAPTER.dump_json(summary, indent=2).decode("utf-8"))
        return

    if not buffer.events:
        console.print("[yellow]No trace events found[/yellow]")
    else:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Subject", style="cyan")
        for kind in EVENT_KINDS:
            table.add_column(kind, justify="right")
        table.add_column("total", justify="right", style="bold")

        for subject, counts in sorted(
            by_subject.items(), key=lambda item: (-sum(item[1].values()), item[0])
        ):
            table.add_row(
                escape(subject),
                *[str(counts.get(kind, 0)) for kind in EVENT_KINDS],
                str(sum(counts.values())),
            )
        console.print(table)

    console.print(
        f"[dim]{len(buffer.events)} events, {buffer.skipped} unrecognized lines[/dim]"
    )
