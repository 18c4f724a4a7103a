# Copyright (c) Syntropy Systems
"""Main CLI entry point for tierbench."""

import typer

from tierbench.cli.compare import compare
from tierbench.cli.doctor import doctor
from tierbench.cli.parse import parse
from tierbench.cli.render_cmd import render

app = typer.Typer(
    name="tierbench",
    help=(
        "Benchmark two variants of a workload and correlate throughput with "
        "the runtime's optimization and deoptimization events."
    ),
    no_args_is_help=True,
    add_completion=False,
)


# Register commands
_ = app.command()(compare)
_ = app.command()(parse)
_ = app.command()(render)
_ = app.command()(doctor)


if __name__ == "__main__":
    app()
