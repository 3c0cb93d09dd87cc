# Copyright (c) Syntropy Systems
"""Main CLI entry point for qcpool."""

import typer

from qcpool.cli.doctor import doctor
from qcpool.cli.run import run

app = typer.Typer(
    name="qcpool",
    help=(
        "Run a participant-level analysis tool across many participants, "
        "a bounded number at a time."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command(context_settings={"allow_extra_args": True})(run)
_ = app.command()(doctor)


if __name__ == "__main__":
    app()
