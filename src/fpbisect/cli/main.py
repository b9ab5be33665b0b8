# Copyright (c) Syntropy Systems
"""Main CLI entry point for fpbisect."""

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from fpbisect.cli.auto import auto
from fpbisect.cli.bisect_cmd import bisect
from fpbisect.cli.doctor import doctor
from fpbisect.cli.init_cmd import init

app = typer.Typer(
    name="fpbisect",
    help=(
        "Floating-point divergence bisection. Find the files, then the "
        "functions, whose compiler flags change your results."
    ),
    no_args_is_help=True,
    add_completion=False,
)


def _setup_logging(verbose: bool) -> None:
    package_logger = logging.getLogger("fpbisect")
    for handler in list(package_logger.handlers):
        if isinstance(handler, RichHandler):
            package_logger.removeHandler(handler)

    handler = RichHandler(console=Console(stderr=True), show_path=False)
    # The package logger stays at DEBUG for bisect.log; filter here instead
    handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Floating-point divergence bisection."""
    _setup_logging(verbose)


# Register commands
_ = app.command()(init)
_ = app.command()(bisect)
_ = app.command()(auto)
_ = app.command()(doctor)


if __name__ == "__main__":
    app()
