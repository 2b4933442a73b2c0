"""taphost CLI — Entry point.

Usage:
    taphost plugins list
    taphost plugins inspect <name> [--json]
    taphost plugins enable <name> [--cascade]
    taphost plugins disable <name>
    taphost plugins order
    taphost taps list
    taphost taps dispatch <tap> [--args JSON]
"""

from __future__ import annotations

import typer

from taphost.cli.commands import plugins, taps

app = typer.Typer(
    name="taphost",
    help="taphost — Sandboxed WebAssembly plugin host.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)

app.add_typer(plugins.app, name="plugins")
app.add_typer(taps.app, name="taps")


@app.callback()
def main_callback() -> None:
    pass


if __name__ == "__main__":
    app()
