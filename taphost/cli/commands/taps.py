"""CLI — Tap listing and ad-hoc dispatch."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.syntax import Syntax
from rich.table import Table

from taphost.cli.runtime import console, err_console, run_with_host

app = typer.Typer(help="List taps and dispatch them against enabled plugins.")

ConfigOption = Annotated[Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")]


@app.command("list")
def list_taps(config: ConfigOption = None) -> None:
    """List every tap with a contract or an implementer."""

    async def _list(host: Any) -> list[tuple[Any, list[str]]]:
        names = sorted(set(host.contracts) | set(host.taps.taps()))
        return [(host.contracts.get(name), host.taps.implementers(name)) for name in names]

    rows = run_with_host(config, _list)

    table = Table(title="Taps")
    table.add_column("Tap", style="cyan")
    table.add_column("Aggregation")
    table.add_column("Mandatory")
    table.add_column("Payload")
    table.add_column("Implementers")
    for contract, implementers in rows:
        table.add_row(
            contract.name,
            contract.aggregation.value,
            "yes" if contract.mandatory else "",
            contract.payload_mode.value,
            ", ".join(implementers) or "-",
        )
    console.print(table)


@app.command("dispatch")
def dispatch_tap(
    tap: str = typer.Argument(help="Tap name."),
    args: str = typer.Option("{}", "--args", "-a", help="JSON arguments passed to every implementer."),
    config: ConfigOption = None,
) -> None:
    """Dispatch a tap and print the aggregated result as JSON."""
    try:
        payload = json.loads(args)
    except json.JSONDecodeError as exc:
        err_console.print(f"[red]Invalid --args JSON: {exc.msg}[/red]")
        raise typer.Exit(1)

    async def _dispatch(host: Any) -> dict[str, Any]:
        result = await host.dispatch(tap, payload)
        return result.to_dict()

    result = run_with_host(config, _dispatch)
    console.print(Syntax(json.dumps(result, indent=2, default=str), "json"))
