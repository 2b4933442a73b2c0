"""CLI — Plugin inspection and administration commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.syntax import Syntax
from rich.table import Table

from taphost.cli.runtime import console, run_with_host

app = typer.Typer(help="List, inspect, enable and disable plugins.")

ConfigOption = Annotated[Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")]


@app.command("list")
def list_plugins(config: ConfigOption = None) -> None:
    """List every discovered plugin."""

    async def _list(host: Any) -> list[dict[str, Any]]:
        return [p.summary() for p in host.snapshot.all()]

    plugins = run_with_host(config, _list)

    table = Table(title="Plugins")
    table.add_column("Name", style="cyan")
    table.add_column("Version")
    table.add_column("Enabled")
    table.add_column("Weight", justify="right")
    table.add_column("Taps", justify="right")
    table.add_column("Description")

    for p in plugins:
        table.add_row(
            p["name"],
            p["version"],
            "[green]yes[/green]" if p["enabled"] else "[red]no[/red]",
            str(p["weight"]),
            str(len(p["taps"])),
            p["description"],
        )
    console.print(table)


@app.command("inspect")
def inspect_plugin(
    name: str = typer.Argument(help="Plugin name."),
    config: ConfigOption = None,
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON."),
) -> None:
    """Show manifest, capabilities and entry points of a plugin."""

    async def _inspect(host: Any) -> dict[str, Any]:
        plugin = host.snapshot.get(name)
        data = plugin.summary()
        data["manifest"] = plugin.manifest.to_dict()
        data["entry_points"] = sorted(plugin.compiled.entry_points)
        data["imports"] = sorted(f"{m}#{n}" for m, n in plugin.compiled.imports)
        data["dependents"] = sorted(host.snapshot.graph.dependents(name))
        return data

    data = run_with_host(config, _inspect)

    if json_output:
        console.print(Syntax(json.dumps(data, indent=2), "json"))
        return

    state = "[green]enabled[/green]" if data["enabled"] else "[red]disabled[/red]"
    console.print(f"[bold]{data['name']}[/bold] v{data['version']} ({state})")
    console.print(data["description"])
    console.print()

    table = Table(title="Taps")
    table.add_column("Tap", style="cyan")
    table.add_column("Weight", justify="right")
    table.add_column("Exported")
    manifest = data["manifest"]
    weights = manifest["taps"]["weights"]
    for tap in data["taps"]:
        table.add_row(
            tap,
            str(weights.get(tap, manifest["taps"]["weight"])),
            "yes" if tap in data["entry_points"] else "[red]no[/red]",
        )
    console.print(table)
    console.print(f"Capabilities: {', '.join(data['capabilities']) or '-'}")
    console.print(f"Dependencies: {', '.join(data['dependencies']) or '-'}")


@app.command("enable")
def enable_plugin(
    name: str = typer.Argument(help="Plugin name."),
    cascade: bool = typer.Option(False, "--cascade", help="Enable missing dependencies first."),
    config: ConfigOption = None,
) -> None:
    """Enable a plugin, running its pending migrations."""

    async def _enable(host: Any) -> list[str]:
        return await host.enable(name, cascade=cascade)

    enabled = run_with_host(config, _enable)
    if not enabled:
        console.print(f"[yellow]{name} is already enabled[/yellow]")
        return
    for plugin in enabled:
        console.print(f"[green]Enabled {plugin}[/green]")


@app.command("disable")
def disable_plugin(
    name: str = typer.Argument(help="Plugin name."),
    config: ConfigOption = None,
) -> None:
    """Disable a plugin."""

    async def _disable(host: Any) -> bool:
        return await host.disable(name)

    was_enabled = run_with_host(config, _disable)
    if was_enabled:
        console.print(f"[green]Disabled {name}[/green]")
    else:
        console.print(f"[yellow]{name} was not enabled[/yellow]")


@app.command("order")
def install_order(config: ConfigOption = None) -> None:
    """Print the dependency-respecting install order."""

    async def _order(host: Any) -> list[str]:
        return host.install_order()

    for position, name in enumerate(run_with_host(config, _order), start=1):
        console.print(f"{position:>3}. {name}")
