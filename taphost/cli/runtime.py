"""CLI — Shared host bootstrap for commands."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import typer
from rich.console import Console
from rich.markup import escape

from taphost.exceptions import TapHostError

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)


def run_with_host(config: Path | None, action: Callable[[Any], Awaitable[T]]) -> T:
    """Start a host from *config*, await ``action(host)``, always close it.

    Host errors are printed as their public form and exit with status 1.
    """
    from taphost.config import Settings
    from taphost.host import PluginHost
    from taphost.logging import configure_logging

    settings = Settings.load(config_file=config)
    configure_logging(
        level=settings.logging.level,
        format=settings.logging.format,
        log_file=str(settings.logging.file) if settings.logging.file else None,
    )

    async def _main() -> T:
        host = PluginHost(settings)
        try:
            await host.start()
            return await action(host)
        finally:
            host.close()

    try:
        return asyncio.run(_main())
    except TapHostError as exc:
        err_console.print(f"[red]Error: {escape(str(exc.public_dict()))}[/red]")
        raise typer.Exit(1)
