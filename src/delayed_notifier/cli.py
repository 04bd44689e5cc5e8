# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for delayed-notifier.

Usage:
    delayed-notifier serve                  # HTTP API plus dispatch worker
    delayed-notifier worker                 # dispatch worker only
    delayed-notifier pending                # queue depth
    delayed-notifier list --to a@x.com      # accepted notifications

Every command reads the same configuration as the server: ``--config`` or
``$DN_CONFIG`` (default ``config.ini``), with ``DN_*`` environment fallbacks.
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from .config import Settings, load_settings
from .errors import FatalWorkerError, NotifierError
from .logger import configure_logging
from .server import build_app, build_components, shutdown

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="INI configuration file (default: $DN_CONFIG or config.ini).")
@click.pass_context
def main(ctx: click.Context, config_path: str | None) -> None:
    """delayed-notifier: schedule and deliver email notifications."""
    try:
        settings = load_settings(config_path)
    except ValueError as exc:
        print_error(str(exc))
        sys.exit(2)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("serve")
@click.option("--host", default=None, help="Bind address (overrides [server] host).")
@click.option("--port", type=int, default=None, help="Bind port (overrides [server] port).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the HTTP API with the dispatch worker in the same process."""
    import uvicorn

    settings = _settings(ctx)
    app = build_app(settings)
    bind_host = host or settings.server.host
    bind_port = port or settings.server.port
    console.print(f"[green]Serving[/green] on http://{bind_host}:{bind_port}")
    uvicorn.run(app, host=bind_host, port=bind_port, log_level=settings.log_level.lower())


async def _run_worker(settings: Settings) -> None:
    components = build_components(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await components.worker.run(stop)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await shutdown(components)


@main.command("worker")
@click.pass_context
def worker(ctx: click.Context) -> None:
    """Run only the dispatch worker until SIGINT or SIGTERM."""
    settings = _settings(ctx)
    configure_logging(settings.log_level)
    try:
        run_async(_run_worker(settings))
    except FatalWorkerError as exc:
        print_error(f"worker stopped: {exc}")
        sys.exit(1)


async def _pending(settings: Settings) -> int:
    components = build_components(settings)
    try:
        return await components.queue.pending_count()
    finally:
        await components.queue.close()


@main.command("pending")
@click.pass_context
def pending(ctx: click.Context) -> None:
    """Show how many notifications wait in the delayed queue."""
    try:
        count = run_async(_pending(_settings(ctx)))
    except NotifierError as exc:
        print_error(str(exc))
        sys.exit(1)
    console.print(f"Pending notifications: [bold]{count}[/bold]")


async def _list(settings: Settings, notification_id: int | None, to: str | None) -> list[dict[str, Any]]:
    components = build_components(settings)
    try:
        await components.audit.init_db()
        if notification_id is not None:
            record = await components.service.get(notification_id)
            return [record] if record else []
        return await components.service.list_notifications(to)
    finally:
        await components.queue.close()


@main.command("list")
@click.option("--id", "notification_id", type=int, default=None, help="Show a single notification.")
@click.option("--to", default=None, help="Only notifications addressed to this recipient.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, notification_id: int | None, to: str | None, as_json: bool) -> None:
    """List accepted notifications from the audit store."""
    records = run_async(_list(_settings(ctx), notification_id, to))

    if as_json:
        print_json(records)
        return

    if not records:
        console.print("[dim]No notifications found.[/dim]")
        return

    table = Table(title="Notifications")
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Due")
    table.add_column("To")
    table.add_column("Subject")
    table.add_column("Created")
    for r in records:
        table.add_row(
            str(r["id"]),
            r["kind"],
            str(r["due_ts"]) if r["due_ts"] is not None else "-",
            r["to"],
            r["subject"],
            str(r["created_at"] or ""),
        )
    console.print(table)


if __name__ == "__main__":
    main()
