"""
CLI for the RoadAssist relay.
Commands for running the server, placing a call, inspecting the event log
and following a call the way the agent dashboard does.
"""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.live import Live
from rich.table import Table

from roadassist.config import get_settings
from roadassist.logging_config import setup_logging
from roadassist.models import CallContext, Customer, Ticket, parse_ts

app = typer.Typer(
    name="roadassist",
    help="Roadside-assistance call relay and call-sync tools",
    add_completion=False,
)
console = Console()


def _run(coro):
    """Helper to run async code from sync CLI."""
    return asyncio.run(coro)


def _ticket_table(tickets: list[Ticket]) -> Table:
    table = Table(title="Tickets")
    table.add_column("Ticket", style="cyan")
    table.add_column("Call ID")
    table.add_column("Phase", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Segments", justify="right")
    table.add_column("Last message")
    for t in tickets:
        timeline = t.timeline()
        table.add_row(
            t.id,
            t.call_id or "-",
            t.call.phase.value if t.call else "-",
            t.status.value,
            str(len(t.call.transcript)) if t.call else "0",
            timeline[-1].content[:60] if timeline else "",
        )
    return table


@app.command()
def serve():
    """Run the relay server (call initiation, Bland webhooks, poll + push)."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir, json_logs=True)

    import uvicorn
    from roadassist.server import create_app

    console.print(f"\n[green]Relay server running on {settings.host}:{settings.port}[/green]")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="info")


@app.command()
def call(
    phone: str = typer.Argument(..., help="Destination phone number"),
    name: Optional[str] = typer.Option(None, help="Customer name"),
    vehicle: Optional[str] = typer.Option(None, help="Vehicle description"),
    location: Optional[str] = typer.Option(None, help="Breakdown location"),
    issue: Optional[str] = typer.Option(None, help="Reported issue"),
):
    """Place one outbound assistance call directly with Bland AI."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from roadassist.bland_client import BlandClient
        from roadassist.errors import CallSetupError

        client = BlandClient(settings)
        try:
            result = await client.initiate_call(
                phone,
                CallContext(customer_name=name, vehicle=vehicle, location=location, issue=issue),
            )
        except CallSetupError as e:
            console.print(f"\n[red]✗ Call failed to start:[/red] {e}")
            raise typer.Exit(code=1)
        finally:
            await client.close()

        console.print("\n[green]✓ Call initiated[/green]")
        console.print(f"  Call ID: {result.call_id}")
        console.print(f"  Status:  {result.provider_status or result.initial_phase.value}")

    _run(_do())


@app.command("call-status")
def call_status(call_id: str = typer.Argument(..., help="Bland call ID")):
    """Show Bland's own view of a call."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from roadassist.bland_client import BlandClient

        client = BlandClient(settings)
        try:
            data = await client.get_call(call_id)
        finally:
            await client.close()

        table = Table(title=f"Call {call_id}")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        for key in ("status", "completed", "call_length", "answered_by", "started_at", "end_at"):
            if key in data:
                table.add_row(key, str(data[key]))
        console.print(table)

    _run(_do())


@app.command()
def events(
    since: Optional[str] = typer.Option(None, help="ISO timestamp; only later events"),
    call_id: Optional[str] = typer.Option(None, "--call-id", help="Only this call"),
):
    """List logged webhook events in receipt order."""
    try:
        since_ts = parse_ts(since) if since else None
    except ValueError:
        raise typer.BadParameter(f"not an ISO timestamp: {since!r}", param_hint="--since")

    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from roadassist.event_log import EventLog

        log_store = EventLog(settings.event_log_path)
        await log_store.connect()
        try:
            records = await log_store.query_since(since_ts, call_id)
        finally:
            await log_store.close()

        table = Table(title="Webhook events")
        table.add_column("#", justify="right")
        table.add_column("Received", style="cyan")
        table.add_column("Call ID")
        table.add_column("Event", style="magenta")
        for r in records:
            table.add_row(str(r.id), r.received_at.isoformat(), r.call_id, r.event_type or "?")
        console.print(table)

    _run(_do())


@app.command()
def watch(
    call_id: str = typer.Argument(..., help="Call to follow"),
    name: str = typer.Option("", help="Customer name shown on the ticket"),
    since: Optional[str] = typer.Option(None, help="Resume polling from this watermark"),
):
    """Follow a call through push + poll and render its ticket live."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from roadassist.session import UISession

        session = UISession(settings, since=since)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await session.track_call(call_id, Customer(name=name))
        runner = asyncio.create_task(session.run(stop))
        try:
            with Live(_ticket_table(session.store.list_tickets()), console=console) as live:
                while not stop.is_set():
                    live.update(_ticket_table(session.store.list_tickets()))
                    ticket = session.store.find_by_call_id(call_id)
                    if ticket and ticket.call and ticket.call.phase.is_terminal:
                        stop.set()
                    await asyncio.sleep(1)
        finally:
            stop.set()
            await runner
            await session.close()

        console.print(f"\n[green]Watermark:[/green] {session.poller.watermark}")
        console.print(f"Finished at {datetime.now().isoformat(timespec='seconds')}")

    _run(_do())


if __name__ == "__main__":
    app()
