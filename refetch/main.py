"""refetch CLI — drive queries against real JSON endpoints.

Commands:
    refetch get      — Fetch a URL once through a query (with retries)
    refetch watch    — Interval-refetch a URL and print every update
    refetch pages    — Fetch N pages into one merged cache entry
    refetch trace    — View the event trail of a fetch
    refetch version  — Show the installed version
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from refetch.utils import setup_logging

# Initialize logging on import
setup_logging()

app = typer.Typer(
    name="refetch",
    help="refetch — query cache and lifecycle engine",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


def _get_event_bus():
    """Get or create the CLI's persisted QueryEventBus."""
    from refetch.models.events import QueryEventBus
    if not hasattr(_get_event_bus, "_bus"):
        _get_event_bus._bus = QueryEventBus(persist=True)
    return _get_event_bus._bus


def _make_http():
    from refetch.tools.http import HTTPQueryClient
    return HTTPQueryClient()


def _preview(value: Any, limit: int = 120) -> str:
    try:
        text = json.dumps(value, default=str)
    except (TypeError, ValueError):
        text = repr(value)
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _state_table(query) -> Table:
    state = query.state
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")

    status_style = {"success": "green", "error": "red", "fetching": "yellow"}.get(state.status.value, "dim")
    table.add_row("Cache key", query.cache_key)
    table.add_row("Status", f"[{status_style}]{state.status.value}[/]")
    table.add_row("Failures", str(query.failure_count))
    table.add_row("Last updated", str(state.last_updated) if state.last_updated else "—")
    if state.error is not None:
        table.add_row("Error", f"[red]{state.error}[/]")
    else:
        table.add_row("Data", _preview(state.data))
    return table


# ── refetch get ───────────────────────────────────────────────


@app.command()
def get(
    url: str = typer.Argument(..., help="JSON endpoint to fetch"),
    retry: int = typer.Option(0, "--retry", "-r", help="Retries after the first attempt"),
    delay_unit: int = typer.Option(1000, "--delay-unit", help="Backoff base in ms"),
    debug: bool = typer.Option(False, "--debug", help="Per-query debug traces"),
):
    """📥 Fetch a URL once through a query."""
    ok = asyncio.run(_get(url, retry, delay_unit, debug))
    if not ok:
        raise typer.Exit(code=1)


async def _get(url: str, retry: int, delay_unit: int, debug: bool) -> bool:
    from refetch.engine.client import QueryClient
    from refetch.models.query import query_executor

    http = _make_http()
    client = QueryClient(events=_get_event_bus())
    try:
        template = client.query(
            url,
            lambda: query_executor(http.fetcher(url)),
            retry=retry,
            delay_unit=delay_unit,
            debug=debug,
        )
        query = template()
        await query.fetch()
        console.print(Panel(_state_table(query), title=f"[bold blue]{url}[/]", border_style="blue"))
        return query.error.get() is None
    finally:
        client.dispose()
        await http.close()


# ── refetch watch ─────────────────────────────────────────────


@app.command()
def watch(
    url: str = typer.Argument(..., help="JSON endpoint to poll"),
    interval: int = typer.Option(5000, "--interval", "-i", help="Refetch interval in ms"),
    count: int = typer.Option(3, "--count", "-n", help="Stop after this many updates"),
):
    """⏱  Refetch a URL on an interval and print every update."""
    asyncio.run(_watch(url, interval, count))


async def _watch(url: str, interval: int, count: int) -> None:
    from refetch.engine.client import QueryClient
    from refetch.models.query import QueryStatus, query_executor

    http = _make_http()
    client = QueryClient(events=_get_event_bus())
    updates = 0
    done = asyncio.Event()

    def on_state(state) -> None:
        nonlocal updates
        if state.status not in (QueryStatus.SUCCESS, QueryStatus.ERROR):
            return
        updates += 1
        shown = f"[red]{state.error}[/]" if state.is_error else _preview(state.data)
        console.print(f"[dim]#{updates}[/] [cyan]{state.status.value}[/] {shown}")
        if updates >= count:
            done.set()

    try:
        template = client.query(
            url,
            lambda: query_executor(http.fetcher(url)),
            refetch_interval=interval,
            refetch_interval_in_background=True,
        )
        query = template()
        unsubscribe = query.subscribe(on_state)
        await done.wait()
        unsubscribe()
    finally:
        client.dispose()
        await http.close()


# ── refetch pages ─────────────────────────────────────────────


def _concat_pages(previous, page, ctx):
    items = page if isinstance(page, list) else [page]
    if previous:
        return [*previous.data, *items]
    return items


@app.command()
def pages(
    url: str = typer.Argument(..., help="Paginated JSON endpoint"),
    param: str = typer.Option("page", "--param", "-p", help="Query-string parameter carrying the page"),
    count: int = typer.Option(3, "--pages", "-n", help="Number of pages to fetch"),
    start: int = typer.Option(1, "--start", help="First page number"),
):
    """📚 Fetch several pages into one merged cache entry."""
    asyncio.run(_pages(url, param, count, start))


async def _pages(url: str, param: str, count: int, start: int) -> None:
    from refetch.engine.client import QueryClient
    from refetch.models.query import query_executor

    http = _make_http()
    client = QueryClient(events=_get_event_bus())
    fetcher = http.fetcher(url, param=param)

    table = Table(title=f"Pages of {url}")
    table.add_column("Page", style="cyan", justify="right")
    table.add_column("Status", style="green")
    table.add_column("Items so far", justify="right")

    try:
        template = client.query(
            url,
            lambda page: query_executor(fetcher, (page,)),
            merge=_concat_pages,
            serialize_query_params=lambda definition: "all",
        )
        for page in range(start, start + count):
            query = template(page)
            await query.fetch()
            data = query.data.get()
            table.add_row(str(page), query.status.get().value, str(len(data) if isinstance(data, list) else 0))
        console.print(table)
    finally:
        client.dispose()
        await http.close()


# ── refetch trace ─────────────────────────────────────────────


@app.command()
def trace(
    fetch_id: str = typer.Argument(
        None,
        help="Fetch ID to trace. If omitted, shows recent traces from disk.",
    ),
):
    """🔍 View the event trail of a fetch."""
    bus = _get_event_bus()

    if fetch_id:
        t = bus.get_trace(fetch_id)
        if not t.events:
            console.print(f"[yellow]No trace found for: {fetch_id}[/]")
            return

        started = t.started_at.strftime("%H:%M:%S") if t.started_at else "?"
        console.print(Panel(
            f"[bold]Fetch ID:[/] {t.fetch_id}\n"
            f"[bold]Started:[/] {started}\n"
            f"[bold]Duration:[/] {t.total_duration_ms}ms\n"
            f"[bold]Success:[/] {'✅' if t.success else '❌'}\n"
            f"[bold]Queries:[/] {', '.join(t.query_keys)}",
            title="[bold blue]🔍 Query Trace[/]",
            border_style="blue",
        ))

        table = Table(title="Events", show_lines=True)
        table.add_column("#", style="dim", width=3)
        table.add_column("Timestamp", style="dim", width=12)
        table.add_column("Type", style="cyan")
        table.add_column("Cache key", style="green")
        table.add_column("Info", style="white")

        t0 = t.started_at
        for i, event in enumerate(t.events, 1):
            if t0:
                offset_ms = (event.timestamp - t0).total_seconds() * 1000
                ts_display = f"+{offset_ms:.0f}ms"
            else:
                ts_display = "—"

            info = ""
            if event.error:
                info = f"[red]ERR: {event.error[:60]}[/]"
            elif event.payload:
                info = "[dim]" + ", ".join(f"{k}={v}" for k, v in event.payload.items())[:80] + "[/]"

            table.add_row(str(i), ts_display, event.event_type, event.cache_key or "—", info)

        console.print(table)
    else:
        fetch_ids = bus.list_traces(limit=15)
        if not fetch_ids:
            console.print("[yellow]No traces found. Run 'refetch get' first.[/]")
            return

        table = Table(title="Recent Traces")
        table.add_column("Fetch ID", style="cyan")
        table.add_column("Events", justify="right")
        table.add_column("Duration", style="yellow", justify="right")
        table.add_column("Status", justify="center")

        for fid in fetch_ids:
            t = bus.get_trace(fid)
            table.add_row(
                t.fetch_id,
                str(len(t.events)),
                f"{t.total_duration_ms:.0f}ms",
                "✅" if t.success else "❌",
            )

        console.print(table)
        console.print("[dim]Run: refetch trace <fetch_id>  for full event log[/]")


# ── refetch version ───────────────────────────────────────────


@app.command()
def version():
    """📦 Show refetch version."""
    from refetch import __version__
    console.print(f"[bold cyan]refetch[/] v{__version__}")


# ── Entry point ───────────────────────────────────────────────

if __name__ == "__main__":
    app()
