"""priceledger CLI - operator commands for the price ledger.

Commands:
- init: Initialize database schema
- create-product: Register a product with its first ledger entry
- create-variant: Register a variant of an existing product
- update-price: Record a price change for a product or variant
- history: Show an entity's price ledger (newest first)
- recalc: Recalculate every cached lowest price
- mismatches: Report cached lowest prices that drifted from the ledger
- backfill: Write creation entries for entities without a ledger
- stats: Show ledger statistics
- web serve: Run the REST API
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from priceledger.config import get_config
from priceledger.core.logging import configure_logging
from priceledger.db.connection import close_db, get_session_factory, init_db
from priceledger.errors import LedgerError
from priceledger.ledger import Ledger, build_ledger
from priceledger.ledger.queries import get_history, get_ledger_stats
from priceledger.models import EntityRef, EntityType, PriceChangeSource

app = typer.Typer(
    name="priceledger",
    help="priceledger - price-change audit ledger with rolling 30-day lowest price",
    no_args_is_help=True,
)

web_cli = typer.Typer(help="REST API")
app.add_typer(web_cli, name="web")

console = Console()

T = TypeVar("T")


@app.callback()
def main() -> None:
    configure_logging()


def _run(operation: Callable[[Ledger], Awaitable[T]]) -> T:
    """Run an async ledger operation, reporting ledger errors as exit code 1."""

    async def _inner() -> T:
        try:
            ledger = build_ledger(get_session_factory(), get_config().ledger)
            return await operation(ledger)
        finally:
            await close_db()

    try:
        return asyncio.run(_inner())
    except LedgerError as e:
        console.print(f"[red]✗[/red] {type(e).__name__}: {e}")
        raise typer.Exit(code=1) from e


def _ref(entity_type: EntityType, entity_id: UUID) -> EntityRef:
    return EntityRef(entity_type=entity_type, entity_id=entity_id)


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables (destroys the ledger)"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        try:
            if drop:
                console.print("[yellow]Dropping existing tables...[/yellow]")
            await init_db(drop=drop)
        finally:
            await close_db()

    asyncio.run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command(name="create-product")
def create_product(
    name: str = typer.Argument(..., help="Product name"),
    price: str = typer.Argument(..., help="Initial price, e.g. 19.99"),
    source: PriceChangeSource = typer.Option(PriceChangeSource.IMPORT, "--source"),
    changed_by: str | None = typer.Option(None, "--by", help="Operator id"),
):
    """Register a product and write its first ledger entry."""
    result = _run(
        lambda ledger: ledger.recorder.register_product(
            name, price, source=source, changed_by=changed_by, reason="Product created"
        )
    )
    console.print(
        f"[bold green]✓[/bold green] Product {result.entity.id} created at {result.entity.price}"
    )


@app.command(name="create-variant")
def create_variant(
    product_id: UUID = typer.Argument(..., help="Owning product id"),
    name: str = typer.Argument(..., help="Variant name"),
    price: str = typer.Argument(..., help="Initial price, e.g. 19.99"),
    sku: str | None = typer.Option(None, "--sku"),
    source: PriceChangeSource = typer.Option(PriceChangeSource.IMPORT, "--source"),
    changed_by: str | None = typer.Option(None, "--by", help="Operator id"),
):
    """Register a variant of an existing product."""
    result = _run(
        lambda ledger: ledger.recorder.register_variant(
            product_id,
            name,
            price,
            sku=sku,
            source=source,
            changed_by=changed_by,
            reason="Variant created",
        )
    )
    console.print(
        f"[bold green]✓[/bold green] Variant {result.entity.id} created at {result.entity.price}"
    )


@app.command(name="update-price")
def update_price(
    entity_type: EntityType = typer.Argument(..., help="PRODUCT or VARIANT"),
    entity_id: UUID = typer.Argument(...),
    new_price: str = typer.Argument(..., help="New price, e.g. 79.99"),
    source: PriceChangeSource = typer.Option(PriceChangeSource.ADMIN, "--source"),
    changed_by: str | None = typer.Option(None, "--by", help="Operator id"),
    reason: str | None = typer.Option(None, "--reason"),
):
    """Record a price change (re-confirming the current price also writes an entry)."""
    ref = _ref(entity_type, entity_id)
    result = _run(
        lambda ledger: ledger.recorder.update_price(
            ref, new_price, source, changed_by=changed_by, reason=reason
        )
    )

    change = "changed" if result.price_changed else "re-confirmed"
    console.print(
        f"[bold green]✓[/bold green] {ref}: {result.previous_price} → {result.entity.price} ({change})"
    )
    console.print(f"  Lowest price (30 days): [cyan]{result.lowest_price_30_days}[/cyan]")


@app.command()
def history(
    entity_type: EntityType = typer.Argument(..., help="PRODUCT or VARIANT"),
    entity_id: UUID = typer.Argument(...),
    limit: int = typer.Option(50, "--limit"),
    offset: int = typer.Option(0, "--offset"),
):
    """Show an entity's price ledger, newest first."""
    ref = _ref(entity_type, entity_id)
    page = _run(
        lambda ledger: get_history(
            ledger.store, ref, limit, offset, max_limit=ledger.config.history_page_max
        )
    )

    table = Table(title=f"Price history {ref} ({page.total} entries)")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Effective at (UTC)", style="cyan")
    table.add_column("Price", justify="right", style="green")
    table.add_column("Previous", justify="right")
    table.add_column("Source")
    table.add_column("By")
    table.add_column("Reason", style="dim")

    for entry in page.entries:
        table.add_row(
            str(entry.sequence),
            entry.effective_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(entry.price),
            str(entry.previous_price) if entry.previous_price is not None else "-",
            entry.source.value,
            entry.changed_by or "-",
            entry.reason or "",
        )

    console.print(table)


@app.command()
def recalc():
    """Recalculate every cached lowest price and correct drift."""
    console.print("[bold]Recalculating lowest prices...[/bold]")
    summary = _run(lambda ledger: ledger.audit.recalc_all())

    table = Table(title="Recalculation")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Checked", str(summary.checked))
    table.add_row("Updated", str(summary.updated))
    table.add_row("Unchanged", str(summary.unchanged))
    table.add_row("Failed", str(summary.failed))
    console.print(table)

    for err in summary.errors[:5]:
        console.print(f"  {err}", style="dim")
    if summary.failed:
        raise typer.Exit(code=1)


@app.command()
def mismatches(
    limit: int = typer.Option(100, "--limit"),
):
    """Report cached lowest prices that differ from the ledger (read-only)."""
    rows = _run(lambda ledger: ledger.audit.find_mismatches(limit=limit))

    if not rows:
        console.print("[bold green]✓[/bold green] No mismatches")
        return

    table = Table(title=f"Lowest-price mismatches ({len(rows)})")
    table.add_column("Entity", style="cyan")
    table.add_column("Name")
    table.add_column("Stored", justify="right")
    table.add_column("Computed", justify="right", style="green")
    table.add_column("Delta", justify="right", style="yellow")

    for row in rows:
        table.add_row(
            f"{row.entity_type.value.lower()}:{row.entity_id}",
            row.name,
            str(row.stored) if row.stored is not None else "-",
            str(row.computed),
            str(row.delta),
        )

    console.print(table)


@app.command()
def backfill():
    """Write initial ledger entries for entities that have none."""
    summary = _run(lambda ledger: ledger.audit.backfill())
    console.print(
        f"[bold green]✓[/bold green] Checked {summary.checked}, "
        f"initialized {summary.initialized}, failed {summary.failed}"
    )
    for err in summary.errors[:5]:
        console.print(f"  {err}", style="dim")


@app.command()
def stats():
    """Show ledger statistics."""
    ledger_stats = _run(
        lambda ledger: get_ledger_stats(ledger.store, window=ledger.config.window)
    )
    window_days = get_config().ledger.window_days

    table = Table(title="Ledger statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Products", str(ledger_stats.products))
    table.add_row("Variants", str(ledger_stats.variants))
    table.add_row("History entries", str(ledger_stats.history_entries))
    table.add_row(f"Price changes (last {window_days} days)", str(ledger_stats.price_changes_in_window))
    table.add_row(
        f"Entities changed (last {window_days} days)", str(ledger_stats.entities_changed_in_window)
    )
    console.print(table)


@web_cli.command("serve")
def web_serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8001, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the FastAPI REST API."""
    import uvicorn

    typer.echo(f"Starting priceledger API on http://{host}:{port}")
    uvicorn.run("priceledger.web.app:app", host=host, port=port, reload=reload, workers=1)


if __name__ == "__main__":
    app()
