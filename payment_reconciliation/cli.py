"""CLI for the payment reconciliation engine.

Runs the API, watches an order's payment state, syncs with the gateway,
and sweeps overdue orders.
"""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from payment_reconciliation.config import get_settings
from payment_reconciliation.core.exceptions import ReconciliationError
from payment_reconciliation.core.presentation import PresentationSignal
from payment_reconciliation.core.session import PaymentSession, PaymentView
from payment_reconciliation.monitoring.logging import setup_logging

# Initialize Typer app
app = typer.Typer(
    name="payment-reconciler",
    help="Payment reconciliation engine - decides with finality whether orders are paid",
    add_completion=False,
)

console = Console()


def _view_table(order_number: str, view: PaymentView) -> Table:
    table = Table(title=f"Order {order_number}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    remaining = view.time_remaining_seconds
    table.add_row("Payment status", view.payment_status.value)
    table.add_row("Order status", view.order_status.value)
    table.add_row(
        "Time remaining",
        "-" if remaining is None else f"{int(remaining // 60)}m {int(remaining % 60)}s",
    )
    table.add_row("Presentation", view.presentation_signal.value)
    return table


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "payment_reconciliation.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload or settings.debug,
        workers=1 if (reload or settings.debug) else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


@app.command()
def watch(
    order_number: str = typer.Argument(..., help="Order number to watch"),
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-u",
        help="Reconciliation API base URL",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output",
    ),
) -> None:
    """Open a payment session for an order and follow it until it settles."""
    from payment_reconciliation.integrations.storefront_client import StorefrontClient

    if verbose:
        setup_logging(json_output=False)
    settings = get_settings()

    def on_change(view: PaymentView) -> None:
        console.print(_view_table(order_number, view))

    async def _watch() -> PaymentView:
        async with StorefrontClient(base_url=base_url) as client:
            session = PaymentSession(
                client,
                order_number,
                poll_interval=settings.poll_interval_seconds,
                grace_seconds=settings.presentation_grace_seconds,
                progress_seconds=settings.presentation_progress_seconds,
                default_timeout_minutes=settings.payment_timeout_minutes,
                on_change=on_change,
            )
            view = await session.open()
            console.print(_view_table(order_number, view))
            try:
                while not session.state.is_terminal:
                    await asyncio.sleep(settings.poll_interval_seconds)
                await session.wait_presentation()
                return session.view()
            finally:
                await session.close()

    try:
        final = asyncio.run(_watch())
    except ReconciliationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Stopped.[/yellow]")
        raise typer.Exit(130)

    style = "green" if final.presentation_signal == PresentationSignal.COMPLETE else "yellow"
    console.print(
        Panel(
            f"{final.payment_status.value} / {final.order_status.value}",
            title="Final state",
            border_style=style,
        )
    )


@app.command()
def sync(
    order_number: str = typer.Argument(..., help="Order number to sync"),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output",
    ),
) -> None:
    """Sync one order with the gateway (administrator action)."""
    from payment_reconciliation.core.sync import PaymentSyncer
    from payment_reconciliation.database.connection import close_db, get_session_factory
    from payment_reconciliation.integrations.midtrans_client import MidtransClient

    if verbose:
        setup_logging(json_output=False)

    async def _sync() -> Table:
        try:
            async with MidtransClient() as gateway, get_session_factory()() as db:
                result = await PaymentSyncer(db, gateway).sync_payment(order_number)
        finally:
            await close_db()
        table = Table(title=f"Sync {order_number}")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Synced", "yes" if result.synced else "no")
        table.add_row("Side effect", result.side_effect.value)
        table.add_row("Payment status", result.payment_status.value)
        table.add_row("Order status", result.order.status)
        table.add_row("Paid at", result.order.paid_at.isoformat() if result.order.paid_at else "-")
        return table

    try:
        console.print(asyncio.run(_sync()))
    except ReconciliationError as e:
        console.print(f"[red]Error ({e.error_code}):[/red] {e}")
        raise typer.Exit(1)


@app.command()
def sweep(
    loop: bool = typer.Option(False, "--loop", help="Keep sweeping at the configured interval"),
    no_sync: bool = typer.Option(
        False,
        "--no-sync",
        help="Expire without asking the gateway first",
    ),
) -> None:
    """Expire unpaid orders whose payment deadline has passed."""
    from payment_reconciliation.database.connection import close_db
    from payment_reconciliation.integrations.midtrans_client import MidtransClient
    from payment_reconciliation.workers.expiry_worker import ExpirySweeper, start_expiry_worker

    async def _sweep() -> dict:
        gateway = None if no_sync else MidtransClient()
        try:
            if loop:
                await start_expiry_worker(gateway=gateway)
                return {}
            return await ExpirySweeper(gateway=gateway).sweep_once()
        finally:
            if gateway is not None:
                await gateway.aclose()
            await close_db()

    counts = asyncio.run(_sweep())
    if not loop:
        table = Table(title="Expiry sweep")
        table.add_column("Outcome", style="cyan")
        table.add_column("Orders", style="green")
        for outcome, count in sorted(counts.items()):
            table.add_row(outcome, str(count))
        console.print(table if counts else "[dim]No overdue orders.[/dim]")


if __name__ == "__main__":
    app()
