"""CLI entry point — kraken-broker command."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from krakenbroker.config import AppConfig, load_config, load_credentials
from krakenbroker.errors import BrokerageError
from krakenbroker.models import Order, OrderEvent, OrderType, Symbol

app = typer.Typer(name="kraken-broker", help="Kraken brokerage connector")
console = Console()

_state: dict = {"config_dir": None, "paper": False}


class ConsoleSink:
    def on_order_event(self, event: OrderEvent) -> None:
        line = f"[cyan]{event.broker_id or event.order_id}[/cyan] {event.status.value}"
        if event.is_fill:
            line += f" {event.fill_quantity} @ {event.fill_price}"
        if event.fee is not None:
            line += f" fee {event.fee.amount} {event.fee.currency}"
        if event.message:
            line += f" [dim]{event.message}[/dim]"
        console.print(line)


@app.callback()
def main(
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", "-c", help="Directory holding kraken.toml"),
    paper: bool = typer.Option(False, "--paper", help="Use the in-memory paper exchange"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    _state["config_dir"] = config_dir
    _state["paper"] = paper
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(message)s", handlers=[RichHandler(console=console)])


def _config() -> AppConfig:
    config = load_credentials(load_config(_state["config_dir"]))
    if _state["paper"]:
        account = config.account.model_copy(update={"sandbox": True})
        config = config.model_copy(update={"account": account})
    return config


@asynccontextmanager
async def _session():
    """Brokerage for one command; pending webhooks are delivered before the exchange closes."""
    from krakenbroker.brokerage import KrakenBrokerage
    from krakenbroker.execution.exchange import build_exchange
    from krakenbroker.interfaces import CompositeSink
    from krakenbroker.notifications import WebhookNotifier

    config = _config()
    n = config.notifications
    notifier = WebhookNotifier(n.webhook_url, n.enabled, n.events)
    brokerage = KrakenBrokerage(build_exchange(config), CompositeSink(ConsoleSink(), notifier), config)
    try:
        yield brokerage
    finally:
        try:
            await notifier.drain()
        finally:
            await brokerage.disconnect()


def _symbol(ticker: str) -> Symbol:
    try:
        return Symbol.create(ticker)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def _decimal(value: str | None, name: str) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"{value!r} is not a number", param_hint=name)


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except BrokerageError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        raise typer.Exit(1)


@app.command("config")
def show_config():
    """Show the resolved configuration with credentials masked."""
    config = _config()
    table = Table(title="Kraken configuration")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    for key, value in config.credentials.masked().items():
        table.add_row(key, value)
    table.add_row("account", f"{config.account.type} x{config.account.leverage}")
    table.add_row("sandbox", str(config.account.sandbox))
    table.add_row("max retries", str(config.client.max_retries))
    table.add_row("completion timeout", f"{config.orders.completion_timeout_s}s")
    console.print(table)


@app.command()
def tick(symbol: str = typer.Argument(..., help="Ticker such as ETHUSD")):
    """Show the current best bid/ask."""
    _run(_tick(_symbol(symbol)))


async def _tick(symbol: Symbol):
    async with _session() as brokerage:
        t = await brokerage.get_tick(symbol)
    console.print(f"{t.symbol.ticker} bid [green]{t.bid}[/green] ask [red]{t.ask}[/red] ({t.timestamp.isoformat()})")


@app.command()
def balance():
    """Show cash balances per currency."""
    _run(_balance())


async def _balance():
    async with _session() as brokerage:
        cash = await brokerage.get_cash_balance()
    table = Table(title="Cash balances")
    table.add_column("Currency", style="cyan")
    table.add_column("Amount", style="green")
    for currency, amount in sorted(cash.items()):
        table.add_row(currency, str(amount))
    console.print(table)


@app.command()
def holdings():
    """Show open margin positions."""
    _run(_holdings())


async def _holdings():
    async with _session() as brokerage:
        rows = await brokerage.get_account_holdings()
    if not rows:
        console.print("[dim]No holdings reported.[/dim]")
        return
    table = Table(title="Holdings")
    table.add_column("Symbol", style="cyan")
    table.add_column("Quantity")
    table.add_column("Avg price")
    table.add_column("Market value", style="green")
    for h in rows:
        table.add_row(h.symbol.ticker, str(h.quantity), str(h.average_price), str(h.market_value))
    console.print(table)


@app.command()
def place(
    symbol: str = typer.Argument(...),
    quantity: str = typer.Argument(..., help="Signed quantity, negative to sell"),
    order_type: OrderType = typer.Option(OrderType.MARKET, "--type", "-t"),
    limit: Optional[str] = typer.Option(None, "--limit"),
    stop: Optional[str] = typer.Option(None, "--stop"),
    trigger: Optional[str] = typer.Option(None, "--trigger"),
    fee_in_base: bool = typer.Option(False, "--fee-in-base"),
    wait: bool = typer.Option(False, "--wait", help="Wait for a terminal state"),
):
    """Place an order."""
    order = Order(
        symbol=_symbol(symbol),
        quantity=_decimal(quantity, "quantity"),
        order_type=order_type,
        limit_price=_decimal(limit, "--limit"),
        stop_price=_decimal(stop, "--stop"),
        trigger_price=_decimal(trigger, "--trigger"),
        fee_in_base=fee_in_base,
    )
    _run(_place(order, wait))


async def _place(order: Order, wait: bool):
    async with _session() as brokerage:
        await brokerage.connect(start_polling=False)
        broker_id = await brokerage.place_order(order)
        console.print(f"Placed [cyan]{broker_id}[/cyan]")
        if wait:
            event = await brokerage.wait_for_terminal(broker_id)
            console.print(f"Terminal state: [bold]{event.status.value}[/bold]")


@app.command()
def cancel(broker_id: str = typer.Argument(...)):
    """Cancel an open order by Kraken transaction id."""
    _run(_cancel(broker_id))


async def _cancel(broker_id: str):
    async with _session() as brokerage:
        await brokerage.connect(start_polling=False)
        await brokerage.adopt_open_orders()
        ok = await brokerage.cancel_order(broker_id)
    console.print("Cancel requested" if ok else f"[yellow]{broker_id} is not open[/yellow]")


@app.command()
def reconcile():
    """Report open exchange orders and their tracked state."""
    _run(_reconcile())


async def _reconcile():
    async with _session() as brokerage:
        await brokerage.connect(start_polling=False)
        adopted = await brokerage.adopt_open_orders()
        report = await brokerage.reconcile()
    table = Table(title="Open orders")
    table.add_column("Txid", style="cyan")
    table.add_column("Symbol")
    table.add_column("Type")
    table.add_column("Quantity")
    for o in adopted:
        table.add_row(o.broker_id or "", o.symbol.ticker, o.order_type.value, str(o.quantity))
    console.print(table)
    if report.mismatches:
        console.print(f"[yellow]{len(report.mismatches)} mismatched orders refreshed[/yellow]")


if __name__ == "__main__":
    app()
