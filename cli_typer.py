"""
Perps Tracker CLI
=================
Command-line interface using Typer + Rich.

Commands:
    python cli_typer.py markets
    python cli_typer.py derive SOL long --owner <PUBKEY>
    python cli_typer.py encode-open SOL long --owner <PUBKEY> --collateral 1 --size 5
    python cli_typer.py open SOL long 0.5 --leverage 5 --tp 10 --sl 5 --execute
    python cli_typer.py close SOL long --execute
    python cli_typer.py requests
    python cli_typer.py tpsl SOL long --tp 10 --sl 5
    python cli_typer.py alert SOL above 250
    python cli_typer.py monitor
"""

import asyncio
import sys
from decimal import Decimal, InvalidOperation
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config.settings import Settings

# Create Typer app with Rich integration
app = typer.Typer(
    name="perps",
    help="Perps Tracker - Jupiter Perpetuals request encoding & lifecycle tracking",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()


def _parse_side(value: str):
    from src.perps.types import Side
    try:
        return Side.parse(value)
    except ValueError:
        console.print(f"[bold red]❌ Side must be long or short, got {value!r}[/bold red]")
        raise typer.Exit(1)


def _parse_decimal(value: Optional[str], name: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        console.print(f"[bold red]❌ {name} must be a number, got {value!r}[/bold red]")
        raise typer.Exit(1)


def _market_or_exit(symbol: str):
    from src.perps.address_registry import MarketNotFoundError, get_market
    try:
        return get_market(symbol)
    except MarketNotFoundError:
        console.print(f"[bold red]❌ Unknown market {symbol!r}[/bold red]")
        raise typer.Exit(1)


def _build_trader():
    from src.perps.trader import PerpsTrader
    from src.shared.feeds.simple_price_feed import PythPriceFeed
    from src.shared.infrastructure.rpc_manager import EndpointFailoverClient
    from src.shared.infrastructure.signer import EnvKeyStore
    from src.shared.notification.telegram_manager import build_notifier
    from src.shared.system.persistence import get_db

    db = get_db()
    trader = PerpsTrader(
        EndpointFailoverClient(Settings.RPC_ENDPOINTS),
        PythPriceFeed(),
        EnvKeyStore(),
        notifier=build_notifier(),
        db=db,
    )
    trader.tracker.load()
    return trader


def _print_result(result) -> None:
    if result.success:
        console.print(Panel.fit(
            f"[bold green]✅ Submitted[/bold green]\n"
            f"Market: {result.market} | Counter: {result.counter}\n"
            f"Signature: [cyan]{result.signature}[/cyan]",
            border_style="green",
        ))
    else:
        console.print(Panel.fit(
            f"[bold red]❌ {result.error_code.value}[/bold red]\n{result.error_message}",
            border_style="red",
        ))


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: MARKETS
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def markets():
    """List the market registry (custody, mint, decimals)."""
    from src.perps.address_registry import MARKETS

    table = Table(title="Jupiter Perps Markets")
    table.add_column("Symbol", style="bold cyan")
    table.add_column("Custody")
    table.add_column("Mint")
    table.add_column("Decimals", justify="right")
    table.add_column("Tradable")
    for market in MARKETS.values():
        table.add_row(
            market.symbol,
            str(market.custody),
            str(market.mint),
            str(market.decimals),
            "[green]yes[/green]" if market.tradable else "[dim]collateral[/dim]",
        )
    console.print(table)


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: DERIVE (Offline Address Derivation)
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def derive(
    market: str = typer.Argument(..., help="Market symbol (SOL, ETH, BTC)"),
    side: str = typer.Argument(..., help="long or short"),
    owner: str = typer.Option(..., "--owner", help="Owner wallet public key"),
    counter: int = typer.Option(0, "--counter", help="Request counter", min=0),
):
    """
    Derive position and request addresses offline.

    \b
    Examples:
        python cli_typer.py derive SOL long --owner <PUBKEY>
        python cli_typer.py derive ETH short --owner <PUBKEY> --counter 3
    """
    from solders.pubkey import Pubkey
    from src.perps.address_registry import derive_accounts
    from src.perps.types import RequestKind

    m = _market_or_exit(market)
    s = _parse_side(side)
    owner_pk = Pubkey.from_string(owner)

    table = Table(title=f"{m.symbol} {s.name} (counter {counter})")
    table.add_column("Account", style="cyan")
    table.add_column("Open")
    table.add_column("Close")
    opened = derive_accounts(owner_pk, m, s, counter, RequestKind.OPEN)
    closed = derive_accounts(owner_pk, m, s, counter, RequestKind.CLOSE)
    for name in ("position", "position_request", "position_request_ata", "token_account",
                 "custody", "collateral_custody", "mint"):
        table.add_row(name, str(getattr(opened, name)), str(getattr(closed, name)))
    console.print(table)


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: ENCODE-OPEN (Offline Instruction Encoding)
# ═══════════════════════════════════════════════════════════════════════════════

@app.command("encode-open")
def encode_open(
    market: str = typer.Argument(..., help="Market symbol"),
    side: str = typer.Argument(..., help="long or short"),
    owner: str = typer.Option(..., "--owner", help="Owner wallet public key"),
    collateral: int = typer.Option(..., "--collateral", help="Collateral delta (token base units)", min=1),
    size: int = typer.Option(..., "--size", help="Size USD delta (6 decimals)", min=1),
    slippage: int = typer.Option(Settings.DEFAULT_MAX_SLIPPAGE, "--price-slippage", help="Price slippage (6 decimals)"),
    counter: int = typer.Option(0, "--counter", min=0),
):
    """Encode an increase request and print its data and accounts."""
    from solders.pubkey import Pubkey
    from src.perps.instruction_codec import OpenRequestParams, encode_open_request
    from src.perps.types import EncodingError

    m = _market_or_exit(market)
    s = _parse_side(side)
    try:
        encoded = encode_open_request(OpenRequestParams(
            owner=Pubkey.from_string(owner),
            market=m.symbol,
            side=s,
            size_usd_delta=size,
            collateral_token_delta=collateral,
            price_slippage=slippage,
            counter=counter,
        ))
    except EncodingError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise typer.Exit(1)
    console.print(Panel.fit(f"[bold]Data[/bold] ({len(encoded.data)} bytes)\n{encoded.data.hex()}", border_style="cyan"))
    table = Table(title="Accounts")
    table.add_column("#", justify="right")
    table.add_column("Pubkey")
    table.add_column("Signer")
    table.add_column("Writable")
    for i, meta in enumerate(encoded.accounts, 1):
        table.add_row(str(i), str(meta.pubkey), "✓" if meta.is_signer else "", "✓" if meta.is_writable else "")
    console.print(table)


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: OPEN
# ═══════════════════════════════════════════════════════════════════════════════

@app.command("open")
def open_position(
    market: str = typer.Argument(..., help="Market symbol (SOL, ETH, BTC)"),
    side: str = typer.Argument(..., help="long or short"),
    amount: str = typer.Argument(..., help="Collateral amount (longs: market asset, shorts: USDC)"),
    leverage: str = typer.Option(Settings.DEFAULT_LEVERAGE, "--leverage", "-l", help="Leverage multiple"),
    slippage: float = typer.Option(0.10, "--slippage", help="Max price slippage in USD"),
    tp: Optional[str] = typer.Option(None, "--tp", help="Take-profit %"),
    sl: Optional[str] = typer.Option(None, "--sl", help="Stop-loss %"),
    owner_id: Optional[str] = typer.Option(None, "--owner-id", help="Owner id (defaults to PERPS_OWNER_ID)"),
    execute: bool = typer.Option(False, "--execute", help="Actually submit (otherwise dry run)"),
):
    """
    Open a leveraged position request.

    [bold red]⚠️  WARNING: --execute submits a real transaction![/bold red]

    \b
    Examples:
        python cli_typer.py open SOL long 0.5 --leverage 5
        python cli_typer.py open ETH short 25 --leverage 3 --tp 10 --sl 5 --execute
    """
    from src.perps.address_registry import collateral_market_for
    from src.perps.types import TradeIntent
    from src.execution.transaction_builder import to_usd_units

    m = _market_or_exit(market)
    s = _parse_side(side)
    collateral = collateral_market_for(m, s)
    human = _parse_decimal(amount, "Amount")
    intent = TradeIntent(
        market=m.symbol,
        side=s,
        collateral_amount=int(human.scaleb(collateral.decimals)),
        leverage=_parse_decimal(leverage, "Leverage"),
        max_slippage=to_usd_units(Decimal(str(slippage))),
        take_profit_pct=_parse_decimal(tp, "Take-profit"),
        stop_loss_pct=_parse_decimal(sl, "Stop-loss"),
    )

    mode = "[bold red]LIVE[/bold red]" if execute else "[green]DRY RUN[/green]"
    console.print(Panel.fit(
        f"[bold cyan]📈 Open {m.symbol} {s.name}[/bold cyan]\n"
        f"Collateral: {human} {collateral.symbol} | Leverage: {intent.leverage}x | Mode: {mode}",
        border_style="cyan",
    ))
    if not execute:
        console.print("[dim]DRY RUN: pass --execute to submit.[/dim]")
        return
    if not typer.confirm("\n⚠️  Submit a real transaction?", default=False):
        console.print("[yellow]Aborted.[/yellow]")
        raise typer.Exit(0)

    async def run():
        trader = _build_trader()
        try:
            result = await trader.open_position(owner_id or trader.key_store.owner_id, intent)
        finally:
            await trader.client.close()
        _print_result(result)
        if not result.success:
            raise typer.Exit(1)

    asyncio.run(run())


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: CLOSE
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def close(
    market: str = typer.Argument(..., help="Market symbol"),
    side: str = typer.Argument(..., help="long or short"),
    slippage: float = typer.Option(0.10, "--slippage", help="Max price slippage in USD"),
    owner_id: Optional[str] = typer.Option(None, "--owner-id"),
    execute: bool = typer.Option(False, "--execute", help="Actually submit (otherwise dry run)"),
):
    """Close an entire position."""
    from src.perps.types import CloseParams
    from src.execution.transaction_builder import to_usd_units

    m = _market_or_exit(market)
    s = _parse_side(side)
    if not execute:
        console.print(f"[dim]DRY RUN: would close {m.symbol} {s.name}. Pass --execute to submit.[/dim]")
        return

    async def run():
        trader = _build_trader()
        try:
            result = await trader.close_position(
                owner_id or trader.key_store.owner_id,
                m.symbol,
                s,
                CloseParams(max_slippage=to_usd_units(Decimal(str(slippage)))),
            )
        finally:
            await trader.client.close()
        _print_result(result)
        if not result.success:
            raise typer.Exit(1)

    asyncio.run(run())


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: REQUESTS / ALERT
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def requests(
    owner_id: Optional[str] = typer.Option(None, "--owner-id", help="Filter by owner id"),
):
    """Show stored requests and their lifecycle status."""
    from src.shared.system.persistence import get_db

    rows = get_db().get_requests(owner_id=owner_id)
    table = Table(title=f"Requests ({len(rows)})")
    for col in ("ID", "Owner", "Kind", "Market", "Side", "Counter", "Status", "Polls", "Signature"):
        table.add_column(col)
    styles = {"SUBMITTED": "yellow", "CONFIRMED": "green", "EXPIRED": "dim", "FAILED": "red"}
    for r in rows:
        status = r.status.value
        table.add_row(
            r.request_id, r.owner_id, r.kind.value, r.market, r.side.name, str(r.counter),
            f"[{styles[status]}]{status}[/]", str(r.polls), (r.signature or "")[:16],
        )
    console.print(table)


@app.command()
def tpsl(
    market: str = typer.Argument(..., help="Market symbol"),
    side: str = typer.Argument(..., help="long or short"),
    tp: Optional[str] = typer.Option(None, "--tp", help="Take-profit %"),
    sl: Optional[str] = typer.Option(None, "--sl", help="Stop-loss %"),
    owner_id: Optional[str] = typer.Option(None, "--owner-id"),
):
    """Set (or with neither option, clear) TP/SL on a monitored position."""
    import os
    from src.perps.lifecycle_tracker import PositionLifecycleTracker
    from src.shared.system.persistence import get_db

    m = _market_or_exit(market)
    s = _parse_side(side)
    tracker = PositionLifecycleTracker(client=None, price_feed=None, notifier=None, db=get_db())
    tracker.load()
    try:
        found = tracker.set_triggers(
            owner_id or os.getenv("PERPS_OWNER_ID", "local"), m.symbol, s,
            _parse_decimal(tp, "Take-profit"), _parse_decimal(sl, "Stop-loss"),
        )
    except ValueError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise typer.Exit(1)
    if not found:
        console.print(f"[yellow]No monitored {m.symbol} {s.name} position.[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]🎯 {m.symbol} {s.name}: TP={tp or '-'}% SL={sl or '-'}%[/green]")


@app.command()
def alert(
    symbol: str = typer.Argument(..., help="Market symbol"),
    direction: str = typer.Argument(..., help="above or below"),
    price: str = typer.Argument(..., help="Target USD price"),
    owner_id: Optional[str] = typer.Option(None, "--owner-id"),
):
    """Set a one-shot price alert, delivered by the monitor loop."""
    import os
    from src.perps.lifecycle_tracker import PositionLifecycleTracker
    from src.perps.types import AlertDirection
    from src.shared.system.persistence import get_db

    m = _market_or_exit(symbol)
    try:
        d = AlertDirection(direction.strip().upper())
    except ValueError:
        console.print("[bold red]❌ Direction must be above or below[/bold red]")
        raise typer.Exit(1)

    tracker = PositionLifecycleTracker(client=None, price_feed=None, notifier=None, db=get_db())
    created = tracker.add_alert(owner_id or os.getenv("PERPS_OWNER_ID", "local"), m.symbol, _parse_decimal(price, "Price"), d)
    console.print(f"[green]🔔 Alert {created.alert_id}: {m.symbol} {d.value} ${created.target_price}[/green]")


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: MONITOR (Lifecycle Loop)
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def monitor(
    interval: float = typer.Option(Settings.MONITOR_INTERVAL_SEC, "--interval", help="Seconds between ticks", min=1.0),
):
    """Run the confirmation / TP-SL / alert loop until interrupted."""
    console.print(Panel.fit(
        f"[bold magenta]🎯 Position Monitor[/bold magenta]\n"
        f"Interval: {interval:.0f}s | Endpoints: {len(Settings.RPC_ENDPOINTS)}",
        border_style="magenta",
    ))

    async def run():
        trader = _build_trader()
        trader.tracker.interval = interval
        try:
            await trader.tracker.run()
        finally:
            await trader.client.close()

    asyncio.run(run())


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main():
    """Entry point for CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user.[/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    # Windows async event loop fix
    if sys.platform == 'win32':
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    main()
