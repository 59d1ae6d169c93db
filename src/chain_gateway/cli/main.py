"""CLI for the chain gateway."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.traceback import install

from chain_gateway.core.config import GatewayConfig, load_config
from chain_gateway.core.errors import GatewayError
from chain_gateway.core.models import AggregatedQuoteResult, Block
from chain_gateway.gateway import ChainGateway
from chain_gateway.rpc import HealthMonitor

install(show_locals=False)

T = TypeVar("T")

app = typer.Typer(
    name="chain-gateway",
    help="Query balances, gas, blocks and swap quotes across EVM chains and Solana",
    add_completion=False,
)

console = Console()


class OutputFormat(StrEnum):
    """Output format options."""

    TABLE = "table"
    JSON = "json"


class _State:
    config_path: Path | None = None
    debug: bool = False


state = _State()


@app.callback()
def main(
    config: Path | None = typer.Option(None, "--config", help="YAML file merged over the bundled defaults"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable info logging"),
) -> None:
    """Multi-chain RPC gateway and DEX quote aggregator."""
    state.config_path = config
    state.debug = debug
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _load() -> GatewayConfig:
    try:
        config = load_config(state.config_path)
    except (OSError, ValueError) as e:
        console.print(f"[bold red]Invalid configuration:[/bold red] {e}")
        raise typer.Exit(code=1) from e
    # One-shot commands do not need background probing.
    return config.model_copy(update={"health": config.health.model_copy(update={"enabled": False})})


def _run(operation: Callable[[ChainGateway], Awaitable[T]], description: str) -> T:
    """Run an async operation against a fresh gateway, mapping errors to exit codes."""

    async def runner() -> T:
        async with ChainGateway.from_config(_load()) as gateway:
            return await operation(gateway)

    try:
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console, transient=True) as progress:
            progress.add_task(description, total=None)
            return asyncio.run(runner())
    except GatewayError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        if state.debug:
            raise
        raise typer.Exit(code=1) from e


def _print_json(data: Any) -> None:
    def decimal_default(obj: Any) -> str:
        if isinstance(obj, Decimal):
            return str(obj)
        raise TypeError

    console.print_json(json.dumps(data, default=decimal_default))


@app.command()
def providers(
    chain: str | None = typer.Option(None, "--chain", "-c", help="Only show one chain"),
    probe: bool = typer.Option(False, "--probe", help="Probe every provider before printing"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """
    Show configured RPC providers with health and score.

    Examples:

        chain-gateway providers --probe

        chain-gateway providers --chain solana --format json
    """

    async def collect(gateway: ChainGateway) -> dict[str, list[dict[str, Any]]]:
        if probe:
            families = {name: settings.family for name, settings in gateway.config.chains.items()}
            await HealthMonitor(gateway.registry, gateway.pool, families=families).probe_all()
        return gateway.registry.snapshot()

    snapshot = _run(collect, "Probing providers..." if probe else "Loading providers...")
    if chain:
        snapshot = {chain: snapshot.get(chain, [])}

    if format == OutputFormat.JSON:
        _print_json(snapshot)
        return

    table = Table(title="RPC Providers", show_header=True, header_style="bold magenta")
    table.add_column("Chain", style="blue")
    table.add_column("Provider", style="cyan")
    table.add_column("Tier", style="yellow")
    table.add_column("Circuit")
    table.add_column("Score", justify="right")
    table.add_column("Latency", justify="right")
    table.add_column("Success", justify="right")

    circuit_styles = {"closed": "green", "half_open": "yellow", "open": "red"}
    for chain_name, entries in snapshot.items():
        for entry in entries:
            circuit = str(entry["circuit"])
            table.add_row(
                chain_name,
                entry["id"],
                str(entry["tier"]),
                f"[{circuit_styles.get(circuit, 'white')}]{circuit}[/]",
                f"{entry['score']:.3f}",
                f"{entry['latency_ms']:.0f} ms",
                f"{entry['success_rate']:.0%}",
            )
    console.print(table)


@app.command()
def balance(
    chain: str = typer.Argument(..., help="Chain name"),
    address: str = typer.Argument(..., help="Account address"),
    token: str | None = typer.Option(None, "--token", "-t", help="Token address or symbol (native when omitted)"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """Get the native or token balance of an address."""
    result = _run(lambda gateway: gateway.get_balance(chain, address, token), f"Fetching balance on {chain}...")
    if format == OutputFormat.JSON:
        _print_json(result.model_dump(mode="json"))
        return
    console.print(f"[bold cyan]{result.address}[/bold cyan] on {chain}: [bold green]{result.amount:,.6f} {result.token.symbol}[/bold green]")


@app.command()
def gas(
    chain: str = typer.Argument(..., help="Chain name"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """Show the current gas price of a chain."""
    result = _run(lambda gateway: gateway.get_gas_price(chain), f"Fetching gas price on {chain}...")
    if format == OutputFormat.JSON:
        _print_json(result.model_dump(mode="json"))
        return

    table = Table(title=f"Gas on {chain}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Gas price", f"{result.gas_price:,}")
    if result.base_fee is not None:
        table.add_row("Base fee", f"{result.base_fee:,}")
    if result.priority_fee is not None:
        table.add_row("Priority fee", f"{result.priority_fee:,}")
    console.print(table)


def _block_table(block: Block) -> Table:
    table = Table(title=f"{block.chain} block {block.number}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value", style="green")
    table.add_row("Hash", block.hash)
    table.add_row("Parent", block.parent_hash or "-")
    table.add_row("Timestamp", str(block.timestamp))
    table.add_row("Transactions", str(len(block.transactions)))
    if block.base_fee_per_gas is not None:
        table.add_row("Base fee", f"{block.base_fee_per_gas:,}")
    return table


@app.command()
def block(
    chain: str = typer.Argument(..., help="Chain name"),
    number: int | None = typer.Option(None, "--number", "-n", help="Block number or slot (latest when omitted)"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """Show the latest block, or a specific one."""

    async def fetch(gateway: ChainGateway) -> Block:
        if number is None:
            return await gateway.get_latest_block(chain)
        return await gateway.adapter(chain, "get_block").get_block(number)

    result = _run(fetch, f"Fetching block on {chain}...")
    if format == OutputFormat.JSON:
        _print_json(result.model_dump(mode="json"))
        return
    console.print(_block_table(result))


def _quote_table(result: AggregatedQuoteResult) -> Table:
    table = Table(
        title=f"Quotes for {result.amount_in} {result.token_in[:10]} -> {result.token_out[:10]} on {result.chain}",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("#", justify="right")
    table.add_column("Venue", style="cyan")
    table.add_column("Amount Out", justify="right")
    table.add_column("Net Out", style="bold green", justify="right")
    table.add_column("Impact", justify="right")
    table.add_column("Gas USD", justify="right")
    table.add_column("Hops", justify="right")
    table.add_column("Latency", justify="right")

    for rank, scored in enumerate(result.quotes, start=1):
        quote = scored.quote
        style = None if scored.within_slippage else "dim"
        table.add_row(
            str(rank) if scored.within_slippage else "-",
            quote.venue,
            f"{quote.amount_out:,.6f}",
            f"{scored.net_output:,.6f}" if scored.gas_priced else f"{scored.net_output:,.6f} (gross)",
            f"{quote.price_impact:.2f}%",
            f"${quote.gas_cost_usd:,.2f}" if quote.gas_cost_usd is not None else "-",
            str(quote.route.hop_count),
            f"{scored.latency_ms:.0f} ms",
            style=style,
        )
    return table


@app.command()
def quote(
    chain: str = typer.Argument(..., help="Chain name"),
    token_in: str = typer.Argument(..., help="Input token address or symbol"),
    token_out: str = typer.Argument(..., help="Output token address or symbol"),
    amount: str = typer.Argument(..., help="Input amount in token units"),
    slippage: str = typer.Option("1", "--slippage", "-s", help="Maximum price impact in percent"),
    venue: list[str] | None = typer.Option(None, "--venue", help="Only query these venues"),
    exclude: list[str] | None = typer.Option(None, "--exclude", help="Skip these venues"),
    deadline: float | None = typer.Option(None, "--deadline", help="Fan-out deadline in seconds"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """
    Compare swap quotes across DEX venues.

    Examples:

        chain-gateway quote ethereum ETH USDC 1.5

        chain-gateway quote solana SOL USDC 10 --format json
    """
    try:
        amount_value = Decimal(amount)
        slippage_value = Decimal(slippage)
    except InvalidOperation as e:
        console.print(f"[bold red]Invalid number:[/bold red] {e}")
        raise typer.Exit(code=2) from e

    result = _run(
        lambda gateway: gateway.get_swap_quote(
            chain,
            token_in,
            token_out,
            amount_value,
            slippage_value,
            deadline_s=deadline,
            include=venue or None,
            exclude=exclude,
        ),
        f"Querying venues on {chain}...",
    )

    if format == OutputFormat.JSON:
        _print_json(result.model_dump(mode="json"))
        return

    if result.quotes:
        console.print(_quote_table(result))
    if result.no_liquidity is not None:
        console.print(f"[yellow]No quote:[/yellow] {result.no_liquidity.message}")
    for failure in result.failures:
        label = "timed out" if failure.timed_out else failure.message
        console.print(f"[dim]{failure.venue}: {label}[/dim]")
    console.print(
        f"[dim]{result.succeeded_venues}/{result.attempted_venues} venues answered in {result.elapsed_ms:.0f} ms[/dim]"
    )


@app.command("watch-blocks")
def watch_blocks(
    chain: str = typer.Argument(..., help="Chain name"),
    count: int = typer.Option(0, "--count", "-n", help="Stop after this many blocks (0 runs until interrupted)"),
    interval: float | None = typer.Option(None, "--interval", help="Polling interval in seconds"),
) -> None:
    """Print new blocks as they are produced."""

    async def watch() -> None:
        async with ChainGateway.from_config(_load()) as gateway:
            seen = 0
            async with gateway.adapter(chain, "subscribe_blocks").subscribe_blocks(interval) as blocks:
                async for new_block in blocks:
                    console.print(
                        f"[cyan]{chain}[/cyan] block [bold]{new_block.number}[/bold] "
                        f"{new_block.hash[:18]}... txs={len(new_block.transactions)}"
                    )
                    seen += 1
                    if count and seen >= count:
                        break

    try:
        asyncio.run(watch())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped[/dim]")
    except GatewayError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e


if __name__ == "__main__":
    app()
