import asyncio
import json
from collections.abc import Coroutine
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from binpnl.core.config import ClientConfig
from binpnl.core.errors import BinPnLError, NotFoundError, format_error
from binpnl.core.models import PnLResult, PositionChain, RepositionStats, WalletPnLResult
from binpnl.core.use_cases.chain import PositionChainTracker
from binpnl.core.use_cases.pnl import fallback_pnl, summarize_wallet
from binpnl.core.use_cases.reposition import verify_intent
from binpnl.core.validation import validate_address
from binpnl.logging_utils import setup_logging
from binpnl.storage.duckdb_store import DuckDBStore

console = Console()

T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except BinPnLError as e:
        console.print(f"[red]{format_error(e)}[/]")
        raise SystemExit(1) from e


def _emit_json(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _usd(value: float) -> str:
    style = "green" if value >= 0 else "red"
    return f"[{style}]${value:,.2f}[/]"


# =====================================================================
# Renderers
# =====================================================================


def _render_pnl(result: PnLResult) -> None:
    table = Table(title=f"Position {result.position_id} ({result.status})", show_header=False)
    table.add_column("metric", style="bold")
    table.add_column("value", justify="right")
    table.add_row("Deposit value", f"${result.deposit_value_usd:,.2f}")
    table.add_row("Current value", f"${result.current_value_usd:,.2f}")
    table.add_row("Fees earned", f"${result.fees_earned_usd:,.2f}")
    table.add_row("Rewards earned", f"${result.rewards_earned_usd:,.2f}")
    table.add_row(
        "Impermanent loss",
        f"${result.impermanent_loss.usd:,.2f} ({result.impermanent_loss.percent:.2f}%)",
    )
    table.add_row("Realized PnL", f"{_usd(result.realized_pnl_usd)} ({result.realized_pnl_percent:.2f}%)")
    console.print(table)
    if result.deposit.approximate or result.current.approximate:
        console.print("[yellow]Some legs were priced with a fallback price; values are approximate.[/]")


def _render_wallet(report: WalletPnLResult) -> None:
    table = Table(title=f"Wallet {report.wallet_address}")
    table.add_column("position")
    table.add_column("status")
    table.add_column("deposit", justify="right")
    table.add_column("fees", justify="right")
    table.add_column("IL", justify="right")
    table.add_column("PnL", justify="right")
    for r in report.positions:
        table.add_row(
            r.position_id,
            r.status,
            f"${r.deposit_value_usd:,.2f}",
            f"${r.fees_earned_usd:,.2f}",
            f"${r.impermanent_loss.usd:,.2f}",
            _usd(r.realized_pnl_usd),
        )
    console.print(table)
    console.print(
        f"[bold]total[/]: {report.total_positions} positions "
        f"({report.active_positions} open, {report.closed_positions} closed) • PnL {_usd(report.total_pnl_usd)}"
    )


def _render_chain(chain: PositionChain) -> None:
    table = Table(title=f"Chain ending at {chain.current_position}")
    table.add_column("when")
    table.add_column("old position")
    table.add_column("new position")
    table.add_column("reason")
    table.add_column("bins out", justify="right")
    for e in chain.history:
        table.add_row(
            e.created_at.isoformat(timespec="seconds"),
            e.old_position_address,
            e.new_position_address,
            e.reason,
            str(e.distance_from_range),
        )
    console.print(table)
    console.print(
        f"[bold]{chain.total_repositions}[/] repositions • fees x={chain.total_fees_x:.6f} "
        f"y={chain.total_fees_y:.6f} • gas {chain.total_gas_cost_sol:.6f} SOL"
    )


def _render_stats(stats: RepositionStats) -> None:
    console.print(f"[bold]{stats.wallet_address}[/]: {stats.total_repositions} repositions")
    for reason, count in sorted(stats.reason_breakdown.items()):
        console.print(f"  {reason}: {count}")
    console.print(
        f"fees x={stats.total_fees_x:.6f} y={stats.total_fees_y:.6f} • gas {stats.total_gas_cost_sol:.6f} SOL"
    )
    if stats.recent:
        table = Table(title="Recent")
        table.add_column("when")
        table.add_column("old position")
        table.add_column("new position")
        table.add_column("reason")
        for r in stats.recent:
            table.add_row(r.created_at.isoformat(timespec="seconds"), r.old_position, r.new_position, r.reason)
        console.print(table)


# =====================================================================
# Commands
# =====================================================================


@click.group()
@click.option(
    "--db",
    "db_path",
    envvar="BINPNL_DB",
    default=str(ClientConfig().db_path),
    show_default=True,
    help="DuckDB position store",
)
@click.option("--log-level", envvar="LOG_LEVEL", default="WARNING", show_default=True)
@click.pass_context
def cli(ctx: click.Context, db_path: str, log_level: str) -> None:
    """binpnl: PnL accounting and reposition tooling for bin-based liquidity positions."""
    setup_logging(log_level)
    ctx.obj = {"db_path": db_path}


def _store(ctx: click.Context) -> DuckDBStore:
    return DuckDBStore(ctx.obj["db_path"])


@cli.command("position-pnl")
@click.argument("position_id")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.pass_context
def position_pnl_cmd(ctx: click.Context, position_id: str, as_json: bool) -> None:
    """PnL of one position from its stored values."""

    async def run() -> PnLResult:
        position = await _store(ctx).find_position(position_id)
        if position is None:
            raise NotFoundError(f"Position {position_id} not found")
        return fallback_pnl(position)

    result = _run(run())
    if as_json:
        _emit_json(result.to_dict())
    else:
        _render_pnl(result)


@cli.command("wallet-pnl")
@click.argument("wallet")
@click.option("--active-only", is_flag=True, help="Skip closed positions")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.pass_context
def wallet_pnl_cmd(ctx: click.Context, wallet: str, active_only: bool, as_json: bool) -> None:
    """Wallet PnL summary from stored position values."""

    async def run() -> WalletPnLResult:
        validate_address(wallet, label="wallet address")
        positions = await _store(ctx).find_positions_by_wallet(wallet, include_closed=not active_only)
        return summarize_wallet(wallet, [fallback_pnl(p) for p in positions])

    report = _run(run())
    if as_json:
        _emit_json(report.to_dict())
    else:
        _render_wallet(report)


@cli.command("chain")
@click.argument("position_address")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.pass_context
def chain_cmd(ctx: click.Context, position_address: str, as_json: bool) -> None:
    """Reposition history linked to a position address."""

    async def run() -> PositionChain | None:
        return await PositionChainTracker(_store(ctx)).chain(position_address)

    chain = _run(run())
    if chain is None:
        console.print(f"No reposition history for {position_address}")
        return
    if as_json:
        _emit_json(chain.to_dict())
    else:
        _render_chain(chain)


@cli.command("wallet-stats")
@click.argument("wallet")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.pass_context
def wallet_stats_cmd(ctx: click.Context, wallet: str, as_json: bool) -> None:
    """Reposition statistics for a wallet."""

    async def run() -> RepositionStats:
        return await PositionChainTracker(_store(ctx)).wallet_stats(wallet)

    stats = _run(run())
    if as_json:
        _emit_json(stats.to_dict())
    else:
        _render_stats(stats)


@cli.command("verify-intent")
@click.argument("tx_hash")
@click.argument("transaction")
def verify_intent_cmd(tx_hash: str, transaction: str) -> None:
    """Check that a base64 unsigned transaction matches its intent hash."""
    try:
        ok = verify_intent(tx_hash, transaction)
    except BinPnLError as e:
        console.print(f"[red]{format_error(e)}[/]")
        raise SystemExit(1) from e
    if ok:
        console.print("[green]match[/]: transaction message hashes to the given tx hash")
    else:
        console.print("[red]mismatch[/]: do not sign this transaction")
        raise SystemExit(2)


if __name__ == "__main__":
    cli()
