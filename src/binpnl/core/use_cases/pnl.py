from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime

from binpnl.core.config import PnLConfig
from binpnl.core.errors import (
    BinPnLError,
    ChainUnavailableError,
    ErrorKind,
    InvalidStateError,
    NotFoundError,
    PositionNotOnChainError,
)
from binpnl.core.interfaces import IChainReader, IPositionStore, IPriceOracle, IRewardsProvider
from binpnl.core.models import (
    ClosePositionResult,
    FeesBreakdown,
    ImpermanentLoss,
    PnLResult,
    Position,
    PositionFailure,
    PositionSnapshot,
    RewardInfo,
    TokenAmount,
    TokenFees,
    TokenValue,
    TransactionRecord,
    UsdPrice,
    UsdValue,
    WalletPnLResult,
    utcnow,
)
from binpnl.core.use_cases.fees import FeesCalculator
from binpnl.core.use_cases.impermanent_loss import ImpermanentLossCalculator, compute_impermanent_loss
from binpnl.core.use_cases.snapshots import SnapshotProvider
from binpnl.core.validation import validate_address, validate_transaction_type

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------


class NoRewards:
    """Rewards provider for programs without an active reward stream."""

    async def rewards(self, position: Position, is_open: bool) -> list[RewardInfo]:
        return []


# ---------------------------------------------------------------------------
# Result assembly
# ---------------------------------------------------------------------------


def assemble_pnl(
    *,
    position: Position,
    deposit: PositionSnapshot,
    current: PositionSnapshot,
    fees: FeesBreakdown,
    rewards: list[RewardInfo],
    impermanent_loss: ImpermanentLoss,
    deposit_value_usd: float | None = None,
    fees_earned_usd: float | None = None,
    is_fallback: bool = False,
) -> PnLResult:
    """Apply `realized = current + fees + rewards - deposit` uniformly to open and closed positions."""
    deposit_value = deposit.value_usd if deposit_value_usd is None else deposit_value_usd
    current_value = current.value_usd
    fees_usd = fees.total_usd if fees_earned_usd is None else fees_earned_usd
    rewards_usd = sum(r.usd_value for r in rewards)

    realized = current_value + fees_usd + rewards_usd - deposit_value
    realized_percent = (realized / deposit_value) * 100.0 if deposit_value > 0 else 0.0

    return PnLResult(
        position_id=position.position_id,
        status=position.status,
        deposit_value_usd=UsdValue(deposit_value),
        current_value_usd=UsdValue(current_value),
        realized_pnl_usd=UsdValue(realized),
        realized_pnl_percent=realized_percent,
        impermanent_loss=impermanent_loss,
        fees_earned_usd=UsdValue(fees_usd),
        rewards_earned_usd=UsdValue(rewards_usd),
        deposit=deposit,
        current=current,
        fees=fees,
        rewards=list(rewards),
        is_fallback=is_fallback,
    )


def fallback_pnl(position: Position, *, now: datetime | None = None) -> PnLResult:
    """PnL built only from the position's last-known stored fields.

    Used when a live read fails inside a wallet report. No chain or oracle
    call is made; missing prices fall back to the entry side and the
    snapshots are flagged approximate.
    """
    dep_px = float(position.deposit_token_x_price or 0.0)
    dep_py = float(position.deposit_token_y_price or 0.0)
    deposit = PositionSnapshot(
        token_x=TokenValue.of(position.deposit_token_x_amount, dep_px),
        token_y=TokenValue.of(position.deposit_token_y_amount, dep_py),
        timestamp=position.created_at,
        approximate=not (position.deposit_token_x_price and position.deposit_token_y_price),
    )

    cur_px = float(position.withdraw_token_x_price or dep_px)
    cur_py = float(position.withdraw_token_y_price or dep_py)
    amount_x = position.withdraw_token_x_amount
    amount_y = position.withdraw_token_y_amount
    current = PositionSnapshot(
        token_x=TokenValue.of(position.deposit_token_x_amount if amount_x is None else amount_x, cur_px),
        token_y=TokenValue.of(position.deposit_token_y_amount if amount_y is None else amount_y, cur_py),
        timestamp=position.closed_at or now or utcnow(),
        approximate=True,
    )

    claimed = float(position.claimed_fees_usd or 0.0)
    fees_earned = max(float(position.fees_earned_usd or 0.0), claimed)
    unclaimed = fees_earned - claimed
    # Stored aggregates do not keep the per-token split; halve it
    fees = FeesBreakdown(
        token_x=TokenFees(
            amount=TokenAmount(position.fee_token_x_amount or 0.0),
            claimed_usd=UsdValue(claimed / 2),
            unclaimed_usd=UsdValue(unclaimed / 2),
        ),
        token_y=TokenFees(
            amount=TokenAmount(position.fee_token_y_amount or 0.0),
            claimed_usd=UsdValue(claimed / 2),
            unclaimed_usd=UsdValue(unclaimed / 2),
        ),
    )

    if position.impermanent_loss_usd is not None:
        il = ImpermanentLoss(
            usd=position.impermanent_loss_usd,
            percent=float(position.impermanent_loss_percent or 0.0),
        )
    else:
        il = compute_impermanent_loss(deposit, current)

    rewards_usd = float(position.rewards_earned_usd or 0.0)
    rewards = [RewardInfo(token="stored", amount=TokenAmount(0.0), usd_value=UsdValue(rewards_usd), claimed=True)] if rewards_usd else []

    return assemble_pnl(
        position=position,
        deposit=deposit,
        current=current,
        fees=fees,
        rewards=rewards,
        impermanent_loss=il,
        deposit_value_usd=position.deposit_value_usd,
        fees_earned_usd=fees_earned,
        is_fallback=True,
    )


def _sort_key(result: PnLResult) -> tuple[int, float]:
    return (0 if result.status == "open" else 1, -result.realized_pnl_usd)


def summarize_wallet(
    wallet_address: str,
    results: Sequence[PnLResult],
    failures: Sequence[PositionFailure] = (),
) -> WalletPnLResult:
    """Plain sums over per-position results, open first then best PnL first."""
    ordered = sorted(results, key=_sort_key)
    active = sum(1 for r in ordered if r.status == "open")
    return WalletPnLResult(
        wallet_address=wallet_address,
        total_pnl_usd=UsdValue(sum(r.realized_pnl_usd for r in ordered)),
        total_positions=len(ordered),
        active_positions=active,
        closed_positions=len(ordered) - active,
        total_deposit_value_usd=UsdValue(sum(r.deposit_value_usd for r in ordered)),
        total_impermanent_loss_usd=UsdValue(sum(r.impermanent_loss.usd for r in ordered)),
        total_fees_earned_usd=UsdValue(sum(r.fees_earned_usd for r in ordered)),
        total_rewards_earned_usd=UsdValue(sum(r.rewards_earned_usd for r in ordered)),
        positions=ordered,
        failures=list(failures),
    )


def _failure_of(position: Position, exc: BaseException) -> PositionFailure:
    kind = exc.kind.value if isinstance(exc, BinPnLError) else ErrorKind.UNKNOWN.value
    return PositionFailure(position_id=position.position_id, kind=kind, message=str(exc) or type(exc).__name__)


# ---------------------------------------------------------------------------
# Domain service - PnLAggregator
# ---------------------------------------------------------------------------


class PnLAggregator:
    """
    Position and wallet PnL over injected chain, oracle and store capabilities.

    Single-position operations raise on the first hard failure; wallet
    reports isolate failures per position and substitute stored values.
    """

    def __init__(
        self,
        *,
        store: IPositionStore,
        chain: IChainReader,
        oracle: IPriceOracle,
        rewards: IRewardsProvider | None = None,
        config: PnLConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._chain = chain
        self._config = config or PnLConfig()
        self._clock = clock
        self._rewards: IRewardsProvider = rewards or NoRewards()
        self._il = ImpermanentLossCalculator()
        self.snapshots = SnapshotProvider(chain, oracle, clock=clock)
        self.fees = FeesCalculator(chain, oracle, store)

    # ---- single position ----

    async def position_pnl(self, position: Position) -> PnLResult:
        is_open = position.is_active
        logger.info("Calculating PnL for %s (%s)", position.position_id, position.status)

        deposit = await self.snapshots.deposit_snapshot(position)
        if is_open:
            current, totals = await self.snapshots.current_snapshot_with_totals(position)
            fees = await self.fees.breakdown(
                position,
                True,
                totals=totals,
                prices=(current.token_x.price, current.token_y.price),
            )
        else:
            current = self.snapshots.withdrawal_snapshot(position)
            fees = await self.fees.breakdown(position, False)

        rewards = await self._rewards.rewards(position, is_open)
        il = self._il.compute(deposit, current)

        result = assemble_pnl(
            position=position,
            deposit=deposit,
            current=current,
            fees=fees,
            rewards=rewards,
            impermanent_loss=il,
        )
        logger.info(
            "PnL for %s: $%.2f (%.2f%%), IL $%.2f, fees $%.2f",
            position.position_id,
            result.realized_pnl_usd,
            result.realized_pnl_percent,
            il.usd,
            result.fees_earned_usd,
        )
        return result

    async def position_pnl_by_id(self, position_id: str) -> PnLResult:
        position = await self._store.find_position(position_id)
        if position is None:
            raise NotFoundError(f"Position {position_id} not found")
        return await self.position_pnl(position)

    # ---- wallet ----

    async def wallet_pnl(self, wallet_address: str, positions: Sequence[Position]) -> WalletPnLResult:
        """Per-position PnL in batches; a failed item is replaced by its stored fallback."""
        results: list[PnLResult] = []
        failures: list[PositionFailure] = []
        batch_size = max(1, self._config.batch_size)

        for start in range(0, len(positions), batch_size):
            batch = positions[start : start + batch_size]
            outcomes = await asyncio.gather(
                *(self.position_pnl(p) for p in batch),
                return_exceptions=True,
            )
            for position, outcome in zip(batch, outcomes):
                if isinstance(outcome, PnLResult):
                    results.append(outcome)
                    continue
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning(
                    "PnL failed for %s, using stored values: %s",
                    position.position_id,
                    outcome,
                )
                failures.append(_failure_of(position, outcome))
                results.append(fallback_pnl(position, now=self._clock()))

            if start + batch_size < len(positions):
                await asyncio.sleep(self._config.batch_delay_s)

        report = summarize_wallet(wallet_address, results, failures)
        logger.info(
            "Wallet %s: %d positions, PnL $%.2f, IL $%.2f, fees $%.2f, %d fallback",
            wallet_address,
            report.total_positions,
            report.total_pnl_usd,
            report.total_impermanent_loss_usd,
            report.total_fees_earned_usd,
            len(failures),
        )
        return report

    async def wallet_pnl_for(self, wallet_address: str, *, include_closed: bool = True) -> WalletPnLResult:
        validate_address(wallet_address, label="wallet address")
        positions = await self._store.find_positions_by_wallet(wallet_address, include_closed=include_closed)
        if not positions:
            return WalletPnLResult(wallet_address=wallet_address)
        return await self.wallet_pnl(wallet_address, positions)

    # ---- lifecycle ----

    async def record_transaction(self, record: TransactionRecord) -> None:
        validate_transaction_type(record.type)
        if record.type == "fee_claim":
            await self.fees.record_claim(record)
            return
        await self._store.append_transaction_record(record)
        logger.info("Recorded %s transaction for %s", record.type, record.position_id)

    async def close_position(
        self,
        position_id: str,
        *,
        signature: str | None = None,
        withdrawn_amounts: tuple[float, float] | None = None,
    ) -> ClosePositionResult:
        """Close a position and freeze its final PnL.

        The position is marked closed in the store *before* PnL is
        recomputed, so the closed path (stored withdrawal snapshot) is used
        and the already-closed on-chain account is never read.
        """
        position = await self._store.find_position(position_id)
        if position is None:
            raise NotFoundError(f"Position {position_id} not found")
        if not position.is_active:
            raise InvalidStateError(
                f"Position {position_id} is already closed",
                "Cannot close a position that is not active",
            )

        # 1) Prices at close time
        price_x, price_y = await self.snapshots.current_prices(position)

        # 2) Withdrawn amounts: chain if the account still exists, else caller/stored values
        fee_x = fee_y = 0.0
        try:
            totals = await self._chain.totals(position.address)
            amount_x, amount_y = totals.token_x_amount, totals.token_y_amount
            fee_x, fee_y = totals.unclaimed_fee_x, totals.unclaimed_fee_y
        except (PositionNotOnChainError, ChainUnavailableError) as e:
            logger.warning("Could not read withdrawn amounts for %s from chain: %s", position_id, e)
            if withdrawn_amounts is not None:
                amount_x, amount_y = withdrawn_amounts
            else:
                amount_x, amount_y = position.deposit_token_x_amount, position.deposit_token_y_amount

        now = self._clock()

        # 3) Append the withdrawal to the log
        await self.record_transaction(
            TransactionRecord(
                position_id=position_id,
                type="withdraw",
                timestamp=now,
                token_x_amount=TokenAmount(amount_x),
                token_y_amount=TokenAmount(amount_y),
                token_x_price=UsdPrice(price_x),
                token_y_price=UsdPrice(price_y),
                usd_value=UsdValue(amount_x * price_x + amount_y * price_y),
                signature=signature,
                notes=f"Closed via transaction {signature}" if signature else "Closed via PnL engine",
            )
        )

        # 4) Mark closed before computing PnL
        closed = position.close(
            closed_at=now,
            withdraw_token_x_amount=amount_x,
            withdraw_token_y_amount=amount_y,
            withdraw_token_x_price=price_x,
            withdraw_token_y_price=price_y,
            fee_token_x_amount=fee_x,
            fee_token_y_amount=fee_y,
        )
        await self._store.upsert_position(closed)
        logger.info("Position %s marked as closed", position_id)

        # 5) Final PnL, written once
        pnl = await self.position_pnl(closed)
        await self._store.upsert_position(closed.with_final_pnl(pnl))

        return ClosePositionResult(position_id=position_id, signature=signature, pnl=pnl)
