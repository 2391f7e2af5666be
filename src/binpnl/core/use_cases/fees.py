"""Claimed and unclaimed fee valuation.

Claimed fees are a fold over the `fee_claim` transaction log, each claim
valued at the prices recorded when it happened; those prices are never
recomputed. Unclaimed fees are a point-in-time read: live counters for open
positions, the fee amounts swept at close for closed ones.
"""

from __future__ import annotations

import asyncio
import logging

from binpnl.core.errors import NotFoundError, ValidationError
from binpnl.core.interfaces import IChainReader, IPositionStore, IPriceOracle
from binpnl.core.models import (
    FeesBreakdown,
    Position,
    PositionTotals,
    TokenAmount,
    TokenFees,
    TransactionRecord,
    UsdValue,
)

logger = logging.getLogger(__name__)


class FeesCalculator:
    def __init__(self, chain: IChainReader, oracle: IPriceOracle, store: IPositionStore) -> None:
        self._chain = chain
        self._oracle = oracle
        self._store = store

    async def claimed_usd(self, position_id: str) -> tuple[float, float]:
        """Sum of historical claims per token, valued at claim-time prices."""
        claims = await self._store.list_transaction_records(position_id, "fee_claim")
        claimed_x = sum(r.token_x_amount * r.token_x_price for r in claims)
        claimed_y = sum(r.token_y_amount * r.token_y_price for r in claims)
        return claimed_x, claimed_y

    async def breakdown(
        self,
        position: Position,
        is_open: bool,
        *,
        totals: PositionTotals | None = None,
        prices: tuple[float, float] | None = None,
    ) -> FeesBreakdown:
        """Fees earned by a position.

        `totals` and `prices` may be passed in when the caller already read
        them for the current snapshot; otherwise they are read here.
        """
        claimed_x, claimed_y = await self.claimed_usd(position.position_id)

        if is_open:
            if totals is None:
                totals = await self._chain.totals(position.address)
            if prices is None:
                px, py = await asyncio.gather(
                    self._oracle.price(position.token_x_symbol),
                    self._oracle.price(position.token_y_symbol),
                )
                prices = (float(px), float(py))
            unclaimed_x = max(0.0, totals.unclaimed_fee_x)
            unclaimed_y = max(0.0, totals.unclaimed_fee_y)
            price_x, price_y = prices
        else:
            unclaimed_x = max(0.0, position.fee_token_x_amount or 0.0)
            unclaimed_y = max(0.0, position.fee_token_y_amount or 0.0)
            price_x = float(position.withdraw_token_x_price or position.deposit_token_x_price or 0.0)
            price_y = float(position.withdraw_token_y_price or position.deposit_token_y_price or 0.0)

        fees = FeesBreakdown(
            token_x=TokenFees(
                amount=TokenAmount(unclaimed_x),
                claimed_usd=UsdValue(claimed_x),
                unclaimed_usd=UsdValue(unclaimed_x * price_x),
            ),
            token_y=TokenFees(
                amount=TokenAmount(unclaimed_y),
                claimed_usd=UsdValue(claimed_y),
                unclaimed_usd=UsdValue(unclaimed_y * price_y),
            ),
        )
        logger.debug(
            "Fees for %s: claimed=$%.2f unclaimed=$%.2f",
            position.position_id,
            fees.claimed_usd,
            fees.unclaimed_usd,
        )
        return fees

    async def record_claim(self, record: TransactionRecord) -> Position:
        """Append a fee claim to the log and add it to the position's claimed total."""
        if record.type != "fee_claim":
            raise ValidationError(f"Expected a fee_claim record, got {record.type!r}")
        if record.token_x_amount < 0 or record.token_y_amount < 0:
            raise ValidationError("Fee claim amounts must be non-negative")
        position = await self._store.find_position(record.position_id)
        if position is None:
            raise NotFoundError(f"Position {record.position_id} not found")

        await self._store.append_transaction_record(record)
        position = position.with_claim(record.usd_value)
        await self._store.upsert_position(position)
        logger.info("Recorded fee claim for %s ($%.2f)", record.position_id, record.usd_value)
        return position
