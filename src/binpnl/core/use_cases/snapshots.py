"""Value snapshots of a position at deposit, now, and withdrawal.

Deposit and withdrawal snapshots are rebuilt from stored amounts and stored
prices. The current snapshot reads bin-aggregated totals from the chain and
prices from the oracle; it is only valid for open positions.

Legacy records may lack a stored price. Those legs are priced with a fallback
and the snapshot is flagged `approximate`, never silently mixed with exact
ones.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from binpnl.core.errors import InvalidStateError
from binpnl.core.interfaces import IChainReader, IPriceOracle
from binpnl.core.models import Position, PositionSnapshot, PositionTotals, TokenValue, utcnow

logger = logging.getLogger(__name__)


class SnapshotProvider:
    def __init__(
        self,
        chain: IChainReader,
        oracle: IPriceOracle,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._chain = chain
        self._oracle = oracle
        self._clock = clock

    async def current_prices(self, position: Position) -> tuple[float, float]:
        """Current oracle prices for (token X, token Y)."""
        px, py = await asyncio.gather(
            self._oracle.price(position.token_x_symbol),
            self._oracle.price(position.token_y_symbol),
        )
        return float(px), float(py)

    async def deposit_snapshot(self, position: Position) -> PositionSnapshot:
        """Deposit amounts at deposit-time prices.

        A missing deposit price (old records) is replaced by the current
        oracle price; the result is approximate.
        """
        price_x = position.deposit_token_x_price
        price_y = position.deposit_token_y_price
        approximate = False

        if not price_x:
            logger.warning(
                "Position %s has no stored %s deposit price; using current price",
                position.position_id,
                position.token_x_symbol,
            )
            price_x = await self._oracle.price(position.token_x_symbol)
            approximate = True
        if not price_y:
            logger.warning(
                "Position %s has no stored %s deposit price; using current price",
                position.position_id,
                position.token_y_symbol,
            )
            price_y = await self._oracle.price(position.token_y_symbol)
            approximate = True

        return PositionSnapshot(
            token_x=TokenValue.of(position.deposit_token_x_amount, price_x),
            token_y=TokenValue.of(position.deposit_token_y_amount, price_y),
            timestamp=position.created_at,
            approximate=approximate,
        )

    async def current_snapshot(self, position: Position) -> PositionSnapshot:
        """Live amounts at current prices (open positions only).

        Raises PositionNotOnChainError (from the chain reader) once the account
        is gone; callers must mark a closing position closed first.
        """
        snapshot, _ = await self.current_snapshot_with_totals(position)
        return snapshot

    async def current_snapshot_with_totals(
        self, position: Position
    ) -> tuple[PositionSnapshot, PositionTotals]:
        """Current snapshot plus the raw totals it was built from."""
        if not position.is_active:
            raise InvalidStateError(
                f"Position {position.position_id} is closed",
                "Current snapshots are only available for open positions",
            )
        totals, (price_x, price_y) = await asyncio.gather(
            self._chain.totals(position.address),
            self.current_prices(position),
        )
        logger.debug(
            "Current amounts for %s: %.8f %s, %.8f %s",
            position.position_id,
            totals.token_x_amount,
            position.token_x_symbol,
            totals.token_y_amount,
            position.token_y_symbol,
        )
        snapshot = PositionSnapshot(
            token_x=TokenValue.of(totals.token_x_amount, price_x),
            token_y=TokenValue.of(totals.token_y_amount, price_y),
            timestamp=self._clock(),
        )
        return snapshot, totals

    def withdrawal_snapshot(self, position: Position) -> PositionSnapshot:
        """Withdrawn amounts at withdrawal-time prices (closed positions only).

        A missing withdrawal price falls back to the entry price; the result
        is approximate.
        """
        if position.is_active:
            raise InvalidStateError(
                f"Position {position.position_id} is still open",
                "Withdrawal snapshots are only available for closed positions",
            )
        price_x, approx_x = _price_or_fallback(position.withdraw_token_x_price, position.deposit_token_x_price)
        price_y, approx_y = _price_or_fallback(position.withdraw_token_y_price, position.deposit_token_y_price)
        if approx_x or approx_y:
            logger.warning("Position %s has no stored withdrawal price; using entry price", position.position_id)

        return PositionSnapshot(
            token_x=TokenValue.of(position.withdraw_token_x_amount or 0.0, price_x),
            token_y=TokenValue.of(position.withdraw_token_y_amount or 0.0, price_y),
            timestamp=position.closed_at or self._clock(),
            approximate=approx_x or approx_y,
        )


def _price_or_fallback(price: float | None, fallback: float | None) -> tuple[float, bool]:
    if price:
        return float(price), False
    return float(fallback or 0.0), True
