"""Position chain tracking across successive repositions.

Every reposition closes one position and opens another; the history entries
are the edges of an undirected graph over position addresses. A chain is the
connected component containing a given address.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Callable
from datetime import datetime

from binpnl.core.interfaces import IPositionStore
from binpnl.core.models import (
    BinRange,
    PositionChain,
    RecentReposition,
    RepositionHistoryEntry,
    RepositionStats,
    TokenAmount,
    utcnow,
)
from binpnl.core.validation import validate_address, validate_reason, validate_strategy

logger = logging.getLogger(__name__)

RECENT_LIMIT = 10


def _chronological(entries: list[RepositionHistoryEntry]) -> list[RepositionHistoryEntry]:
    return sorted(entries, key=lambda e: (e.created_at, e.id))


class PositionChainTracker:
    def __init__(self, store: IPositionStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def chain(self, position_address: str) -> PositionChain | None:
        """
        Full reposition history linked to `position_address`, or None.

        Breadth-first over the edge set with one bulk store query per
        frontier level. Cycles and duplicate rows are harmless: addresses and
        entry ids are tracked in visited sets.
        """
        seen_entries: dict[str, RepositionHistoryEntry] = {}
        visited: set[str] = {position_address}
        frontier: set[str] = {position_address}

        while frontier:
            rows = await self._store.find_reposition_entries(frontier)
            next_frontier: set[str] = set()
            for entry in rows:
                if entry.id in seen_entries:
                    continue
                seen_entries[entry.id] = entry
                for address in (entry.old_position_address, entry.new_position_address):
                    if address not in visited:
                        visited.add(address)
                        next_frontier.add(address)
            frontier = next_frontier

        if not seen_entries:
            return None

        history = _chronological(list(seen_entries.values()))
        return PositionChain(
            current_position=history[-1].new_position_address,
            chain_length=len(history) + 1,
            total_repositions=len(history),
            history=history,
            total_fees_x=TokenAmount(sum(e.fees_claimed_x for e in history)),
            total_fees_y=TokenAmount(sum(e.fees_claimed_y for e in history)),
            total_gas_cost_sol=sum(e.gas_cost_sol or 0.0 for e in history),
        )

    async def wallet_stats(self, wallet_address: str) -> RepositionStats:
        entries = await self._store.list_reposition_entries_by_wallet(wallet_address)
        entries = sorted(entries, key=lambda e: (e.created_at, e.id), reverse=True)
        reasons = Counter(e.reason for e in entries)

        return RepositionStats(
            wallet_address=wallet_address,
            total_repositions=len(entries),
            reason_breakdown=dict(reasons),
            total_fees_x=TokenAmount(sum(e.fees_claimed_x for e in entries)),
            total_fees_y=TokenAmount(sum(e.fees_claimed_y for e in entries)),
            total_gas_cost_sol=sum(e.gas_cost_sol or 0.0 for e in entries),
            recent=[
                RecentReposition(
                    id=e.id,
                    old_position=e.old_position_address,
                    new_position=e.new_position_address,
                    reason=e.reason,
                    created_at=e.created_at,
                )
                for e in entries[:RECENT_LIMIT]
            ],
        )

    async def record_reposition(
        self,
        *,
        old_position_address: str,
        new_position_address: str,
        wallet_address: str,
        pool_address: str,
        reason: str,
        old_bin_range: BinRange,
        new_bin_range: BinRange,
        active_bin_at_reposition: int,
        liquidity_recovered: tuple[float, float] = (0.0, 0.0),
        fees_claimed: tuple[float, float] = (0.0, 0.0),
        new_amounts: tuple[float, float] | None = None,
        strategy: str | None = None,
        gas_cost_sol: float | None = None,
        transaction_signature: str | None = None,
    ) -> RepositionHistoryEntry:
        """Persist one executed reposition as a new edge (written exactly once)."""
        for label, address in (
            ("old position address", old_position_address),
            ("new position address", new_position_address),
            ("wallet address", wallet_address),
            ("pool address", pool_address),
        ):
            validate_address(address, label=label)
        checked_reason = validate_reason(reason)
        checked_strategy = validate_strategy(strategy) if strategy is not None else None

        entry = RepositionHistoryEntry(
            id=str(uuid.uuid4()),
            old_position_address=old_position_address,
            new_position_address=new_position_address,
            wallet_address=wallet_address,
            pool_address=pool_address,
            reason=checked_reason,
            old_bin_range=old_bin_range,
            new_bin_range=new_bin_range,
            active_bin_at_reposition=active_bin_at_reposition,
            distance_from_range=old_bin_range.distance_to(active_bin_at_reposition),
            created_at=self._clock(),
            liquidity_recovered_x=TokenAmount(liquidity_recovered[0]),
            liquidity_recovered_y=TokenAmount(liquidity_recovered[1]),
            fees_claimed_x=TokenAmount(fees_claimed[0]),
            fees_claimed_y=TokenAmount(fees_claimed[1]),
            new_token_x_amount=TokenAmount(new_amounts[0]) if new_amounts else None,
            new_token_y_amount=TokenAmount(new_amounts[1]) if new_amounts else None,
            strategy=checked_strategy,
            gas_cost_sol=gas_cost_sol,
            transaction_signature=transaction_signature,
        )
        await self._store.insert_reposition_entry(entry)
        logger.info(
            "Recorded reposition %s -> %s (%s, %d bins out)",
            old_position_address,
            new_position_address,
            checked_reason,
            entry.distance_from_range,
        )
        return entry
