from __future__ import annotations

import asyncio
from collections.abc import Collection
from datetime import datetime

from binpnl.core.errors import DuplicateRecordError
from binpnl.core.models import (
    PendingTransaction,
    Position,
    RepositionHistoryEntry,
    TransactionRecord,
    TransactionType,
)


class InMemoryStore:
    """Process-local `IPositionStore` for tests and single-process tools.

    Mirrors the DuckDB store's ordering and uniqueness rules.
    """

    def __init__(self) -> None:
        self.positions: dict[str, Position] = {}
        self.transactions: list[TransactionRecord] = []
        self.repositions: dict[str, RepositionHistoryEntry] = {}
        self.pending: dict[str, PendingTransaction] = {}
        self._lock = asyncio.Lock()

    async def find_position(self, position_id: str) -> Position | None:
        return self.positions.get(position_id)

    async def find_positions_by_wallet(self, wallet_address: str, *, include_closed: bool = True) -> list[Position]:
        found = [
            p
            for p in self.positions.values()
            if p.wallet_address == wallet_address and (include_closed or p.is_active)
        ]
        return sorted(found, key=lambda p: p.created_at, reverse=True)

    async def upsert_position(self, position: Position) -> None:
        async with self._lock:
            self.positions[position.position_id] = position

    async def append_transaction_record(self, record: TransactionRecord) -> None:
        async with self._lock:
            self.transactions.append(record)

    async def list_transaction_records(
        self, position_id: str, tx_type: TransactionType | None = None
    ) -> list[TransactionRecord]:
        found = [
            r
            for r in self.transactions
            if r.position_id == position_id and (tx_type is None or r.type == tx_type)
        ]
        # stable sort keeps insertion order for equal timestamps
        return sorted(found, key=lambda r: r.timestamp)

    async def insert_reposition_entry(self, entry: RepositionHistoryEntry) -> None:
        async with self._lock:
            if entry.id in self.repositions:
                raise DuplicateRecordError(f"Reposition entry {entry.id} already exists")
            self.repositions[entry.id] = entry

    async def find_reposition_entries(self, addresses: Collection[str]) -> list[RepositionHistoryEntry]:
        wanted = set(addresses)
        found = [
            e
            for e in self.repositions.values()
            if e.old_position_address in wanted or e.new_position_address in wanted
        ]
        return sorted(found, key=lambda e: (e.created_at, e.id))

    async def list_reposition_entries_by_wallet(self, wallet_address: str) -> list[RepositionHistoryEntry]:
        found = [e for e in self.repositions.values() if e.wallet_address == wallet_address]
        return sorted(found, key=lambda e: (e.created_at, e.id), reverse=True)

    async def insert_pending_transaction(
        self, pending: PendingTransaction, *, since: datetime | None = None, limit: int | None = None
    ) -> bool:
        async with self._lock:
            if since is not None and limit is not None:
                if self._count_pending(pending.wallet_address, since) >= limit:
                    return False
            if pending.tx_hash in self.pending:
                raise DuplicateRecordError("Pending transaction already registered")
            self.pending[pending.tx_hash] = pending
            return True

    async def find_pending_transaction(self, tx_hash: str) -> PendingTransaction | None:
        return self.pending.get(tx_hash)

    def _count_pending(self, wallet_address: str, since: datetime) -> int:
        return sum(
            1 for p in self.pending.values() if p.wallet_address == wallet_address and p.created_at >= since
        )

    async def count_pending_transactions(self, wallet_address: str, since: datetime) -> int:
        return self._count_pending(wallet_address, since)
