"""DuckDB-backed position store.

Each operation opens its own connection to the database file and closes it
when done, so several service processes can share one file. Blocking DuckDB
calls run in a worker thread via `asyncio.to_thread`; writes from one store
instance are serialized with an `asyncio.Lock`.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Collection, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

import duckdb

from binpnl.core.errors import DuplicateRecordError, StoreError
from binpnl.core.models import (
    BinRange,
    PendingTransaction,
    Position,
    RepositionHistoryEntry,
    TransactionRecord,
    TransactionType,
)
from binpnl.storage import sql_queries


# =====================================================================
# Connection / conversion helpers
# =====================================================================


@contextmanager
def get_connection(path: str, threads: int = 2) -> Iterator[duckdb.DuckDBPyConnection]:
    """Context manager for a DuckDB connection to `path`."""
    try:
        con = duckdb.connect(path)
    except duckdb.Error as e:
        raise StoreError("Could not open position store", str(e)) from e
    try:
        con.execute(f"PRAGMA threads={threads}")
        yield con
    finally:
        con.close()


def _to_db_ts(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_ts(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


_POSITION_TS = {"created_at", "closed_at"}


def _position_params(p: Position) -> list[Any]:
    return [
        _to_db_ts(getattr(p, col)) if col in _POSITION_TS else getattr(p, col)
        for col in sql_queries.POSITION_COLUMNS
    ]


def _position_from_row(row: Sequence[Any]) -> Position:
    data = dict(zip(sql_queries.POSITION_COLUMNS, row))
    for col in _POSITION_TS:
        data[col] = _from_db_ts(data[col])
    return Position(**data)


def _transaction_params(r: TransactionRecord) -> list[Any]:
    return [
        r.position_id,
        r.type,
        _to_db_ts(r.timestamp),
        r.token_x_amount,
        r.token_y_amount,
        r.token_x_price,
        r.token_y_price,
        r.usd_value,
        r.signature,
        r.notes,
    ]


def _transaction_from_row(row: Sequence[Any]) -> TransactionRecord:
    data = dict(zip(sql_queries.TRANSACTION_COLUMNS, row))
    data["timestamp"] = _from_db_ts(data["timestamp"])
    return TransactionRecord(**data)


def _reposition_params(e: RepositionHistoryEntry) -> list[Any]:
    return [
        e.id,
        e.old_position_address,
        e.new_position_address,
        e.wallet_address,
        e.pool_address,
        e.reason,
        e.old_bin_range.lower,
        e.old_bin_range.upper,
        e.new_bin_range.lower,
        e.new_bin_range.upper,
        e.active_bin_at_reposition,
        e.distance_from_range,
        _to_db_ts(e.created_at),
        e.liquidity_recovered_x,
        e.liquidity_recovered_y,
        e.fees_claimed_x,
        e.fees_claimed_y,
        e.new_token_x_amount,
        e.new_token_y_amount,
        e.strategy,
        e.gas_cost_sol,
        e.transaction_signature,
    ]


def _reposition_from_row(row: Sequence[Any]) -> RepositionHistoryEntry:
    data = dict(zip(sql_queries.REPOSITION_COLUMNS, row))
    old_range = BinRange(lower=data.pop("old_bin_lower"), upper=data.pop("old_bin_upper"))
    new_range = BinRange(lower=data.pop("new_bin_lower"), upper=data.pop("new_bin_upper"))
    data["created_at"] = _from_db_ts(data["created_at"])
    return RepositionHistoryEntry(old_bin_range=old_range, new_bin_range=new_range, **data)


def _pending_from_row(row: Sequence[Any]) -> PendingTransaction:
    tx_hash, wallet, position, created_at, expires_at, executed = row
    return PendingTransaction(
        tx_hash=tx_hash,
        wallet_address=wallet,
        position_address=position,
        created_at=_from_db_ts(created_at),
        expires_at=_from_db_ts(expires_at),
        executed=bool(executed),
    )


# =====================================================================
# Store
# =====================================================================


class DuckDBStore:
    """`IPositionStore` over a DuckDB file."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = str(path)
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._lock = asyncio.Lock()
        self._create_schema()

    def _create_schema(self) -> None:
        with get_connection(self.path) as con:
            for statement in sql_queries.CREATE_TABLES:
                con.execute(statement)

    # ---- sync primitives (run in worker threads) ----

    def _fetch(self, query: str, params: list[Any]) -> list[tuple[Any, ...]]:
        with get_connection(self.path) as con:
            try:
                return con.execute(query, params).fetchall()
            except duckdb.Error as e:
                raise StoreError("Position store query failed", str(e)) from e

    def _write(self, query: str, params: list[Any], *, conflict: str | None = None) -> None:
        with get_connection(self.path) as con:
            try:
                con.execute(query, params)
            except duckdb.ConstraintException as e:
                raise DuplicateRecordError(conflict or "Position store constraint violated", str(e)) from e
            except duckdb.Error as e:
                raise StoreError("Position store write failed", str(e)) from e

    async def _read(self, query: str, params: list[Any]) -> list[tuple[Any, ...]]:
        return await asyncio.to_thread(self._fetch, query, params)

    async def _exec(self, query: str, params: list[Any], *, conflict: str | None = None) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, query, params, conflict=conflict)

    # ---- positions ----

    async def find_position(self, position_id: str) -> Position | None:
        rows = await self._read(sql_queries.FIND_POSITION_QUERY, [position_id])
        return _position_from_row(rows[0]) if rows else None

    async def find_positions_by_wallet(self, wallet_address: str, *, include_closed: bool = True) -> list[Position]:
        rows = await self._read(sql_queries.FIND_POSITIONS_BY_WALLET_QUERY, [wallet_address, include_closed])
        return [_position_from_row(r) for r in rows]

    async def upsert_position(self, position: Position) -> None:
        await self._exec(sql_queries.UPSERT_POSITION_QUERY, _position_params(position))

    # ---- transaction log ----

    async def append_transaction_record(self, record: TransactionRecord) -> None:
        await self._exec(sql_queries.APPEND_TRANSACTION_QUERY, _transaction_params(record))

    async def list_transaction_records(
        self, position_id: str, tx_type: TransactionType | None = None
    ) -> list[TransactionRecord]:
        rows = await self._read(sql_queries.LIST_TRANSACTIONS_QUERY, [position_id, tx_type, tx_type])
        return [_transaction_from_row(r) for r in rows]

    # ---- reposition history ----

    async def insert_reposition_entry(self, entry: RepositionHistoryEntry) -> None:
        await self._exec(
            sql_queries.INSERT_REPOSITION_QUERY,
            _reposition_params(entry),
            conflict=f"Reposition entry {entry.id} already exists",
        )

    async def find_reposition_entries(self, addresses: Collection[str]) -> list[RepositionHistoryEntry]:
        if not addresses:
            return []
        keys = sorted(addresses)
        rows = await self._read(sql_queries.FIND_REPOSITIONS_BY_ADDRESSES_QUERY, [keys, keys])
        return [_reposition_from_row(r) for r in rows]

    async def list_reposition_entries_by_wallet(self, wallet_address: str) -> list[RepositionHistoryEntry]:
        rows = await self._read(sql_queries.LIST_REPOSITIONS_BY_WALLET_QUERY, [wallet_address])
        return [_reposition_from_row(r) for r in rows]

    # ---- pending transactions ----

    def _insert_pending(self, pending: PendingTransaction, since: datetime | None, limit: int | None) -> bool:
        params = [
            pending.tx_hash,
            pending.wallet_address,
            pending.position_address,
            _to_db_ts(pending.created_at),
            _to_db_ts(pending.expires_at),
            pending.executed,
        ]
        with get_connection(self.path) as con:
            try:
                con.begin()
                if since is not None and limit is not None:
                    (count,) = con.execute(
                        sql_queries.COUNT_PENDING_SINCE_QUERY, [pending.wallet_address, _to_db_ts(since)]
                    ).fetchone()
                    if count >= limit:
                        con.rollback()
                        return False
                con.execute(sql_queries.INSERT_PENDING_QUERY, params)
                con.commit()
            except duckdb.ConstraintException as e:
                raise DuplicateRecordError("Pending transaction already registered", str(e)) from e
            except duckdb.Error as e:
                raise StoreError("Position store write failed", str(e)) from e
        return True

    async def insert_pending_transaction(
        self, pending: PendingTransaction, *, since: datetime | None = None, limit: int | None = None
    ) -> bool:
        async with self._lock:
            return await asyncio.to_thread(self._insert_pending, pending, since, limit)

    async def find_pending_transaction(self, tx_hash: str) -> PendingTransaction | None:
        rows = await self._read(sql_queries.FIND_PENDING_QUERY, [tx_hash])
        return _pending_from_row(rows[0]) if rows else None

    async def count_pending_transactions(self, wallet_address: str, since: datetime) -> int:
        rows = await self._read(sql_queries.COUNT_PENDING_SINCE_QUERY, [wallet_address, _to_db_ts(since)])
        return int(rows[0][0]) if rows else 0
