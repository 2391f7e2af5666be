from __future__ import annotations

from collections.abc import Collection
from datetime import datetime
from typing import List, Protocol, runtime_checkable

from solders.hash import Hash
from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from binpnl.core.models import (
    ActiveBin,
    LivePosition,
    PendingTransaction,
    Position,
    PositionTotals,
    RepositionHistoryEntry,
    RewardInfo,
    SimulationResult,
    TransactionRecord,
    TransactionType,
)


# ---------------------------------------------------------------------------
# IChainReader
# ---------------------------------------------------------------------------

@runtime_checkable
class IChainReader(Protocol):
    """
    Read-only view of liquidity positions and pools on chain.

    Domain expectations:
    - Amounts are already aggregated across bins and decimal-adjusted.
    - A position account that no longer exists raises PositionNotOnChainError
      from `totals`, and yields None from `position`.
    - Transport failures surface as ChainUnavailableError.
    """

    async def totals(self, position_address: str) -> PositionTotals:
        """Return current token amounts and unclaimed fees for a position."""
        ...

    async def active_bin(self, pool_address: str) -> ActiveBin:
        """Return the pool's active bin id, its price and the bin step."""
        ...

    async def position(self, position_address: str) -> LivePosition | None:
        """Return owner, pool, bins and totals of a live position, or None if absent."""
        ...


# ---------------------------------------------------------------------------
# ISolanaRpc
# ---------------------------------------------------------------------------

@runtime_checkable
class ISolanaRpc(Protocol):
    """
    Generic cluster RPC calls needed to build and cost a transaction.

    Implementations:
    - `binpnl.clients.rpc.SolanaRPC` (JSON-RPC over httpx)
    - In-memory fakes for testing
    """

    async def latest_blockhash(self) -> Hash:
        ...

    async def recent_prioritization_fees(self) -> List[int]:
        """Recent per-slot prioritization fees in micro-lamports per compute unit."""
        ...

    async def simulate(self, transaction: Transaction) -> SimulationResult:
        """Simulate without signature verification; raises SimulationFailedError."""
        ...


# ---------------------------------------------------------------------------
# ILiquidityProgram
# ---------------------------------------------------------------------------

@runtime_checkable
class ILiquidityProgram(Protocol):
    """
    Instruction builder for the bin-based liquidity program.

    The program itself is external; this core only asks for the instructions
    that withdraw liquidity from a position.
    """

    async def remove_liquidity_instructions(
        self,
        *,
        pool_address: Pubkey,
        position_address: Pubkey,
        user: Pubkey,
        bin_ids: list[int],
        bps_to_remove: int,
        claim_and_close: bool,
    ) -> List[Instruction]:
        ...


# ---------------------------------------------------------------------------
# IPriceOracle / IRewardsProvider
# ---------------------------------------------------------------------------

@runtime_checkable
class IPriceOracle(Protocol):
    async def price(self, symbol: str) -> float:
        """Return the current USD price of a token; ChainUnavailableError on failure."""
        ...


@runtime_checkable
class IRewardsProvider(Protocol):
    """
    Pluggable reward-stream valuation.

    Pools without an active reward stream return an empty list; that is a
    no-op, not an error.
    """

    async def rewards(self, position: Position, is_open: bool) -> List[RewardInfo]:
        ...


# ---------------------------------------------------------------------------
# IPositionStore
# ---------------------------------------------------------------------------

@runtime_checkable
class IPositionStore(Protocol):
    """
    Persistent store for positions and their append-only logs.

    Domain expectations:
    - Transaction records and reposition entries are never updated.
    - `insert_pending_transaction` enforces uniqueness of `tx_hash`
      (DuplicateRecordError). With `since`/`limit` it counts and inserts
      atomically, so concurrent preparers cannot overshoot the window.
    - `count_pending_transactions` is evaluated against the shared store so
      several service instances observe the same rate-limit window.
    """

    async def find_position(self, position_id: str) -> Position | None:
        ...

    async def find_positions_by_wallet(
        self, wallet_address: str, *, include_closed: bool = True
    ) -> List[Position]:
        ...

    async def upsert_position(self, position: Position) -> None:
        ...

    async def append_transaction_record(self, record: TransactionRecord) -> None:
        ...

    async def list_transaction_records(
        self, position_id: str, tx_type: TransactionType | None = None
    ) -> List[TransactionRecord]:
        """Records for a position in timestamp order, optionally filtered by type."""
        ...

    async def insert_reposition_entry(self, entry: RepositionHistoryEntry) -> None:
        ...

    async def find_reposition_entries(self, addresses: Collection[str]) -> List[RepositionHistoryEntry]:
        """All entries whose old or new address is in `addresses` (one bulk query)."""
        ...

    async def list_reposition_entries_by_wallet(self, wallet_address: str) -> List[RepositionHistoryEntry]:
        """Entries for a wallet, most recent first."""
        ...

    async def insert_pending_transaction(
        self, pending: PendingTransaction, *, since: datetime | None = None, limit: int | None = None
    ) -> bool:
        """Insert unless the wallet already has `limit` rows since `since`; False when refused."""
        ...

    async def find_pending_transaction(self, tx_hash: str) -> PendingTransaction | None:
        ...

    async def count_pending_transactions(self, wallet_address: str, since: datetime) -> int:
        """Pending rows for `wallet_address` with `created_at >= since`."""
        ...
