"""Core records and value objects for position accounting and repositioning.

This module defines:
- Stored records: `Position`, `TransactionRecord`, `RepositionHistoryEntry`,
  `PendingTransaction`.
- Derived values: `PositionSnapshot`, `FeesBreakdown`, `ImpermanentLoss`,
  `PnLResult`, `WalletPnLResult`, `PositionChain`, `RepositionStats`.
- Chain read results: `PositionTotals`, `ActiveBin`, `LivePosition`,
  `SimulationResult`.
- Reposition artifacts: `UnsignedRepositionTransaction` and its metadata.

Design notes
------------
- Every numeric field is typed as a token amount, a USD price or a USD value
  so a token quantity is never compared to a dollar figure by accident.
- Stored records are frozen; lifecycle changes go through `Position.close`
  and `Position.with_final_pnl`, which enforce the write-once rules.
- `to_dict()` returns plain JSON types (datetimes as ISO-8601 strings).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, NewType

from binpnl.core.errors import InvalidStateError

# === Semantic numeric types ===

TokenAmount = NewType("TokenAmount", float)  # token units, already decimal-adjusted
UsdPrice = NewType("UsdPrice", float)  # USD per token unit
UsdValue = NewType("UsdValue", float)  # USD

PositionStatus = Literal["open", "closed"]
TransactionType = Literal["deposit", "withdraw", "fee_claim", "reward_claim"]
RepositionReason = Literal["out_of_range", "manual", "scheduled"]
RepositionStrategy = Literal["one-sided-x", "one-sided-y", "balanced"]
Urgency = Literal["low", "medium", "high"]

TRANSACTION_TYPES: tuple[str, ...] = ("deposit", "withdraw", "fee_claim", "reward_claim")
REPOSITION_REASONS: tuple[str, ...] = ("out_of_range", "manual", "scheduled")
REPOSITION_STRATEGIES: tuple[str, ...] = ("one-sided-x", "one-sided-y", "balanced")


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, tuple):
        return list(value)
    return value


def _dict_factory(items: list[tuple[str, Any]]) -> dict[str, Any]:
    return {k: _json_value(v) for k, v in items}


class JsonRecord:
    """Mixin giving dataclasses a JSON-ready `to_dict()`."""

    __slots__ = ()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self, dict_factory=_dict_factory)  # type: ignore[call-overload]


# === Snapshots ===


@dataclass(frozen=True)
class TokenValue(JsonRecord):
    amount: TokenAmount
    price: UsdPrice
    usd_value: UsdValue

    @classmethod
    def of(cls, amount: float, price: float) -> TokenValue:
        return cls(amount=TokenAmount(amount), price=UsdPrice(price), usd_value=UsdValue(amount * price))


@dataclass(frozen=True)
class PositionSnapshot(JsonRecord):
    """Value of both legs of a position at one point in time.

    `approximate` is set when a leg was priced with a fallback (current oracle
    price for a legacy deposit, entry price for a missing withdrawal price).
    """

    token_x: TokenValue
    token_y: TokenValue
    timestamp: datetime
    approximate: bool = False

    @property
    def value_usd(self) -> UsdValue:
        return UsdValue(self.token_x.usd_value + self.token_y.usd_value)


# === Fees / IL / rewards ===


@dataclass(frozen=True)
class TokenFees(JsonRecord):
    amount: TokenAmount  # unclaimed amount
    claimed_usd: UsdValue
    unclaimed_usd: UsdValue

    @property
    def total_usd(self) -> UsdValue:
        return UsdValue(self.claimed_usd + self.unclaimed_usd)


@dataclass(frozen=True)
class FeesBreakdown(JsonRecord):
    token_x: TokenFees
    token_y: TokenFees

    @property
    def claimed_usd(self) -> UsdValue:
        return UsdValue(self.token_x.claimed_usd + self.token_y.claimed_usd)

    @property
    def unclaimed_usd(self) -> UsdValue:
        return UsdValue(self.token_x.unclaimed_usd + self.token_y.unclaimed_usd)

    @property
    def total_usd(self) -> UsdValue:
        return UsdValue(self.token_x.total_usd + self.token_y.total_usd)


@dataclass(frozen=True)
class ImpermanentLoss(JsonRecord):
    """Positive `usd` means the position underperformed simply holding."""

    usd: UsdValue
    percent: float


@dataclass(frozen=True)
class RewardInfo(JsonRecord):
    token: str
    amount: TokenAmount
    usd_value: UsdValue
    claimed: bool


# === Stored records ===


@dataclass(frozen=True)
class Position(JsonRecord):
    """One open-or-closed liquidity position.

    Entry fields are written once at creation, withdrawal fields once at close
    and the final aggregates once after close. `is_active=False` is terminal.
    """

    position_id: str
    address: str
    pool_address: str
    wallet_address: str
    token_x_symbol: str
    token_y_symbol: str
    deposit_token_x_amount: TokenAmount
    deposit_token_y_amount: TokenAmount
    deposit_token_x_price: UsdPrice | None
    deposit_token_y_price: UsdPrice | None
    created_at: datetime
    is_active: bool = True
    closed_at: datetime | None = None
    withdraw_token_x_amount: TokenAmount | None = None
    withdraw_token_y_amount: TokenAmount | None = None
    withdraw_token_x_price: UsdPrice | None = None
    withdraw_token_y_price: UsdPrice | None = None
    fee_token_x_amount: TokenAmount = TokenAmount(0.0)  # unclaimed fees swept at close
    fee_token_y_amount: TokenAmount = TokenAmount(0.0)
    claimed_fees_usd: UsdValue = UsdValue(0.0)
    # Last-known aggregates, used when a live computation is unavailable
    deposit_value_usd: UsdValue | None = None
    realized_pnl_usd: UsdValue | None = None
    realized_pnl_percent: float | None = None
    impermanent_loss_usd: UsdValue | None = None
    impermanent_loss_percent: float | None = None
    fees_earned_usd: UsdValue | None = None
    rewards_earned_usd: UsdValue | None = None

    @property
    def status(self) -> PositionStatus:
        return "open" if self.is_active else "closed"

    def close(
        self,
        *,
        closed_at: datetime,
        withdraw_token_x_amount: float,
        withdraw_token_y_amount: float,
        withdraw_token_x_price: float,
        withdraw_token_y_price: float,
        fee_token_x_amount: float = 0.0,
        fee_token_y_amount: float = 0.0,
    ) -> Position:
        """Return the closed copy of this position (withdrawal fields set once)."""
        if not self.is_active:
            raise InvalidStateError(
                "Position is already closed",
                "Cannot close a position that is not active",
            )
        return replace(
            self,
            is_active=False,
            closed_at=closed_at,
            withdraw_token_x_amount=TokenAmount(withdraw_token_x_amount),
            withdraw_token_y_amount=TokenAmount(withdraw_token_y_amount),
            withdraw_token_x_price=UsdPrice(withdraw_token_x_price),
            withdraw_token_y_price=UsdPrice(withdraw_token_y_price),
            fee_token_x_amount=TokenAmount(fee_token_x_amount),
            fee_token_y_amount=TokenAmount(fee_token_y_amount),
        )

    def with_claim(self, usd_value: float) -> Position:
        """Add a fee claim to the running claimed total."""
        return replace(self, claimed_fees_usd=UsdValue(self.claimed_fees_usd + usd_value))

    def with_final_pnl(self, pnl: PnLResult) -> Position:
        """Freeze the final PnL aggregates on a closed position."""
        if self.is_active:
            raise InvalidStateError("Final PnL can only be recorded on a closed position")
        if self.realized_pnl_usd is not None:
            raise InvalidStateError("Final PnL has already been recorded for this position")
        return replace(
            self,
            deposit_value_usd=pnl.deposit_value_usd,
            realized_pnl_usd=pnl.realized_pnl_usd,
            realized_pnl_percent=pnl.realized_pnl_percent,
            impermanent_loss_usd=pnl.impermanent_loss.usd,
            impermanent_loss_percent=pnl.impermanent_loss.percent,
            fees_earned_usd=pnl.fees_earned_usd,
            rewards_earned_usd=pnl.rewards_earned_usd,
            claimed_fees_usd=pnl.fees.claimed_usd,
        )


@dataclass(frozen=True)
class TransactionRecord(JsonRecord):
    """Immutable, append-only log entry for one position event."""

    position_id: str
    type: TransactionType
    timestamp: datetime
    token_x_amount: TokenAmount
    token_y_amount: TokenAmount
    token_x_price: UsdPrice
    token_y_price: UsdPrice
    usd_value: UsdValue
    signature: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class BinRange(JsonRecord):
    lower: int
    upper: int

    @property
    def span(self) -> int:
        return self.upper - self.lower

    def contains(self, bin_id: int) -> bool:
        return self.lower <= bin_id <= self.upper

    def distance_to(self, bin_id: int) -> int:
        """Bins between `bin_id` and the range; 0 when inside."""
        if bin_id < self.lower:
            return self.lower - bin_id
        if bin_id > self.upper:
            return bin_id - self.upper
        return 0

    def __str__(self) -> str:
        return f"{self.lower}:{self.upper}"


@dataclass(frozen=True)
class RepositionHistoryEntry(JsonRecord):
    """Edge `old_position_address -> new_position_address`, created once."""

    id: str
    old_position_address: str
    new_position_address: str
    wallet_address: str
    pool_address: str
    reason: RepositionReason
    old_bin_range: BinRange
    new_bin_range: BinRange
    active_bin_at_reposition: int
    distance_from_range: int
    created_at: datetime
    liquidity_recovered_x: TokenAmount = TokenAmount(0.0)
    liquidity_recovered_y: TokenAmount = TokenAmount(0.0)
    fees_claimed_x: TokenAmount = TokenAmount(0.0)
    fees_claimed_y: TokenAmount = TokenAmount(0.0)
    new_token_x_amount: TokenAmount | None = None
    new_token_y_amount: TokenAmount | None = None
    strategy: RepositionStrategy | None = None
    gas_cost_sol: float | None = None
    transaction_signature: str | None = None


@dataclass(frozen=True)
class PendingTransaction(JsonRecord):
    """Single-use, time-boxed intent to execute one specific unsigned transaction."""

    tx_hash: str
    wallet_address: str
    position_address: str
    created_at: datetime
    expires_at: datetime
    executed: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# === Chain read results ===


@dataclass(frozen=True)
class PositionTotals(JsonRecord):
    """Bin-aggregated amounts of a live position, decimal-adjusted."""

    token_x_amount: TokenAmount
    token_y_amount: TokenAmount
    unclaimed_fee_x: TokenAmount
    unclaimed_fee_y: TokenAmount


@dataclass(frozen=True)
class ActiveBin(JsonRecord):
    bin_id: int
    price: float  # token Y per token X
    bin_step: int


@dataclass(frozen=True)
class LivePosition(JsonRecord):
    """On-chain view of a position account."""

    address: str
    owner: str
    pool_address: str
    token_x_symbol: str
    token_y_symbol: str
    bin_ids: tuple[int, ...]
    totals: PositionTotals

    @property
    def bin_range(self) -> BinRange:
        if not self.bin_ids:
            raise InvalidStateError("Position holds no bins")
        return BinRange(lower=min(self.bin_ids), upper=max(self.bin_ids))


@dataclass(frozen=True)
class SimulationResult(JsonRecord):
    units_consumed: int | None
    error: str | None = None
    logs: tuple[str, ...] = ()


# === PnL results ===


@dataclass(frozen=True)
class PnLResult(JsonRecord):
    position_id: str
    status: PositionStatus
    deposit_value_usd: UsdValue
    current_value_usd: UsdValue
    realized_pnl_usd: UsdValue
    realized_pnl_percent: float
    impermanent_loss: ImpermanentLoss
    fees_earned_usd: UsdValue
    rewards_earned_usd: UsdValue
    deposit: PositionSnapshot
    current: PositionSnapshot
    fees: FeesBreakdown
    rewards: list[RewardInfo] = field(default_factory=list)
    is_fallback: bool = False  # built from stored aggregates, not a live read


@dataclass(frozen=True)
class PositionFailure(JsonRecord):
    position_id: str
    kind: str
    message: str


@dataclass(kw_only=True)
class WalletPnLResult(JsonRecord):
    wallet_address: str
    total_pnl_usd: UsdValue = UsdValue(0.0)
    total_positions: int = 0
    active_positions: int = 0
    closed_positions: int = 0
    total_deposit_value_usd: UsdValue = UsdValue(0.0)
    total_impermanent_loss_usd: UsdValue = UsdValue(0.0)
    total_fees_earned_usd: UsdValue = UsdValue(0.0)
    total_rewards_earned_usd: UsdValue = UsdValue(0.0)
    positions: list[PnLResult] = field(default_factory=list)
    failures: list[PositionFailure] = field(default_factory=list)


@dataclass(frozen=True)
class ClosePositionResult(JsonRecord):
    position_id: str
    signature: str | None
    pnl: PnLResult


# === Chain tracking results ===


@dataclass(frozen=True)
class PositionChain(JsonRecord):
    current_position: str
    chain_length: int
    total_repositions: int
    history: list[RepositionHistoryEntry]
    total_fees_x: TokenAmount
    total_fees_y: TokenAmount
    total_gas_cost_sol: float


@dataclass(frozen=True)
class RecentReposition(JsonRecord):
    id: str
    old_position: str
    new_position: str
    reason: RepositionReason
    created_at: datetime


@dataclass(frozen=True)
class RepositionStats(JsonRecord):
    wallet_address: str
    total_repositions: int
    reason_breakdown: dict[str, int]
    total_fees_x: TokenAmount
    total_fees_y: TokenAmount
    total_gas_cost_sol: float
    recent: list[RecentReposition]


# === Reposition artifacts ===


@dataclass(frozen=True)
class SlippageProtection(JsonRecord):
    slippage_bps: int
    min_output_x: TokenAmount
    min_output_y: TokenAmount
    min_price: float
    max_price: float


@dataclass(frozen=True)
class LiquidityRecovered(JsonRecord):
    token_x: TokenAmount
    token_y: TokenAmount
    fees_x: TokenAmount
    fees_y: TokenAmount
    total_usd: UsdValue | None = None


@dataclass(frozen=True)
class RepositionMetadata(JsonRecord):
    old_position: str
    pool_address: str
    wallet_address: str
    estimated_liquidity_recovered: LiquidityRecovered
    new_bin_range: BinRange
    strategy: RepositionStrategy
    estimated_gas_cost_sol: float
    slippage_protection: SlippageProtection
    expires_at: datetime


@dataclass(frozen=True)
class UnsignedRepositionTransaction(JsonRecord):
    """Base64 unsigned transaction; `tx_hash` is sha256 hex of its message bytes."""

    transaction: str
    tx_hash: str
    metadata: RepositionMetadata


@dataclass(frozen=True)
class RepositionRecommendation(JsonRecord):
    position_address: str
    pool_address: str
    should_reposition: bool
    reason: str
    current_active_bin: int
    position_range: BinRange
    distance_from_range: int
    is_in_buffer_zone: bool
    urgency: Urgency
    estimated_gas_cost_sol: float
    recommended_strategy: RepositionStrategy
    recommended_bin_range: BinRange
