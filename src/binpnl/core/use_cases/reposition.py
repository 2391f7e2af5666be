"""Preparation of unsigned reposition transactions.

`RepositionTransactionPreparer.prepare` runs a fixed sequence of gates
(ownership proof, address validation, rate limit, on-chain ownership, cost)
before it builds anything. The transaction it returns is unsigned: this
service never holds a key, it only registers a single-use intent keyed by the
sha256 of the transaction message so the signer can check that what they sign
is what was prepared.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import math
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from solders.errors import BincodeError
from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from binpnl.core.config import RepositionConfig
from binpnl.core.errors import (
    ChainUnavailableError,
    DuplicateRecordError,
    InvalidSignatureError,
    NotFoundError,
    OwnershipMismatchError,
    RateLimitExceededError,
    SignatureExpiredError,
    SimulationFailedError,
    ValidationError,
)
from binpnl.core.interfaces import (
    IChainReader,
    ILiquidityProgram,
    IPositionStore,
    IPriceOracle,
    ISolanaRpc,
)
from binpnl.core.models import (
    ActiveBin,
    BinRange,
    LiquidityRecovered,
    LivePosition,
    PendingTransaction,
    PositionTotals,
    RepositionMetadata,
    RepositionRecommendation,
    RepositionStrategy,
    SlippageProtection,
    TokenAmount,
    UnsignedRepositionTransaction,
    UsdValue,
    utcnow,
)
from binpnl.core.validation import parse_address, parse_signature

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
MICRO_LAMPORTS_PER_LAMPORT = 1_000_000
FULL_WITHDRAWAL_BPS = 10_000
MAX_BIN_RANGE = 34  # a position spans at most 70 bins


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class RepositionRequest(BaseModel):
    """Caller input for `prepare`; accepts snake_case or camelCase keys."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    position_address: str
    wallet_address: str
    wallet_signature: str = Field(min_length=1)
    timestamp: int  # milliseconds since epoch, part of the signed message
    pool_address: str | None = None
    strategy: RepositionStrategy | None = None
    bin_range: int | None = Field(default=None, ge=1, le=MAX_BIN_RANGE)
    slippage_bps: int | None = Field(default=None, ge=0, le=10_000, strict=True)
    max_gas_cost: float | None = Field(default=None, gt=0)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> RepositionRequest:
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ())) or "request"
            raise ValidationError(f"Invalid reposition request: {field}", first.get("msg")) from e


def signed_message(position_address: str, timestamp_ms: int) -> bytes:
    """Bytes the wallet signs to prove it controls the position."""
    return f"reposition:{position_address}:{timestamp_ms}".encode()


def message_hash(message: Message) -> str:
    return hashlib.sha256(bytes(message)).hexdigest()


def verify_intent(tx_hash: str, serialized_transaction: str) -> bool:
    """True when a base64 transaction carries the message identified by `tx_hash`."""
    try:
        tx = Transaction.from_bytes(base64.b64decode(serialized_transaction))
    except (ValueError, BincodeError) as e:
        raise ValidationError("Invalid serialized transaction", str(e)) from e
    return message_hash(tx.message) == tx_hash


def median_priority_fee(fees: Sequence[int], default: int) -> int:
    """Middle element of the sorted recent fees; `default` when none are positive."""
    if not fees:
        return default
    ordered = sorted(fees)
    return ordered[len(ordered) // 2] or default


def slippage_protection(totals: PositionTotals, price: float, slippage_bps: int) -> SlippageProtection:
    factor = slippage_bps / 10_000
    return SlippageProtection(
        slippage_bps=slippage_bps,
        min_output_x=TokenAmount(totals.token_x_amount * (1 - factor)),
        min_output_y=TokenAmount(totals.token_y_amount * (1 - factor)),
        min_price=price * (1 - factor),
        max_price=price * (1 + factor),
    )


def urgency_for(distance: int) -> str:
    if distance > 20:
        return "high"
    if distance > 10:
        return "medium"
    return "low"


# ---------------------------------------------------------------------------
# Domain service - RepositionTransactionPreparer
# ---------------------------------------------------------------------------


class RepositionTransactionPreparer:
    def __init__(
        self,
        *,
        chain: IChainReader,
        rpc: ISolanaRpc,
        program: ILiquidityProgram,
        store: IPositionStore,
        oracle: IPriceOracle | None = None,
        config: RepositionConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._chain = chain
        self._rpc = rpc
        self._program = program
        self._store = store
        self._oracle = oracle
        self._config = config or RepositionConfig()
        self._clock = clock

    # ---- gates ----

    def verify_ownership_proof(
        self,
        *,
        wallet_address: str,
        position_address: str,
        signature: str,
        timestamp_ms: int,
        now: datetime,
    ) -> Pubkey:
        """Check freshness, then the ed25519 signature over the reposition message."""
        now_ms = int(now.timestamp() * 1000)
        if abs(now_ms - timestamp_ms) > self._config.signature_window_s * 1000:
            raise SignatureExpiredError(
                "Signature expired or timestamp in future",
                f"Signatures must be created within the last {self._config.signature_window_s // 60} minutes",
            )

        wallet = parse_address(wallet_address, label="wallet address")
        sig = parse_signature(signature)
        if not sig.verify(wallet, signed_message(position_address, timestamp_ms)):
            raise InvalidSignatureError(
                "Invalid wallet signature",
                "Signature verification failed. Please sign the message with your wallet.",
            )
        logger.info("Wallet signature verified for %s", wallet_address)
        return wallet

    def _rate_limited(self) -> RateLimitExceededError:
        return RateLimitExceededError(
            "Too many reposition requests. Please wait 1 minute.",
            f"Rate limit: {self._config.rate_limit_max} requests per {self._config.rate_limit_window_s} seconds",
        )

    async def check_rate_limit(self, wallet_address: str, now: datetime) -> None:
        """Early rejection; the authoritative check runs when the intent is stored."""
        since = now - timedelta(seconds=self._config.rate_limit_window_s)
        recent = await self._store.count_pending_transactions(wallet_address, since)
        if recent >= self._config.rate_limit_max:
            raise self._rate_limited()

    async def _register_intent(self, pending: PendingTransaction, now: datetime) -> datetime:
        """Store the intent and return its expiry.

        A message identical to a live intent (same blockhash, same request)
        reuses that intent instead of failing on the unique tx hash.
        """
        cfg = self._config
        try:
            inserted = await self._store.insert_pending_transaction(
                pending,
                since=now - timedelta(seconds=cfg.rate_limit_window_s),
                limit=cfg.rate_limit_max,
            )
        except DuplicateRecordError as e:
            existing = await self._store.find_pending_transaction(pending.tx_hash)
            if existing is None or existing.is_expired(now):
                raise ChainUnavailableError(
                    "Blockhash already used by an expired intent",
                    "Retry the request to build on a fresh blockhash.",
                ) from e
            logger.info("Reusing pending intent %s", pending.tx_hash)
            return existing.expires_at
        if not inserted:
            raise self._rate_limited()
        return pending.expires_at

    async def _owned_position(self, position_address: str, wallet_address: str) -> LivePosition:
        live = await self._chain.position(position_address)
        if live is None:
            raise NotFoundError("Position not found or already closed")
        if live.owner != wallet_address:
            raise OwnershipMismatchError("Wallet does not own this position")
        return live

    # ---- estimates ----

    async def _remove_all_instructions(self, live: LivePosition, user: Pubkey) -> list[Instruction]:
        return await self._program.remove_liquidity_instructions(
            pool_address=Pubkey.from_string(live.pool_address),
            position_address=Pubkey.from_string(live.address),
            user=user,
            bin_ids=list(live.bin_ids),
            bps_to_remove=FULL_WITHDRAWAL_BPS,
            claim_and_close=True,
        )

    async def estimate_gas_cost(self, live: LivePosition, *, user: Pubkey | None = None) -> float:
        """
        Network fee in SOL for withdrawing the whole position.

        Simulates the withdrawal for its compute units and prices them at the
        median recent prioritization fee. Any simulation or RPC failure
        degrades to the fixed fallback estimate.
        """
        cfg = self._config
        payer = user or Pubkey.from_string(live.owner)
        try:
            instructions = await self._remove_all_instructions(live, payer)
            blockhash = await self._rpc.latest_blockhash()
            simulation = await self._rpc.simulate(
                Transaction.new_unsigned(Message.new_with_blockhash(instructions, payer, blockhash))
            )
            if simulation.error:
                logger.warning("Simulation failed (%s), using conservative estimate", simulation.error)
                return cfg.fallback_gas_sol
            fees = await self._rpc.recent_prioritization_fees()
        except (SimulationFailedError, ChainUnavailableError) as e:
            logger.warning("Failed to estimate gas cost, using conservative estimate: %s", e)
            return cfg.fallback_gas_sol

        units = simulation.units_consumed or cfg.default_compute_units
        fee = median_priority_fee(fees, cfg.default_priority_fee)
        lamports = cfg.base_fee_lamports + math.ceil(fee * units / MICRO_LAMPORTS_PER_LAMPORT)
        total = lamports / LAMPORTS_PER_SOL
        logger.info("Estimated gas cost: %.6f SOL (%d CU)", total, units)
        return total

    def recommend_strategy(self, totals: PositionTotals, price: float) -> RepositionStrategy:
        """One-sided when one token holds more than the threshold share of value."""
        value_x = totals.token_x_amount * price
        value_y = totals.token_y_amount
        total = value_x + value_y
        if total <= 0:
            return "balanced"
        share_x = value_x / total
        threshold = self._config.one_sided_threshold
        if share_x > threshold:
            return "one-sided-x"
        if share_x < 1 - threshold:
            return "one-sided-y"
        return "balanced"

    def _new_range(self, active: ActiveBin, bin_range: int | None) -> BinRange:
        width = bin_range or self._config.default_bin_range
        return BinRange(lower=active.bin_id - width, upper=active.bin_id + width)

    async def _recovered_usd(self, live: LivePosition) -> UsdValue | None:
        if self._oracle is None:
            return None
        t = live.totals
        try:
            px, py = await asyncio.gather(
                self._oracle.price(live.token_x_symbol),
                self._oracle.price(live.token_y_symbol),
            )
        except ChainUnavailableError as e:
            logger.warning("Price lookup failed, recovered value left unset: %s", e)
            return None
        return UsdValue((t.token_x_amount + t.unclaimed_fee_x) * px + (t.token_y_amount + t.unclaimed_fee_y) * py)

    # ---- operations ----

    async def analyze(self, position_address: str, pool_address: str | None = None) -> RepositionRecommendation:
        """Advisory check of whether a position has drifted out of its range."""
        parse_address(position_address, label="position address")
        if pool_address is not None:
            parse_address(pool_address, label="pool address")

        live = await self._chain.position(position_address)
        if live is None:
            raise NotFoundError("Position not found or already closed")
        pool = pool_address or live.pool_address
        active = await self._chain.active_bin(pool)

        current_range = live.bin_range
        distance = current_range.distance_to(active.bin_id)
        in_range = current_range.contains(active.bin_id)
        edge_gap = min(active.bin_id - current_range.lower, current_range.upper - active.bin_id)
        in_buffer = in_range and edge_gap < self._config.buffer_bins

        if not in_range:
            side = "below" if active.bin_id < current_range.lower else "above"
            reason = f"Active bin {active.bin_id} is {distance} bins {side} range {current_range}"
        elif in_buffer:
            reason = f"Active bin {active.bin_id} is within {edge_gap} bins of the range edge"
        else:
            reason = f"Active bin {active.bin_id} is inside range {current_range}"

        recommendation = RepositionRecommendation(
            position_address=position_address,
            pool_address=pool,
            should_reposition=not in_range,
            reason=reason,
            current_active_bin=active.bin_id,
            position_range=current_range,
            distance_from_range=distance,
            is_in_buffer_zone=in_buffer,
            urgency=urgency_for(distance),  # type: ignore[arg-type]
            estimated_gas_cost_sol=await self.estimate_gas_cost(live),
            recommended_strategy=self.recommend_strategy(live.totals, active.price),
            recommended_bin_range=self._new_range(active, None),
        )
        logger.info(
            "Position analysis for %s: %s (urgency: %s)",
            position_address,
            "REPOSITION RECOMMENDED" if recommendation.should_reposition else "OK",
            recommendation.urgency,
        )
        return recommendation

    async def prepare(self, request: RepositionRequest | Mapping[str, Any]) -> UnsignedRepositionTransaction:
        """Validate a reposition request and return the unsigned withdrawal transaction."""
        if not isinstance(request, RepositionRequest):
            request = RepositionRequest.from_payload(request)
        cfg = self._config
        now = self._clock()
        logger.info("Preparing reposition transaction for %s", request.position_address)

        # 1) Ownership proof
        wallet = self.verify_ownership_proof(
            wallet_address=request.wallet_address,
            position_address=request.position_address,
            signature=request.wallet_signature,
            timestamp_ms=request.timestamp,
            now=now,
        )

        # 2) Addresses
        parse_address(request.position_address, label="position address")
        if request.pool_address is not None:
            parse_address(request.pool_address, label="pool address")

        # 3) Rate limit
        await self.check_rate_limit(request.wallet_address, now)

        # 4) On-chain ownership
        live = await self._owned_position(request.position_address, request.wallet_address)
        if request.pool_address is not None and request.pool_address != live.pool_address:
            raise ValidationError("Position does not belong to the given pool")
        pool_address = live.pool_address

        # 5) Cost
        gas = await self.estimate_gas_cost(live, user=wallet)
        if request.max_gas_cost is not None and gas > request.max_gas_cost:
            raise ValidationError(
                f"Estimated gas ({gas:.4f} SOL) exceeds maximum ({request.max_gas_cost} SOL)"
            )

        # 6) Strategy and range
        active = await self._chain.active_bin(pool_address)
        strategy = request.strategy or self.recommend_strategy(live.totals, active.price)
        new_range = self._new_range(active, request.bin_range)

        # 7) Slippage
        slippage_bps = cfg.default_slippage_bps if request.slippage_bps is None else request.slippage_bps
        protection = slippage_protection(live.totals, active.price, slippage_bps)

        recovered_usd = await self._recovered_usd(live)

        # 8) Unsigned transaction on a fresh blockhash
        instructions = await self._remove_all_instructions(live, wallet)
        blockhash: Hash = await self._rpc.latest_blockhash()
        message = Message.new_with_blockhash(instructions, wallet, blockhash)
        transaction = Transaction.new_unsigned(message)

        # 9) Intent registration (counted against the rate limit atomically)
        tx_hash = message_hash(message)
        expires_at = await self._register_intent(
            PendingTransaction(
                tx_hash=tx_hash,
                wallet_address=request.wallet_address,
                position_address=request.position_address,
                created_at=now,
                expires_at=now + timedelta(seconds=cfg.intent_ttl_s),
            ),
            now,
        )

        t = live.totals
        metadata = RepositionMetadata(
            old_position=request.position_address,
            pool_address=pool_address,
            wallet_address=request.wallet_address,
            estimated_liquidity_recovered=LiquidityRecovered(
                token_x=t.token_x_amount,
                token_y=t.token_y_amount,
                fees_x=t.unclaimed_fee_x,
                fees_y=t.unclaimed_fee_y,
                total_usd=recovered_usd,
            ),
            new_bin_range=new_range,
            strategy=strategy,
            estimated_gas_cost_sol=gas,
            slippage_protection=protection,
            expires_at=expires_at,
        )
        logger.info(
            "Unsigned reposition transaction %s prepared (expires %s, slippage %.2f%%)",
            tx_hash,
            expires_at.isoformat(),
            slippage_bps / 100,
        )
        return UnsignedRepositionTransaction(
            transaction=base64.b64encode(bytes(transaction)).decode("ascii"),
            tx_hash=tx_hash,
            metadata=metadata,
        )
