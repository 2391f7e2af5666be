from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from binpnl.core.errors import PositionNotOnChainError
from binpnl.core.models import ActiveBin, LivePosition, Position, PositionTotals, SimulationResult
from binpnl.storage.memory import InMemoryStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

OWNER = Keypair()
WALLET = str(OWNER.pubkey())
POOL = str(Pubkey.new_unique())
POSITION_ADDRESS = str(Pubkey.new_unique())
PROGRAM_ID = Pubkey.new_unique()

PRICES = {"BTC": 60_000.0, "SOL": 150.0, "USDC": 1.0}


class Clock:
    """Settable clock injected into services."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_position(**overrides) -> Position:
    fields = dict(
        position_id="pos-1",
        address=POSITION_ADDRESS,
        pool_address=POOL,
        wallet_address=WALLET,
        token_x_symbol="BTC",
        token_y_symbol="SOL",
        deposit_token_x_amount=0.01,
        deposit_token_y_amount=5.0,
        deposit_token_x_price=60_000.0,
        deposit_token_y_price=150.0,
        created_at=NOW - timedelta(days=7),
    )
    fields.update(overrides)
    return Position(**fields)


def make_live(address: str = POSITION_ADDRESS, *, owner: str = WALLET, bins=range(90, 111), totals=None) -> LivePosition:
    return LivePosition(
        address=address,
        owner=owner,
        pool_address=POOL,
        token_x_symbol="BTC",
        token_y_symbol="SOL",
        bin_ids=tuple(bins),
        totals=totals or PositionTotals(token_x_amount=0.008, token_y_amount=5.5, unclaimed_fee_x=0.0, unclaimed_fee_y=0.0),
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def oracle():
    o = AsyncMock()
    o.prices = dict(PRICES)
    o.price = AsyncMock(side_effect=lambda symbol: o.prices[symbol])
    return o


@pytest.fixture
def chain():
    c = AsyncMock()
    c.totals_data = {}
    c.live = {}
    c.active = ActiveBin(bin_id=100, price=150.0, bin_step=10)

    async def totals(address):
        if address not in c.totals_data:
            raise PositionNotOnChainError(f"Position {address} not found on chain")
        return c.totals_data[address]

    async def position(address):
        return c.live.get(address)

    c.totals = AsyncMock(side_effect=totals)
    c.position = AsyncMock(side_effect=position)
    c.active_bin = AsyncMock(side_effect=lambda pool: c.active)
    return c


@pytest.fixture
def mock_rpc():
    rpc = AsyncMock()
    rpc.latest_blockhash = AsyncMock(side_effect=lambda: Hash.new_unique())
    rpc.recent_prioritization_fees = AsyncMock(return_value=[2_000, 0, 1_000])
    rpc.simulate = AsyncMock(return_value=SimulationResult(units_consumed=150_000))
    rpc.aclose = AsyncMock()
    return rpc


@pytest.fixture
def program():
    p = AsyncMock()

    def remove_liquidity_instructions(*, pool_address, position_address, user, bin_ids, bps_to_remove, claim_and_close):
        data = bytes([1]) + bps_to_remove.to_bytes(2, "little") + bytes([int(claim_and_close)])
        return [
            Instruction(
                PROGRAM_ID,
                data,
                [
                    AccountMeta(position_address, is_signer=False, is_writable=True),
                    AccountMeta(pool_address, is_signer=False, is_writable=True),
                    AccountMeta(user, is_signer=True, is_writable=True),
                ],
            )
        ]

    p.remove_liquidity_instructions = AsyncMock(side_effect=remove_liquidity_instructions)
    return p
