"""Unit tests for deposit / current / withdrawal snapshots."""

import pytest
from conftest import NOW, make_position

from binpnl.core.errors import InvalidStateError, PositionNotOnChainError
from binpnl.core.models import PositionTotals
from binpnl.core.use_cases.snapshots import SnapshotProvider


@pytest.mark.asyncio
async def test_deposit_snapshot_uses_stored_prices(chain, oracle):
    provider = SnapshotProvider(chain, oracle)
    snap = await provider.deposit_snapshot(make_position())

    assert snap.token_x.usd_value == pytest.approx(600.0)
    assert snap.token_y.usd_value == pytest.approx(750.0)
    assert snap.value_usd == pytest.approx(1350.0)
    assert snap.approximate is False
    oracle.price.assert_not_called()


@pytest.mark.asyncio
async def test_deposit_snapshot_missing_price_falls_back_to_current(chain, oracle):
    oracle.prices["SOL"] = 200.0
    provider = SnapshotProvider(chain, oracle)
    snap = await provider.deposit_snapshot(make_position(deposit_token_y_price=None))

    assert snap.token_y.price == 200.0
    assert snap.token_y.usd_value == pytest.approx(1000.0)
    assert snap.token_x.price == 60_000.0
    assert snap.approximate is True


@pytest.mark.asyncio
async def test_current_snapshot_reads_chain_and_oracle(chain, oracle, clock):
    position = make_position()
    chain.totals_data[position.address] = PositionTotals(
        token_x_amount=0.008, token_y_amount=5.5, unclaimed_fee_x=0.0, unclaimed_fee_y=0.0
    )
    provider = SnapshotProvider(chain, oracle, clock=clock)
    snap = await provider.current_snapshot(position)

    assert snap.value_usd == pytest.approx(480.0 + 825.0)
    assert snap.timestamp == NOW
    assert snap.approximate is False


@pytest.mark.asyncio
async def test_current_snapshot_rejects_closed_position(chain, oracle):
    position = make_position().close(
        closed_at=NOW,
        withdraw_token_x_amount=0.008,
        withdraw_token_y_amount=5.5,
        withdraw_token_x_price=60_000.0,
        withdraw_token_y_price=150.0,
    )
    with pytest.raises(InvalidStateError):
        await SnapshotProvider(chain, oracle).current_snapshot(position)
    chain.totals.assert_not_called()


@pytest.mark.asyncio
async def test_current_snapshot_propagates_missing_account(chain, oracle):
    with pytest.raises(PositionNotOnChainError):
        await SnapshotProvider(chain, oracle).current_snapshot(make_position())


class TestWithdrawalSnapshot:
    def setup_method(self):
        self.closed = make_position().close(
            closed_at=NOW,
            withdraw_token_x_amount=0.008,
            withdraw_token_y_amount=5.5,
            withdraw_token_x_price=65_000.0,
            withdraw_token_y_price=140.0,
        )

    def test_uses_withdrawal_prices(self, chain, oracle):
        snap = SnapshotProvider(chain, oracle).withdrawal_snapshot(self.closed)
        assert snap.value_usd == pytest.approx(0.008 * 65_000 + 5.5 * 140)
        assert snap.timestamp == NOW
        assert snap.approximate is False

    def test_missing_withdrawal_price_uses_entry_price(self, chain, oracle):
        from dataclasses import replace

        legacy = replace(self.closed, withdraw_token_y_price=None)
        snap = SnapshotProvider(chain, oracle).withdrawal_snapshot(legacy)
        assert snap.token_y.price == 150.0
        assert snap.approximate is True

    def test_rejects_open_position(self, chain, oracle):
        with pytest.raises(InvalidStateError):
            SnapshotProvider(chain, oracle).withdrawal_snapshot(make_position())


if __name__ == "__main__":
    pytest.main([__file__])
