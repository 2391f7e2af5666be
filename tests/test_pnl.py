"""PnL aggregation for single positions and the close lifecycle."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from conftest import NOW, make_position

from binpnl.core.errors import InvalidStateError, NotFoundError, ValidationError
from binpnl.core.models import PositionTotals, RewardInfo, TransactionRecord
from binpnl.core.use_cases.pnl import NoRewards, PnLAggregator, fallback_pnl

WORKED_TOTALS = PositionTotals(
    token_x_amount=0.008,
    token_y_amount=5.5,
    unclaimed_fee_x=0.0,
    unclaimed_fee_y=2.0 / 150.0,  # $2 of unclaimed fees
)


@pytest.fixture
def aggregator(store, chain, oracle, clock):
    return PnLAggregator(store=store, chain=chain, oracle=oracle, clock=clock)


@pytest.mark.asyncio
async def test_worked_example(aggregator, chain):
    position = make_position()
    chain.totals_data[position.address] = WORKED_TOTALS

    result = await aggregator.position_pnl(position)

    assert result.status == "open"
    assert result.deposit_value_usd == pytest.approx(1350.0)
    assert result.current_value_usd == pytest.approx(1305.0)
    assert result.fees_earned_usd == pytest.approx(2.0)
    assert result.rewards_earned_usd == 0.0
    assert result.realized_pnl_usd == pytest.approx(-43.0)
    assert result.realized_pnl_percent == pytest.approx(-3.185, abs=0.01)
    assert result.impermanent_loss.usd == pytest.approx(45.0)
    assert result.impermanent_loss.percent == pytest.approx(3.333, abs=0.01)
    assert result.is_fallback is False


@pytest.mark.asyncio
async def test_accounting_identity_with_claims_and_rewards(store, chain, oracle, clock):
    rewards = AsyncMock()
    rewards.rewards = AsyncMock(
        return_value=[RewardInfo(token="JUP", amount=10.0, usd_value=3.0, claimed=False)]
    )
    aggregator = PnLAggregator(store=store, chain=chain, oracle=oracle, rewards=rewards, clock=clock)
    position = make_position()
    chain.totals_data[position.address] = WORKED_TOTALS
    await store.append_transaction_record(
        TransactionRecord(
            position_id=position.position_id,
            type="fee_claim",
            timestamp=NOW - timedelta(days=2),
            token_x_amount=0.0,
            token_y_amount=0.1,
            token_x_price=60_000.0,
            token_y_price=100.0,
            usd_value=10.0,
        )
    )

    r = await aggregator.position_pnl(position)

    assert r.fees_earned_usd == pytest.approx(12.0)
    assert r.rewards_earned_usd == pytest.approx(3.0)
    assert r.realized_pnl_usd == pytest.approx(
        r.current_value_usd + r.fees_earned_usd + r.rewards_earned_usd - r.deposit_value_usd
    )
    rewards.rewards.assert_awaited_once_with(position, True)


@pytest.mark.asyncio
async def test_closed_position_never_reads_chain(aggregator, chain):
    closed = make_position().close(
        closed_at=NOW,
        withdraw_token_x_amount=0.008,
        withdraw_token_y_amount=5.5,
        withdraw_token_x_price=60_000.0,
        withdraw_token_y_price=150.0,
    )

    r = await aggregator.position_pnl(closed)

    assert r.status == "closed"
    assert r.current_value_usd == pytest.approx(1305.0)
    assert r.realized_pnl_usd == pytest.approx(-45.0)
    chain.totals.assert_not_called()


@pytest.mark.asyncio
async def test_position_pnl_by_id_unknown(aggregator):
    with pytest.raises(NotFoundError):
        await aggregator.position_pnl_by_id("missing")


class TestRecordTransaction:
    @pytest.mark.asyncio
    async def test_appends_to_log(self, aggregator, store):
        rec = TransactionRecord(
            position_id="pos-1",
            type="deposit",
            timestamp=NOW,
            token_x_amount=0.01,
            token_y_amount=5.0,
            token_x_price=60_000.0,
            token_y_price=150.0,
            usd_value=1350.0,
        )
        await aggregator.record_transaction(rec)
        assert await store.list_transaction_records("pos-1") == [rec]

    @pytest.mark.asyncio
    async def test_rejects_unknown_type(self, aggregator, store):
        rec = TransactionRecord(
            position_id="pos-1",
            type="swap",
            timestamp=NOW,
            token_x_amount=0.0,
            token_y_amount=0.0,
            token_x_price=0.0,
            token_y_price=0.0,
            usd_value=0.0,
        )
        with pytest.raises(ValidationError):
            await aggregator.record_transaction(rec)
        assert store.transactions == []

    @pytest.mark.asyncio
    async def test_fee_claim_updates_position_total(self, aggregator, store):
        await store.upsert_position(make_position())
        rec = TransactionRecord(
            position_id="pos-1",
            type="fee_claim",
            timestamp=NOW,
            token_x_amount=0.0,
            token_y_amount=0.02,
            token_x_price=60_000.0,
            token_y_price=150.0,
            usd_value=3.0,
        )

        await aggregator.record_transaction(rec)

        assert await store.list_transaction_records("pos-1", "fee_claim") == [rec]
        assert (await store.find_position("pos-1")).claimed_fees_usd == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_no_rewards_is_empty():
    assert await NoRewards().rewards(make_position(), True) == []


class TestClosePosition:
    @pytest.mark.asyncio
    async def test_marks_closed_before_computing_pnl(self, aggregator, store, chain, oracle):
        position = make_position()
        await store.upsert_position(position)
        chain.totals_data[position.address] = WORKED_TOTALS
        oracle.prices["BTC"] = 62_000.0

        result = await aggregator.close_position(position.position_id, signature="sig123")

        # one read for the withdrawn amounts; PnL then runs on the closed path
        assert chain.totals.await_count == 1
        assert result.pnl.status == "closed"
        assert result.pnl.current_value_usd == pytest.approx(0.008 * 62_000 + 5.5 * 150)
        assert result.pnl.fees_earned_usd == pytest.approx(2.0)
        assert result.pnl.realized_pnl_usd == pytest.approx(1321.0 + 2.0 - 1350.0)
        assert result.signature == "sig123"

        stored = await store.find_position(position.position_id)
        assert stored.is_active is False
        assert stored.closed_at is not None
        assert stored.withdraw_token_x_price == 62_000.0
        assert stored.realized_pnl_usd == pytest.approx(result.pnl.realized_pnl_usd)
        assert stored.fees_earned_usd == pytest.approx(2.0)
        assert stored.claimed_fees_usd == pytest.approx(result.pnl.fees.claimed_usd)

        withdrawals = await store.list_transaction_records(position.position_id, "withdraw")
        assert len(withdrawals) == 1
        assert withdrawals[0].signature == "sig123"
        assert withdrawals[0].usd_value == pytest.approx(1321.0)

    @pytest.mark.asyncio
    async def test_gone_account_uses_supplied_amounts(self, aggregator, store):
        position = make_position()
        await store.upsert_position(position)

        result = await aggregator.close_position(position.position_id, withdrawn_amounts=(0.0, 9.0))

        assert result.pnl.current_value_usd == pytest.approx(9.0 * 150)
        stored = await store.find_position(position.position_id)
        assert stored.withdraw_token_y_amount == 9.0

    @pytest.mark.asyncio
    async def test_closing_twice_is_rejected(self, aggregator, store, chain):
        position = make_position()
        await store.upsert_position(position)
        chain.totals_data[position.address] = WORKED_TOTALS
        await aggregator.close_position(position.position_id)

        with pytest.raises(InvalidStateError):
            await aggregator.close_position(position.position_id)
        assert len(await store.list_transaction_records(position.position_id, "withdraw")) == 1

    @pytest.mark.asyncio
    async def test_unknown_position(self, aggregator):
        with pytest.raises(NotFoundError):
            await aggregator.close_position("missing")


class TestFallbackPnL:
    def test_open_position_uses_stored_fields(self):
        position = make_position(fees_earned_usd=5.0)
        r = fallback_pnl(position, now=NOW)

        assert r.is_fallback is True
        assert r.deposit_value_usd == pytest.approx(1350.0)
        assert r.current_value_usd == pytest.approx(1350.0)
        assert r.fees_earned_usd == pytest.approx(5.0)
        assert r.realized_pnl_usd == pytest.approx(5.0)
        assert r.current.approximate is True

    def test_closed_position_uses_final_aggregates(self):
        closed = make_position().close(
            closed_at=NOW,
            withdraw_token_x_amount=0.008,
            withdraw_token_y_amount=5.5,
            withdraw_token_x_price=60_000.0,
            withdraw_token_y_price=150.0,
        )
        from dataclasses import replace

        closed = replace(closed, impermanent_loss_usd=45.0, impermanent_loss_percent=3.33, fees_earned_usd=2.0)
        r = fallback_pnl(closed)

        assert r.status == "closed"
        assert r.impermanent_loss.usd == 45.0
        assert r.realized_pnl_usd == pytest.approx(1305.0 + 2.0 - 1350.0)

    def test_claimed_total_splits_earned_fees(self):
        r = fallback_pnl(make_position(claimed_fees_usd=4.0, fees_earned_usd=6.0), now=NOW)

        assert r.fees.claimed_usd == pytest.approx(4.0)
        assert r.fees.unclaimed_usd == pytest.approx(2.0)
        assert r.fees_earned_usd == pytest.approx(6.0)
        assert r.realized_pnl_usd == pytest.approx(6.0)

    def test_claims_recorded_before_any_aggregate_still_count(self):
        r = fallback_pnl(make_position(claimed_fees_usd=4.0), now=NOW)

        assert r.fees.claimed_usd == pytest.approx(4.0)
        assert r.fees.unclaimed_usd == 0.0
        assert r.fees_earned_usd == pytest.approx(4.0)


if __name__ == "__main__":
    pytest.main([__file__])
