"""DuckDB store against a temporary database file."""

from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import NOW, WALLET, make_position
from solders.pubkey import Pubkey

from binpnl.core.errors import DuplicateRecordError
from binpnl.core.models import BinRange, PendingTransaction, RepositionHistoryEntry, TransactionRecord
from binpnl.storage.duckdb_store import DuckDBStore


@pytest.fixture
def db(tmp_path):
    return DuckDBStore(tmp_path / "nested" / "positions.duckdb")


def record(position_id: str, tx_type: str, hours: int, usd: float = 10.0) -> TransactionRecord:
    return TransactionRecord(
        position_id=position_id,
        type=tx_type,
        timestamp=NOW + timedelta(hours=hours),
        token_x_amount=0.0,
        token_y_amount=usd / 150.0,
        token_x_price=60_000.0,
        token_y_price=150.0,
        usd_value=usd,
        notes=f"{tx_type} at +{hours}h",
    )


def entry(entry_id: str, old: str, new: str, hours: int = 0, wallet: str = WALLET) -> RepositionHistoryEntry:
    return RepositionHistoryEntry(
        id=entry_id,
        old_position_address=old,
        new_position_address=new,
        wallet_address=wallet,
        pool_address=str(Pubkey.new_unique()),
        reason="out_of_range",
        old_bin_range=BinRange(lower=80, upper=100),
        new_bin_range=BinRange(lower=105, upper=125),
        active_bin_at_reposition=115,
        distance_from_range=15,
        created_at=NOW + timedelta(hours=hours),
        fees_claimed_y=0.5,
        strategy="balanced",
        gas_cost_sol=0.000005,
    )


class TestPositions:
    @pytest.mark.asyncio
    async def test_roundtrip(self, db):
        position = make_position()
        await db.upsert_position(position)

        loaded = await db.find_position(position.position_id)

        assert loaded == position
        assert loaded.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_upsert_replaces_closed_state(self, db):
        position = make_position()
        await db.upsert_position(position)
        closed = replace(
            position.close(
                closed_at=NOW,
                withdraw_token_x_amount=0.008,
                withdraw_token_y_amount=5.5,
                withdraw_token_x_price=60_000.0,
                withdraw_token_y_price=150.0,
            ),
            realized_pnl_usd=-45.0,
        )
        await db.upsert_position(closed)

        loaded = await db.find_position(position.position_id)
        assert loaded.is_active is False
        assert loaded.closed_at == NOW
        assert loaded.realized_pnl_usd == -45.0

    @pytest.mark.asyncio
    async def test_missing_position(self, db):
        assert await db.find_position("nope") is None

    @pytest.mark.asyncio
    async def test_by_wallet_newest_first_and_active_filter(self, db):
        older = make_position(position_id="a", created_at=NOW - timedelta(days=3))
        newer = make_position(position_id="b", created_at=NOW - timedelta(days=1))
        closed = make_position(position_id="c", created_at=NOW - timedelta(days=2)).close(
            closed_at=NOW,
            withdraw_token_x_amount=0.0,
            withdraw_token_y_amount=9.0,
            withdraw_token_x_price=60_000.0,
            withdraw_token_y_price=150.0,
        )
        other = make_position(position_id="d", wallet_address=str(Pubkey.new_unique()))
        for p in (older, newer, closed, other):
            await db.upsert_position(p)

        everything = await db.find_positions_by_wallet(WALLET)
        active = await db.find_positions_by_wallet(WALLET, include_closed=False)

        assert [p.position_id for p in everything] == ["b", "c", "a"]
        assert [p.position_id for p in active] == ["b", "a"]


class TestTransactionLog:
    @pytest.mark.asyncio
    async def test_ordered_and_filtered(self, db):
        for rec in (record("p", "withdraw", 3), record("p", "deposit", 0), record("p", "fee_claim", 1)):
            await db.append_transaction_record(rec)
        await db.append_transaction_record(record("q", "deposit", 0))

        records = await db.list_transaction_records("p")
        claims = await db.list_transaction_records("p", "fee_claim")

        assert [r.type for r in records] == ["deposit", "fee_claim", "withdraw"]
        assert records[0] == record("p", "deposit", 0)
        assert len(claims) == 1
        assert claims[0].usd_value == 10.0


class TestRepositionHistory:
    @pytest.mark.asyncio
    async def test_bulk_lookup_matches_either_side(self, db):
        a, b, c, d = (str(Pubkey.new_unique()) for _ in range(4))
        first, second, unrelated = entry("e1", a, b, 1), entry("e2", b, c, 2), entry("e3", d, str(Pubkey.new_unique()))
        for e in (first, second, unrelated):
            await db.insert_reposition_entry(e)

        found = await db.find_reposition_entries({b})

        assert sorted(e.id for e in found) == ["e1", "e2"]
        assert next(e for e in found if e.id == "e1") == first
        assert await db.find_reposition_entries([]) == []

    @pytest.mark.asyncio
    async def test_duplicate_id_is_rejected(self, db):
        e = entry("e1", str(Pubkey.new_unique()), str(Pubkey.new_unique()))
        await db.insert_reposition_entry(e)
        with pytest.raises(DuplicateRecordError):
            await db.insert_reposition_entry(e)

    @pytest.mark.asyncio
    async def test_by_wallet_newest_first(self, db):
        addrs = [str(Pubkey.new_unique()) for _ in range(4)]
        await db.insert_reposition_entry(entry("e1", addrs[0], addrs[1], hours=1))
        await db.insert_reposition_entry(entry("e2", addrs[1], addrs[2], hours=2))
        await db.insert_reposition_entry(entry("e3", addrs[2], addrs[3], hours=3, wallet=str(Pubkey.new_unique())))

        found = await db.list_reposition_entries_by_wallet(WALLET)
        assert [e.id for e in found] == ["e2", "e1"]


def pending(tx_hash: str) -> PendingTransaction:
    return PendingTransaction(
        tx_hash=tx_hash,
        wallet_address=WALLET,
        position_address="pos",
        created_at=NOW,
        expires_at=NOW + timedelta(seconds=60),
    )


class TestPendingTransactions:
    @pytest.mark.asyncio
    async def test_count_since_and_uniqueness(self, db):
        for i, age in enumerate((90, 30, 5)):
            created = NOW - timedelta(seconds=age)
            await db.insert_pending_transaction(
                PendingTransaction(
                    tx_hash=f"hash-{i}",
                    wallet_address=WALLET,
                    position_address="pos",
                    created_at=created,
                    expires_at=created + timedelta(seconds=60),
                )
            )

        assert await db.count_pending_transactions(WALLET, NOW - timedelta(seconds=60)) == 2
        assert await db.count_pending_transactions(WALLET, NOW - timedelta(seconds=30)) == 2
        assert await db.count_pending_transactions(str(Pubkey.new_unique()), NOW - timedelta(hours=1)) == 0

        with pytest.raises(DuplicateRecordError):
            await db.insert_pending_transaction(
                PendingTransaction(
                    tx_hash="hash-0",
                    wallet_address=WALLET,
                    position_address="pos",
                    created_at=NOW,
                    expires_at=NOW + timedelta(seconds=60),
                )
            )

    @pytest.mark.asyncio
    async def test_insert_refused_once_window_is_full(self, db):
        since = NOW - timedelta(seconds=60)
        for i in range(3):
            assert await db.insert_pending_transaction(pending(f"h{i}"), since=since, limit=3) is True

        assert await db.insert_pending_transaction(pending("h3"), since=since, limit=3) is False
        assert await db.find_pending_transaction("h3") is None
        assert await db.count_pending_transactions(WALLET, since) == 3
        # rows older than the window do not count
        assert await db.insert_pending_transaction(pending("h4"), since=NOW + timedelta(seconds=1), limit=3) is True

    @pytest.mark.asyncio
    async def test_find_pending(self, db):
        stored = pending("h")
        await db.insert_pending_transaction(stored)

        assert await db.find_pending_transaction("h") == stored
        assert await db.find_pending_transaction("other") is None

    @pytest.mark.asyncio
    async def test_shared_file_sees_other_instance(self, tmp_path):
        path = tmp_path / "shared.duckdb"
        first, second = DuckDBStore(path), DuckDBStore(path)
        await first.insert_pending_transaction(
            PendingTransaction(
                tx_hash="h",
                wallet_address=WALLET,
                position_address="pos",
                created_at=NOW,
                expires_at=NOW + timedelta(seconds=60),
            )
        )
        assert await second.count_pending_transactions(WALLET, NOW - timedelta(seconds=60)) == 1


if __name__ == "__main__":
    pytest.main([__file__])
