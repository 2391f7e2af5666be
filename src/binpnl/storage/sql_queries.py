"""
sql_queries.py
--------------

Schema and queries for the DuckDB position store.

Timestamps are stored as UTC `TIMESTAMP` values; the store converts to and
from timezone-aware datetimes at the boundary.
"""

# =====================================================================
# SCHEMA
# =====================================================================

CREATE_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS positions (
        position_id              VARCHAR PRIMARY KEY,
        address                  VARCHAR NOT NULL,
        pool_address             VARCHAR NOT NULL,
        wallet_address           VARCHAR NOT NULL,
        token_x_symbol           VARCHAR NOT NULL,
        token_y_symbol           VARCHAR NOT NULL,
        deposit_token_x_amount   DOUBLE NOT NULL,
        deposit_token_y_amount   DOUBLE NOT NULL,
        deposit_token_x_price    DOUBLE,
        deposit_token_y_price    DOUBLE,
        created_at               TIMESTAMP NOT NULL,
        is_active                BOOLEAN NOT NULL,
        closed_at                TIMESTAMP,
        withdraw_token_x_amount  DOUBLE,
        withdraw_token_y_amount  DOUBLE,
        withdraw_token_x_price   DOUBLE,
        withdraw_token_y_price   DOUBLE,
        fee_token_x_amount       DOUBLE NOT NULL DEFAULT 0,
        fee_token_y_amount       DOUBLE NOT NULL DEFAULT 0,
        claimed_fees_usd         DOUBLE NOT NULL DEFAULT 0,
        deposit_value_usd        DOUBLE,
        realized_pnl_usd         DOUBLE,
        realized_pnl_percent     DOUBLE,
        impermanent_loss_usd     DOUBLE,
        impermanent_loss_percent DOUBLE,
        fees_earned_usd          DOUBLE,
        rewards_earned_usd       DOUBLE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS transaction_records (
        position_id     VARCHAR NOT NULL,
        type            VARCHAR NOT NULL,
        timestamp       TIMESTAMP NOT NULL,
        token_x_amount  DOUBLE NOT NULL,
        token_y_amount  DOUBLE NOT NULL,
        token_x_price   DOUBLE NOT NULL,
        token_y_price   DOUBLE NOT NULL,
        usd_value       DOUBLE NOT NULL,
        signature       VARCHAR,
        notes           VARCHAR
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_tx_position ON transaction_records (position_id);",
    """
    CREATE TABLE IF NOT EXISTS reposition_history (
        id                        VARCHAR PRIMARY KEY,
        old_position_address      VARCHAR NOT NULL,
        new_position_address      VARCHAR NOT NULL,
        wallet_address            VARCHAR NOT NULL,
        pool_address              VARCHAR NOT NULL,
        reason                    VARCHAR NOT NULL,
        old_bin_lower             INTEGER NOT NULL,
        old_bin_upper             INTEGER NOT NULL,
        new_bin_lower             INTEGER NOT NULL,
        new_bin_upper             INTEGER NOT NULL,
        active_bin_at_reposition  INTEGER NOT NULL,
        distance_from_range       INTEGER NOT NULL,
        created_at                TIMESTAMP NOT NULL,
        liquidity_recovered_x     DOUBLE NOT NULL DEFAULT 0,
        liquidity_recovered_y     DOUBLE NOT NULL DEFAULT 0,
        fees_claimed_x            DOUBLE NOT NULL DEFAULT 0,
        fees_claimed_y            DOUBLE NOT NULL DEFAULT 0,
        new_token_x_amount        DOUBLE,
        new_token_y_amount        DOUBLE,
        strategy                  VARCHAR,
        gas_cost_sol              DOUBLE,
        transaction_signature     VARCHAR
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_reposition_old ON reposition_history (old_position_address);",
    "CREATE INDEX IF NOT EXISTS idx_reposition_new ON reposition_history (new_position_address);",
    "CREATE INDEX IF NOT EXISTS idx_reposition_wallet ON reposition_history (wallet_address);",
    """
    CREATE TABLE IF NOT EXISTS pending_transactions (
        tx_hash           VARCHAR PRIMARY KEY,
        wallet_address    VARCHAR NOT NULL,
        position_address  VARCHAR NOT NULL,
        created_at        TIMESTAMP NOT NULL,
        expires_at        TIMESTAMP NOT NULL,
        executed          BOOLEAN NOT NULL DEFAULT false
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_pending_wallet ON pending_transactions (wallet_address, created_at);",
]


# =====================================================================
# POSITIONS
# =====================================================================

POSITION_COLUMNS = (
    "position_id",
    "address",
    "pool_address",
    "wallet_address",
    "token_x_symbol",
    "token_y_symbol",
    "deposit_token_x_amount",
    "deposit_token_y_amount",
    "deposit_token_x_price",
    "deposit_token_y_price",
    "created_at",
    "is_active",
    "closed_at",
    "withdraw_token_x_amount",
    "withdraw_token_y_amount",
    "withdraw_token_x_price",
    "withdraw_token_y_price",
    "fee_token_x_amount",
    "fee_token_y_amount",
    "claimed_fees_usd",
    "deposit_value_usd",
    "realized_pnl_usd",
    "realized_pnl_percent",
    "impermanent_loss_usd",
    "impermanent_loss_percent",
    "fees_earned_usd",
    "rewards_earned_usd",
)

_POSITION_SELECT = f"SELECT {', '.join(POSITION_COLUMNS)} FROM positions"

UPSERT_POSITION_QUERY = f"""
INSERT OR REPLACE INTO positions ({', '.join(POSITION_COLUMNS)})
VALUES ({', '.join('?' for _ in POSITION_COLUMNS)});
"""

FIND_POSITION_QUERY = f"{_POSITION_SELECT} WHERE position_id = ?;"

FIND_POSITIONS_BY_WALLET_QUERY = f"""
{_POSITION_SELECT}
WHERE wallet_address = ?
  AND (CAST(? AS BOOLEAN) OR is_active)
ORDER BY created_at DESC, position_id;
"""


# =====================================================================
# TRANSACTION LOG
# =====================================================================

TRANSACTION_COLUMNS = (
    "position_id",
    "type",
    "timestamp",
    "token_x_amount",
    "token_y_amount",
    "token_x_price",
    "token_y_price",
    "usd_value",
    "signature",
    "notes",
)

APPEND_TRANSACTION_QUERY = f"""
INSERT INTO transaction_records ({', '.join(TRANSACTION_COLUMNS)})
VALUES ({', '.join('?' for _ in TRANSACTION_COLUMNS)});
"""

LIST_TRANSACTIONS_QUERY = f"""
SELECT {', '.join(TRANSACTION_COLUMNS)}
FROM transaction_records
WHERE position_id = ?
  AND (CAST(? AS VARCHAR) IS NULL OR type = ?)
ORDER BY timestamp, rowid;
"""


# =====================================================================
# REPOSITION HISTORY
# =====================================================================

REPOSITION_COLUMNS = (
    "id",
    "old_position_address",
    "new_position_address",
    "wallet_address",
    "pool_address",
    "reason",
    "old_bin_lower",
    "old_bin_upper",
    "new_bin_lower",
    "new_bin_upper",
    "active_bin_at_reposition",
    "distance_from_range",
    "created_at",
    "liquidity_recovered_x",
    "liquidity_recovered_y",
    "fees_claimed_x",
    "fees_claimed_y",
    "new_token_x_amount",
    "new_token_y_amount",
    "strategy",
    "gas_cost_sol",
    "transaction_signature",
)

_REPOSITION_SELECT = f"SELECT {', '.join(REPOSITION_COLUMNS)} FROM reposition_history"

INSERT_REPOSITION_QUERY = f"""
INSERT INTO reposition_history ({', '.join(REPOSITION_COLUMNS)})
VALUES ({', '.join('?' for _ in REPOSITION_COLUMNS)});
"""

FIND_REPOSITIONS_BY_ADDRESSES_QUERY = f"""
{_REPOSITION_SELECT}
WHERE list_contains(CAST(? AS VARCHAR[]), old_position_address)
   OR list_contains(CAST(? AS VARCHAR[]), new_position_address)
ORDER BY created_at, id;
"""

LIST_REPOSITIONS_BY_WALLET_QUERY = f"""
{_REPOSITION_SELECT}
WHERE wallet_address = ?
ORDER BY created_at DESC, id DESC;
"""


# =====================================================================
# PENDING TRANSACTIONS
# =====================================================================

INSERT_PENDING_QUERY = """
INSERT INTO pending_transactions (tx_hash, wallet_address, position_address, created_at, expires_at, executed)
VALUES (?, ?, ?, ?, ?, ?);
"""

COUNT_PENDING_SINCE_QUERY = """
SELECT count(*)
FROM pending_transactions
WHERE wallet_address = ?
  AND created_at >= ?;
"""

FIND_PENDING_QUERY = """
SELECT tx_hash, wallet_address, position_address, created_at, expires_at, executed
FROM pending_transactions
WHERE tx_hash = ?;
"""
