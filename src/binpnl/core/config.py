from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class PnLConfig:
    """Batching for wallet-level PnL (backpressure against upstream rate limits)."""

    batch_size: int = 3
    batch_delay_s: float = 0.1


@dataclass(frozen=True)
class RepositionConfig:
    """Security gates and cost defaults for reposition preparation."""

    signature_window_s: int = 300
    rate_limit_window_s: int = 60
    rate_limit_max: int = 10
    intent_ttl_s: int = 60
    default_slippage_bps: int = 100
    default_bin_range: int = 10
    one_sided_threshold: float = 0.8
    buffer_bins: int = 5
    # Cost estimation (SOL / lamports / micro-lamports per CU)
    fallback_gas_sol: float = 0.01
    base_fee_lamports: int = 5_000
    default_compute_units: int = 200_000
    default_priority_fee: int = 1_000


@dataclass(frozen=True)
class ClientConfig:
    """Infrastructure settings used by the CLI wiring."""

    rpc_url: str = "https://api.mainnet-beta.solana.com"
    timeout_s: int = 20
    max_connections: int = 64
    db_path: Path = Path("./data/binpnl.duckdb")
