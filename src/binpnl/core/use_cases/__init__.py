"""Accounting and transaction-preparation services.

This package provides:
- Snapshot, fee and impermanent-loss calculators
- PnLAggregator: position and wallet PnL, position close
- PositionChainTracker: reposition history graph and wallet statistics
- RepositionTransactionPreparer: gated unsigned-transaction builder
"""

from binpnl.core.use_cases.chain import PositionChainTracker
from binpnl.core.use_cases.fees import FeesCalculator
from binpnl.core.use_cases.impermanent_loss import ImpermanentLossCalculator, compute_impermanent_loss
from binpnl.core.use_cases.pnl import NoRewards, PnLAggregator, fallback_pnl
from binpnl.core.use_cases.reposition import RepositionRequest, RepositionTransactionPreparer, verify_intent
from binpnl.core.use_cases.snapshots import SnapshotProvider

__all__ = [
    "FeesCalculator",
    "ImpermanentLossCalculator",
    "NoRewards",
    "PnLAggregator",
    "PositionChainTracker",
    "RepositionRequest",
    "RepositionTransactionPreparer",
    "SnapshotProvider",
    "compute_impermanent_loss",
    "fallback_pnl",
    "verify_intent",
]
