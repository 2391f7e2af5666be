"""Core data models, configuration, errors and capability interfaces.

This package provides:
- Data models (Position, TransactionRecord, RepositionHistoryEntry, PnLResult)
- Configuration classes (PnLConfig, RepositionConfig, ClientConfig)
- The BinPnLError taxonomy
"""

from binpnl.core.config import ClientConfig, PnLConfig, RepositionConfig
from binpnl.core.errors import BinPnLError, ErrorKind
from binpnl.core.models import PnLResult, Position, RepositionHistoryEntry, TransactionRecord

__all__ = [
    "BinPnLError",
    "ClientConfig",
    "ErrorKind",
    "PnLConfig",
    "PnLResult",
    "Position",
    "RepositionConfig",
    "RepositionHistoryEntry",
    "TransactionRecord",
]
