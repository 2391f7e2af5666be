from __future__ import annotations

from .core.config import ClientConfig, PnLConfig, RepositionConfig
from .core.errors import BinPnLError, ErrorKind, format_error
from .core.models import Position, TransactionRecord
from .core.use_cases import (
    PnLAggregator,
    PositionChainTracker,
    RepositionRequest,
    RepositionTransactionPreparer,
)

__all__ = [
    "PnLAggregator",
    "PositionChainTracker",
    "RepositionTransactionPreparer",
    "RepositionRequest",
    "Position",
    "TransactionRecord",
    "PnLConfig",
    "RepositionConfig",
    "ClientConfig",
    "BinPnLError",
    "ErrorKind",
    "format_error",
]
