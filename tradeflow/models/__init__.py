"""Data models."""

from tradeflow.models.trade import Trade, CreatedTrade, LedgerStatus
from tradeflow.models.runtime import TradePhase, TradeRuntimeState

__all__ = [
    "Trade",
    "CreatedTrade",
    "LedgerStatus",
    "TradePhase",
    "TradeRuntimeState",
]
