from .database import (
    AgentPolicy,
    ExecutionEvent,
    ExecutionStatus,
    MarketSnapshot,
    PromotionLevel,
    ProposalStatus,
    ScanJob,
    ScanJobStatus,
    SignalUsageLog,
    TradeAction,
    TradeExecution,
    TradeHistory,
    TradeProposal,
    UserTradingSettings,
)

__all__ = [
    "AgentPolicy",
    "ExecutionEvent",
    "ExecutionStatus",
    "MarketSnapshot",
    "PromotionLevel",
    "ProposalStatus",
    "ScanJob",
    "ScanJobStatus",
    "SignalUsageLog",
    "TradeAction",
    "TradeExecution",
    "TradeHistory",
    "TradeProposal",
    "UserTradingSettings",
]
