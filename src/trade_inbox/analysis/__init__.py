"""Duplicate-risk analysis for candidate trade events."""

from .market_calendar import MarketContext, market_context, to_utc
from .time_windows import (
    PartialFillAnalysis,
    RapidTradingPattern,
    SplitOrderAnalysis,
    TimeWindowAnalysis,
    TimeWindowConfig,
    TradeEvent,
    analyze,
    analyze_partial_fills,
    analyze_split_orders,
    detect_rapid_trading,
    validate_analysis,
)

__all__ = [
    "MarketContext",
    "PartialFillAnalysis",
    "RapidTradingPattern",
    "SplitOrderAnalysis",
    "TimeWindowAnalysis",
    "TimeWindowConfig",
    "TradeEvent",
    "analyze",
    "analyze_partial_fills",
    "analyze_split_orders",
    "detect_rapid_trading",
    "market_context",
    "to_utc",
    "validate_analysis",
]
