"""Time-window duplicate-risk classification for trade events.

Two confirmations that describe the same symbol, size and price a few
hundred milliseconds apart are almost certainly the same execution reported
twice; the same pair a week apart almost certainly is not. This module turns
the distance between two events into a ladder of window memberships, a
confidence per window and a weighted risk tier. It also looks at batches of
events for rapid trading, partial fills and split orders.

Every function here is pure and deterministic.
"""

from __future__ import annotations

import math
import statistics
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, fields
from datetime import UTC, datetime, timedelta
from typing import Literal

from trade_inbox.core.models import ValidationReport

from .market_calendar import DEFAULT_TIMEZONE, MarketContext, localize, market_context

DuplicateRisk = Literal["critical", "high", "medium", "low"]
RiskLevel = Literal["low", "medium", "high"]
RapidPatternShape = Literal["burst", "systematic", "random", "none"]
SuggestedAction = Literal["group", "separate", "review"]

RISK_TIERS: tuple[DuplicateRisk, ...] = ("critical", "high", "medium", "low")

_SAME_SECOND_WEIGHT = 0.9
_SAME_MINUTE_WEIGHT = 0.7
_RAPID_TRADING_WEIGHT = 0.6
_SAME_SYMBOL_WEIGHT = 0.3
_SAME_QUANTITY_WEIGHT = 0.3
_SAME_PRICE_WEIGHT = 0.3
_MATCH_TOLERANCE = 0.01

_CRITICAL_THRESHOLD = 1.5
_HIGH_THRESHOLD = 1.0
_MEDIUM_THRESHOLD = 0.6

# (ceiling at zero distance, floor at the window boundary)
_CONFIDENCE_BANDS = {
    "same_second": (0.95, 0.95),
    "same_minute": (0.9, 0.8),
    "same_hour": (0.8, 0.6),
    "same_day": (0.6, 0.3),
    "rapid_trading": (0.85, 0.85),
    "partial_fill": (0.7, 0.4),
    "split_order": (0.6, 0.3),
}

_PARTIAL_FILL_PRICE_CV = 0.05
_SPLIT_ORDER_PRICE_RANGE = 0.1
_SPLIT_ORDER_TIGHT_PRICE_RANGE = 0.02
_SPLIT_ORDER_QUANTITY_CV = 0.3
_SPLIT_ORDER_TIMING_CV = 0.5
_SYSTEMATIC_INTERVAL_CV = 0.2

_TRADE_DIRECTIONS = frozenset({"buy", "sell"})

_DURATION_UNITS = (
    ("week", 604_800),
    ("day", 86_400),
    ("hour", 3_600),
    ("minute", 60),
)


# Inputs -------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class TradeEvent:
    """A candidate transaction extracted from a confirmation."""

    symbol: str
    transaction_type: str
    quantity: float
    price: float
    transaction_date: datetime
    timezone: str = DEFAULT_TIMEZONE
    execution_time: str | None = None

    def executed_at(self) -> datetime:
        """Return the execution moment as an aware datetime in its own zone."""
        return localize(self.transaction_date, self.timezone, self.execution_time)

    def executed_at_utc(self) -> datetime:
        """Return the execution moment normalised to UTC."""
        return self.executed_at().astimezone(UTC)


@dataclass(slots=True, frozen=True)
class TimeWindowConfig:
    """Window sizes used to classify the distance between events."""

    same_second: timedelta = timedelta(seconds=1)
    same_minute: timedelta = timedelta(minutes=1)
    same_hour: timedelta = timedelta(hours=1)
    same_day: timedelta = timedelta(days=1)
    same_week: timedelta = timedelta(days=7)
    rapid_trading: timedelta = timedelta(seconds=5)
    partial_fill: timedelta = timedelta(minutes=30)
    split_order: timedelta = timedelta(hours=2)
    settlement: timedelta = timedelta(days=3)


DEFAULT_CONFIG = TimeWindowConfig()


# Results ------------------------------------------------------------------
# pylint: disable=too-many-instance-attributes
@dataclass(slots=True, frozen=True)
class WindowMembership:
    """Which windows the distance between two events falls inside."""

    same_second: bool
    same_minute: bool
    same_hour: bool
    same_day: bool
    same_week: bool
    rapid_trading: bool
    partial_fill: bool
    split_order: bool
    settlement: bool


@dataclass(slots=True, frozen=True)
class WindowConfidence:
    """Confidence, in ``[0, 1]``, that the pair is a duplicate per window."""

    same_second: float = 0.0
    same_minute: float = 0.0
    same_hour: float = 0.0
    same_day: float = 0.0
    rapid_trading: float = 0.0
    partial_fill: float = 0.0
    split_order: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


@dataclass(slots=True, frozen=True)
class TimezoneInfo:
    """Timezones the two events were declared in and how they were reconciled."""

    event_a_timezone: str
    event_b_timezone: str
    normalized_timezone: str
    timezone_offset: timedelta


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True, frozen=True)
class TimeWindowAnalysis:
    """Verdict on whether two events are the same real-world trade."""

    time_difference: timedelta
    time_difference_formatted: str
    windows: WindowMembership
    confidence: WindowConfidence
    risk_score: float
    duplicate_risk: DuplicateRisk
    risk_factors: tuple[str, ...]
    market_context: MarketContext
    timezone_info: TimezoneInfo


@dataclass(slots=True, frozen=True)
class RapidTradingPattern:
    """Shape of a run of same-symbol events with short inter-arrival times."""

    is_rapid_trading: bool
    transaction_count: int
    average_interval: timedelta
    pattern: RapidPatternShape
    confidence: float
    risk_level: RiskLevel


@dataclass(slots=True, frozen=True)
class PartialFillAnalysis:
    """Whether several confirmations look like fills of one order."""

    is_potential_partial_fill: bool
    quantities: tuple[float, ...]
    price_consistency: bool
    time_spread: timedelta
    confidence: float
    suggested_action: SuggestedAction


@dataclass(slots=True, frozen=True)
class SplitOrderAnalysis:
    """Whether several confirmations look like one trade split into orders."""

    is_potential_split_order: bool
    quantities: tuple[float, ...]
    execution_times: tuple[datetime, ...]
    price_variation: float
    confidence: float
    suggested_grouping: tuple[str, ...]


# Pairwise analysis --------------------------------------------------------
def analyze(
    event_a: TradeEvent,
    event_b: TradeEvent,
    config: TimeWindowConfig | None = None,
) -> TimeWindowAnalysis:
    """Classify the duplicate risk of two events from their timing and details."""
    config = config or DEFAULT_CONFIG
    local_a = event_a.executed_at()
    local_b = event_b.executed_at()
    delta = abs(local_a - local_b)

    windows = WindowMembership(
        same_second=delta <= config.same_second,
        same_minute=delta <= config.same_minute,
        same_hour=delta <= config.same_hour,
        same_day=delta <= config.same_day,
        same_week=delta <= config.same_week,
        rapid_trading=delta <= config.rapid_trading,
        partial_fill=delta <= config.partial_fill,
        split_order=delta <= config.split_order,
        settlement=delta <= config.settlement,
    )
    risk_score, risk_factors = _score_risk(windows, event_a, event_b)

    return TimeWindowAnalysis(
        time_difference=delta,
        time_difference_formatted=format_time_difference(delta),
        windows=windows,
        confidence=_window_confidence(delta, config),
        risk_score=risk_score,
        duplicate_risk=risk_tier(risk_score),
        risk_factors=tuple(risk_factors),
        market_context=market_context(local_a),
        timezone_info=TimezoneInfo(
            event_a_timezone=_zone_name(local_a),
            event_b_timezone=_zone_name(local_b),
            normalized_timezone="UTC",
            timezone_offset=(local_a.utcoffset() or timedelta(0))
            - (local_b.utcoffset() or timedelta(0)),
        ),
    )


def risk_tier(score: float) -> DuplicateRisk:
    """Bucket a weighted risk score into a duplicate-risk tier."""
    if score >= _CRITICAL_THRESHOLD:
        return "critical"
    if score >= _HIGH_THRESHOLD:
        return "high"
    if score >= _MEDIUM_THRESHOLD:
        return "medium"
    return "low"


def validate_analysis(analysis: TimeWindowAnalysis) -> ValidationReport:
    """Sanity-check an analysis; never raises."""
    report = ValidationReport()
    if analysis.time_difference < timedelta(0):
        report.errors.append("Time difference cannot be negative")
    if analysis.duplicate_risk not in RISK_TIERS:
        report.errors.append(f"Invalid duplicate risk level: {analysis.duplicate_risk}")
    for name, score in analysis.confidence.as_dict().items():
        if not 0.0 <= score <= 1.0:
            report.errors.append(f"Invalid confidence score for {name}: {score}")

    if analysis.windows.same_second and analysis.duplicate_risk != "critical":
        report.warnings.append("Same second timing should result in critical risk")
    if analysis.time_difference > timedelta(days=7):
        report.warnings.append("Time difference exceeds one week")
    return report


def format_time_difference(delta: timedelta) -> str:
    """Render ``delta`` in its largest whole unit, e.g. ``"2 days"``."""
    seconds = int(abs(delta).total_seconds())
    for unit, size in _DURATION_UNITS:
        count = seconds // size
        if count > 0:
            return f"{count} {unit}{'s' if count > 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


# Batch patterns -----------------------------------------------------------
def detect_rapid_trading(
    events: Iterable[TradeEvent],
    symbol: str | None = None,
    window: timedelta = timedelta(minutes=30),
) -> RapidTradingPattern:
    """Look for a run of events whose inter-arrival times fall inside ``window``."""
    selected = [event for event in events if symbol is None or event.symbol == symbol]
    if len(selected) < 2:
        return RapidTradingPattern(
            is_rapid_trading=False,
            transaction_count=len(selected),
            average_interval=timedelta(0),
            pattern="none",
            confidence=0.0,
            risk_level="low",
        )

    intervals = _intervals(_sorted_times(selected))
    rapid = [interval for interval in intervals if interval <= window]
    is_rapid = len(rapid) >= 2
    average = sum(intervals, timedelta(0)) / len(intervals)

    pattern: RapidPatternShape = "none"
    confidence = 0.0
    risk_level: RiskLevel = "low"
    if is_rapid:
        spread = _coefficient_of_variation([i.total_seconds() for i in intervals])
        if spread < _SYSTEMATIC_INTERVAL_CV:
            pattern = "systematic"
        elif len(rapid) >= 3 and len(rapid) == len(intervals):
            pattern = "burst"
        else:
            pattern = "random"

        confidence = _clamp(min(0.9, len(rapid) / len(intervals) * 0.8 + 0.2))

        if pattern == "burst" and len(rapid) >= 5:
            risk_level = "high"
        elif pattern == "systematic" or len(rapid) >= 3:
            risk_level = "medium"

    return RapidTradingPattern(
        is_rapid_trading=is_rapid,
        transaction_count=len(selected),
        average_interval=average,
        pattern=pattern,
        confidence=confidence,
        risk_level=risk_level,
    )


def analyze_partial_fills(
    events: Iterable[TradeEvent],
    symbol: str,
    target_quantity: float | None = None,
    config: TimeWindowConfig | None = None,
) -> PartialFillAnalysis:
    """Decide whether same-symbol buys or sells are fills of a single order."""
    config = config or DEFAULT_CONFIG
    selected = sorted(
        (
            event
            for event in events
            if event.symbol == symbol
            and event.transaction_type.lower() in _TRADE_DIRECTIONS
        ),
        key=lambda event: event.executed_at_utc(),
    )
    quantities = tuple(event.quantity for event in selected)
    if len(selected) < 2:
        return PartialFillAnalysis(
            is_potential_partial_fill=False,
            quantities=quantities,
            price_consistency=True,
            time_spread=timedelta(0),
            confidence=0.0,
            suggested_action="separate",
        )

    prices = [event.price for event in selected]
    price_consistency = _coefficient_of_variation(prices) < _PARTIAL_FILL_PRICE_CV
    time_spread = selected[-1].executed_at_utc() - selected[0].executed_at_utc()

    if not (price_consistency and time_spread <= config.partial_fill):
        return PartialFillAnalysis(
            is_potential_partial_fill=False,
            quantities=quantities,
            price_consistency=price_consistency,
            time_spread=time_spread,
            confidence=0.0,
            suggested_action="separate",
        )

    confidence = 0.7
    if (
        target_quantity is not None
        and abs(sum(quantities) - target_quantity) < _MATCH_TOLERANCE
    ):
        confidence = 0.9
    if any(quantity % 10 != 0 for quantity in quantities):
        confidence += 0.1
    confidence = _clamp(confidence)

    return PartialFillAnalysis(
        is_potential_partial_fill=True,
        quantities=quantities,
        price_consistency=True,
        time_spread=time_spread,
        confidence=confidence,
        suggested_action="group" if confidence >= 0.8 else "review",
    )


def analyze_split_orders(
    events: Iterable[TradeEvent],
    symbol: str,
    config: TimeWindowConfig | None = None,
) -> SplitOrderAnalysis:
    """Decide whether same-symbol events are one trade split into several orders."""
    config = config or DEFAULT_CONFIG
    selected = sorted(
        (event for event in events if event.symbol == symbol),
        key=lambda event: event.executed_at_utc(),
    )
    quantities = tuple(event.quantity for event in selected)
    times = tuple(event.executed_at_utc() for event in selected)
    if len(selected) < 2:
        return SplitOrderAnalysis(
            is_potential_split_order=False,
            quantities=quantities,
            execution_times=times,
            price_variation=0.0,
            confidence=0.0,
            suggested_grouping=(),
        )

    prices = [event.price for event in selected]
    average_price = statistics.fmean(prices)
    price_variation = max(prices) - min(prices)
    price_ratio = price_variation / average_price if average_price > 0 else math.inf
    intervals = _intervals(times)

    is_split = (
        all(interval <= config.split_order for interval in intervals)
        and price_ratio < _SPLIT_ORDER_PRICE_RANGE
        and _coefficient_of_variation(quantities) < _SPLIT_ORDER_QUANTITY_CV
    )

    confidence = 0.0
    grouping: tuple[str, ...] = ()
    if is_split:
        confidence = 0.6
        if price_ratio < _SPLIT_ORDER_TIGHT_PRICE_RANGE:
            confidence += 0.2
        timing = _coefficient_of_variation([i.total_seconds() for i in intervals])
        if timing < _SPLIT_ORDER_TIMING_CV:
            confidence += 0.2
        confidence = _clamp(confidence)
        if confidence > 0.6:
            grouping = (f"split-order-{symbol}-{int(times[0].timestamp())}",)

    return SplitOrderAnalysis(
        is_potential_split_order=is_split,
        quantities=quantities,
        execution_times=times,
        price_variation=price_variation,
        confidence=confidence,
        suggested_grouping=grouping,
    )


# Helpers ------------------------------------------------------------------
def _window_confidence(delta: timedelta, config: TimeWindowConfig) -> WindowConfidence:
    scores = {}
    for name, (ceiling, floor) in _CONFIDENCE_BANDS.items():
        window: timedelta = getattr(config, name)
        if delta > window:
            scores[name] = 0.0
        elif window <= timedelta(0):
            scores[name] = ceiling
        else:
            decayed = ceiling - (delta / window) * (ceiling - floor)
            scores[name] = _clamp(max(floor, decayed))
    return WindowConfidence(**scores)


def _score_risk(
    windows: WindowMembership, event_a: TradeEvent, event_b: TradeEvent
) -> tuple[float, list[str]]:
    score = 0.0
    factors: list[str] = []
    if windows.same_second:
        score += _SAME_SECOND_WEIGHT
        factors.append("Transactions within same second")
    if windows.same_minute:
        score += _SAME_MINUTE_WEIGHT
        factors.append("Transactions within same minute")
    if windows.rapid_trading:
        score += _RAPID_TRADING_WEIGHT
        factors.append("Rapid trading pattern detected")
    if event_a.symbol == event_b.symbol:
        score += _SAME_SYMBOL_WEIGHT
        factors.append("Same symbol")
    if abs(event_a.quantity - event_b.quantity) < _MATCH_TOLERANCE:
        score += _SAME_QUANTITY_WEIGHT
        factors.append("Same quantity")
    if abs(event_a.price - event_b.price) < _MATCH_TOLERANCE:
        score += _SAME_PRICE_WEIGHT
        factors.append("Same price")
    return round(score, 4), factors


def _sorted_times(events: Sequence[TradeEvent]) -> list[datetime]:
    return sorted(event.executed_at_utc() for event in events)


def _intervals(times: Sequence[datetime]) -> list[timedelta]:
    return [later - earlier for earlier, later in zip(times, times[1:])]


def _coefficient_of_variation(values: Sequence[float]) -> float:
    """Population standard deviation over the mean; ``inf`` when undefined."""
    if not values:
        return 0.0
    mean = statistics.fmean(values)
    deviation = statistics.pstdev(values)
    if mean == 0:
        return 0.0 if deviation == 0 else math.inf
    return deviation / abs(mean)


def _clamp(value: float) -> float:
    return round(min(max(value, 0.0), 1.0), 4)


def _zone_name(moment: datetime) -> str:
    return moment.tzname() or "UTC"


__all__ = [
    "DEFAULT_CONFIG",
    "DuplicateRisk",
    "PartialFillAnalysis",
    "RISK_TIERS",
    "RapidTradingPattern",
    "SplitOrderAnalysis",
    "TimeWindowAnalysis",
    "TimeWindowConfig",
    "TimezoneInfo",
    "TradeEvent",
    "WindowConfidence",
    "WindowMembership",
    "analyze",
    "analyze_partial_fills",
    "analyze_split_orders",
    "detect_rapid_trading",
    "format_time_difference",
    "risk_tier",
    "validate_analysis",
]
