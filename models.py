"""
Wiggly — Data Models
=====================
Single source of truth for all dataclasses and named tuples used across
the application. No I/O — fully importable from any module including tests.

Classes
-------
  OptionDetectionResult  Output of ingestion.detect_option_from_symbol()
  ContractInfo           Index/stock classification with lot size
  PnLCalculationResult   Output of the P&L functions in mechanics.py
  TradeDirectionResult   Direction + sentiment + strategy for an option leg
  RiskRewardBucket       One literal ratio string with its count and win rate
  RiskRewardStats        Aggregate of calculate_risk_reward_stats()
  OrderBookEntry         One broker order (input to FIFO matching)
  ProcessedTrade         One matched round trip produced by FIFO matching
  OrderMatchResult       Output of process_orders_into_trades()
  ValidationResult       errors / warnings for trade and option validation
  SessionUser            The signed-in user as seen by the caches
  UserRoleDetailed       One unexpired role assignment
  RoleSet                Compact (roles, max hierarchy level) pair
  LessonProgress         One user_progress row
  CourseProgress         Derived per-course completion state
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, NamedTuple, Literal, Optional

OptionType    = Literal['CE', 'PE', '']
PositionType  = Literal['buy', 'sell']
Direction     = Literal['long', 'short']
LoadState     = Literal['idle', 'loading', 'ready']


# ── Options / P&L ─────────────────────────────────────────────────────────────

class OptionDetectionResult(NamedTuple):
    """
    Result of parsing a trade symbol.

    Fields
    ------
    is_option          True when a CE/PE contract was recognised.
    option_type        'CE', 'PE' or '' when not an option.
    underlying_symbol  Base instrument, NIFTY/BANKNIFTY collapsed. May be 'UNKNOWN'.
    strike_price       Strike as written in the symbol (string, not parsed).
    expiry             Expiry segment such as '24JAN', when the symbol carries one.
    """
    is_option:         bool
    option_type:       OptionType
    underlying_symbol: Optional[str] = None
    strike_price:      Optional[str] = None
    expiry:            Optional[str] = None


class ContractInfo(NamedTuple):
    kind:     Literal['index', 'stock']
    lot_size: int


class PnLCalculationResult(NamedTuple):
    """entry_price / exit_price are always reported in chronological order."""
    pnl:            float
    entry_price:    float
    exit_price:     float
    total_quantity: float
    is_profit:      bool


class TradeDirectionResult(NamedTuple):
    direction:        Direction
    position_type:    PositionType
    market_sentiment: Literal['bullish', 'bearish']
    explanation:      str
    strategy:         str


class RiskRewardBucket(NamedTuple):
    ratio:    str
    count:    int
    win_rate: float


class RiskRewardStats(NamedTuple):
    total_trades:      int
    avg_ratio:         float
    profitable_ratios: list[RiskRewardBucket]


# ── Order-book matching ───────────────────────────────────────────────────────

@dataclass
class OrderBookEntry:
    """One executed broker order. quantity is always positive; type gives the side."""
    symbol:   str
    type:     PositionType
    quantity: float
    price:    float
    time:     datetime


@dataclass
class ProcessedTrade:
    """
    A closed round trip built by FIFO-matching opposite orders on one symbol.

    Fields
    ------
    entry_price        Quantity-weighted average price of the lots closed.
    exit_price         Price of the closing order.
    type               'long'/'short' — option-aware when the symbol is an option.
    position_type      Side of the first lot that was closed ('buy' opens longs).
    market_segment     'options' or 'equity-delivery'.
    roi                pnl / (entry_price * quantity) * 100.
    """
    symbol:            str
    entry_price:       float
    exit_price:        float
    quantity:          float
    type:              Direction
    entry_time:        datetime
    exit_time:         datetime
    pnl:               float
    position_type:     PositionType
    market_segment:    str
    exchange:          str
    brokerage:         float
    roi:               float
    confidence:        float = 0.95
    option_type:       Optional[OptionType] = None
    underlying_symbol: Optional[str] = None
    strike_price:      Optional[str] = None
    market_sentiment:  Optional[str] = None
    strategy:          Optional[str] = None


@dataclass
class OrderMatchResult:
    complete_trades:   list[ProcessedTrade] = field(default_factory=list)
    incomplete_orders: list[OrderBookEntry] = field(default_factory=list)
    warnings:          list[str]            = field(default_factory=list)


class ValidationResult(NamedTuple):
    is_valid: bool
    errors:   list[str]
    warnings: list[str]


# ── Auth / roles ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SessionUser:
    id:       str
    email:    Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


class UserRoleDetailed(NamedTuple):
    name:            str
    hierarchy_level: int
    expires_at:      Optional[datetime]


@dataclass(frozen=True)
class RoleSet:
    roles:               tuple[str, ...] = ()
    max_hierarchy_level: int             = 0


# ── Course progress ───────────────────────────────────────────────────────────

@dataclass
class LessonProgress:
    """
    One row per (user, lesson). completed_at is set iff
    completion_percentage >= LESSON_COMPLETION_THRESHOLD.
    """
    lesson_id:             str
    completion_percentage: float          = 0
    watch_time:            float          = 0
    completed_at:          Optional[datetime] = None


@dataclass
class CourseProgress:
    total_lessons:     int   = 0
    completed_lessons: int   = 0
    overall_progress:  float = 0.0
    lesson_progress:   dict[str, LessonProgress] = field(default_factory=dict)
