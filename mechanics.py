"""
Wiggly — Pure Math / Analytics Engine
======================================
All computation that turns logged trades and broker orders into P&L figures,
trade directions and risk:reward statistics. No network or database access —
fully importable and testable without a running backend.

Public API
----------
  calculate_options_trade_direction(option_type, position_type)     → 'long' | 'short'
  calculate_options_direction(option_type, position_type, ...)      → TradeDirectionResult
  calculate_chronological_pnl(entry, exit, qty, t_in, t_out, side)  → PnLCalculationResult
  calculate_options_pnl(buy, sell, qty, option_type, position_type) → PnLCalculationResult
  parse_risk_reward_ratio(ratio)                                    → float
  calculate_risk_reward_stats(trades)                               → RiskRewardStats
  process_orders_into_trades(orders)                                → OrderMatchResult
  validate_trade_data(trade)                                        → ValidationResult
  validate_options_data(symbol, segment, option_type, side)         → ValidationResult
  calculate_brokerage(entry, exit, qty)                             → float

Internal helpers (also importable and testable)
  _to_timestamp(value)        → pd.Timestamp | None
  _parse_float_prefix(text)   → float  (NaN when no leading number)
  _FifoBook                   per-symbol FIFO lot queue
"""

from __future__ import annotations

import logging
import math
import re
from collections import deque, defaultdict
from typing import Any, Iterable, Optional, Union

import pandas as pd

from config import (
    ITM_MONEYNESS, OTM_MONEYNESS,
    BROKERAGE_RATE, PNL_TOLERANCE,
    FIFO_EPSILON, FIFO_ROUND,
    TOP_RATIO_BUCKETS,
)
from ingestion import detect_option_from_symbol, detect_exchange, orders_from_frame
from models import (
    PnLCalculationResult, TradeDirectionResult,
    RiskRewardBucket, RiskRewardStats,
    OrderBookEntry, ProcessedTrade, OrderMatchResult,
    ValidationResult,
)

logger = logging.getLogger(__name__)


# ── Direction ─────────────────────────────────────────────────────────────────
# Buying a call or selling a put profits when the underlying rises (long);
# selling a call or buying a put profits when it falls (short).
_DIRECTION_TABLE = {
    ('CE', 'buy'):  'long',
    ('CE', 'sell'): 'short',
    ('PE', 'buy'):  'short',
    ('PE', 'sell'): 'long',
}

_DIRECTION_DETAIL = {
    ('CE', 'buy'):  ('bullish', 'Buying Call = Bullish (expecting price to rise)',                 'Long Call'),
    ('CE', 'sell'): ('bearish', 'Selling Call = Bearish (expecting price to stay below strike)',   'Short Call'),
    ('PE', 'buy'):  ('bearish', 'Buying Put = Bearish (expecting price to fall)',                  'Long Put'),
    ('PE', 'sell'): ('bullish', 'Selling Put = Bullish (expecting price to stay above strike)',    'Short Put'),
}


def calculate_options_trade_direction(option_type: str, position_type: str) -> str:
    """Map (CE/PE, buy/sell) to the view on the underlying. Unknown types default to long."""
    if option_type not in ('CE', 'PE'):
        return 'long'
    return _DIRECTION_TABLE[(option_type, 'buy' if position_type == 'buy' else 'sell')]


def calculate_options_direction(option_type: str, position_type: str,
                                underlying_price: Optional[float] = None,
                                strike_price: Optional[float] = None,
                                time_to_expiry: Optional[float] = None) -> TradeDirectionResult:
    """
    Direction plus market sentiment, a plain-English explanation and the
    strategy name for a single option leg.

    When both underlying and strike prices are known the strategy is tagged
    with its moneyness: ' (ITM)' above ITM_MONEYNESS, ' (OTM)' below
    OTM_MONEYNESS, ' (ATM)' in between. time_to_expiry is accepted for
    callers that have it but does not change the result.
    """
    side = 'buy' if position_type == 'buy' else 'sell'
    key  = ('CE' if option_type == 'CE' else 'PE', side)
    sentiment, explanation, strategy = _DIRECTION_DETAIL[key]

    if underlying_price and strike_price:
        moneyness = underlying_price / strike_price
        if moneyness > ITM_MONEYNESS:
            strategy += ' (ITM)'
        elif moneyness < OTM_MONEYNESS:
            strategy += ' (OTM)'
        else:
            strategy += ' (ATM)'

    return TradeDirectionResult(
        direction=_DIRECTION_TABLE[key],
        position_type=side,
        market_sentiment=sentiment,
        explanation=explanation,
        strategy=strategy,
    )


# ── P&L ───────────────────────────────────────────────────────────────────────

def _to_timestamp(value: Any) -> Optional[pd.Timestamp]:
    """Coerce datetime / ISO string / Timestamp to a UTC Timestamp. None if unusable."""
    if value is None or value == '':
        return None
    try:
        ts = pd.Timestamp(value)
    except (ValueError, TypeError):
        return None
    if pd.isna(ts):
        return None
    return ts.tz_localize('UTC') if ts.tzinfo is None else ts.tz_convert('UTC')


def _result(pnl: float, entry: float, exit_: float, qty: float) -> PnLCalculationResult:
    return PnLCalculationResult(
        pnl=pnl, entry_price=entry, exit_price=exit_,
        total_quantity=qty, is_profit=pnl > 0,
    )


def calculate_chronological_pnl(entry_price: float, exit_price: float, quantity: float,
                                entry_time: Any = None, exit_time: Any = None,
                                position_type: Optional[str] = None) -> PnLCalculationResult:
    """
    P&L that respects the order in which the two fills actually happened.

    With both timestamps:
      entry_time < exit_time   → (exit - entry) × qty, prices reported as given.
      otherwise                → the labels are assumed swapped: (entry - exit) × qty
                                 and the result reports the earlier fill as entry.
    Without timestamps:
      position_type 'sell'     → short P&L, (entry - exit) × qty.
      'buy' or nothing         → long P&L,  (exit - entry) × qty.

    Examples
    --------
    1. Normal long — entry 100 at 09:20, exit 120 at 10:05, qty 10:
         pnl = +200, entry_price = 100, exit_price = 120

    2. Fields swapped — entry 100 stamped 10:05, exit 120 stamped 09:20:
         pnl = -200, entry_price = 120, exit_price = 100
         (really bought at 120 and sold at 100)
    """
    t_in  = _to_timestamp(entry_time)
    t_out = _to_timestamp(exit_time)

    if t_in is not None and t_out is not None:
        logger.debug('Chronological P&L: entry=%s@%s exit=%s@%s qty=%s side=%s',
                     entry_price, t_in, exit_price, t_out, quantity, position_type)
        if t_in < t_out:
            return _result((exit_price - entry_price) * quantity, entry_price, exit_price, quantity)
        return _result((entry_price - exit_price) * quantity, exit_price, entry_price, quantity)

    if position_type == 'sell':
        return _result((entry_price - exit_price) * quantity, entry_price, exit_price, quantity)
    return _result((exit_price - entry_price) * quantity, entry_price, exit_price, quantity)


def calculate_options_pnl(buy_price: float, sell_price: float, quantity: float,
                          option_type: str, position_type: str) -> PnLCalculationResult:
    """
    Economic P&L of an option round trip is always (sell - buy) × qty.
    position_type only decides which fill opened the position: buyers open at
    buy_price, writers open at sell_price.

    option_type is logged but does not enter the arithmetic.
    """
    logger.debug('Options P&L: buy=%s sell=%s qty=%s %s/%s',
                 buy_price, sell_price, quantity, option_type, position_type)
    pnl = (sell_price - buy_price) * quantity
    if position_type == 'buy':
        return _result(pnl, buy_price, sell_price, quantity)
    return _result(pnl, sell_price, buy_price, quantity)


def calculate_brokerage(entry_price: float, exit_price: float, quantity: float) -> float:
    """Flat turnover-based brokerage estimate."""
    return (entry_price + exit_price) * quantity * BROKERAGE_RATE


# ── Risk:reward ───────────────────────────────────────────────────────────────

_FLOAT_PREFIX = re.compile(r'^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)')


def _parse_float_prefix(text: Any) -> float:
    """Leading-number parse: '1.5x' → 1.5, 'abc' → NaN. Mirrors how ratios are typed in."""
    if text is None:
        return math.nan
    m = _FLOAT_PREFIX.match(str(text))
    return float(m.group(1)) if m else math.nan


def parse_risk_reward_ratio(ratio: Optional[str]) -> float:
    """
    Parse 'risk:reward' or 'risk/reward' into reward ÷ risk.

    '1:2' → 2.0, '2/1' → 0.5. Empty, non-numeric and zero-risk strings give 0.0.
    Never raises.
    """
    if not ratio:
        return 0.0
    parts = re.split(r'[:/]', str(ratio))
    risk   = _parse_float_prefix(parts[0])
    reward = _parse_float_prefix(parts[1]) if len(parts) > 1 else math.nan
    if math.isnan(risk) or math.isnan(reward) or risk == 0:
        return 0.0
    return reward / risk


def _field(trade: Any, *names: str) -> Any:
    """Read the first present field from a mapping or an object."""
    for name in names:
        if isinstance(trade, dict):
            if name in trade:
                return trade[name]
        elif hasattr(trade, name):
            return getattr(trade, name)
    return None


def _is_win(pnl: Any) -> bool:
    try:
        return pnl is not None and float(pnl) > 0
    except (TypeError, ValueError):
        return False


def calculate_risk_reward_stats(trades: Iterable[Any]) -> RiskRewardStats:
    """
    Aggregate win rates by planned risk:reward.

    Only trades that carry a ratio string are counted. Buckets are keyed by
    the literal string, so '1:2' and '2:4' stay separate. Buckets are sorted
    by win rate (descending, ties in first-seen order) and capped at
    TOP_RATIO_BUCKETS. avg_ratio averages only ratios that parsed to > 0.
    """
    rows = []
    for trade in trades:
        ratio = _field(trade, 'risk_to_reward', 'riskToReward')
        if not ratio:
            continue
        rows.append({
            'ratio': str(ratio),
            'won':   _is_win(_field(trade, 'pnl')),
            'value': parse_risk_reward_ratio(ratio),
        })

    if not rows:
        return RiskRewardStats(total_trades=0, avg_ratio=0.0, profitable_ratios=[])

    df = pd.DataFrame(rows)
    valid     = df.loc[df['value'] > 0, 'value']
    avg_ratio = float(valid.mean()) if not valid.empty else 0.0

    grouped = (
        df.groupby('ratio', sort=False)['won']
        .agg(n_trades='size', wins='sum')
        .reset_index()
    )
    grouped['win_rate'] = grouped['wins'] / grouped['n_trades'] * 100
    top = grouped.sort_values('win_rate', ascending=False, kind='stable').head(TOP_RATIO_BUCKETS)

    buckets = [
        RiskRewardBucket(ratio=r.ratio, count=int(r.n_trades), win_rate=float(r.win_rate))
        for r in top.itertuples(index=False)
    ]
    return RiskRewardStats(total_trades=len(df), avg_ratio=avg_ratio, profitable_ratios=buckets)


# ── FIFO order matching ───────────────────────────────────────────────────────

class _FifoBook:
    """
    Open lots for one symbol, oldest first.

    Only one side is ever open at a time: an order in the direction of the
    net position (or from flat) adds a lot; an opposite order closes lots
    FIFO. Quantity beyond what is open is not carried into a new position.

    Examples
    --------
    1. Simple long — buy 50 @ 100, sell 50 @ 110:

       BUY  50  →  lots: [(50, 100.0)]
       SELL 50  →  lots: []          closes (qty=50, avg=100.0) → P&L +500

    2. Two lots, partial FIFO close — buy 50 @ 100, buy 50 @ 120, sell 75 @ 130:

       BUY  50  →  lots: [(50, 100.0)]
       BUY  50  →  lots: [(50, 100.0), (50, 120.0)]
       SELL 75  →  consumes first lot in full and 25 of the second
                   lots: [(25, 120.0)]
                   closes (qty=75, avg=(50×100 + 25×120)/75 = 106.67)
    """

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        self.side: Optional[str] = None      # 'buy' (long lots) or 'sell' (short lots)
        self.lots: deque = deque()           # [qty, price, order]

    @property
    def net_quantity(self) -> float:
        total = sum(lot[0] for lot in self.lots)
        return total if self.side == 'buy' else -total

    def process(self, order: OrderBookEntry) -> Optional[tuple[float, float, OrderBookEntry, float]]:
        """Open or close against the book. Returns (qty, avg_entry, first_lot_order, unfilled) on a close."""
        if order.quantity <= FIFO_EPSILON:
            return None
        if not self.lots or order.type == self.side:
            self.side = order.type
            self.lots.append([order.quantity, order.price, order])
            return None

        remaining  = order.quantity
        closed_qty = 0.0
        total_cost = 0.0
        first      = self.lots[0][2]

        while remaining > FIFO_EPSILON and self.lots:
            lot = self.lots[0]
            use = min(remaining, lot[0])
            total_cost += use * lot[1]
            closed_qty += use
            remaining   = round(remaining - use, FIFO_ROUND)
            leftover    = round(lot[0] - use, FIFO_ROUND)
            if leftover < FIFO_EPSILON:
                self.lots.popleft()
            else:
                lot[0] = leftover

        if not self.lots:
            self.side = None
        return closed_qty, total_cost / closed_qty, first, remaining

    def open_orders(self) -> list[OrderBookEntry]:
        return [lot[2] for lot in self.lots]


def _build_trade(symbol: str, closing: OrderBookEntry, qty: float,
                 avg_entry: float, first: OrderBookEntry) -> ProcessedTrade:
    closing_long = closing.type == 'sell'
    if closing_long:
        pnl = (closing.price - avg_entry) * qty
    else:
        pnl = (avg_entry - closing.price) * qty

    info = detect_option_from_symbol(symbol)
    if info.is_option:
        d = calculate_options_direction(info.option_type, first.type)
        direction, sentiment, strategy = d.direction, d.market_sentiment, d.strategy
    else:
        direction = 'long' if closing_long else 'short'
        sentiment = 'bullish' if closing_long else 'bearish'
        strategy  = ''

    notional = avg_entry * qty
    return ProcessedTrade(
        symbol=symbol,
        entry_price=avg_entry,
        exit_price=closing.price,
        quantity=qty,
        type=direction,
        entry_time=first.time,
        exit_time=closing.time,
        pnl=pnl,
        position_type=first.type,
        market_segment='options' if info.is_option else 'equity-delivery',
        exchange=detect_exchange(symbol),
        brokerage=calculate_brokerage(avg_entry, closing.price, qty),
        roi=pnl / notional * 100 if notional else 0.0,
        option_type=info.option_type or None,
        underlying_symbol=info.underlying_symbol,
        strike_price=info.strike_price,
        market_sentiment=sentiment,
        strategy=strategy,
    )


def process_orders_into_trades(orders: Union[pd.DataFrame, Iterable[OrderBookEntry]]) -> OrderMatchResult:
    """
    Pair broker orders into closed trades, per symbol, FIFO.

    Orders are grouped by upper-cased symbol and replayed in time order
    (stable, so same-time orders keep their input order). Each close yields
    one ProcessedTrade priced at the quantity-weighted average of the lots it
    consumed. Lots still open at the end come back as incomplete_orders.
    """
    if isinstance(orders, pd.DataFrame):
        orders = orders_from_frame(orders)

    by_symbol: dict[str, list[OrderBookEntry]] = defaultdict(list)
    for order in orders:
        by_symbol[order.symbol.upper()].append(order)

    result = OrderMatchResult()
    for symbol, sym_orders in by_symbol.items():
        sym_orders.sort(key=lambda o: _to_timestamp(o.time))
        book = _FifoBook(symbol)
        for order in sym_orders:
            closed = book.process(order)
            if closed is None:
                continue
            qty, avg_entry, first, unfilled = closed
            result.complete_trades.append(_build_trade(symbol, order, qty, avg_entry, first))
            if unfilled > FIFO_EPSILON:
                msg = (f'{symbol}: {order.type} of {order.quantity:g} at {order.time} '
                       f'exceeded the open position by {unfilled:g}; excess ignored')
                logger.warning(msg)
                result.warnings.append(msg)
        result.incomplete_orders.extend(book.open_orders())

    logger.info('Matched %d trades, %d incomplete orders',
                len(result.complete_trades), len(result.incomplete_orders))
    return result


# ── Validation ────────────────────────────────────────────────────────────────

def validate_trade_data(trade: ProcessedTrade) -> ValidationResult:
    """Sanity checks on a matched trade. Errors make it invalid; warnings do not."""
    errors: list[str]   = []
    warnings: list[str] = []

    if trade.entry_price <= 0 or trade.exit_price <= 0:
        errors.append('Invalid prices detected')
    if trade.quantity <= 0:
        errors.append('Invalid quantity detected')
    if trade.market_segment == 'options' and not trade.option_type:
        warnings.append('Options trade missing option type')
    if trade.entry_time == trade.exit_time:
        warnings.append('Entry and exit times are identical')

    # Keyed on the opening side, not the market direction: a bought put is
    # 'short' the underlying but still earns exit - entry.
    if trade.position_type == 'buy':
        expected = (trade.exit_price - trade.entry_price) * trade.quantity
    else:
        expected = (trade.entry_price - trade.exit_price) * trade.quantity
    if abs(trade.pnl - expected) > abs(expected) * PNL_TOLERANCE:
        warnings.append('P&L calculation may be incorrect')

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def validate_options_data(symbol: str, market_segment: str,
                          option_type: Optional[str], position_type: Optional[str]) -> ValidationResult:
    """Cross-check a trade form's segment against its symbol and option fields."""
    errors: list[str] = []

    if market_segment == 'options':
        if symbol and not detect_option_from_symbol(symbol).is_option:
            errors.append('Symbol should contain CE/PE for options trading')
        if not option_type or not position_type:
            errors.append('Option type and position type are required for options trading')
    elif option_type or position_type:
        errors.append('Option fields should only be used with options market segment')

    return ValidationResult(is_valid=not errors, errors=errors, warnings=[])
