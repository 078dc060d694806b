"""
Wiggly — UI Components
=======================
Pure presentation helpers: labels, money formatting and colour classes for
the dashboard and trade form. No business logic or math lives here — these
functions only produce strings for rendering.

Dependencies: pandas (for isna), config (for rating thresholds).
"""

import html as _html

import pandas as pd

from config import RR_GOOD_RATIO, RR_FAIR_RATIO


# ── XSS safety ────────────────────────────────────────────────────────────────

def xe(s):
    """Escape a string for safe HTML interpolation. Prevents XSS from user-entered symbols."""
    return _html.escape(str(s), quote=True)


# ── Direction labels ──────────────────────────────────────────────────────────

def options_direction_explanation(option_type, position_type, trade_direction):
    """
    One-line explanation shown next to the auto-detected direction.

    Examples:
        ('CE', 'buy',  'long')   → 'Buying Call = Bullish on underlying'
        ('PE', 'buy',  'short')  → 'Buying Put = Bearish on underlying'
    """
    action    = 'Buying' if position_type == 'buy' else 'Selling'
    option    = 'Call' if option_type == 'CE' else 'Put'
    sentiment = 'Bullish' if trade_direction == 'long' else 'Bearish'
    return f'{action} {option} = {sentiment} on underlying'

def trade_label(trade):
    """Short label for a matched trade row (e.g. 'BANKNIFTY 45000 CE · Long Call')."""
    if trade.market_segment != 'options':
        return xe(trade.symbol)
    parts = [trade.underlying_symbol or trade.symbol]
    if trade.strike_price:
        parts.append(trade.strike_price)
    if trade.option_type:
        parts.append(trade.option_type)
    label = ' '.join(parts)
    return xe(f'{label} · {trade.strategy}' if trade.strategy else label)


# ── Money formatting ──────────────────────────────────────────────────────────

def fmt_inr(val, decimals=2):
    """
    Format a rupee value with sign, commas, and configurable decimal places.
    Negative values render as '-₹1,234.56' (not '₹-1,234.56').

    Examples:
        fmt_inr(1234.56)   → '₹1,234.56'
        fmt_inr(-99.5)     → '-₹99.50'
        fmt_inr(1500, 0)   → '₹1,500'
    """
    fmt = f'{{:,.{decimals}f}}'
    if val >= 0:
        return f'₹{fmt.format(val)}'
    return f'-₹{fmt.format(abs(val))}'

def fmt_ratio(value):
    """Parsed reward/risk as '1:2.50'; zero (unparseable) renders as an em dash."""
    if not value or pd.isna(value):
        return '—'
    return f'1:{value:.2f}'


# ── Colour classes ────────────────────────────────────────────────────────────

def rr_ratio_class(ratio):
    """CSS class for a parsed reward/risk value: >= 2 good, >= 1 fair, below that poor."""
    if not isinstance(ratio, (int, float)) or pd.isna(ratio) or ratio <= 0:
        return ''
    if ratio >= RR_GOOD_RATIO: return 'text-success'
    if ratio >= RR_FAIR_RATIO: return 'text-warning'
    return 'text-destructive'

def color_win_rate(v):
    """Green / amber / red for win-rate cells."""
    if not isinstance(v, (int, float)) or pd.isna(v): return ''
    if v >= 70: return 'color: #00cc96; font-weight: bold'
    if v >= 50: return 'color: #ffa500'
    return 'color: #ef553b'


# ── Inline HTML components ────────────────────────────────────────────────────

def ratio_bucket_row(bucket):
    """One line of the risk:reward card: ratio, trade count, coloured win rate."""
    return (
        f'<div style="display:flex;justify-content:space-between;font-size:0.8rem;">'
        f'<span style="font-family:monospace;">{xe(bucket.ratio)}</span>'
        f'<span style="color:#6b7280;">{bucket.count} trades</span>'
        f'<span style="{color_win_rate(bucket.win_rate)}">{bucket.win_rate:.1f}%</span>'
        f'</div>'
    )
