"""
Wiggly — Data Ingestion
========================
Pure Python parsing of broker symbols, order timestamps and order-book
exports. No network or database access — fully importable and testable.

Public API
----------
  detect_option_from_symbol(symbol)     → OptionDetectionResult
  standardize_underlying_symbol(symbol) → str
  get_contract_info(underlying)         → ContractInfo
  detect_exchange(symbol)               → 'NFO' | 'NSE'
  parse_advanced_time(text, now)        → datetime
  parse_orderbook_csv(file_bytes)       → DataFrame
  orders_from_frame(df)                 → list[OrderBookEntry]

Internal helpers (also importable for use in analysis functions)
  clean_val(val)                        → float
  normalize_underlying(symbol)          → str   (NIFTY / BANKNIFTY collapse)
  strip_exchange_prefix(symbol)         → str
"""

from __future__ import annotations

import io as _io
import logging
import re
from datetime import datetime
from typing import Any, Callable, Optional

import pandas as pd

from config import (
    EXCHANGE_PREFIXES,
    LONG_CONTRACT_ID_LEN, STRIKE_TAIL_DIGITS,
    UNDERLYING_ALIASES, INDEX_LOT_SIZES,
    REQUIRED_ORDER_COLUMNS,
    OCR_TIME_CORRECTIONS, MARKET_OPEN_HOUR, MARKET_CLOSE_HOUR,
)
from models import OptionDetectionResult, ContractInfo, OrderBookEntry

logger = logging.getLogger(__name__)


# ── Order-book parse exceptions ───────────────────────────────────────────────

class OrderBookParseError(Exception):
    """Base exception for all order-book import failures.
    Catch this in the UI layer to display a clean user-facing message.
    All subclasses carry a message safe to show directly to the user."""


class OrderBookEncodingError(OrderBookParseError):
    """File bytes could not be decoded as UTF-8 — usually an Excel re-save."""


class OrderBookStructureError(OrderBookParseError):
    """File is not a CSV, has no data rows, or is missing required columns."""


class OrderBookValueError(OrderBookParseError):
    """A Type, Quantity or Price cell holds a value that cannot be interpreted."""


# ── Symbol helpers ────────────────────────────────────────────────────────────

def strip_exchange_prefix(symbol: str) -> str:
    """Remove the first matching exchange prefix (NSE:, BSE:, MCX:, NFO:)."""
    for prefix in EXCHANGE_PREFIXES:
        if symbol.startswith(prefix):
            return symbol[len(prefix):]
    return symbol


def normalize_underlying(symbol: str) -> str:
    """Any NIFTY variant collapses to NIFTY, or BANKNIFTY if it mentions BANK."""
    if 'NIFTY' in symbol:
        return 'BANKNIFTY' if 'BANK' in symbol else 'NIFTY'
    return symbol


def standardize_underlying_symbol(symbol: str) -> str:
    """Exact-match alias lookup (NIFTY50 → NIFTY, BANK-NIFTY → BANKNIFTY, ...)."""
    upper = symbol.upper()
    return UNDERLYING_ALIASES.get(upper, upper)


def get_contract_info(underlying: str) -> ContractInfo:
    """Index underlyings carry an exchange lot size; everything else is a stock."""
    lot = INDEX_LOT_SIZES.get(underlying)
    if lot:
        return ContractInfo('index', lot)
    return ContractInfo('stock', 1)


def detect_exchange(symbol: str) -> str:
    """Index derivatives trade on NFO, everything else is assumed NSE cash."""
    return 'NFO' if 'NIFTY' in symbol or 'BANK' in symbol else 'NSE'


# ── Options contract detection ────────────────────────────────────────────────
# Ordered (pattern, extractor) pairs. First match wins, there is no scoring,
# so more specific patterns must come first. Each extractor returns
# (underlying, contract_segment, expiry).

_Extractor = Callable[[re.Match], tuple[str, str, Optional[str]]]


def _contract_only(m: re.Match) -> tuple[str, str, Optional[str]]:
    return m.group(1), m.group(2), None


def _with_expiry(m: re.Match) -> tuple[str, str, Optional[str]]:
    # The expiry segment sits in group 2 and doubles as the contract segment,
    # so these formats report the expiry in both fields.
    return m.group(1), m.group(2), m.group(2)


OPTION_PATTERNS: list[tuple[re.Pattern, _Extractor]] = [
    # NIFTY25807246650PE: long broker contract id
    (re.compile(r'^([A-Z]+)(\d{8,})(CE|PE)$'),                    _contract_only),
    # NIFTY24000CE: plain strike
    (re.compile(r'^([A-Z]+)(\d{4,7})(CE|PE)$'),                   _contract_only),
    # NIFTY24JAN2500CE: expiry then strike
    (re.compile(r'^([A-Z]+)(\d{2}[A-Z]{3})(\d+)(CE|PE)$'),        _with_expiry),
    # NIFTY 24000 CE: space separated
    (re.compile(r'^([A-Z]+)\s+(\d+)\s+(CE|PE)$'),                 _contract_only),
    # NIFTY24JAN25...: full date expiry then strike
    (re.compile(r'^([A-Z]+)(\d{2}[A-Z]{3}\d{2})(\d+)(CE|PE)$'),   _with_expiry),
]

_TRAILING_OPT  = re.compile(r'(CE|PE)$')
_TRAILING_DIGS = re.compile(r'\d+$')
_TRAILING_SEPS = re.compile(r'[-_\s]+$')


def _strike_from_contract(segment: str) -> str:
    """Long contract ids encode the strike in their trailing digits."""
    if len(segment) >= LONG_CONTRACT_ID_LEN:
        return segment[-STRIKE_TAIL_DIGITS:]
    return segment


def detect_option_from_symbol(symbol: Optional[str]) -> OptionDetectionResult:
    """
    Detect whether a trade symbol is an options contract and extract its parts.

    Handles exchange-prefixed symbols and long broker contract ids:

        NSE:NIFTY25807246550PE  →  NIFTY, strike 46550, PE
        BANKNIFTY45000CE        →  BANKNIFTY, strike 45000, CE
        NIFTY 24000 CE          →  NIFTY, strike 24000, CE
        NIFTY24JAN2500CE        →  NIFTY, expiry 24JAN, CE

    When no pattern matches but 'CE' or 'PE' appears anywhere, a best-effort
    underlying is recovered by stripping the option suffix, trailing digits
    and separators. Because that fallback is a plain substring test, equity
    symbols that happen to contain the letters (e.g. RELIANCE) are reported
    as options too.

    Never raises — malformed input is simply not an option.
    """
    if not symbol:
        return OptionDetectionResult(False, '')

    cleaned = strip_exchange_prefix(str(symbol).upper().strip())

    for idx, (pattern, extract) in enumerate(OPTION_PATTERNS, start=1):
        m = pattern.match(cleaned)
        if not m:
            continue
        underlying, segment, expiry = extract(m)
        option_type = m.group(m.lastindex)
        result = OptionDetectionResult(
            is_option=True,
            option_type=option_type,
            underlying_symbol=normalize_underlying(underlying),
            strike_price=_strike_from_contract(segment),
            expiry=expiry,
        )
        logger.debug('Symbol %r matched pattern %d: %s', symbol, idx, result)
        return result

    if 'CE' in cleaned or 'PE' in cleaned:
        option_type = 'CE' if 'CE' in cleaned else 'PE'
        underlying  = _TRAILING_OPT.sub('', cleaned)
        underlying  = _TRAILING_DIGS.sub('', underlying)
        underlying  = _TRAILING_SEPS.sub('', underlying).strip()
        underlying  = normalize_underlying(underlying)
        logger.debug('Symbol %r detected via CE/PE fallback → %s', symbol, underlying)
        return OptionDetectionResult(
            is_option=True,
            option_type=option_type,
            underlying_symbol=underlying or 'UNKNOWN',
        )

    return OptionDetectionResult(False, '')


# ── Timestamp parsing ─────────────────────────────────────────────────────────

_TIME_PATTERNS = [
    re.compile(r'(\d{1,2}):(\d{2}):(\d{2})'),   # HH:MM:SS
    re.compile(r'(\d{1,2}):(\d{2})'),           # HH:MM
    re.compile(r'(\d{1,2})(\d{2})(\d{2})'),     # HHMMSS
]


def parse_advanced_time(text: Optional[str], now: Optional[datetime] = None) -> datetime:
    """
    Parse an intraday order time, correcting common OCR misreads first
    (O→0, S→5, B→8 ...). The time is placed on `now`'s date.

    Only times inside market hours are accepted; anything else — and any
    unparseable string — falls back to `now` (default: the current time).
    """
    now = now or datetime.now()
    if not text:
        return now

    corrected = str(text).strip()
    for wrong, right in OCR_TIME_CORRECTIONS.items():
        corrected = corrected.replace(wrong, right)

    for pattern in _TIME_PATTERNS:
        m = pattern.search(corrected)
        if not m:
            continue
        hours   = int(m.group(1))
        minutes = int(m.group(2))
        seconds = int(m.group(3)) if m.lastindex >= 3 else 0
        if MARKET_OPEN_HOUR <= hours <= MARKET_CLOSE_HOUR and 0 <= minutes < 60:
            return now.replace(hour=hours, minute=minutes, second=seconds, microsecond=0)

    logger.debug('Could not parse order time %r — using fallback', text)
    return now


# ── Row-level helpers ─────────────────────────────────────────────────────────

def clean_val(val: Any) -> float:
    """Parse a broker currency string like '₹1,234.56' or '$12.50' to float."""
    if pd.isna(val) or val == '--':
        return 0.0
    return float(str(val).replace('₹', '').replace('$', '').replace(',', '').strip())


_SIDE_MAP = {'BUY': 'buy', 'B': 'buy', 'SELL': 'sell', 'S': 'sell'}


def _normalise_side(val: Any) -> str:
    side = _SIDE_MAP.get(str(val).strip().upper())
    if side is None:
        raise OrderBookValueError(
            f"Unrecognised order type '{val}'. Expected BUY or SELL."
        )
    return side


def _parse_order_time(val: Any, now: datetime) -> datetime:
    """Full timestamps go through pandas; bare or OCR-damaged times do not."""
    if pd.isna(val):
        return now
    try:
        return pd.to_datetime(str(val)).to_pydatetime()
    except (ValueError, TypeError, OverflowError):
        return parse_advanced_time(str(val), now)


# ── Public entry points ───────────────────────────────────────────────────────

def parse_orderbook_csv(file_bytes: bytes, now: Optional[datetime] = None) -> pd.DataFrame:
    """
    Read and clean a broker order-book export.

    Steps
    -----
    1. Decode and parse the raw bytes into a DataFrame.
    2. Check the required columns (Symbol, Type, Quantity, Price, Time).
    3. Normalise Type to 'buy' / 'sell'.
    4. Parse Quantity and Price (currency symbols and thousands separators allowed).
    5. Parse Time — full timestamps or intraday times with OCR correction.
    6. Sort by Time ascending (stable, so same-time orders keep file order).

    Raises
    ------
    OrderBookEncodingError   — file is not valid UTF-8.
    OrderBookStructureError  — not a CSV, no data rows, or missing columns.
    OrderBookValueError      — a Type/Quantity/Price cell cannot be interpreted.
    """
    now = now or datetime.now()

    try:
        file_bytes.decode('utf-8')
    except UnicodeDecodeError:
        raise OrderBookEncodingError(
            "File is not valid UTF-8. This usually means the export was opened "
            "in Excel and re-saved. Re-download it from your broker."
        )

    try:
        df = pd.read_csv(_io.BytesIO(file_bytes))
    except Exception as exc:
        raise OrderBookStructureError(
            f"Could not parse the file as a CSV: {exc}."
        ) from exc

    missing = REQUIRED_ORDER_COLUMNS - set(df.columns)
    if missing:
        raise OrderBookStructureError(
            f"Order book is missing required columns: {', '.join(sorted(missing))}."
        )
    if df.empty:
        raise OrderBookStructureError(
            "The order book has column headers but no data rows."
        )

    df['Type'] = df['Type'].apply(_normalise_side)

    for col in ['Quantity', 'Price']:
        try:
            df[col] = df[col].apply(clean_val)
        except (ValueError, TypeError) as exc:
            bad = df[col].dropna().iloc[0] if not df[col].dropna().empty else '(empty)'
            raise OrderBookValueError(
                f"Column '{col}' contains an unexpected value (sample: '{bad}')."
            ) from exc

    df['Symbol'] = df['Symbol'].astype(str).str.strip().str.upper()
    df['Time']   = df['Time'].apply(lambda v: _parse_order_time(v, now))
    df = df.sort_values('Time', kind='stable').reset_index(drop=True)
    logger.info('Parsed order book: %d orders across %d symbols',
                len(df), df['Symbol'].nunique())
    return df


def orders_from_frame(df: pd.DataFrame) -> list[OrderBookEntry]:
    """Convert a parsed order-book DataFrame into OrderBookEntry objects."""
    return [
        OrderBookEntry(
            symbol=row.Symbol,
            type=row.Type,
            quantity=float(row.Quantity),
            price=float(row.Price),
            time=row.Time,
        )
        for row in df.itertuples(index=False)
    ]
