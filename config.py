"""
Wiggly — Configuration & Constants
===================================
All tuneable parameters, broker symbol conventions and cache timings live
here. Change a value once and it applies everywhere.

Deployment settings (database URL, log level, cache TTLs) can be overridden
from the environment or a local .env file.
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()


# ── Exchange / symbol conventions ─────────────────────────────────────────────
# Prefixes some brokers put in front of the trading symbol (e.g. NSE:NIFTY...).
EXCHANGE_PREFIXES = ('NSE:', 'BSE:', 'MCX:', 'NFO:')

OPTION_TYPES   = ('CE', 'PE')
POSITION_TYPES = ('buy', 'sell')

# Contract ids at least this long carry the strike in their trailing digits.
LONG_CONTRACT_ID_LEN = 8
STRIKE_TAIL_DIGITS   = 5

# Exact-match aliases for index underlyings.
UNDERLYING_ALIASES = {
    'NIFTY50':    'NIFTY',
    'NIFTY_50':   'NIFTY',
    'NIFTY-50':   'NIFTY',
    'BANKNIFTY':  'BANKNIFTY',
    'BANK_NIFTY': 'BANKNIFTY',
    'BANK-NIFTY': 'BANKNIFTY',
    'FINNIFTY':   'FINNIFTY',
    'MIDCPNIFTY': 'MIDCPNIFTY',
    'SENSEX':     'SENSEX',
    'BANKEX':     'BANKEX',
}

# Exchange lot sizes for index options. Anything not listed is a stock (lot 1).
INDEX_LOT_SIZES = {
    'NIFTY':      50,
    'BANKNIFTY':  15,
    'FINNIFTY':   40,
    'MIDCPNIFTY': 75,
    'SENSEX':     10,
    'BANKEX':     15,
}

# ── Moneyness bands ───────────────────────────────────────────────────────────
# underlying / strike above ITM_MONEYNESS is In The Money, below OTM_MONEYNESS
# is Out of The Money, anything between is At The Money.
ITM_MONEYNESS = 1.02
OTM_MONEYNESS = 0.98

# ── Order-book import ─────────────────────────────────────────────────────────
REQUIRED_ORDER_COLUMNS = {'Symbol', 'Type', 'Quantity', 'Price', 'Time'}

# Characters commonly misread by OCR in screenshot-imported timestamps.
OCR_TIME_CORRECTIONS = {
    'O': '0', 'I': '1', 'l': '1', 'S': '5', 'G': '6', 'B': '8', 'Z': '2',
}

# NSE cash/derivatives session hours (inclusive). Parsed times outside this
# band are treated as OCR noise.
MARKET_OPEN_HOUR  = 9
MARKET_CLOSE_HOUR = 15

# Flat brokerage estimate applied to turnover (0.01 %).
BROKERAGE_RATE = 0.0001

# A matched trade whose P&L differs from entry/exit arithmetic by more than
# this fraction is flagged for review.
PNL_TOLERANCE = 0.10

# ── FIFO arithmetic precision ─────────────────────────────────────────────────
FIFO_EPSILON = 1e-9
FIFO_ROUND   = 9

# ── Risk:reward statistics ────────────────────────────────────────────────────
TOP_RATIO_BUCKETS = 5

# Thresholds for colouring a parsed reward/risk value.
RR_GOOD_RATIO = 2.0
RR_FAIR_RATIO = 1.0

# ── Course progress ───────────────────────────────────────────────────────────
# A lesson counts as completed once it reaches this percentage.
LESSON_COMPLETION_THRESHOLD = 90
COURSE_COMPLETE_PERCENT     = 100

# ── Global event names ────────────────────────────────────────────────────────
CLEAR_USER_DATA_EVENT    = 'clearUserDataCache'
FOCUS_EVENT              = 'focus'
TRADE_DATA_UPDATED_EVENT = 'tradeDataUpdated'

# ── Deployment settings (environment / .env) ──────────────────────────────────
DATABASE_URL = os.getenv('WIGGLY_DATABASE_URL', 'sqlite:///wiggly.db')
DB_ECHO      = os.getenv('WIGGLY_DB_ECHO', 'false').lower() == 'true'
LOG_LEVEL    = os.getenv('WIGGLY_LOG_LEVEL', 'INFO').upper()

# Seconds. Role lookups are cached for 5 minutes, the session user for 60s
# (it is refreshed on auth events anyway).
ROLE_CACHE_TTL    = float(os.getenv('WIGGLY_ROLE_CACHE_TTL', '300'))
SESSION_CACHE_TTL = float(os.getenv('WIGGLY_SESSION_CACHE_TTL', '60'))

# Delay between a progress write and the follow-up read, so the read sees
# the write on eventually-consistent backends.
RELOAD_SETTLE_DELAY = float(os.getenv('WIGGLY_RELOAD_SETTLE_DELAY', '0.1'))

LOG_FORMAT = '%(asctime)s %(levelname)-7s %(name)s: %(message)s'


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Install the root handler once. Safe to call from every entry point."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
