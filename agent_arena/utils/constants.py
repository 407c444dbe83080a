"""Shared constants and defaults for the futures venue."""

# Leverage values the venue accepts without a warning
SUPPORTED_LEVERAGES = [1, 2, 3, 5, 10, 15, 20, 25, 50, 75, 100, 125]
MIN_LEVERAGE = 1
MAX_EXCHANGE_LEVERAGE = 125

QUOTE_ASSET = "USDT"

ORDER_TYPES = ("MARKET", "LIMIT", "STOP_MARKET", "STOP_LIMIT")
LIMIT_ORDER_TYPES = ("LIMIT", "STOP_LIMIT")
STOP_ORDER_TYPES = ("STOP_MARKET", "STOP_LIMIT")

# Open order types swept by the per-cycle stale-order cleanup
STALE_STOP_ORDER_TYPES = ("STOP_MARKET", "STOP")

# Exchange error code for "timestamp outside of recvWindow"
TIMESTAMP_ERROR_CODE = -1021

DEFAULT_TICK_SIZE = "0.01"
DEFAULT_STEP_SIZE = "0.001"
