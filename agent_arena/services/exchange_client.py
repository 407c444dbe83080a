"""AsterDEX futures REST client.

Wraps the Binance-compatible ``/fapi`` API used by every agent: signed account
calls, order placement, position management and public market data. Each
client instance keeps its own clock offset against the exchange server time.
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from agent_arena.utils.constants import (
    DEFAULT_STEP_SIZE,
    DEFAULT_TICK_SIZE,
    LIMIT_ORDER_TYPES,
    MAX_EXCHANGE_LEVERAGE,
    MIN_LEVERAGE,
    ORDER_TYPES,
    STOP_ORDER_TYPES,
    SUPPORTED_LEVERAGES,
    TIMESTAMP_ERROR_CODE,
)

logger = logging.getLogger(__name__)

# "No need to change margin type" is returned when the symbol already uses it
_MARGIN_TYPE_UNCHANGED_CODE = -4046


class ExchangeError(Exception):
    """Base class for exchange client failures."""


class ExchangeAPIError(ExchangeError):
    """The exchange answered with an HTTP error status."""

    def __init__(self, status_code: int, code: int | None, message: str):
        super().__init__(f"API error {status_code} (code={code}): {message}")
        self.status_code = status_code
        self.code = code
        self.message = message


class ExchangeNetworkError(ExchangeError):
    """The request never produced an HTTP response."""


class ExchangeTimeoutError(ExchangeNetworkError):
    """The request exceeded the client's per-call timeout."""


@dataclass
class ClockOffset:
    offset_ms: int
    last_sync_ms: int | None = None


@dataclass
class Balance:
    asset: str
    balance: float = 0.0
    available_balance: float = 0.0
    cross_wallet_balance: float = 0.0
    cross_un_pnl: float = 0.0

    @classmethod
    def from_api(cls, data: dict) -> "Balance":
        return cls(
            asset=data.get("asset", ""),
            balance=float(data.get("balance", 0) or 0),
            available_balance=float(data.get("availableBalance", 0) or 0),
            cross_wallet_balance=float(data.get("crossWalletBalance", 0) or 0),
            cross_un_pnl=float(data.get("crossUnPnl", 0) or 0),
        )


@dataclass
class Position:
    symbol: str
    position_amt: float
    entry_price: float = 0.0
    mark_price: float = 0.0
    unrealized_profit: float = 0.0
    leverage: int = 1
    margin_type: str = ""

    @property
    def is_open(self) -> bool:
        return abs(self.position_amt) > 0

    @property
    def side(self) -> str:
        return "LONG" if self.position_amt > 0 else "SHORT"

    @classmethod
    def from_api(cls, data: dict) -> "Position":
        return cls(
            symbol=data.get("symbol", ""),
            position_amt=float(data.get("positionAmt", 0) or 0),
            entry_price=float(data.get("entryPrice", 0) or 0),
            mark_price=float(data.get("markPrice", 0) or 0),
            unrealized_profit=float(data.get("unRealizedProfit", 0) or 0),
            leverage=int(float(data.get("leverage", 1) or 1)),
            margin_type=data.get("marginType", ""),
        )


@dataclass
class SymbolFilters:
    symbol: str
    tick_size: Decimal
    step_size: Decimal
    min_qty: Decimal = Decimal("0")


@dataclass
class OrderRequest:
    symbol: str
    side: str  # "BUY" or "SELL"
    type: str  # MARKET, LIMIT, STOP_MARKET, STOP_LIMIT
    quantity: float
    price: float | None = None
    stop_price: float | None = None
    time_in_force: str | None = None  # GTC, IOC, FOK
    reduce_only: bool = False


@dataclass
class OrderResult:
    order_id: str | None
    symbol: str
    side: str | None = None
    type: str | None = None
    status: str | None = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict) -> "OrderResult":
        order_id = data.get("orderId")
        return cls(
            order_id=str(order_id) if order_id is not None else None,
            symbol=data.get("symbol", ""),
            side=data.get("side"),
            type=data.get("type"),
            status=data.get("status"),
            raw=data,
        )


@dataclass
class CloseResult:
    """Outcome of ``close_position``; ``closed`` is False when nothing was held."""

    closed: bool
    symbol: str
    message: str
    order_id: str | None = None
    quantity: float = 0.0
    side: str | None = None


def round_to_tick(value: float, tick_size: Decimal) -> Decimal:
    """Round a price to the nearest multiple of the tick size."""
    steps = (Decimal(str(value)) / tick_size).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return steps * tick_size


def floor_to_step(value: float, step_size: Decimal) -> Decimal:
    """Floor a quantity to a multiple of the step size."""
    steps = (Decimal(str(value)) / step_size).to_integral_value(rounding=ROUND_DOWN)
    return steps * step_size


def _fmt(value: Decimal) -> str:
    return format(value.normalize(), "f")


def _parse_error(response: httpx.Response) -> tuple[int | None, str]:
    text = response.text
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and "code" in body:
        try:
            return int(body["code"]), str(body.get("msg", text))
        except (TypeError, ValueError):
            pass
    if str(TIMESTAMP_ERROR_CODE) in text:
        return TIMESTAMP_ERROR_CODE, text
    return None, text


class AsterdexClient:
    """Authenticated client for one agent's futures account."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = "https://fapi.asterdex.com",
        recv_window_ms: int = 60000,
        timeout: float = 10.0,
        sync_cooldown_seconds: float = 60.0,
        fallback_offset_ms: int = -2500,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window_ms = recv_window_ms
        self.timeout = timeout
        self.sync_cooldown_ms = int(sync_cooldown_seconds * 1000)
        self.fallback_offset_ms = fallback_offset_ms
        self.clock_offset = ClockOffset(offset_ms=fallback_offset_ms)
        self._clock = clock
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._filters: dict[str, SymbolFilters] = {}

    @classmethod
    def from_settings(cls, api_key: str, api_secret: str, **kwargs) -> "AsterdexClient":
        from agent_arena.config import settings

        return cls(
            api_key=api_key,
            api_secret=api_secret,
            base_url=settings.exchange_base_url,
            recv_window_ms=settings.recv_window_ms,
            timeout=settings.request_timeout_seconds,
            sync_cooldown_seconds=settings.clock_sync_cooldown_seconds,
            fallback_offset_ms=settings.clock_fallback_offset_ms,
            **kwargs,
        )

    async def __aenter__(self) -> "AsterdexClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    # ========== CLOCK & SIGNING ==========

    def _local_ms(self) -> int:
        return int(self._clock() * 1000)

    async def sync_clock(self, force: bool = False) -> int:
        """Synchronise with the exchange server time and return the offset.

        Skipped while the previous successful sync is inside the cooldown
        window. A failed sync falls back to a conservative negative offset
        instead of raising.
        """
        now = self._local_ms()
        last = self.clock_offset.last_sync_ms
        if not force and last is not None and now - last < self.sync_cooldown_ms:
            logger.debug(f"Time sync skipped (last sync {(now - last) // 1000}s ago)")
            return self.clock_offset.offset_ms

        try:
            response = await self._http.get(f"{self.base_url}/fapi/v1/time", timeout=self.timeout)
            response.raise_for_status()
            server_time = int(response.json()["serverTime"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            self.clock_offset.offset_ms = self.fallback_offset_ms
            logger.warning(f"Time sync failed: {e}; using fallback offset {self.fallback_offset_ms}ms")
            return self.clock_offset.offset_ms

        self.clock_offset.offset_ms = server_time - self._local_ms()
        self.clock_offset.last_sync_ms = now
        logger.info(f"Time synchronized. Offset: {self.clock_offset.offset_ms}ms")
        return self.clock_offset.offset_ms

    def timestamp(self) -> int:
        return self._local_ms() + self.clock_offset.offset_ms

    def sign(self, query: str) -> str:
        return hmac.new(self.api_secret.encode(), query.encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def _prepare_params(params: dict[str, Any]) -> dict[str, Any]:
        prepared = {}
        for key, value in params.items():
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            elif isinstance(value, Decimal):
                value = _fmt(value)
            prepared[key] = value
        return prepared

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        signed: bool = True,
        _retried: bool = False,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        A rejected timestamp triggers one forced clock resync and a single
        retry of the same call; any further failure is raised.
        """
        method = method.upper()
        query_params = self._prepare_params(params or {})
        if signed:
            query_params["timestamp"] = self.timestamp()
            query_params.setdefault("recvWindow", self.recv_window_ms)

        query = urlencode(query_params)
        if signed:
            query = f"{query}&signature={self.sign(query)}"

        url = f"{self.base_url}{path}"
        headers = {"X-MBX-APIKEY": self.api_key}
        content = None
        if method in ("GET", "DELETE"):
            if query:
                url = f"{url}?{query}"
        else:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            content = query

        try:
            response = await self._http.request(
                method, url, headers=headers, content=content, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            logger.error(f"{method} {path}: timed out after {self.timeout}s")
            raise ExchangeTimeoutError(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.error(f"{method} {path}: {e}")
            raise ExchangeNetworkError(f"{method} {path}: {e}") from e

        if response.status_code >= 400:
            code, message = _parse_error(response)
            if code == TIMESTAMP_ERROR_CODE and signed and not _retried:
                logger.warning(f"{method} {path}: timestamp rejected, resyncing clock and retrying once")
                await self.sync_clock(force=True)
                return await self.request(method, path, params, signed=signed, _retried=True)
            logger.error(f"{method} {path}: HTTP {response.status_code} {message}")
            raise ExchangeAPIError(response.status_code, code, message)

        try:
            return response.json()
        except ValueError as e:
            raise ExchangeAPIError(response.status_code, None, f"Invalid JSON: {response.text[:200]}") from e

    # ========== ACCOUNT METHODS ==========

    async def get_account_info(self) -> dict:
        return await self.request("GET", "/fapi/v1/account")

    async def get_futures_balances(self) -> list[Balance]:
        data = await self.request("GET", "/fapi/v2/balance")
        return [Balance.from_api(item) for item in data]

    async def get_balance(self, asset: str | None = None) -> Balance | dict[str, Balance]:
        """Return one asset's balance, or every balance keyed by asset."""
        balances = await self.get_futures_balances()
        if asset:
            for balance in balances:
                if balance.asset == asset:
                    return balance
            return Balance(asset=asset)
        return {balance.asset: balance for balance in balances}

    # ========== MARGIN & LEVERAGE METHODS ==========

    async def set_leverage(self, symbol: str, leverage: int) -> dict:
        if leverage < MIN_LEVERAGE or leverage > MAX_EXCHANGE_LEVERAGE:
            raise ValueError(f"Leverage must be between {MIN_LEVERAGE} and {MAX_EXCHANGE_LEVERAGE}")
        if leverage not in SUPPORTED_LEVERAGES:
            logger.warning(f"Leverage {leverage}x may not be supported for {symbol}")
        logger.info(f"Setting leverage for {symbol} to {leverage}x")
        return await self.request("POST", "/fapi/v1/leverage", {"symbol": symbol, "leverage": leverage})

    async def set_margin_type(self, symbol: str, margin_type: str) -> dict:
        margin_type = margin_type.upper()
        if margin_type not in ("ISOLATED", "CROSSED"):
            raise ValueError("margin_type must be ISOLATED or CROSSED")
        logger.info(f"Setting margin type for {symbol} to {margin_type}")
        try:
            return await self.request(
                "POST", "/fapi/v1/marginType", {"symbol": symbol, "marginType": margin_type}
            )
        except ExchangeAPIError as e:
            if e.code == _MARGIN_TYPE_UNCHANGED_CODE:
                return {"code": e.code, "msg": e.message}
            raise

    # ========== TRADING METHODS ==========

    async def place_order(self, order: OrderRequest) -> OrderResult:
        """Submit an order with price fields on the tick grid and quantity on the step grid."""
        if order.type not in ORDER_TYPES:
            raise ValueError(f"Unsupported order type: {order.type}")
        if order.type in LIMIT_ORDER_TYPES and order.price is None:
            raise ValueError(f"{order.type} order requires a price")
        if order.type in STOP_ORDER_TYPES and order.stop_price is None:
            raise ValueError(f"{order.type} order requires a stop price")

        filters = await self.get_symbol_filters(order.symbol)
        quantity = floor_to_step(order.quantity, filters.step_size)
        if quantity <= 0:
            raise ValueError(
                f"Quantity {order.quantity} for {order.symbol} is below step size {filters.step_size}"
            )
        if quantity < filters.min_qty:
            raise ValueError(
                f"Quantity {_fmt(quantity)} for {order.symbol} is below minimum quantity {_fmt(filters.min_qty)}"
            )

        params: dict[str, Any] = {
            "symbol": order.symbol,
            "side": order.side,
            "type": order.type,
            "quantity": _fmt(quantity),
        }
        if order.type in LIMIT_ORDER_TYPES:
            params["timeInForce"] = order.time_in_force or "GTC"
            params["price"] = _fmt(round_to_tick(order.price, filters.tick_size))
        if order.type in STOP_ORDER_TYPES:
            params["stopPrice"] = _fmt(round_to_tick(order.stop_price, filters.tick_size))
        if order.reduce_only:
            params["reduceOnly"] = True

        logger.info(f"Placing {order.type} {order.side} order for {params['quantity']} {order.symbol}")
        data = await self.request("POST", "/fapi/v1/order", params)
        return OrderResult.from_api(data)

    async def market_order(self, symbol: str, side: str, quantity: float) -> OrderResult:
        return await self.place_order(OrderRequest(symbol=symbol, side=side, type="MARKET", quantity=quantity))

    async def cancel_order(self, symbol: str, order_id: str) -> dict:
        logger.info(f"Canceling order {order_id} for {symbol}")
        return await self.request("DELETE", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id})

    async def cancel_all_orders(self, symbol: str | None = None) -> dict:
        logger.info(f"Canceling all orders{f' for {symbol}' if symbol else ''}")
        return await self.request("DELETE", "/fapi/v1/allOpenOrders", {"symbol": symbol})

    async def get_open_orders(self, symbol: str | None = None) -> list[dict]:
        return await self.request("GET", "/fapi/v1/openOrders", {"symbol": symbol})

    # ========== POSITION METHODS ==========

    async def get_positions(self, symbol: str | None = None) -> list[Position]:
        data = await self.request("GET", "/fapi/v1/positionRisk", {"symbol": symbol})
        if isinstance(data, dict):
            data = [data]
        return [Position.from_api(item) for item in data]

    async def _get_open_position(self, symbol: str) -> Position | None:
        for position in await self.get_positions(symbol):
            if position.symbol == symbol and position.is_open:
                return position
        return None

    async def close_position(self, symbol: str) -> CloseResult:
        """Flatten the position in ``symbol`` with a reduce-only market order."""
        position = await self._get_open_position(symbol)
        if position is None:
            logger.warning(f"No open position for {symbol}")
            return CloseResult(closed=False, symbol=symbol, message="No position to close")

        side = "SELL" if position.position_amt > 0 else "BUY"
        quantity = abs(position.position_amt)
        logger.info(f"Closing position for {symbol}: {quantity}")
        order = await self.place_order(
            OrderRequest(symbol=symbol, side=side, type="MARKET", quantity=quantity, reduce_only=True)
        )
        return CloseResult(
            closed=True,
            symbol=symbol,
            message=f"Closed {quantity} {symbol}",
            order_id=order.order_id,
            quantity=quantity,
            side=side,
        )

    async def _place_protective_order(
        self, symbol: str, order_type: str, price: float, quantity: float | None
    ) -> OrderResult:
        position = await self._get_open_position(symbol)
        if position is None:
            raise ExchangeError(f"No open position for {symbol}")

        side = "SELL" if position.position_amt > 0 else "BUY"
        qty = quantity or abs(position.position_amt)
        order = OrderRequest(symbol=symbol, side=side, type=order_type, quantity=qty, reduce_only=True)
        if order_type == "STOP_MARKET":
            order.stop_price = price
        else:
            order.price = price
        return await self.place_order(order)

    async def set_stop_loss(self, symbol: str, stop_price: float, quantity: float | None = None) -> OrderResult:
        return await self._place_protective_order(symbol, "STOP_MARKET", stop_price, quantity)

    async def set_take_profit(
        self, symbol: str, take_profit_price: float, quantity: float | None = None
    ) -> OrderResult:
        return await self._place_protective_order(symbol, "LIMIT", take_profit_price, quantity)

    # ========== MARKET DATA METHODS ==========

    async def get_last_price(self, symbol: str) -> float:
        data = await self.request("GET", "/fapi/v1/ticker/price", {"symbol": symbol}, signed=False)
        return float(data["price"])

    async def get_ticker(self, symbol: str) -> dict:
        return await self.request("GET", "/fapi/v1/ticker/24hr", {"symbol": symbol}, signed=False)

    async def get_orderbook(self, symbol: str, limit: int = 20) -> dict:
        return await self.request("GET", "/fapi/v1/depth", {"symbol": symbol, "limit": limit}, signed=False)

    async def get_exchange_info(self) -> dict:
        return await self.request("GET", "/fapi/v1/exchangeInfo", signed=False)

    async def ping(self) -> dict:
        return await self.request("GET", "/fapi/v1/ping", signed=False)

    async def test_connectivity(self) -> bool:
        try:
            await self.ping()
            return True
        except ExchangeError as e:
            logger.error(f"API connectivity test failed: {e}")
            return False

    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        """Fetch and cache tick/step sizes for a symbol."""
        if symbol in self._filters:
            return self._filters[symbol]

        info = await self.get_exchange_info()
        for item in info.get("symbols", []):
            if item.get("symbol") != symbol:
                continue
            filters = {f.get("filterType"): f for f in item.get("filters", [])}
            price_filter = filters.get("PRICE_FILTER", {})
            lot_size = filters.get("LOT_SIZE", {})
            tick_size = Decimal(price_filter.get("tickSize") or DEFAULT_TICK_SIZE)
            step_size = Decimal(lot_size.get("stepSize") or DEFAULT_STEP_SIZE)
            meta = SymbolFilters(
                symbol=symbol,
                tick_size=tick_size if tick_size > 0 else Decimal(DEFAULT_TICK_SIZE),
                step_size=step_size if step_size > 0 else Decimal(DEFAULT_STEP_SIZE),
                min_qty=Decimal(lot_size.get("minQty") or "0"),
            )
            self._filters[symbol] = meta
            logger.debug(f"Symbol {symbol} filters: tick={meta.tick_size} step={meta.step_size}")
            return meta
        raise ExchangeError(f"Symbol {symbol} not found in exchange info")

    async def round_price(self, symbol: str, price: float) -> float:
        filters = await self.get_symbol_filters(symbol)
        return float(round_to_tick(price, filters.tick_size))

    async def calculate_quantity(self, symbol: str, usd_amount: float, price: float) -> float:
        """Quantity for a USD notional, floored to the symbol's step size."""
        if price <= 0:
            raise ValueError(f"Price must be positive, got {price}")
        filters = await self.get_symbol_filters(symbol)
        raw = Decimal(str(usd_amount)) / Decimal(str(price))
        quantity = floor_to_step(raw, filters.step_size)
        logger.info(f"Quantity calc: raw={raw:.8f}, normalized={_fmt(quantity)}, stepSize={filters.step_size}")
        return float(quantity)

    async def close(self):
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()
