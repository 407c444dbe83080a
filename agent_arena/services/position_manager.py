"""Validate a trade decision and carry it out on the exchange.

Entries are only submitted with a stop-loss and take-profit on the protective
side of the current price. Protective orders are placed after the market
entry on a best-effort basis; a failed leg is reported, never raised.
"""

import logging
from dataclasses import dataclass, field

from agent_arena.schemas.decision import DecisionAction, TradeDecision
from agent_arena.services.exchange_client import (
    AsterdexClient,
    CloseResult,
    ExchangeError,
    OrderRequest,
)

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    success: bool
    skipped: bool = False
    message: str = ""
    action: DecisionAction | None = None
    symbol: str | None = None
    leverage: int | None = None
    order_id: str | None = None
    entry_price: float | None = None
    quantity: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    protected: bool = False
    failed_protection: list[str] = field(default_factory=list)
    close: CloseResult | None = None

    @property
    def opened(self) -> bool:
        return self.success and self.order_id is not None and self.action in (
            DecisionAction.LONG,
            DecisionAction.SHORT,
        )


class PositionManager:
    def __init__(self, client: AsterdexClient, max_leverage: int = 20, min_confidence: float = 40.0):
        self.client = client
        self.max_leverage = max_leverage
        self.min_confidence = min_confidence

    def _skip(self, decision: TradeDecision, message: str) -> ExecutionResult:
        logger.warning(f"Skipping {decision.action.value} {decision.symbol}: {message}")
        return ExecutionResult(
            success=False, skipped=True, message=message, action=decision.action, symbol=decision.symbol
        )

    async def execute(self, decision: TradeDecision) -> ExecutionResult:
        """Run one decision. Always returns a result; exchange errors become failed results."""
        action = decision.action
        symbol = decision.symbol
        leverage = decision.leverage
        if leverage > self.max_leverage:
            logger.warning(f"Clamping leverage {leverage}x to {self.max_leverage}x for {symbol}")
            leverage = self.max_leverage

        logger.info(
            f"Decision: {action.value} {symbol} {leverage}x ${decision.usd_amount} "
            f"conf={decision.confidence}% SL={decision.stop_loss} TP={decision.take_profit}"
        )

        if decision.confidence < self.min_confidence:
            return self._skip(
                decision, f"Confidence too low ({decision.confidence}%), threshold {self.min_confidence}%"
            )

        if action == DecisionAction.HOLD:
            return ExecutionResult(
                success=True, message="Holding, no action taken", action=action, symbol=symbol or None
            )

        try:
            if action == DecisionAction.CLOSE:
                return await self._close(decision)

            if decision.stop_loss is None or decision.take_profit is None:
                return self._skip(decision, "Stop loss and take profit are mandatory")
            return await self._open(decision, leverage)
        except (ExchangeError, ValueError) as e:
            logger.error(f"Trade execution failed for {symbol}: {e}")
            return ExecutionResult(
                success=False, message=f"Trade failed: {e}", action=action, symbol=symbol, leverage=leverage
            )

    async def _close(self, decision: TradeDecision) -> ExecutionResult:
        result = await self.client.close_position(decision.symbol)
        return ExecutionResult(
            success=True,
            message=result.message if not result.closed else f"Position closed for {decision.symbol}",
            action=decision.action,
            symbol=decision.symbol,
            order_id=result.order_id,
            quantity=result.quantity or None,
            close=result,
        )

    async def _open(self, decision: TradeDecision, leverage: int) -> ExecutionResult:
        symbol = decision.symbol
        is_long = decision.action == DecisionAction.LONG

        price = await self.client.get_last_price(symbol)
        stop_loss = await self.client.round_price(symbol, decision.stop_loss)
        take_profit = await self.client.round_price(symbol, decision.take_profit)

        if is_long and stop_loss >= price:
            return self._skip(decision, f"Invalid stop loss {stop_loss} for LONG at {price} (must be below)")
        if not is_long and stop_loss <= price:
            return self._skip(decision, f"Invalid stop loss {stop_loss} for SHORT at {price} (must be above)")

        await self.client.set_leverage(symbol, leverage)
        quantity = await self.client.calculate_quantity(symbol, decision.usd_amount, price)
        if quantity <= 0:
            return ExecutionResult(
                success=False,
                message=f"Quantity rounds to zero for ${decision.usd_amount} at {price}",
                action=decision.action,
                symbol=symbol,
                leverage=leverage,
            )

        order = await self.client.place_order(
            OrderRequest(symbol=symbol, side="BUY" if is_long else "SELL", type="MARKET", quantity=quantity)
        )
        logger.info(
            f"Order placed: {order.order_id} entry=${price:.2f} qty={quantity} "
            f"notional=${decision.usd_amount * leverage:.2f} ({leverage}x)"
        )

        failed = []
        try:
            await self.client.set_stop_loss(symbol, stop_loss, quantity)
            logger.info(f"Stop loss set at ${stop_loss} ({abs(stop_loss - price) / price * 100:.2f}% from entry)")
        except ExchangeError as e:
            logger.error(f"Failed to set stop loss for {symbol}: {e}")
            failed.append("stop_loss")
        try:
            await self.client.set_take_profit(symbol, take_profit, quantity)
            logger.info(f"Take profit set at ${take_profit} ({abs(take_profit - price) / price * 100:.2f}% from entry)")
        except ExchangeError as e:
            logger.error(f"Failed to set take profit for {symbol}: {e}")
            failed.append("take_profit")

        risk = abs(price - stop_loss) * quantity
        reward = abs(take_profit - price) * quantity
        if risk > 0:
            logger.info(f"Risk/Reward 1:{reward / risk:.2f} (risk ${risk:.2f}, reward ${reward:.2f})")

        return ExecutionResult(
            success=True,
            message=f"{decision.action.value} position opened for {symbol}",
            action=decision.action,
            symbol=symbol,
            leverage=leverage,
            order_id=order.order_id,
            entry_price=price,
            quantity=quantity,
            stop_loss=stop_loss,
            take_profit=take_profit,
            protected=not failed,
            failed_protection=failed,
        )
