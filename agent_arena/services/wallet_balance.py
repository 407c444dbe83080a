"""Per-agent balance snapshots: on-chain ledger wallet plus exchange USDT."""

import logging
from datetime import datetime, timezone

import httpx

from agent_arena.models.agent import AgentState, BalancesSnapshot
from agent_arena.services.exchange_client import AsterdexClient, ExchangeError
from agent_arena.utils.constants import QUOTE_ASSET

logger = logging.getLogger(__name__)

WEI_PER_UNIT = 10**18


class WalletBalanceError(Exception):
    pass


class BalanceService:
    def __init__(
        self,
        rpc_url: str,
        asset_usd_price: float = 600.0,
        default_ledger_balance: float = 1000.0,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.rpc_url = rpc_url
        self.asset_usd_price = asset_usd_price
        self.default_ledger_balance = default_ledger_balance
        self.timeout = timeout
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def get_ledger_balance(self, wallet_address: str) -> float:
        """USD value of the wallet's native balance; the configured default when no wallet is set."""
        if not wallet_address:
            return self.default_ledger_balance
        payload = {"jsonrpc": "2.0", "id": 1, "method": "eth_getBalance", "params": [wallet_address, "latest"]}
        try:
            response = await self._http.post(self.rpc_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise WalletBalanceError(f"RPC balance lookup failed for {wallet_address}: {e}") from e
        if not isinstance(data, dict):
            raise WalletBalanceError(f"Unexpected RPC response for {wallet_address}: {data!r}")
        if "error" in data:
            raise WalletBalanceError(f"RPC error for {wallet_address}: {data['error']}")
        try:
            wei = int(data["result"], 16)
        except (KeyError, TypeError, ValueError) as e:
            raise WalletBalanceError(f"Malformed RPC result for {wallet_address}: {data.get('result')!r}") from e
        return wei / WEI_PER_UNIT * self.asset_usd_price

    async def get_exchange_balance(self, client: AsterdexClient) -> float:
        balance = await client.get_balance(QUOTE_ASSET)
        return balance.available_balance or balance.balance

    async def refresh(self, agent: AgentState) -> BalancesSnapshot:
        """Refresh ``agent.balances``; a failing side keeps its previous value."""
        current = agent.balances
        ledger = current.ledger_balance
        exchange = current.exchange_balance

        try:
            ledger = await self.get_ledger_balance(agent.wallet_address)
        except WalletBalanceError as e:
            logger.warning(f"{agent.tag} {e}")

        if agent.client is not None:
            try:
                exchange = await self.get_exchange_balance(agent.client)
            except ExchangeError as e:
                logger.warning(f"{agent.tag} Exchange balance refresh failed: {e}")

        agent.balances = BalancesSnapshot(
            ledger_balance=ledger,
            exchange_balance=exchange,
            refreshed_at=datetime.now(timezone.utc),
        )
        return agent.balances

    async def close(self):
        if self._owns_http:
            await self._http.aclose()
