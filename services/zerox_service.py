"""
0x Swap API (v2, Permit2) client for Base.

Quotes token -> USDC swaps for a custodial taker and returns ready-to-sign
transaction data. A missing route, an empty buy amount or an API error are all
reported as NoRouteError so the router can fall back to Aerodrome.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.base_tokens import BASE_CHAIN_ID
from utils.offramp_errors import NoRouteError

logger = logging.getLogger(__name__)

PERMIT2_PATH = "/swap/permit2"
# 0x v2 placeholder for the chain native asset
NATIVE_TOKEN = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"


@dataclass
class ZeroXQuote:
    sell_token: str
    buy_token: str
    sell_amount: int
    buy_amount: int
    min_buy_amount: int
    to: str
    data: str
    value: int
    gas: Optional[int]
    allowance_spender: Optional[str]
    permit2_eip712: Optional[Dict[str, Any]]
    raw: Dict[str, Any]


class ZeroXService:
    """Service for 0x permit2 quotes"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        chain_id: int = BASE_CHAIN_ID,
        timeout_seconds: int = 30,
    ):
        self.api_key = api_key if api_key is not None else Config.ZEROX_API_KEY
        self.base_url = (base_url or Config.ZEROX_BASE_URL).rstrip("/")
        self.chain_id = chain_id
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        headers = {"0x-version": "v2", "Accept": "application/json"}
        if self.api_key:
            headers["0x-api-key"] = self.api_key
        return headers

    def _params(self, sell_token: Optional[str], buy_token: str, sell_amount: int, taker: str,
                slippage_percent: Decimal) -> Dict[str, str]:
        return {
            "chainId": str(self.chain_id),
            "sellToken": sell_token or NATIVE_TOKEN,
            "buyToken": buy_token,
            "sellAmount": str(sell_amount),
            "taker": taker,
            # 1% -> 100 bps
            "slippageBps": str(int(slippage_percent * 100)),
        }

    async def _make_request(self, endpoint: str, params: Dict[str, str]) -> Dict[str, Any]:
        url = f"{self.base_url}{PERMIT2_PATH}/{endpoint.lstrip('/')}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, params=params, headers=self._headers()) as response:
                    try:
                        body = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        body = {"message": await response.text()}

                    if response.status == 200:
                        return body or {}

                    reason = self._error_reason(body)
                    logger.warning(f"⚠️ ZEROX_API_ERROR: {endpoint} HTTP {response.status}: {reason}")
                    raise NoRouteError(f"0x {endpoint} HTTP {response.status}: {reason}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ ZEROX_NETWORK_ERROR: {endpoint}: {type(e).__name__}: {e}")
            raise NoRouteError(f"0x {endpoint} unreachable: {type(e).__name__}") from e

    @staticmethod
    def _error_reason(body: Any) -> str:
        if not isinstance(body, dict):
            return str(body)
        validation = body.get("validationErrors") or (body.get("data") or {}).get("details") or []
        if validation and isinstance(validation, list) and isinstance(validation[0], dict):
            return validation[0].get("reason") or str(validation[0])
        return body.get("reason") or body.get("message") or body.get("name") or str(body)

    def _parse_quote(self, body: Dict[str, Any], sell_token: Optional[str], buy_token: str,
                     sell_amount: int) -> ZeroXQuote:
        if body.get("liquidityAvailable") is False:
            raise NoRouteError("0x reports no liquidity for this pair")

        # v2 nests the executable transaction; older responses were flat
        tx = body.get("transaction") or body
        buy_amount = int(body.get("buyAmount") or 0)
        if buy_amount <= 0 or not tx.get("to") or not tx.get("data"):
            raise NoRouteError("0x quote has no executable route")

        allowance_issue = (body.get("issues") or {}).get("allowance") or {}
        permit2 = body.get("permit2") or {}
        gas = tx.get("gas")
        return ZeroXQuote(
            sell_token=sell_token or NATIVE_TOKEN,
            buy_token=buy_token,
            sell_amount=sell_amount,
            buy_amount=buy_amount,
            min_buy_amount=int(body.get("minBuyAmount") or buy_amount),
            to=tx["to"],
            data=tx["data"],
            value=int(tx.get("value") or 0),
            gas=int(gas) if gas else None,
            allowance_spender=allowance_issue.get("spender") or body.get("allowanceTarget"),
            permit2_eip712=permit2.get("eip712"),
            raw=body,
        )

    async def get_quote(
        self,
        sell_token: Optional[str],
        buy_token: str,
        sell_amount: int,
        taker: str,
        slippage_percent: Decimal = None,
    ) -> ZeroXQuote:
        """Firm quote with transaction data; raises NoRouteError when unusable"""
        slippage = slippage_percent if slippage_percent is not None else Config.SWAP_SLIPPAGE_PERCENT
        params = self._params(sell_token, buy_token, sell_amount, taker, slippage)
        logger.info(
            f"🔎 ZEROX_QUOTE: sell={params['sellToken']} amount={sell_amount} buy={buy_token} taker={taker}"
        )
        body = await self._make_request("quote", params)
        quote = self._parse_quote(body, sell_token, buy_token, sell_amount)
        logger.info(f"✅ ZEROX_QUOTE_OK: buyAmount={quote.buy_amount} minBuy={quote.min_buy_amount}")
        return quote
