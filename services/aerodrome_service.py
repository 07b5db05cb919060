"""
Aerodrome router fallback for tokens 0x cannot route.

Quotes with getAmountsOut over a few candidate routes (volatile, stable, via
WETH), then executes swapExactTokensForTokens with a minimum output derived
from the quote and the slippage tolerance.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

from config import Config
from utils.base_tokens import (
    AERODROME_FACTORY, AERODROME_ROUTER, AERODROME_ROUTER_ABI, WETH
)
from utils.offramp_errors import NoRouteError, SwapExecutionError, TransactionRevertedError

logger = logging.getLogger(__name__)

Route = Tuple[str, str, bool, str]


@dataclass
class AerodromeQuote:
    sell_token: Optional[str]  # None = native ETH, routed from WETH
    buy_token: str
    sell_amount: int
    expected_output: int
    routes: List[Route]

    @property
    def is_native(self) -> bool:
        return self.sell_token is None


def min_output(expected_output: int, slippage_percent: Decimal) -> int:
    """Floor of expected * (1 - slippage), in basis points like the router expects"""
    bps = int(slippage_percent * 100)
    return expected_output * (10000 - bps) // 10000


class AerodromeService:
    """Direct router integration on Base"""

    def __init__(self, chain, router_address: str = AERODROME_ROUTER, factory_address: str = AERODROME_FACTORY):
        self.chain = chain
        self.router = router_address
        self.factory = factory_address

    def candidate_routes(self, sell_token: str, buy_token: str) -> List[List[Route]]:
        direct_volatile = [(sell_token, buy_token, False, self.factory)]
        direct_stable = [(sell_token, buy_token, True, self.factory)]
        candidates = [direct_volatile, direct_stable]
        if sell_token.lower() != WETH.address.lower():
            candidates.append([
                (sell_token, WETH.address, False, self.factory),
                (WETH.address, buy_token, False, self.factory),
            ])
        return candidates

    async def get_quote(self, sell_token: Optional[str], buy_token: str, sell_amount: int) -> AerodromeQuote:
        """Best output across candidate routes; NoRouteError when none has liquidity"""
        best: Optional[AerodromeQuote] = None
        errors = []
        route_from = sell_token or WETH.address
        for routes in self.candidate_routes(route_from, buy_token):
            checksummed = [
                (self.chain.checksum(a), self.chain.checksum(b), stable, self.chain.checksum(factory))
                for a, b, stable, factory in routes
            ]
            try:
                amounts = await self.chain.call_function(
                    self.router, AERODROME_ROUTER_ABI, "getAmountsOut", sell_amount, checksummed
                )
            except Exception as e:
                # Reverts here mean "no pool" for this route shape
                errors.append(f"{len(routes)}-hop stable={routes[0][2]}: {type(e).__name__}")
                continue
            output = int(amounts[-1]) if amounts else 0
            if output > 0 and (best is None or output > best.expected_output):
                best = AerodromeQuote(sell_token, buy_token, sell_amount, output, checksummed)

        if best is None:
            logger.warning(f"⚠️ AERODROME_NO_ROUTE: {route_from} -> {buy_token}: {errors}")
            raise NoRouteError(f"Aerodrome has no route for {route_from}: {'; '.join(errors) or 'zero output'}")

        logger.info(
            f"✅ AERODROME_QUOTE: {sell_amount} {route_from} -> {best.expected_output} "
            f"via {len(best.routes)} hop(s)"
        )
        return best

    async def swap(
        self,
        private_key: str,
        quote: AerodromeQuote,
        recipient: str,
        slippage_percent: Decimal = None,
    ) -> str:
        """Approve if needed, swap, wait for success; returns the swap tx hash"""
        slippage = slippage_percent if slippage_percent is not None else Config.SWAP_SLIPPAGE_PERCENT
        owner = self.chain.address_of(private_key)
        amount_out_min = min_output(quote.expected_output, slippage)

        deadline = int(time.time()) + Config.SWAP_DEADLINE_SECONDS
        if quote.is_native:
            data = self.chain.encode_function(
                self.router, AERODROME_ROUTER_ABI, "swapExactETHForTokens",
                amount_out_min, quote.routes, self.chain.checksum(recipient), deadline,
            )
            tx_hash = await self.chain.send_transaction(private_key, self.router, data=data, value=quote.sell_amount)
        else:
            allowance = await self.chain.get_allowance(quote.sell_token, owner, self.router)
            if allowance < quote.sell_amount:
                logger.info(f"🔓 AERODROME_APPROVE: {quote.sell_token} for router from {owner}")
                approve_hash = await self.chain.approve_token(
                    private_key, quote.sell_token, self.router, quote.sell_amount
                )
                try:
                    await self.chain.wait_for_success(approve_hash, "aerodrome approve")
                except TransactionRevertedError as e:
                    raise SwapExecutionError(f"Router approval reverted: {approve_hash}") from e

            data = self.chain.encode_function(
                self.router, AERODROME_ROUTER_ABI, "swapExactTokensForTokens",
                quote.sell_amount, amount_out_min, quote.routes, self.chain.checksum(recipient), deadline,
            )
            tx_hash = await self.chain.send_transaction(private_key, self.router, data=data)
        try:
            await self.chain.wait_for_success(tx_hash, "aerodrome swap")
        except TransactionRevertedError as e:
            raise SwapExecutionError(f"Aerodrome swap reverted: {tx_hash}") from e

        logger.info(f"✅ AERODROME_SWAP: {tx_hash} minOut={amount_out_min}")
        return tx_hash
