"""
Deposit wallet scanner.

Reads native and known-token balances of a custodial address. Used for
deposit detection, multi-asset swapping and the "wallet emptied" check.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from config import Config
from services.gas_sponsor import sweep_keep_wei
from utils.base_tokens import ETH, KNOWN_TOKENS, USDC, TokenInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenBalance:
    token: TokenInfo
    raw: int

    @property
    def amount(self) -> Decimal:
        return Decimal(self.raw) / (Decimal(10) ** self.token.decimals)

    @property
    def is_native(self) -> bool:
        return self.token.is_native


def to_raw(amount: Decimal, decimals: int) -> int:
    return int(amount * (Decimal(10) ** decimals))


class WalletScanner:
    """Balance reads for deposit addresses"""

    def __init__(self, chain, tokens: Optional[List[TokenInfo]] = None):
        self.chain = chain
        self.tokens = tokens or KNOWN_TOKENS

    async def scan(self, address: str, include_native: bool = True) -> List[TokenBalance]:
        """All positive balances at an address; unreadable tokens are logged and skipped"""
        tokens = list(self.tokens)
        if include_native:
            tokens.append(ETH)

        results = await asyncio.gather(
            *(self.chain.get_token_balance(t.address, address) for t in tokens),
            return_exceptions=True,
        )

        balances = []
        for token, result in zip(tokens, results):
            if isinstance(result, Exception):
                logger.warning(f"⚠️ WALLET_SCAN: {token.symbol} balance read failed for {address}: {result}")
                continue
            if result > 0:
                balances.append(TokenBalance(token, int(result)))
        return balances

    async def usdc_balance(self, address: str) -> int:
        return await self.chain.get_token_balance(USDC.address, address)

    async def detect_deposit(self, address: str) -> Optional[TokenBalance]:
        """
        The balance that counts as "the deposit" for a pending row.

        Non-USDC tokens win over USDC so the recorded token is the one the
        user sent. Native ETH only counts above the swap threshold, since gas
        top-ups leave small amounts behind.
        """
        balances = await self.scan(address)
        tokens = [b for b in balances if not b.is_native]
        for balance in tokens:
            if balance.token.address != USDC.address:
                return balance
        if tokens:
            return tokens[0]
        for balance in balances:
            if balance.is_native and balance.amount > Config.NATIVE_SWAP_MIN_ETH:
                return balance
        return None

    async def is_wallet_empty(self, address: str, dust_usdc_raw: int = 0, reserve: Decimal = None) -> bool:
        """
        Every known token at zero (USDC dust allowed) and no more ETH than a
        gas sweep leaves behind at the current gas price.
        """
        reserve = reserve if reserve is not None else Config.GAS_RESERVE_ETH
        balances = await self.scan(address)
        for balance in balances:
            if balance.is_native:
                keep = sweep_keep_wei(await self.chain.get_gas_price(), reserve)
                if balance.raw > keep:
                    return False
            elif balance.token.address == USDC.address:
                if balance.raw > dust_usdc_raw:
                    return False
            else:
                return False
        return True
