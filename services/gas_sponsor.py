"""
Gas sponsorship for custodial deposit addresses.

Deposit addresses start with no ETH. Before a swap or settlement transfer the
sponsor tops the address up from the operator funding wallet, and after
settlement it sweeps what is left above a small reserve back to that wallet.
Both operations are no-ops when the thresholds are already satisfied.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from web3 import Web3

from config import Config
from services.chain_client import NATIVE_TRANSFER_GAS
from utils.offramp_errors import (
    ConfigurationError, ConfirmationTimeoutError, GasFundingError, TransactionRevertedError
)

logger = logging.getLogger(__name__)

# Sweep keeps enough for this many native transfers at the current gas price
SWEEP_RESERVE_MULTIPLIER = 2


def eth_to_wei(amount: Decimal) -> int:
    return int(Web3.to_wei(amount, "ether"))


def wei_to_eth(amount: int) -> Decimal:
    return Decimal(amount) / Decimal(10 ** 18)


def sweep_keep_wei(gas_price: int, reserve: Decimal) -> int:
    """ETH a swept deposit address keeps: two native transfers or the reserve, whichever is more"""
    return max(NATIVE_TRANSFER_GAS * gas_price * SWEEP_RESERVE_MULTIPLIER, eth_to_wei(reserve))


class GasSponsor:
    """Tops up and sweeps native gas for deposit addresses"""

    def __init__(
        self,
        chain,
        funding_private_key: Optional[str] = None,
        min_gas_per_op: Decimal = None,
        topup_headroom: Decimal = None,
        reserve: Decimal = None,
        funding_reserve: Decimal = None,
    ):
        funding_private_key = funding_private_key or Config.GAS_FUNDING_PRIVATE_KEY
        if not funding_private_key:
            raise ConfigurationError("GAS_FUNDING_PRIVATE_KEY is not configured")
        self.chain = chain
        self._funding_key = funding_private_key
        self.funding_address = chain.address_of(funding_private_key)
        self.min_gas_per_op = min_gas_per_op if min_gas_per_op is not None else Config.MIN_GAS_ETH_PER_OP
        self.topup_headroom = topup_headroom if topup_headroom is not None else Config.GAS_TOPUP_HEADROOM_ETH
        self.reserve = reserve if reserve is not None else Config.GAS_RESERVE_ETH
        self.funding_reserve = funding_reserve if funding_reserve is not None else Config.FUNDING_WALLET_RESERVE_ETH
        # One funding send at a time so nonces from the funding wallet never collide
        self._funding_lock = asyncio.Lock()

    def required_wei(self, estimated_ops: int) -> int:
        return eth_to_wei(self.min_gas_per_op * max(estimated_ops, 1))

    async def ensure_gas(self, address: str, estimated_ops: int = 2) -> Optional[str]:
        """
        Make sure `address` holds enough ETH for `estimated_ops` transactions.

        Returns the top-up tx hash, or None when no top-up was needed. Raises
        GasFundingError when the funding wallet cannot cover the shortfall or
        the top-up does not confirm.
        """
        required = self.required_wei(estimated_ops)
        balance = await self.chain.get_native_balance(address)
        if balance >= required:
            logger.debug(f"⛽ GAS_OK: {address} has {wei_to_eth(balance)} ETH (needs {wei_to_eth(required)})")
            return None

        topup = required - balance + eth_to_wei(self.topup_headroom)
        async with self._funding_lock:
            funding_balance = await self.chain.get_native_balance(self.funding_address)
            gas_price = await self.chain.get_gas_price()
            fee = NATIVE_TRANSFER_GAS * gas_price
            available = funding_balance - eth_to_wei(self.funding_reserve) - fee
            if available < topup:
                logger.critical(
                    f"🚨 GAS_FUNDING_DEPLETED: funding wallet {self.funding_address} has "
                    f"{wei_to_eth(funding_balance)} ETH, cannot send {wei_to_eth(topup)} ETH to {address}"
                )
                raise GasFundingError(
                    f"Funding wallet cannot cover {wei_to_eth(topup)} ETH top-up for {address}"
                )

            logger.info(f"⛽ GAS_TOPUP: sending {wei_to_eth(topup)} ETH to {address}")
            try:
                tx_hash = await self.chain.send_native(self._funding_key, address, topup, gas_price=gas_price)
                await self.chain.wait_for_success(tx_hash, "gas top-up")
            except (ConfirmationTimeoutError, TransactionRevertedError) as e:
                logger.critical(f"🚨 GAS_TOPUP_FAILED: {address}: {e}")
                raise GasFundingError(f"Gas top-up to {address} did not confirm: {e}") from e

        logger.info(f"✅ GAS_TOPUP_CONFIRMED: {address} tx={tx_hash}")
        return tx_hash

    async def sweep_excess_gas(self, address: str, private_key: str) -> Optional[str]:
        """
        Return leftover ETH to the funding wallet, keeping enough for one more
        confirmation round-trip. Returns the sweep tx hash or None.
        """
        balance = await self.chain.get_native_balance(address)
        gas_price = await self.chain.get_gas_price()
        keep = sweep_keep_wei(gas_price, self.reserve)
        amount = balance - keep
        if amount <= 0:
            logger.debug(f"⛽ GAS_SWEEP_SKIPPED: {address} balance {wei_to_eth(balance)} ETH within reserve")
            return None

        tx_hash = await self.chain.send_native(private_key, self.funding_address, amount, gas_price=gas_price)
        logger.info(f"🧹 GAS_SWEEP: {wei_to_eth(amount)} ETH from {address} back to funding wallet tx={tx_hash}")
        return tx_hash
