"""
Swap Router - deposit tokens to USDC
====================================

Provider order per token:
1. USDC needs no swap
2. Aerodrome-only tokens (SEND) go straight to the Aerodrome router
3. Everything else tries the 0x permit2 API first and falls back to Aerodrome
   when 0x has no route

Every token held by the deposit wallet is swapped independently and recorded
as a swap leg. The settlement amount is the wallet's USDC balance once all
legs are done, which covers USDC that was sent directly as well.

Swap attempts are bounded. A failed attempt increments swap_attempt_count and
releases the row back to token_received; reaching the cap marks it failed for
manual review.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from eth_account import Account

from config import Config
from models import OfframpStatus, SwapLegStatus, SwapProvider
from services.deposit_ledger import ClaimResult
from services.gas_sponsor import eth_to_wei
from services.wallet_scanner import TokenBalance, to_raw
from utils.base_tokens import AERODROME_ONLY_TOKENS, USDC, TokenInfo, is_usdc
from utils.offramp_errors import (
    ConfigurationError, GasFundingError, NoRouteError, SwapExecutionError, TransactionRevertedError
)

logger = logging.getLogger(__name__)

ZEROX_GAS_BUFFER = 1.2


@dataclass
class SwapOutcome:
    provider: SwapProvider
    sell_amount: int
    quoted_output: int
    realized_output: int
    tx_hash: Optional[str] = None


def discrepancy_percent(quoted: int, realized: int) -> Decimal:
    if quoted <= 0:
        return Decimal("0")
    return abs(Decimal(realized - quoted)) * Decimal(100) / Decimal(quoted)


def append_permit2_signature(data: str, signature: bytes) -> str:
    """0x permit2 calldata: original data + uint256 signature length + signature"""
    return data + len(signature).to_bytes(32, "big").hex() + signature.hex()


class SwapRouter:
    """Converts everything in a deposit wallet to USDC"""

    def __init__(
        self,
        chain,
        ledger,
        keys,
        scanner,
        gas_sponsor,
        zerox,
        aerodrome,
        encryption_secret: Optional[str] = None,
        max_attempts: int = None,
    ):
        self.chain = chain
        self.ledger = ledger
        self.keys = keys
        self.scanner = scanner
        self.gas_sponsor = gas_sponsor
        self.zerox = zerox
        self.aerodrome = aerodrome
        self.encryption_secret = encryption_secret
        self.max_attempts = max_attempts or Config.MAX_SWAP_ATTEMPTS

    # ------------------------------------------------------------------
    # Single token
    # ------------------------------------------------------------------

    async def swap_to_usdc(self, private_key: str, owner: str, token: TokenInfo, amount: int) -> SwapOutcome:
        """Swap `amount` of `token` held by `owner` into USDC at the same address"""
        if is_usdc(token.address):
            return SwapOutcome(SwapProvider.NONE, amount, amount, amount)

        before = await self.scanner.usdc_balance(owner)

        if token.address is not None and token.address.lower() in AERODROME_ONLY_TOKENS:
            logger.info(f"🔀 SWAP_ROUTE: {token.symbol} is Aerodrome-only")
            provider, quoted, tx_hash = await self._swap_aerodrome(private_key, owner, token, amount)
        else:
            try:
                provider, quoted, tx_hash = await self._swap_zerox(private_key, owner, token, amount)
            except NoRouteError as e:
                logger.warning(f"🔀 SWAP_FALLBACK: 0x has no route for {token.symbol} ({e}), trying Aerodrome")
                provider, quoted, tx_hash = await self._swap_aerodrome(private_key, owner, token, amount)

        after = await self.scanner.usdc_balance(owner)
        realized = after - before
        drift = discrepancy_percent(quoted, realized)
        if drift > Config.SWAP_DISCREPANCY_WARN_PERCENT:
            logger.warning(
                f"⚠️ SWAP_DISCREPANCY: {token.symbol} via {provider.value} quoted {quoted} "
                f"realized {realized} ({drift:.2f}%) tx={tx_hash}"
            )
        logger.info(
            f"✅ SWAP_CONFIRMED: {amount} {token.symbol} -> {realized} USDC raw via {provider.value} tx={tx_hash}"
        )
        return SwapOutcome(provider, amount, quoted, realized, tx_hash)

    async def _swap_zerox(self, private_key: str, owner: str, token: TokenInfo, amount: int):
        quote = await self.zerox.get_quote(token.address, USDC.address, amount, owner)

        if not token.is_native and quote.allowance_spender:
            allowance = await self.chain.get_allowance(token.address, owner, quote.allowance_spender)
            if allowance < amount:
                logger.info(f"🔓 ZEROX_APPROVE: {token.symbol} for {quote.allowance_spender}")
                approve_hash = await self.chain.approve_token(private_key, token.address, quote.allowance_spender, amount)
                try:
                    await self.chain.wait_for_success(approve_hash, "0x approve")
                except TransactionRevertedError as e:
                    raise SwapExecutionError(f"0x allowance approval reverted: {approve_hash}") from e

        data = quote.data
        if quote.permit2_eip712:
            signed = Account.sign_typed_data(private_key, full_message=quote.permit2_eip712)
            data = append_permit2_signature(data, bytes(signed.signature))

        gas = int(quote.gas * ZEROX_GAS_BUFFER) if quote.gas else None
        tx_hash = await self.chain.send_transaction(private_key, quote.to, data=data, value=quote.value, gas=gas)
        try:
            await self.chain.wait_for_success(tx_hash, "0x swap")
        except TransactionRevertedError as e:
            raise SwapExecutionError(f"0x swap reverted: {tx_hash}") from e
        return SwapProvider.ZEROX, quote.buy_amount, tx_hash

    async def _swap_aerodrome(self, private_key: str, owner: str, token: TokenInfo, amount: int):
        quote = await self.aerodrome.get_quote(token.address, USDC.address, amount)
        tx_hash = await self.aerodrome.swap(private_key, quote, owner)
        return SwapProvider.AERODROME, quote.expected_output, tx_hash

    # ------------------------------------------------------------------
    # Whole transaction
    # ------------------------------------------------------------------

    async def execute_for_transaction(self, transaction_id: str, worker: str = "swap-router") -> ClaimResult:
        """
        token_received -> swapping -> usdc_received.

        Returns the claim result of the last transition made; a lost claim is
        returned as-is without touching the chain.
        """
        claim = await self.ledger.claim(
            transaction_id, OfframpStatus.TOKEN_RECEIVED, OfframpStatus.SWAPPING, worker=worker
        )
        if not claim.won:
            return claim
        transaction = claim.transaction

        try:
            private_key = self.keys.signing_key_for(transaction, self.encryption_secret)
        except ConfigurationError as e:
            return await self.ledger.mark_failed(
                transaction_id, OfframpStatus.SWAPPING, f"Signing key unavailable, manual review required: {e}"
            )

        try:
            usdc_raw, legs = await self._swap_wallet(transaction, private_key)
        except GasFundingError as e:
            logger.critical(f"🚨 SWAP_GAS_UNAVAILABLE: {transaction_id} left for recovery: {e}")
            return await self.ledger.claim(
                transaction_id, OfframpStatus.SWAPPING, OfframpStatus.TOKEN_RECEIVED,
                worker=worker, error=f"Gas funding failed: {e}",
            )
        except Exception as e:
            logger.error(f"❌ SWAP_ATTEMPT_FAILED: {transaction_id}: {type(e).__name__}: {e}")
            return await self._record_failure(transaction, f"{type(e).__name__}: {e}", worker)

        confirmed = [leg for leg in legs if leg.provider != SwapProvider.NONE]
        primary = confirmed[0] if confirmed else None
        return await self.ledger.claim(
            transaction_id, OfframpStatus.SWAPPING, OfframpStatus.USDC_RECEIVED, worker=worker,
            usdc_amount_raw=str(usdc_raw),
            usdc_amount=Decimal(usdc_raw) / (Decimal(10) ** USDC.decimals),
            swap_provider=(primary.provider if primary else SwapProvider.NONE).value,
            quoted_usdc_raw=str(sum(leg.quoted_output for leg in confirmed)) if confirmed else None,
            swap_tx_hash=primary.tx_hash if primary else None,
        )

    async def _swap_wallet(self, transaction, private_key: str):
        address = transaction.deposit_address
        balances: List[TokenBalance] = await self.scanner.scan(address)
        outcomes: List[SwapOutcome] = []
        native_keep = eth_to_wei(Config.NATIVE_SWAP_KEEP_ETH)

        for balance in balances:
            token = balance.token
            if is_usdc(token.address):
                continue
            if token.is_native:
                # Small ETH balances are gas top-ups, not deposits
                if balance.amount <= Config.NATIVE_SWAP_MIN_ETH:
                    continue
                amount = balance.raw - native_keep
            else:
                amount = balance.raw

            await self.gas_sponsor.ensure_gas(address, estimated_ops=2)
            try:
                outcome = await self.swap_to_usdc(private_key, address, token, amount)
            except NoRouteError as e:
                if self._is_deposit_token(transaction, token):
                    await self._add_leg(transaction, token, amount, SwapLegStatus.FAILED, error=str(e))
                    raise
                # Secondary token nobody can route: leave it behind
                logger.warning(f"⚠️ SWAP_DUST_LEFT: {token.symbol} {amount} at {address}: {e}")
                await self._add_leg(transaction, token, amount, SwapLegStatus.SKIPPED_DUST, error=str(e))
                continue
            except Exception as e:
                await self._add_leg(transaction, token, amount, SwapLegStatus.FAILED, error=f"{type(e).__name__}: {e}")
                raise

            await self._add_leg(transaction, token, amount, SwapLegStatus.CONFIRMED, outcome=outcome)
            outcomes.append(outcome)

        usdc_raw = await self.scanner.usdc_balance(address)
        if usdc_raw <= to_raw(Config.USDC_DUST_THRESHOLD, USDC.decimals):
            raise SwapExecutionError(f"Only {usdc_raw} raw USDC at {address} after swapping {len(outcomes)} token(s)")
        if not outcomes:
            outcomes.append(SwapOutcome(SwapProvider.NONE, usdc_raw, usdc_raw, usdc_raw))
        return usdc_raw, outcomes

    @staticmethod
    def _is_deposit_token(transaction, token: TokenInfo) -> bool:
        recorded = (transaction.token_address or "").lower() or None
        return recorded == (token.address.lower() if token.address else None)

    async def _add_leg(self, transaction, token: TokenInfo, amount: int, status: SwapLegStatus,
                       outcome: Optional[SwapOutcome] = None, error: Optional[str] = None):
        await self.ledger.add_swap_leg(
            transaction.id,
            token_address=token.address,
            token_symbol=token.symbol,
            amount_raw=str(amount),
            provider=outcome.provider.value if outcome else None,
            quoted_output_raw=str(outcome.quoted_output) if outcome else None,
            realized_output_raw=str(outcome.realized_output) if outcome else None,
            tx_hash=outcome.tx_hash if outcome else None,
            status=status.value,
            error_message=error,
        )

    async def _record_failure(self, transaction, error: str, worker: str) -> ClaimResult:
        attempts = transaction.swap_attempt_count + 1
        if attempts >= self.max_attempts:
            return await self.ledger.mark_failed(
                transaction.transaction_id, OfframpStatus.SWAPPING,
                f"Swap failed after {attempts} attempts, manual review required: {error}",
                swap_attempt_count=attempts,
            )
        logger.warning(
            f"🔁 SWAP_RETRY_SCHEDULED: {transaction.transaction_id} attempt {attempts}/{self.max_attempts}"
        )
        return await self.ledger.claim(
            transaction.transaction_id, OfframpStatus.SWAPPING, OfframpStatus.TOKEN_RECEIVED,
            worker=worker, error=f"Swap attempt {attempts} failed: {error}", swap_attempt_count=attempts,
        )

    async def release_stalled(self, transaction, worker: str = "recovery") -> ClaimResult:
        """A swapping row nobody finished (crash, stuck broadcast): count it as a failed attempt"""
        logger.warning(f"⏰ SWAP_STALLED: {transaction.transaction_id} in swapping since {transaction.swapping_at}")
        return await self._record_failure(transaction, "swap stalled without confirmation", worker)
