"""
Off-ramp pipeline entry point.

Polling, webhooks, the advancement job and recovery all move a transaction
forward through OfframpPipeline.advance(). Each step starts with an atomic
claim in the ledger, so concurrent callers for the same transaction cannot
both perform the same side effect; the loser gets the current row back.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from config import Config
from models import OfframpStatus
from services.deposit_ledger import ClaimResult
from utils.offramp_state_validator import OfframpStateValidator

logger = logging.getLogger(__name__)

MAX_ADVANCE_STEPS = 8


class OfframpPipeline:
    """Single "advance transaction" entry point"""

    def __init__(self, ledger, scanner, swap_router, settlement_engine, settle_delay_seconds: float = None):
        self.ledger = ledger
        self.scanner = scanner
        self.swap_router = swap_router
        self.settlement = settlement_engine
        self.settle_delay = (
            settle_delay_seconds if settle_delay_seconds is not None else Config.DEPOSIT_SETTLE_DELAY_SECONDS
        )

    async def advance(self, transaction_id: str, trigger: str = "manual") -> Optional[ClaimResult]:
        """
        Run steps until the row stops moving: a lost claim, a terminal state,
        nothing left to do right now (no deposit yet, payout processing), or a
        failed attempt, which waits for the next trigger to retry.
        """
        result: Optional[ClaimResult] = None
        transaction = await self.ledger.get(transaction_id)
        if transaction is None:
            logger.warning(f"⚠️ OFFRAMP_ADVANCE: {transaction_id} not found ({trigger})")
            return None

        for _ in range(MAX_ADVANCE_STEPS):
            if OfframpStateValidator.is_terminal_state(transaction.status_enum):
                break
            before = (transaction.status, transaction.swap_attempt_count, transaction.payout_attempt_count)

            result = await self._step(transaction, trigger)
            if result is None or result.transaction is None:
                break
            transaction = result.transaction
            if not result.won or transaction.status == before[0]:
                break
            if (transaction.swap_attempt_count, transaction.payout_attempt_count) != before[1:]:
                break

        if transaction is not None:
            logger.info(f"➡️ OFFRAMP_ADVANCED: {transaction_id} now {transaction.status} ({trigger})")
        return result

    async def _step(self, transaction, trigger: str) -> Optional[ClaimResult]:
        status = transaction.status_enum
        if status == OfframpStatus.PENDING:
            return await self.detect_deposit(transaction, trigger)
        if status == OfframpStatus.TOKEN_RECEIVED:
            if transaction.swap_attempt_count >= self.swap_router.max_attempts:
                return await self.ledger.mark_failed(
                    transaction.transaction_id, OfframpStatus.TOKEN_RECEIVED,
                    f"Swap attempts exhausted ({transaction.swap_attempt_count}), manual review required",
                )
            return await self.swap_router.execute_for_transaction(transaction.transaction_id, worker=trigger)
        if status == OfframpStatus.USDC_RECEIVED:
            return await self.settlement.settle(transaction.transaction_id, worker=trigger)
        if status == OfframpStatus.PAYING and transaction.payout_reference:
            return await self.settlement.confirm_payout(transaction.transaction_id, worker=trigger)
        # swapping, or paying before a payout was submitted: owned by another worker
        return ClaimResult(False, transaction, f"{status.value} is in flight")

    async def detect_deposit(self, transaction, trigger: str) -> ClaimResult:
        """pending -> token_received when the deposit address holds funds"""
        owner = await self._address_owner(transaction)
        if owner.transaction_id != transaction.transaction_id:
            logger.warning(
                f"🚧 DEPOSIT_ADDRESS_OWNED: {transaction.transaction_id} skipped, {owner.transaction_id} "
                f"({owner.status}) owns {transaction.deposit_address}"
            )
            return ClaimResult(False, transaction, f"address owned by {owner.transaction_id}")

        deposit = await self.scanner.detect_deposit(transaction.deposit_address)
        if deposit is None:
            return ClaimResult(False, transaction, "no deposit yet")

        logger.info(
            f"💰 DEPOSIT_DETECTED: {transaction.transaction_id} {deposit.amount} {deposit.token.symbol} "
            f"at {transaction.deposit_address} ({trigger})"
        )
        claim = await self.ledger.claim(
            transaction.transaction_id, OfframpStatus.PENDING, OfframpStatus.TOKEN_RECEIVED, worker=trigger,
            token_address=deposit.token.address,
            token_symbol=deposit.token.symbol,
            token_amount=Decimal(deposit.amount),
            token_amount_raw=str(deposit.raw),
        )
        if claim.won and self.settle_delay:
            # Let the node we read from catch up before spending
            await asyncio.sleep(self.settle_delay)
        return claim

    async def _address_owner(self, transaction):
        """
        The row entitled to funds at a shared deposit address: an open row
        already past pending, otherwise the newest pending row.
        """
        open_rows = await self.ledger.list_open_for_address(transaction.deposit_address)
        for row in open_rows:
            if row.status != OfframpStatus.PENDING.value:
                return row
        return open_rows[0] if open_rows else transaction
