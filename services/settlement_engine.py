"""
Settlement Engine - USDC to NGN payout
======================================

usdc_received -> paying -> completed:
1. Price the USDC once (rate + fee tiers snapshotted onto the row)
2. Claim the row into paying
3. Move the USDC from the deposit wallet to the treasury receiver
   (skipped when a settlement transfer is already recorded)
4. Ask Fincra to pay the net amount, reference = transaction id
5. Complete on provider confirmation, then sweep leftover gas

A rejected payout goes back to usdc_received with payout_attempt_count
incremented; at the cap the row fails for a manual payout/refund decision.
A payout whose outcome is unknown stays in paying and is resolved by
reference later.
"""

import logging
from decimal import Decimal
from typing import Optional

from config import Config
from models import OfframpStatus, OfframpTransaction
from services.deposit_ledger import ClaimResult
from services.fincra_service import classify_payout_status
from utils.base_tokens import USDC
from utils.fee_calculator import SettlementQuote, compute_settlement_quote
from utils.offramp_errors import (
    ConfigurationError, ConfirmationTimeoutError, GasFundingError, ProviderUnavailableError, TransactionRevertedError
)

logger = logging.getLogger(__name__)


def payout_reference_for(transaction) -> str:
    """First payout uses the transaction id; retries after a rejection get a suffix"""
    if not transaction.payout_attempt_count:
        return transaction.transaction_id
    return f"{transaction.transaction_id}_r{transaction.payout_attempt_count}"


class SettlementEngine:
    """Prices, transfers and pays out received USDC"""

    def __init__(
        self,
        chain,
        ledger,
        keys,
        gas_sponsor,
        payout_provider,
        settings_provider,
        receiver_address: Optional[str] = None,
        encryption_secret: Optional[str] = None,
        max_payout_attempts: int = None,
    ):
        self.chain = chain
        self.ledger = ledger
        self.keys = keys
        self.gas_sponsor = gas_sponsor
        self.payout_provider = payout_provider
        self.settings = settings_provider
        self.receiver_address = receiver_address or Config.OFFRAMP_RECEIVER_ADDRESS
        if not self.receiver_address:
            raise ConfigurationError("OFFRAMP_RECEIVER_ADDRESS is not configured")
        self.encryption_secret = encryption_secret
        self.max_payout_attempts = max_payout_attempts or Config.MAX_PAYOUT_ATTEMPTS

    def compute_quote(self, usdc_amount: Decimal, settings=None, computed_at=None) -> SettlementQuote:
        settings = settings or self.settings.get()
        return compute_settlement_quote(usdc_amount, settings.exchange_rate, settings.fee_tiers, computed_at)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def settle(self, transaction_id: str, worker: str = "settlement") -> ClaimResult:
        transaction = await self.ledger.get(transaction_id)
        if transaction is None or transaction.status != OfframpStatus.USDC_RECEIVED.value:
            return ClaimResult(False, transaction, "not in usdc_received")

        settings = self.settings.get()
        if not settings.transactions_enabled:
            logger.warning(f"⏸️ SETTLEMENT_PAUSED: off-ramp disabled, {transaction_id} left in usdc_received")
            return ClaimResult(False, transaction, "off-ramp disabled")

        if transaction.pricing_snapshot is None:
            transaction = await self._snapshot_pricing(transaction, settings)
            if transaction.status != OfframpStatus.USDC_RECEIVED.value:
                return ClaimResult(False, transaction, f"status is {transaction.status}")

        gross = transaction.ngn_amount or Decimal("0")
        if gross < settings.minimum_amount or gross > settings.maximum_amount:
            return await self.ledger.mark_failed(
                transaction_id, OfframpStatus.USDC_RECEIVED,
                f"₦{gross} outside limits ₦{settings.minimum_amount}-₦{settings.maximum_amount}, "
                f"manual payout/refund decision required",
            )

        claim = await self.ledger.claim(transaction_id, OfframpStatus.USDC_RECEIVED, OfframpStatus.PAYING, worker=worker)
        if not claim.won:
            return claim
        return await self._pay(claim.transaction, worker)

    async def confirm_payout(self, transaction_id: str, worker: str = "settlement") -> ClaimResult:
        """Resolve a paying row with a submitted payout by asking the provider"""
        transaction = await self.ledger.get(transaction_id)
        if transaction is None or transaction.status != OfframpStatus.PAYING.value:
            return ClaimResult(False, transaction, "not in paying")
        if not transaction.payout_reference:
            return ClaimResult(False, transaction, "no payout submitted")

        try:
            status = await self.payout_provider.check_transfer_status_by_reference(transaction.payout_reference)
        except ProviderUnavailableError as e:
            logger.warning(f"⏳ PAYOUT_STATUS_UNAVAILABLE: {transaction_id} ref={transaction.payout_reference}: {e}")
            return ClaimResult(False, transaction, "payout status unknown")
        if status is None:
            logger.info(f"⏳ PAYOUT_STATUS_UNKNOWN: {transaction_id} ref={transaction.payout_reference}")
            return ClaimResult(False, transaction, "payout status unknown")

        outcome = classify_payout_status(status.get("status"))
        if outcome == "successful":
            return await self._complete(transaction, worker)
        if outcome == "failed":
            return await self._reject(transaction, f"Payout {status.get('status')}: {status.get('failure_reason')}", worker)
        logger.info(f"⏳ PAYOUT_PROCESSING: {transaction_id} ref={transaction.payout_reference}")
        return ClaimResult(False, transaction, "payout processing")

    async def reconcile_stalled_payout(self, transaction, worker: str = "recovery") -> ClaimResult:
        """
        A paying row nobody finished. Looks at how far it got and either
        completes it, rejects it, resumes it or releases it to usdc_received.
        """
        transaction_id = transaction.transaction_id
        if transaction.payout_reference:
            try:
                status = await self.payout_provider.check_transfer_status_by_reference(transaction.payout_reference)
            except ProviderUnavailableError as e:
                logger.warning(f"⏳ PAYOUT_STATUS_UNAVAILABLE: {transaction_id} left in paying: {e}")
                return ClaimResult(False, transaction, "payout status unknown")
            if status is None:
                # Provider never saw it: safe to release without counting an attempt
                return await self.ledger.claim(
                    transaction_id, OfframpStatus.PAYING, OfframpStatus.USDC_RECEIVED, worker=worker,
                    error=f"Payout {transaction.payout_reference} not found at provider, released for retry",
                )
            return await self.confirm_payout(transaction_id, worker)

        if transaction.settlement_tx_hash:
            logger.info(f"🔁 PAYOUT_RESUME: {transaction_id} settlement transfer recorded, resuming payout")
            return await self._pay(transaction, worker)

        return await self.ledger.claim(
            transaction_id, OfframpStatus.PAYING, OfframpStatus.USDC_RECEIVED, worker=worker,
            error="Settlement interrupted before transfer, released for retry",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _snapshot_pricing(self, transaction, settings):
        usdc_amount = transaction.usdc_amount
        if usdc_amount is None:
            usdc_amount = Decimal(transaction.usdc_amount_raw or 0) / (Decimal(10) ** USDC.decimals)
        quote = self.compute_quote(usdc_amount, settings, self.ledger.now())
        await self.ledger.update_fields(
            transaction.transaction_id, OfframpStatus.USDC_RECEIVED,
            extra_conditions=(OfframpTransaction.pricing_snapshot.is_(None),),
            pricing_snapshot=quote.to_snapshot(),
            exchange_rate=quote.exchange_rate,
            ngn_amount=quote.ngn_amount,
            fee_ngn=quote.fee_ngn,
            fee_in_token=quote.fee_usdc,
            net_payout_ngn=quote.net_payout_ngn,
        )
        logger.info(
            f"💱 SETTLEMENT_PRICED: {transaction.transaction_id} {usdc_amount} USDC x ₦{quote.exchange_rate} "
            f"= ₦{quote.ngn_amount}, fee ₦{quote.fee_ngn}, net ₦{quote.net_payout_ngn}"
        )
        return await self.ledger.get(transaction.transaction_id)

    async def _pay(self, transaction, worker: str) -> ClaimResult:
        transaction_id = transaction.transaction_id
        if not transaction.settlement_tx_hash:
            try:
                await self._transfer_settlement(transaction)
            except GasFundingError as e:
                logger.critical(f"🚨 SETTLEMENT_GAS_UNAVAILABLE: {transaction_id} left for recovery: {e}")
                return await self.ledger.claim(
                    transaction_id, OfframpStatus.PAYING, OfframpStatus.USDC_RECEIVED,
                    worker=worker, error=f"Gas funding failed: {e}",
                )
            except ConfigurationError as e:
                return await self.ledger.mark_failed(
                    transaction_id, OfframpStatus.PAYING, f"Signing key unavailable, manual review required: {e}"
                )
            except ConfirmationTimeoutError as e:
                await self.ledger.update_fields(transaction_id, OfframpStatus.PAYING, error=str(e))
                return ClaimResult(False, await self.ledger.get(transaction_id), "settlement transfer unconfirmed")
            except TransactionRevertedError as e:
                return await self._reject(transaction, str(e), worker, settlement_tx_hash=None)
            transaction = await self.ledger.get(transaction_id)
        else:
            try:
                await self.chain.wait_for_success(transaction.settlement_tx_hash, "settlement transfer")
            except ConfirmationTimeoutError as e:
                await self.ledger.update_fields(transaction_id, OfframpStatus.PAYING, error=str(e))
                return ClaimResult(False, transaction, "settlement transfer unconfirmed")
            except TransactionRevertedError as e:
                return await self._reject(transaction, str(e), worker, settlement_tx_hash=None)

        return await self._submit_payout(transaction, worker)

    async def _transfer_settlement(self, transaction) -> str:
        private_key = self.keys.signing_key_for(transaction, self.encryption_secret)
        address = transaction.deposit_address
        await self.gas_sponsor.ensure_gas(address, estimated_ops=1)
        tx_hash = await self.chain.transfer_token(
            private_key, USDC.address, self.receiver_address, int(transaction.usdc_amount_raw)
        )
        # Recorded before waiting so a timeout never leads to a second transfer
        await self.ledger.update_fields(transaction.transaction_id, OfframpStatus.PAYING, settlement_tx_hash=tx_hash)
        await self.chain.wait_for_success(tx_hash, "settlement transfer")
        logger.info(f"🏦 SETTLEMENT_TRANSFERRED: {transaction.transaction_id} {transaction.usdc_amount} USDC tx={tx_hash}")
        return tx_hash

    async def _submit_payout(self, transaction, worker: str) -> ClaimResult:
        transaction_id = transaction.transaction_id
        reference = payout_reference_for(transaction)
        if transaction.payout_reference != reference:
            await self.ledger.update_fields(transaction_id, OfframpStatus.PAYING, payout_reference=reference)
            transaction = await self.ledger.get(transaction_id)

        logger.info(
            f"💸 PAYOUT_SUBMIT: {transaction_id} ₦{transaction.net_payout_ngn} to "
            f"****{transaction.account_number[-4:]} ({transaction.bank_code}) ref={reference}"
        )
        try:
            result = await self.payout_provider.initiate_payout(
                amount_ngn=transaction.net_payout_ngn,
                bank_code=transaction.bank_code,
                account_number=transaction.account_number,
                account_name=transaction.account_name,
                reference=reference,
                user_id=transaction.user_id,
            )
        except Exception as e:
            return await self._outcome_unknown(transaction_id, e)

        if result.get("success"):
            outcome = classify_payout_status(result.get("status"))
            if outcome == "successful":
                return await self._complete(transaction, worker)
            if outcome == "failed":
                return await self._reject(transaction, f"Payout {result.get('status')}", worker)
            return await self.confirm_payout(transaction_id, worker)

        # Not accepted; a duplicate reference means an earlier submission exists
        try:
            status = await self.payout_provider.check_transfer_status_by_reference(reference)
        except ProviderUnavailableError as e:
            return await self._outcome_unknown(transaction_id, e)
        if status is not None and classify_payout_status(status.get("status")) != "failed":
            return await self.confirm_payout(transaction_id, worker)
        return await self._reject(transaction, result.get("error") or "Payout rejected", worker)

    async def _outcome_unknown(self, transaction_id: str, error: Exception) -> ClaimResult:
        # Stays in paying; only a reference lookup may complete or reject it
        logger.error(f"❌ PAYOUT_OUTCOME_UNKNOWN: {transaction_id}: {type(error).__name__}: {error}")
        await self.ledger.update_fields(transaction_id, OfframpStatus.PAYING, error=f"Payout call error: {error}")
        return ClaimResult(False, await self.ledger.get(transaction_id), "payout outcome unknown")

    async def _complete(self, transaction, worker: str) -> ClaimResult:
        claim = await self.ledger.claim(
            transaction.transaction_id, OfframpStatus.PAYING, OfframpStatus.COMPLETED, worker=worker
        )
        if not claim.won:
            return claim
        logger.info(
            f"🎉 OFFRAMP_COMPLETED: {transaction.transaction_id} paid ₦{transaction.net_payout_ngn} "
            f"ref={transaction.payout_reference}"
        )
        try:
            private_key = self.keys.signing_key_for(transaction, self.encryption_secret)
            await self.gas_sponsor.sweep_excess_gas(transaction.deposit_address, private_key)
        except Exception as e:
            logger.warning(f"⚠️ GAS_SWEEP_FAILED: {transaction.transaction_id}: {type(e).__name__}: {e}")
        return claim

    async def _reject(self, transaction, error: str, worker: str, **values) -> ClaimResult:
        attempts = transaction.payout_attempt_count + 1
        if attempts >= self.max_payout_attempts:
            return await self.ledger.mark_failed(
                transaction.transaction_id, OfframpStatus.PAYING,
                f"Payout failed after {attempts} attempts, manual payout/refund decision required: {error}",
                payout_attempt_count=attempts, **values,
            )
        logger.warning(
            f"🔁 PAYOUT_RETRY_SCHEDULED: {transaction.transaction_id} attempt {attempts}/{self.max_payout_attempts}: {error}"
        )
        return await self.ledger.claim(
            transaction.transaction_id, OfframpStatus.PAYING, OfframpStatus.USDC_RECEIVED, worker=worker,
            error=f"Payout attempt {attempts} failed: {error}", payout_attempt_count=attempts, **values,
        )
