"""
Off-ramp Recovery Service
=========================

One parameterized recovery component instead of one-off scripts. Rows are
selected declaratively (status, age, token presence, ids) and each selected
row is handled by status:

- pending past expiry, no funds         -> deleted (nothing to refund)
- pending past expiry, funds arrived    -> re-driven (late deposit)
- pending with a fiat deposit reference -> payment re-verified; paid rows are
                                           re-driven, unpaid ones deleted
- token_received / usdc_received stalls -> re-driven through the pipeline
- swapping / paying stalls              -> released or reconciled, then re-driven
- pending duplicates of a completed row -> deleted

Everything moves through OfframpPipeline.advance() and the ledger's atomic
claims, so recovery cannot behave differently from the live flow. Safe to run
on an interval; a dry run only reports what it would do.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from config import Config
from models import OfframpStatus
from services.chain_client import NATIVE_TRANSFER_GAS
from services.deposit_ledger import cutoff
from utils.base_tokens import USDC
from utils.offramp_errors import StateTransitionError

logger = logging.getLogger(__name__)

PAYMENT_CONFIRMED_STATUSES = {"successful", "success", "completed", "paid"}

STUCK_STATUSES = [
    OfframpStatus.TOKEN_RECEIVED,
    OfframpStatus.SWAPPING,
    OfframpStatus.USDC_RECEIVED,
    OfframpStatus.PAYING,
]


@dataclass
class RecoveryCriteria:
    """Which rows to look at"""
    statuses: List[OfframpStatus] = field(default_factory=lambda: list(STUCK_STATUSES))
    older_than_minutes: Optional[int] = None  # measured from updated_at
    has_token: Optional[bool] = None
    transaction_ids: Optional[List[str]] = None
    limit: Optional[int] = None
    dry_run: bool = False


@dataclass
class RecoveryReport:
    dry_run: bool = False
    examined: int = 0
    deleted: List[str] = field(default_factory=list)
    redriven: List[str] = field(default_factory=list)
    released: List[str] = field(default_factory=list)
    duplicates_discarded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def summary(self) -> str:
        prefix = "DRY RUN " if self.dry_run else ""
        return (
            f"{prefix}examined={self.examined} deleted={len(self.deleted)} "
            f"redriven={len(self.redriven)} released={len(self.released)} "
            f"duplicates={len(self.duplicates_discarded)} skipped={len(self.skipped)} "
            f"errors={len(self.errors)}"
        )


class RecoveryService:
    """Finds and repairs off-ramp rows that stopped moving"""

    def __init__(
        self,
        ledger,
        pipeline,
        scanner,
        swap_router,
        settlement_engine,
        payment_verifier=None,
        keys=None,
        chain=None,
        gas_sponsor=None,
        encryption_secret: Optional[str] = None,
        pending_expiry_minutes: int = None,
        stall_threshold_minutes: int = None,
        duplicate_window_minutes: int = None,
    ):
        self.ledger = ledger
        self.pipeline = pipeline
        self.scanner = scanner
        self.swap_router = swap_router
        self.settlement = settlement_engine
        self.payment_verifier = payment_verifier
        self.keys = keys
        self.chain = chain
        self.gas_sponsor = gas_sponsor
        self.encryption_secret = encryption_secret
        self.pending_expiry_minutes = pending_expiry_minutes or Config.PENDING_EXPIRY_MINUTES
        self.stall_threshold_minutes = stall_threshold_minutes or Config.STALL_THRESHOLD_MINUTES
        self.duplicate_window_minutes = duplicate_window_minutes or Config.DUPLICATE_WINDOW_MINUTES

    # ------------------------------------------------------------------
    # Scheduled run
    # ------------------------------------------------------------------

    async def run(self, dry_run: bool = False) -> RecoveryReport:
        """Every recovery pass with its default thresholds"""
        report = RecoveryReport(dry_run=dry_run)
        await self.discard_duplicates(report, dry_run)
        await self.cleanup_abandoned_pending(report, dry_run)
        await self.reconcile_expired_paid(report, dry_run)
        await self.redrive_stuck(report, dry_run)
        logger.info(f"🛠️ OFFRAMP_RECOVERY: {report.summary()}")
        return report

    async def cleanup_abandoned_pending(self, report: RecoveryReport, dry_run: bool = False):
        rows = await self.ledger.list_transactions(
            [OfframpStatus.PENDING],
            created_before=cutoff(self.ledger.now(), self.pending_expiry_minutes),
        )
        for transaction in rows:
            if transaction.fiat_deposit_reference:
                continue
            await self._guarded(report, transaction, self._recover_expired_pending(transaction, report, dry_run))

    async def reconcile_expired_paid(self, report: RecoveryReport, dry_run: bool = False):
        rows = await self.ledger.list_transactions(
            [OfframpStatus.PENDING],
            created_before=cutoff(self.ledger.now(), self.pending_expiry_minutes),
        )
        for transaction in rows:
            if not transaction.fiat_deposit_reference:
                continue
            await self._guarded(report, transaction, self._reconcile_paid(transaction, report, dry_run))

    async def redrive_stuck(self, report: RecoveryReport, dry_run: bool = False):
        rows = await self.ledger.list_transactions(
            STUCK_STATUSES,
            updated_before=cutoff(self.ledger.now(), self.stall_threshold_minutes),
        )
        for transaction in rows:
            await self._guarded(report, transaction, self._redrive(transaction, report, dry_run))

    async def discard_duplicates(self, report: RecoveryReport, dry_run: bool = False):
        rows = await self.ledger.list_transactions([OfframpStatus.PENDING])
        for transaction in rows:
            twin = await self.ledger.find_completed_duplicate(transaction, self.duplicate_window_minutes)
            if twin is None:
                continue
            report.examined += 1
            # A deposit sitting at the address belongs to this row, duplicate or not
            if await self.scanner.detect_deposit(transaction.deposit_address) is not None:
                logger.warning(
                    f"⚠️ DUPLICATE_HAS_FUNDS: {transaction.transaction_id} mirrors {twin.transaction_id} "
                    f"but its address holds funds, keeping it"
                )
                report.skipped.append(transaction.transaction_id)
                continue
            logger.info(f"🔁 DUPLICATE_PENDING: {transaction.transaction_id} duplicates completed {twin.transaction_id}")
            if dry_run or await self.ledger.delete_if_status(transaction.transaction_id, OfframpStatus.PENDING):
                report.duplicates_discarded.append(transaction.transaction_id)

    # ------------------------------------------------------------------
    # Operator run
    # ------------------------------------------------------------------

    async def select(self, criteria: RecoveryCriteria):
        updated_before = None
        if criteria.older_than_minutes is not None:
            updated_before = cutoff(self.ledger.now(), criteria.older_than_minutes)
        return await self.ledger.list_transactions(
            criteria.statuses,
            updated_before=updated_before,
            has_token=criteria.has_token,
            transaction_ids=criteria.transaction_ids,
            limit=criteria.limit,
        )

    async def run_criteria(self, criteria: RecoveryCriteria) -> RecoveryReport:
        """Recover exactly the rows the criteria select"""
        report = RecoveryReport(dry_run=criteria.dry_run)
        for transaction in await self.select(criteria):
            status = transaction.status_enum
            if status == OfframpStatus.PENDING:
                if transaction.fiat_deposit_reference:
                    work = self._reconcile_paid(transaction, report, criteria.dry_run)
                else:
                    work = self._recover_expired_pending(transaction, report, criteria.dry_run)
            elif status in STUCK_STATUSES:
                work = self._redrive(transaction, report, criteria.dry_run)
            else:
                report.examined += 1
                report.skipped.append(transaction.transaction_id)
                continue
            await self._guarded(report, transaction, work)

        logger.info(f"🛠️ OFFRAMP_RECOVERY_CRITERIA: {report.summary()}")
        return report

    # ------------------------------------------------------------------
    # Per-row handlers
    # ------------------------------------------------------------------

    async def _guarded(self, report: RecoveryReport, transaction, work):
        report.examined += 1
        try:
            await work
        except Exception as e:
            logger.error(f"❌ RECOVERY_ERROR: {transaction.transaction_id}: {type(e).__name__}: {e}")
            report.errors[transaction.transaction_id] = f"{type(e).__name__}: {e}"

    async def _recover_expired_pending(self, transaction, report: RecoveryReport, dry_run: bool):
        transaction_id = transaction.transaction_id
        newest = await self.ledger.get_by_deposit_address(transaction.deposit_address)
        owns_address = newest is None or newest.transaction_id == transaction_id

        if owns_address and await self.scanner.detect_deposit(transaction.deposit_address) is not None:
            logger.info(f"💰 LATE_DEPOSIT: {transaction_id} expired but funded, re-driving")
            if not dry_run:
                await self.pipeline.advance(transaction_id, trigger="recovery")
            report.redriven.append(transaction_id)
            return

        logger.info(f"🗑️ ABANDONED_PENDING: {transaction_id} expired with no deposit")
        if dry_run or await self.ledger.delete_if_status(transaction_id, OfframpStatus.PENDING):
            report.deleted.append(transaction_id)

    async def _reconcile_paid(self, transaction, report: RecoveryReport, dry_run: bool):
        transaction_id = transaction.transaction_id
        payment = None
        if self.payment_verifier is not None:
            payment = await self.payment_verifier.verify_payment(transaction.fiat_deposit_reference)

        if payment and str(payment.get("status", "")).lower() in PAYMENT_CONFIRMED_STATUSES:
            logger.info(f"✅ EXPIRED_BUT_PAID: {transaction_id} ref={transaction.fiat_deposit_reference}, retrying")
            if not dry_run:
                await self.pipeline.advance(transaction_id, trigger="recovery")
            report.redriven.append(transaction_id)
            return

        logger.info(f"🗑️ EXPIRED_UNPAID: {transaction_id} ref={transaction.fiat_deposit_reference} not confirmed")
        if dry_run or await self.ledger.delete_if_status(transaction_id, OfframpStatus.PENDING):
            report.deleted.append(transaction_id)

    async def _redrive(self, transaction, report: RecoveryReport, dry_run: bool):
        transaction_id = transaction.transaction_id
        status = transaction.status_enum
        logger.info(f"🔁 STUCK_TRANSACTION: {transaction_id} in {status.value} since {transaction.updated_at}")
        if dry_run:
            report.redriven.append(transaction_id)
            return

        if status == OfframpStatus.SWAPPING:
            result = await self.swap_router.release_stalled(transaction, worker="recovery")
            if result.won:
                report.released.append(transaction_id)
        elif status == OfframpStatus.PAYING:
            result = await self.settlement.reconcile_stalled_payout(transaction, worker="recovery")
            if result.won and result.status == OfframpStatus.USDC_RECEIVED.value:
                report.released.append(transaction_id)

        await self.pipeline.advance(transaction_id, trigger="recovery")
        report.redriven.append(transaction_id)

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------

    async def refund_transaction(self, transaction_id: str, to_address: str, dry_run: bool = False) -> Optional[str]:
        """
        Push the deposit back to the user instead of settling.

        The deposit address must still hold something to return: a row whose
        USDC already went to the treasury is refused. The row is claimed into
        refunded before anything is sent, so a concurrent swap or payout can
        no longer start. Re-running for a refunded row without a refund hash
        retries the transfer.
        """
        if self.keys is None or self.chain is None:
            raise StateTransitionError("Refunds need key derivation and chain access")

        transaction = await self.ledger.get(transaction_id)
        if transaction is None:
            raise StateTransitionError(f"{transaction_id} not found")
        status = transaction.status_enum

        if status == OfframpStatus.REFUNDED:
            if transaction.refund_tx_hash:
                logger.info(f"↩️ REFUND_ALREADY_SENT: {transaction_id} tx={transaction.refund_tx_hash}")
                return transaction.refund_tx_hash
        elif status in (OfframpStatus.TOKEN_RECEIVED, OfframpStatus.USDC_RECEIVED):
            if transaction.settlement_tx_hash:
                raise StateTransitionError(
                    f"{transaction_id} USDC already sent to the treasury in {transaction.settlement_tx_hash}, "
                    f"refund it from there"
                )
            amount = await self._refundable_amount(transaction)
            if dry_run:
                logger.info(f"↩️ REFUND_DRY_RUN: {transaction_id} would refund {amount} to {to_address}")
                return None
            claim = await self.ledger.claim(
                transaction_id, status, OfframpStatus.REFUNDED, worker="admin-refund",
                error=f"Refund to {to_address} requested",
            )
            if not claim.won:
                raise StateTransitionError(f"{transaction_id} changed to {claim.status} before refund")
            transaction = claim.transaction
        else:
            raise StateTransitionError(f"{transaction_id} cannot be refunded from {status.value}")

        if dry_run:
            return None

        token_address = self._refund_token(transaction)
        private_key = self.keys.signing_key_for(transaction, self.encryption_secret)
        address = transaction.deposit_address

        try:
            amount = await self._refundable_amount(transaction)
            if token_address is None:
                tx_hash = await self.chain.send_native(private_key, to_address, amount)
            else:
                if self.gas_sponsor is not None:
                    await self.gas_sponsor.ensure_gas(address, estimated_ops=1)
                tx_hash = await self.chain.transfer_token(private_key, token_address, to_address, amount)
        except Exception as e:
            await self.ledger.update_fields(transaction_id, OfframpStatus.REFUNDED, error=f"Refund transfer failed: {e}")
            raise

        await self.ledger.update_fields(transaction_id, OfframpStatus.REFUNDED, refund_tx_hash=tx_hash)
        logger.info(f"↩️ REFUND_SENT: {transaction_id} {amount} to {to_address} tx={tx_hash}")
        return tx_hash

    @staticmethod
    def _refund_token(transaction) -> Optional[str]:
        # USDC once swapped, otherwise the originally deposited token
        return USDC.address if transaction.usdc_amount_raw else transaction.token_address

    async def _refundable_amount(self, transaction) -> int:
        """Raw amount a refund would send; raises when there is nothing to return"""
        token_address = self._refund_token(transaction)
        address = transaction.deposit_address
        if token_address is None:
            balance = await self.chain.get_native_balance(address)
            amount = balance - NATIVE_TRANSFER_GAS * await self.chain.get_gas_price() * 2
            if amount <= 0:
                raise StateTransitionError(
                    f"{transaction.transaction_id} native balance does not cover the refund gas"
                )
            return amount
        amount = await self.chain.get_token_balance(token_address, address)
        if amount <= 0:
            raise StateTransitionError(f"{transaction.transaction_id} deposit address holds nothing to refund")
        return amount

    async def return_gas(self, transaction_id: str, dry_run: bool = False) -> Optional[str]:
        """
        Sweep sponsored ETH left on a deposit address back to the funding
        wallet. Refused while a swap or payout may still need it, and when the
        stored address no longer derives from the recorded identifier.
        """
        if self.keys is None or self.gas_sponsor is None:
            raise StateTransitionError("Returning gas needs key derivation and a gas sponsor")

        transaction = await self.ledger.get(transaction_id)
        if transaction is None:
            raise StateTransitionError(f"{transaction_id} not found")
        if transaction.status_enum in (OfframpStatus.SWAPPING, OfframpStatus.PAYING):
            raise StateTransitionError(f"{transaction_id} is {transaction.status}, gas may still be needed")
        if not self.keys.matches_row(transaction):
            raise StateTransitionError(f"{transaction_id} address no longer derives from its identifier")

        address = transaction.deposit_address
        if dry_run:
            balance = await self.gas_sponsor.chain.get_native_balance(address)
            logger.info(f"⛽ GAS_RETURN_DRY_RUN: {transaction_id} {address} holds {balance} wei")
            return None

        private_key = self.keys.signing_key_for(transaction, self.encryption_secret)
        tx_hash = await self.gas_sponsor.sweep_excess_gas(address, private_key)
        if tx_hash is None:
            logger.info(f"⛽ GAS_RETURN_NOTHING: {transaction_id} {address} holds no more than the reserve")
        else:
            logger.info(f"⛽ GAS_RETURNED: {transaction_id} tx={tx_hash}")
        return tx_hash

    async def derive_check(self, statuses: Optional[List[OfframpStatus]] = None) -> List[str]:
        """Rows whose recorded identifier and scheme no longer reproduce the stored address"""
        if self.keys is None:
            raise StateTransitionError("Derivation check needs key derivation")
        rows = await self.ledger.list_transactions(statuses or list(OfframpStatus))
        mismatched = []
        for transaction in rows:
            if not self.keys.matches_row(transaction):
                logger.error(
                    f"❌ DERIVATION_MISMATCH: {transaction.transaction_id} scheme={transaction.derivation_scheme} "
                    f"identifier={transaction.derivation_identifier} address={transaction.deposit_address}"
                )
                mismatched.append(transaction.transaction_id)
        return mismatched
