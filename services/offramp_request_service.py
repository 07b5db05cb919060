"""
Off-ramp request intake: verified payout target in, deposit address out.
"""

import logging
import secrets
from decimal import Decimal
from typing import List, Optional

from config import Config
from models import OfframpStatus
from utils.key_encryption import encrypt_private_key
from utils.offramp_errors import VerificationError

logger = logging.getLogger(__name__)

TRANSACTION_ID_PREFIX = "offramp_"


def generate_transaction_id() -> str:
    # 9 random bytes -> 12 url-safe characters
    return f"{TRANSACTION_ID_PREFIX}{secrets.token_urlsafe(9)}"


class OfframpRequestService:
    """Creates pending off-ramp rows"""

    def __init__(self, ledger, keys, account_verifier, settings_provider, encryption_secret: Optional[str] = None,
                 scanner=None):
        self.ledger = ledger
        self.scanner = scanner
        self.keys = keys
        self.account_verifier = account_verifier
        self.settings = settings_provider
        self.encryption_secret = encryption_secret if encryption_secret is not None else Config.OFFRAMP_DEPOSIT_ENCRYPTION_SECRET

    async def create_request(
        self,
        user_id: Optional[str],
        account_number: str,
        bank_code: str,
        bank_name: Optional[str] = None,
        user_email: Optional[str] = None,
        requested_ngn_amount: Optional[Decimal] = None,
        fiat_deposit_reference: Optional[str] = None,
    ):
        """
        Verify the bank account and return a pending row with its deposit
        address. A user with a pending request gets that row back instead of
        a second one; while an earlier request of theirs is still moving funds
        through the shared address, a new one is refused.
        """
        settings = self.settings.get()
        if not settings.transactions_enabled:
            raise VerificationError("Off-ramp is temporarily disabled")

        if user_id:
            existing = await self.ledger.find_pending_for_user(str(user_id))
            if existing is not None:
                logger.info(f"♻️ OFFRAMP_REUSED: {existing.transaction_id} still pending for user {user_id}")
                return existing

        transaction_id = generate_transaction_id()
        derived, scheme = self.keys.derive_for(user_id, transaction_id)
        busy = await self.ledger.list_open_for_address(derived.address)
        if busy:
            logger.warning(
                f"🚫 OFFRAMP_ADDRESS_BUSY: {busy[0].transaction_id} is {busy[0].status} on {derived.address_lower}"
            )
            raise VerificationError(
                f"Off-ramp {busy[0].transaction_id} is still in progress, wait for it to finish"
            )

        account_name = await self.account_verifier.verify_account_name(account_number, bank_code)
        if not account_name:
            raise VerificationError(f"Could not verify account {account_number} at bank {bank_code}")

        encrypted = None
        if self.encryption_secret:
            encrypted = encrypt_private_key(derived.private_key, self.encryption_secret)

        return await self.ledger.create(
            transaction_id=transaction_id,
            user_id=str(user_id) if user_id else None,
            user_email=user_email,
            deposit_address=derived.address,
            encrypted_private_key=encrypted,
            derivation_identifier=derived.identifier,
            derivation_scheme=scheme.value,
            derivation_index=derived.index,
            account_number=account_number,
            account_name=account_name,
            bank_code=bank_code,
            bank_name=bank_name,
            requested_ngn_amount=requested_ngn_amount,
            fiat_deposit_reference=fiat_deposit_reference,
            status=OfframpStatus.PENDING.value,
        )

    async def cancel_pending(self, user_id: str) -> List[str]:
        """
        Fail every pending request of a user so they can start over. A row
        whose address already received a deposit stays pending and is left
        to the deposit monitor. Returns the cancelled transaction ids.
        """
        rows = await self.ledger.list_transactions([OfframpStatus.PENDING], user_id=str(user_id))
        cancelled = []
        for transaction in rows:
            if self.scanner is not None:
                deposit = await self.scanner.detect_deposit(transaction.deposit_address)
                if deposit is not None:
                    logger.warning(
                        f"⚠️ OFFRAMP_CANCEL_SKIPPED: {transaction.transaction_id} already holds "
                        f"{deposit.amount} {deposit.token.symbol}"
                    )
                    continue
            claim = await self.ledger.claim(
                transaction.transaction_id, OfframpStatus.PENDING, OfframpStatus.FAILED,
                worker="user-cancel", error="Cancelled by user",
            )
            if claim.won:
                cancelled.append(transaction.transaction_id)
                logger.info(f"🛑 OFFRAMP_CANCELLED: {transaction.transaction_id} by user {user_id}")
        return cancelled
