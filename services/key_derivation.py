"""
Deposit address derivation.

Every off-ramp deposit address is a BIP44 child of one master mnemonic:
m/44'/60'/0'/0/{index}, where index is keccak256(identifier) reduced into the
non-hardened range. Nothing per-address has to be stored to sign for it later.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from eth_account import Account
from web3 import Web3

from models import DerivationScheme
from utils.key_encryption import decrypt_private_key
from utils.offramp_errors import ConfigurationError

logger = logging.getLogger(__name__)

Account.enable_unaudited_hdwallet_features()

INDEX_MODULUS = 2147483647
DERIVATION_PATH_TEMPLATE = "m/44'/60'/0'/0/{index}"


@dataclass(frozen=True)
class DerivedKey:
    address: str  # checksummed
    private_key: str  # 0x-prefixed hex
    index: int
    path: str
    identifier: str

    @property
    def address_lower(self) -> str:
        return self.address.lower()


def derivation_index(identifier: str) -> int:
    """Map an identifier onto a stable child index"""
    if not identifier:
        raise ValueError("Derivation identifier must be a non-empty string")
    digest = Web3.keccak(text=identifier)
    return int.from_bytes(digest, "big") % INDEX_MODULUS


class KeyDerivationService:
    """Derives custodial deposit keys from the master mnemonic"""

    def __init__(self, mnemonic: str, cache_size: int = 1024):
        if not mnemonic or not mnemonic.strip():
            raise ConfigurationError("Master mnemonic is not configured")
        self._mnemonic = " ".join(mnemonic.split())
        self._cache: Dict[int, DerivedKey] = {}
        self._cache_size = cache_size

        # Surface a malformed mnemonic at startup, not on the first deposit
        try:
            Account.from_mnemonic(self._mnemonic, account_path=DERIVATION_PATH_TEMPLATE.format(index=0))
        except Exception as e:
            logger.critical(f"🚨 KEY_DERIVATION: master mnemonic rejected: {type(e).__name__}")
            raise ConfigurationError(f"Invalid master mnemonic: {e}") from e

        logger.info("✅ KEY_DERIVATION: master mnemonic loaded")

    def derive(self, identifier: str) -> DerivedKey:
        """Pure function of (mnemonic, identifier)"""
        index = derivation_index(identifier)
        cached = self._cache.get(index)
        if cached is not None and cached.identifier == identifier:
            return cached

        path = DERIVATION_PATH_TEMPLATE.format(index=index)
        account = Account.from_mnemonic(self._mnemonic, account_path=path)
        key_hex = account.key.hex()
        if not key_hex.startswith("0x"):
            key_hex = "0x" + key_hex
        derived = DerivedKey(
            address=account.address,
            private_key=key_hex,
            index=index,
            path=path,
            identifier=identifier,
        )

        if len(self._cache) >= self._cache_size:
            self._cache.pop(next(iter(self._cache)))
        self._cache[index] = derived
        return derived

    def derive_for(self, user_id, transaction_id: str) -> Tuple[DerivedKey, DerivationScheme]:
        """Pick the identifier for a new deposit address: user id when known, else transaction id"""
        if user_id:
            return self.derive(str(user_id)), DerivationScheme.USER_ID
        return self.derive(transaction_id), DerivationScheme.TRANSACTION_ID

    def matches_row(self, transaction) -> bool:
        """True when the recorded identifier still derives the stored deposit address"""
        derived = self.derive(transaction.derivation_identifier)
        return derived.address_lower == (transaction.deposit_address or "").lower()

    def signing_key_for(self, transaction, encryption_secret: Optional[str] = None) -> str:
        """
        Private key controlling a row's deposit address.

        Re-derives with the recorded identifier first. Falls back to the row's
        encrypted key copy when re-derivation does not reproduce the address.
        """
        derived = self.derive(transaction.derivation_identifier)
        stored = (transaction.deposit_address or "").lower()
        if derived.address_lower == stored:
            return derived.private_key

        logger.error(
            f"❌ KEY_DERIVATION_MISMATCH: {transaction.transaction_id} scheme={transaction.derivation_scheme} "
            f"derived {derived.address_lower} != stored {stored}"
        )
        if transaction.encrypted_private_key and encryption_secret:
            private_key = decrypt_private_key(transaction.encrypted_private_key, encryption_secret)
            if Account.from_key(private_key).address.lower() == stored:
                logger.warning(f"⚠️ KEY_DERIVATION: {transaction.transaction_id} signed with encrypted key copy")
                return private_key
        raise ConfigurationError(
            f"No signing key reproduces deposit address {stored} for {transaction.transaction_id}"
        )
