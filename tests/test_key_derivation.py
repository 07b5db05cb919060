"""
Deposit address derivation and the encrypted key copy
"""

import pytest
from types import SimpleNamespace

from eth_account import Account

from models import DerivationScheme
from services.key_derivation import INDEX_MODULUS, KeyDerivationService, derivation_index
from utils.key_encryption import decrypt_private_key, encrypt_private_key
from utils.offramp_errors import ConfigurationError

TEST_MNEMONIC = "test test test test test test test test test test test junk"


@pytest.fixture(scope="module")
def service():
    return KeyDerivationService(TEST_MNEMONIC)


class TestDerivation:

    def test_same_identifier_same_address(self, service):
        first = service.derive("user-42")
        second = KeyDerivationService(TEST_MNEMONIC).derive("user-42")
        assert first.address == second.address
        assert first.private_key == second.private_key

    def test_private_key_controls_address(self, service):
        derived = service.derive("user-42")
        assert Account.from_key(derived.private_key).address == derived.address
        assert derived.path == f"m/44'/60'/0'/0/{derived.index}"

    def test_different_identifiers_differ(self, service):
        assert service.derive("user-42").address != service.derive("user-43").address

    def test_index_stays_non_hardened(self):
        for identifier in ("a", "offramp_abcdefghijkl", "9" * 64):
            assert 0 <= derivation_index(identifier) < INDEX_MODULUS

    def test_empty_identifier_rejected(self):
        with pytest.raises(ValueError):
            derivation_index("")

    def test_scheme_follows_user_presence(self, service):
        by_user, scheme = service.derive_for("user-42", "offramp_aaaaaaaaaaaa")
        assert scheme == DerivationScheme.USER_ID
        assert by_user.identifier == "user-42"

        guest, scheme = service.derive_for(None, "offramp_aaaaaaaaaaaa")
        assert scheme == DerivationScheme.TRANSACTION_ID
        assert guest.identifier == "offramp_aaaaaaaaaaaa"
        assert guest.address != by_user.address

    def test_missing_mnemonic_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            KeyDerivationService("")

    def test_malformed_mnemonic_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            KeyDerivationService("not a real mnemonic phrase at all")


class TestSigningKey:

    def _row(self, derived, **overrides):
        values = dict(
            transaction_id="offramp_test00000001",
            derivation_identifier=derived.identifier,
            derivation_scheme="user_id",
            deposit_address=derived.address.lower(),
            encrypted_private_key=None,
        )
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_rederives_recorded_identifier(self, service):
        derived = service.derive("user-7")
        row = self._row(derived)
        assert service.matches_row(row)
        assert service.signing_key_for(row) == derived.private_key

    def test_falls_back_to_encrypted_copy(self, service):
        stored = service.derive("legacy-identifier")
        row = self._row(
            stored,
            derivation_identifier="user-7",
            encrypted_private_key=encrypt_private_key(stored.private_key, "s3cret"),
        )
        assert not service.matches_row(row)
        assert service.signing_key_for(row, "s3cret") == stored.private_key

    def test_no_key_reproduces_address(self, service):
        stored = service.derive("legacy-identifier")
        row = self._row(stored, derivation_identifier="user-7")
        with pytest.raises(ConfigurationError):
            service.signing_key_for(row, "s3cret")


class TestKeyEncryption:

    def test_round_trip(self):
        blob = encrypt_private_key("0x" + "ab" * 32, "s3cret")
        assert decrypt_private_key(blob, "s3cret") == "0x" + "ab" * 32

    def test_fresh_iv_each_time(self):
        assert encrypt_private_key("0xkey", "s3cret") != encrypt_private_key("0xkey", "s3cret")

    def test_wrong_secret_fails(self):
        blob = encrypt_private_key("0x" + "ab" * 32, "s3cret")
        with pytest.raises(ValueError):
            decrypt_private_key(blob, "other")

    def test_truncated_blob_fails(self):
        with pytest.raises(ValueError):
            decrypt_private_key("AAAA", "s3cret")

    def test_missing_secret_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            encrypt_private_key("0xkey", "")
