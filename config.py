"""Configuration management for the Off-ramp Settlement Service"""

import os
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List

from dotenv import load_dotenv

from utils.offramp_errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)


def _get_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(raw)
    except InvalidOperation:
        logger.error(f"❌ CONFIG: {name}={raw!r} is not a decimal, using {default}")
        return Decimal(default)


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.error(f"❌ CONFIG: {name}={raw!r} is not an integer, using {default}")
        return default


def _get_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("true", "1", "yes")


DEFAULT_FEE_TIERS: List[Dict[str, Any]] = [
    {"min_amount": 3000, "max_amount": 10000, "fee": 250},
    {"min_amount": 10001, "max_amount": 50000, "fee": 500},
    {"min_amount": 50001, "max_amount": None, "fee": 1000},
]


def _get_fee_tiers() -> List[Dict[str, Any]]:
    raw = os.getenv("OFFRAMP_FEE_TIERS")
    if not raw:
        return DEFAULT_FEE_TIERS
    try:
        tiers = json.loads(raw)
        if isinstance(tiers, list) and tiers:
            return tiers
        logger.warning("⚠️ CONFIG: OFFRAMP_FEE_TIERS is empty, using default tiers")
    except json.JSONDecodeError as e:
        logger.error(f"❌ CONFIG: OFFRAMP_FEE_TIERS is not valid JSON ({e}), using default tiers")
    return DEFAULT_FEE_TIERS


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    PLATFORM_NAME = os.getenv("PLATFORM_NAME", "Offramp")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")

    # Custodial wallets
    # Master mnemonic for BIP44 deposit address derivation
    OFFRAMP_MASTER_MNEMONIC = os.getenv("OFFRAMP_MASTER_MNEMONIC")
    # Secret for the per-row AES-GCM key copy
    OFFRAMP_DEPOSIT_ENCRYPTION_SECRET = os.getenv("OFFRAMP_DEPOSIT_ENCRYPTION_SECRET")
    # Operator wallet that sponsors gas for deposit addresses
    GAS_FUNDING_PRIVATE_KEY = os.getenv("GAS_FUNDING_PRIVATE_KEY")
    # Treasury address receiving settled USDC
    OFFRAMP_RECEIVER_ADDRESS = os.getenv("OFFRAMP_RECEIVER_ADDRESS")

    # Chain
    BASE_RPC_URL = os.getenv("BASE_RPC_URL", "https://mainnet.base.org")
    BASE_CHAIN_ID = _get_int("BASE_CHAIN_ID", 8453)
    RPC_TIMEOUT_SECONDS = _get_int("RPC_TIMEOUT_SECONDS", 60)
    CONFIRMATION_POLL_ATTEMPTS = _get_int("CONFIRMATION_POLL_ATTEMPTS", 60)
    CONFIRMATION_POLL_INTERVAL_SECONDS = _get_int("CONFIRMATION_POLL_INTERVAL_SECONDS", 2)

    # Swap providers
    ZEROX_API_KEY = os.getenv("ZEROX_API_KEY")
    ZEROX_BASE_URL = os.getenv("ZEROX_BASE_URL", "https://api.0x.org")
    SWAP_SLIPPAGE_PERCENT = _get_decimal("SWAP_SLIPPAGE_PERCENT", "1")
    MAX_SWAP_ATTEMPTS = _get_int("MAX_SWAP_ATTEMPTS", 3)
    # Quote vs realized output gap that gets a warning
    SWAP_DISCREPANCY_WARN_PERCENT = _get_decimal("SWAP_DISCREPANCY_WARN_PERCENT", "5")
    SWAP_DEADLINE_SECONDS = _get_int("SWAP_DEADLINE_SECONDS", 1200)

    # Gas sponsorship (ETH)
    MIN_GAS_ETH_PER_OP = _get_decimal("MIN_GAS_ETH_PER_OP", "0.0001")
    GAS_TOPUP_HEADROOM_ETH = _get_decimal("GAS_TOPUP_HEADROOM_ETH", "0.00005")
    GAS_RESERVE_ETH = _get_decimal("GAS_RESERVE_ETH", "0.00002")
    FUNDING_WALLET_RESERVE_ETH = _get_decimal("FUNDING_WALLET_RESERVE_ETH", "0.00002")
    NATIVE_SWAP_MIN_ETH = _get_decimal("NATIVE_SWAP_MIN_ETH", "0.001")
    NATIVE_SWAP_KEEP_ETH = _get_decimal("NATIVE_SWAP_KEEP_ETH", "0.0001")

    # Pricing
    OFFRAMP_EXCHANGE_RATE = _get_decimal("OFFRAMP_EXCHANGE_RATE", "1650")
    OFFRAMP_FEE_TIERS = _get_fee_tiers()
    OFFRAMP_MINIMUM_NGN = _get_decimal("OFFRAMP_MINIMUM_NGN", "500")
    OFFRAMP_MAXIMUM_NGN = _get_decimal("OFFRAMP_MAXIMUM_NGN", "5000000")
    OFFRAMP_TRANSACTIONS_ENABLED = _get_bool("OFFRAMP_TRANSACTIONS_ENABLED", True)
    # USDC amounts below this are left in the wallet as dust
    USDC_DUST_THRESHOLD = _get_decimal("USDC_DUST_THRESHOLD", "0.01")

    # Fincra payouts
    FINCRA_SECRET_KEY = os.getenv("FINCRA_SECRET_KEY")
    FINCRA_PUBLIC_KEY = os.getenv("FINCRA_PUBLIC_KEY")
    FINCRA_BUSINESS_ID = os.getenv("FINCRA_BUSINESS_ID")
    FINCRA_TEST_MODE = _get_bool("FINCRA_TEST_MODE", False)
    FINCRA_BASE_URL = os.getenv(
        "FINCRA_BASE_URL",
        "https://sandboxapi.fincra.com" if FINCRA_TEST_MODE else "https://api.fincra.com",
    )
    FINCRA_ENABLED = _get_bool("FINCRA_ENABLED", True)
    MAX_PAYOUT_ATTEMPTS = _get_int("MAX_PAYOUT_ATTEMPTS", 3)

    # Deposit webhook
    CDP_WEBHOOK_SECRET = os.getenv("CDP_WEBHOOK_SECRET")
    WEBHOOK_SIGNATURE_HEADER = os.getenv("WEBHOOK_SIGNATURE_HEADER", "X-Hook0-Signature")
    WEBHOOK_TOLERANCE_SECONDS = _get_int("WEBHOOK_TOLERANCE_SECONDS", 300)
    DEPOSIT_SETTLE_DELAY_SECONDS = _get_int("DEPOSIT_SETTLE_DELAY_SECONDS", 3)

    # HTTP server
    WEBHOOK_PORT = _get_int("WEBHOOK_PORT", 5000)
    WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")

    # Jobs and recovery
    ENABLE_SCHEDULER = _get_bool("ENABLE_SCHEDULER", True)
    DEPOSIT_POLL_INTERVAL_SECONDS = _get_int("DEPOSIT_POLL_INTERVAL_SECONDS", 30)
    PIPELINE_ADVANCE_INTERVAL_SECONDS = _get_int("PIPELINE_ADVANCE_INTERVAL_SECONDS", 60)
    RECOVERY_INTERVAL_MINUTES = _get_int("RECOVERY_INTERVAL_MINUTES", 10)
    PENDING_EXPIRY_MINUTES = _get_int("PENDING_EXPIRY_MINUTES", 60)
    STALL_THRESHOLD_MINUTES = _get_int("STALL_THRESHOLD_MINUTES", 30)
    DUPLICATE_WINDOW_MINUTES = _get_int("DUPLICATE_WINDOW_MINUTES", 30)

    @staticmethod
    def validate_wallet_configuration():
        """Fail startup when custodial wallet secrets are missing"""
        missing = []
        if not Config.OFFRAMP_MASTER_MNEMONIC:
            missing.append("OFFRAMP_MASTER_MNEMONIC")
        if not Config.GAS_FUNDING_PRIVATE_KEY:
            missing.append("GAS_FUNDING_PRIVATE_KEY")
        if not Config.OFFRAMP_RECEIVER_ADDRESS:
            missing.append("OFFRAMP_RECEIVER_ADDRESS")

        if missing:
            logger.critical(f"🚨 WALLET_CONFIG: missing required settings: {', '.join(missing)}")
            raise ConfigurationError(f"Missing wallet configuration: {', '.join(missing)}")

        if not Config.OFFRAMP_DEPOSIT_ENCRYPTION_SECRET:
            logger.warning(
                "⚠️ WALLET_CONFIG: OFFRAMP_DEPOSIT_ENCRYPTION_SECRET not set - "
                "deposit keys will only be recoverable by re-derivation"
            )
        logger.info("✅ WALLET_CONFIG: custodial wallet configuration present")

    @staticmethod
    def validate_payout_configuration():
        """Fail startup when Fincra credentials are missing"""
        if not Config.FINCRA_ENABLED:
            logger.warning("⚠️ PAYOUT_CONFIG: Fincra disabled - payouts will be left for manual processing")
            return
        if not Config.FINCRA_SECRET_KEY or not Config.FINCRA_PUBLIC_KEY:
            logger.critical("🚨 PAYOUT_CONFIG: FINCRA_SECRET_KEY and FINCRA_PUBLIC_KEY are required")
            raise ConfigurationError("Missing Fincra payout credentials")
        logger.info(f"✅ PAYOUT_CONFIG: Fincra configured ({'TEST' if Config.FINCRA_TEST_MODE else 'LIVE'} mode)")

    @staticmethod
    def validate_webhook_security_configuration():
        """The deposit webhook must never run unauthenticated in production"""
        if Config.CDP_WEBHOOK_SECRET:
            logger.info("✅ WEBHOOK_SECURITY: deposit webhook secret configured")
            return
        if Config.IS_PRODUCTION:
            logger.critical("🚨 WEBHOOK_SECURITY: CDP_WEBHOOK_SECRET missing in production")
            raise ConfigurationError("CDP_WEBHOOK_SECRET is required in production")
        logger.warning("⚠️ WEBHOOK_SECURITY: CDP_WEBHOOK_SECRET not set - deposit webhooks will be rejected")

    @staticmethod
    def validate_all():
        """Run every startup validation"""
        if not Config.DATABASE_URL:
            raise ConfigurationError("DATABASE_URL environment variable is required")
        Config.validate_wallet_configuration()
        Config.validate_payout_configuration()
        Config.validate_webhook_security_configuration()
        if not Config.ZEROX_API_KEY:
            logger.warning("⚠️ SWAP_CONFIG: ZEROX_API_KEY not set - 0x quotes may be rate limited")
