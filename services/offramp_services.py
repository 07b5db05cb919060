"""
Wiring for the off-ramp services.

Secrets are read from Config here and handed to each service at
construction; nothing below this module reads them from global state.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config import Config
from services.aerodrome_service import AerodromeService
from services.chain_client import ChainClient
from services.deposit_ledger import DepositLedger
from services.deposit_monitor import DepositMonitor
from services.fincra_service import get_fincra_service
from services.gas_sponsor import GasSponsor
from services.key_derivation import KeyDerivationService
from services.offramp_pipeline import OfframpPipeline
from services.offramp_request_service import OfframpRequestService
from services.offramp_settings import OfframpSettingsProvider
from services.recovery_service import RecoveryService
from services.settlement_engine import SettlementEngine
from services.swap_router import SwapRouter
from services.wallet_scanner import WalletScanner
from services.zerox_service import ZeroXService

logger = logging.getLogger(__name__)


@dataclass
class OfframpServices:
    ledger: DepositLedger
    keys: KeyDerivationService
    chain: ChainClient
    scanner: WalletScanner
    gas_sponsor: GasSponsor
    swap_router: SwapRouter
    settlement: SettlementEngine
    pipeline: OfframpPipeline
    monitor: DepositMonitor
    recovery: RecoveryService
    requests: OfframpRequestService
    settings: OfframpSettingsProvider
    webhook_secret: Optional[str] = None


def build_offramp_services(payout_provider=None, chain: Optional[ChainClient] = None) -> OfframpServices:
    """Construct every off-ramp service from configuration"""
    Config.validate_all()

    secret = Config.OFFRAMP_DEPOSIT_ENCRYPTION_SECRET or None
    payout_provider = payout_provider or get_fincra_service()
    chain = chain or ChainClient()

    ledger = DepositLedger()
    keys = KeyDerivationService(Config.OFFRAMP_MASTER_MNEMONIC)
    scanner = WalletScanner(chain)
    gas_sponsor = GasSponsor(chain, Config.GAS_FUNDING_PRIVATE_KEY)
    settings = OfframpSettingsProvider()

    swap_router = SwapRouter(
        chain, ledger, keys, scanner, gas_sponsor,
        ZeroXService(), AerodromeService(chain),
        encryption_secret=secret,
    )
    settlement = SettlementEngine(
        chain, ledger, keys, gas_sponsor, payout_provider, settings,
        receiver_address=Config.OFFRAMP_RECEIVER_ADDRESS,
        encryption_secret=secret,
    )
    pipeline = OfframpPipeline(ledger, scanner, swap_router, settlement)
    monitor = DepositMonitor(ledger, pipeline)
    recovery = RecoveryService(
        ledger, pipeline, scanner, swap_router, settlement,
        payment_verifier=payout_provider, keys=keys, chain=chain, gas_sponsor=gas_sponsor,
        encryption_secret=secret,
    )
    requests = OfframpRequestService(
        ledger, keys, payout_provider, settings, encryption_secret=secret, scanner=scanner,
    )

    logger.info("✅ OFFRAMP_SERVICES: pipeline wired")
    return OfframpServices(
        ledger=ledger,
        keys=keys,
        chain=chain,
        scanner=scanner,
        gas_sponsor=gas_sponsor,
        swap_router=swap_router,
        settlement=settlement,
        pipeline=pipeline,
        monitor=monitor,
        recovery=recovery,
        requests=requests,
        settings=settings,
        webhook_secret=Config.CDP_WEBHOOK_SECRET,
    )
