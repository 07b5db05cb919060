"""
Off-ramp pricing settings (USDC -> NGN rate, fee tiers, limits).

Read from configuration and cached for a few minutes. The settlement engine
copies what it used onto each transaction, so changing these never alters a
transaction that has already been priced.
"""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from config import Config
from utils.fee_calculator import FeeTier, parse_fee_tiers

logger = logging.getLogger(__name__)

CACHE_SECONDS = 300


@dataclass
class OfframpSettings:
    exchange_rate: Decimal
    fee_tiers: List[FeeTier] = field(default_factory=list)
    minimum_amount: Decimal = Decimal("500")
    maximum_amount: Decimal = Decimal("5000000")
    transactions_enabled: bool = True


def settings_from_config() -> OfframpSettings:
    return OfframpSettings(
        exchange_rate=Config.OFFRAMP_EXCHANGE_RATE,
        fee_tiers=parse_fee_tiers(Config.OFFRAMP_FEE_TIERS),
        minimum_amount=Config.OFFRAMP_MINIMUM_NGN,
        maximum_amount=Config.OFFRAMP_MAXIMUM_NGN,
        transactions_enabled=Config.OFFRAMP_TRANSACTIONS_ENABLED,
    )


class OfframpSettingsProvider:
    """Cached settings source; tests and operators can pin values with override()"""

    def __init__(self, loader=settings_from_config, cache_seconds: int = CACHE_SECONDS):
        self._loader = loader
        self._cache_seconds = cache_seconds
        self._cached: Optional[OfframpSettings] = None
        self._cached_at = 0.0
        self._pinned: Optional[OfframpSettings] = None

    def get(self) -> OfframpSettings:
        if self._pinned is not None:
            return self._pinned
        now = time.monotonic()
        if self._cached is None or now - self._cached_at > self._cache_seconds:
            self._cached = self._loader()
            self._cached_at = now
            logger.debug(f"💱 OFFRAMP_SETTINGS: loaded rate ₦{self._cached.exchange_rate}/USDC")
        return self._cached

    def override(self, settings: OfframpSettings):
        logger.info(f"💱 OFFRAMP_SETTINGS: override rate ₦{settings.exchange_rate}/USDC")
        self._pinned = settings

    def invalidate(self):
        self._pinned = None
        self._cached = None
