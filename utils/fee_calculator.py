"""
Off-ramp fee and payout math.

All figures are Decimal. The fiat equivalent of a USDC amount is floored to
whole naira before the tier fee is taken off, and the rate and tiers used are
captured in a snapshot so the numbers can be reproduced later.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

# No fee below this fiat amount
FEE_FREE_BELOW_NGN = Decimal("3000")
USDC_QUANT = Decimal("0.000001")
NGN_QUANT = Decimal("0.01")


@dataclass(frozen=True)
class FeeTier:
    min_amount: Decimal
    max_amount: Optional[Decimal]
    fee: Decimal = Decimal("0")
    fee_percentage: Optional[Decimal] = None  # e.g. 2.0 for 2%
    tier_name: Optional[str] = None

    def matches(self, amount: Decimal) -> bool:
        return amount >= self.min_amount and (self.max_amount is None or amount <= self.max_amount)

    def fee_for(self, amount: Decimal) -> Decimal:
        if self.fee_percentage is not None:
            return (amount * self.fee_percentage / Decimal("100")).quantize(NGN_QUANT, rounding=ROUND_HALF_UP)
        return self.fee

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "min_amount": str(self.min_amount),
            "max_amount": str(self.max_amount) if self.max_amount is not None else None,
            "fee": str(self.fee),
        }
        if self.fee_percentage is not None:
            data["fee_percentage"] = str(self.fee_percentage)
        if self.tier_name:
            data["tier_name"] = self.tier_name
        return data


def parse_fee_tiers(raw_tiers: Iterable[Dict[str, Any]]) -> List[FeeTier]:
    """Build tiers from config or snapshot dicts, sorted by lower bound"""
    tiers = []
    for raw in raw_tiers:
        max_amount = raw.get("max_amount")
        fee_percentage = raw.get("fee_percentage")
        tiers.append(FeeTier(
            min_amount=Decimal(str(raw["min_amount"])),
            max_amount=Decimal(str(max_amount)) if max_amount is not None else None,
            fee=Decimal(str(raw.get("fee", raw.get("fee_ngn", 0)))),
            fee_percentage=Decimal(str(fee_percentage)) if fee_percentage is not None else None,
            tier_name=raw.get("tier_name"),
        ))
    return sorted(tiers, key=lambda t: t.min_amount)


def tiered_fee(ngn_amount: Decimal, tiers: List[FeeTier]) -> Decimal:
    if ngn_amount < FEE_FREE_BELOW_NGN or not tiers:
        return Decimal("0")
    for tier in tiers:
        if tier.matches(ngn_amount):
            return tier.fee_for(ngn_amount)
    # Gap between configured tiers: charge the highest tier
    logger.warning(f"⚠️ FEE_TIER_GAP: no tier covers ₦{ngn_amount}, using highest tier")
    return tiers[-1].fee_for(ngn_amount)


def fiat_equivalent(usdc_amount: Decimal, exchange_rate: Decimal) -> Decimal:
    return (usdc_amount * exchange_rate).to_integral_value(rounding=ROUND_FLOOR)


@dataclass(frozen=True)
class SettlementQuote:
    usdc_amount: Decimal
    exchange_rate: Decimal
    ngn_amount: Decimal
    fee_ngn: Decimal
    fee_usdc: Decimal
    net_payout_ngn: Decimal
    fee_tiers: List[FeeTier] = field(default_factory=list)
    computed_at: Optional[str] = None

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "usdc_amount": str(self.usdc_amount),
            "exchange_rate": str(self.exchange_rate),
            "ngn_amount": str(self.ngn_amount),
            "fee_ngn": str(self.fee_ngn),
            "fee_usdc": str(self.fee_usdc),
            "net_payout_ngn": str(self.net_payout_ngn),
            "fee_tiers": [t.to_dict() for t in self.fee_tiers],
            "computed_at": self.computed_at,
        }


def compute_settlement_quote(
    usdc_amount: Decimal,
    exchange_rate: Decimal,
    tiers: List[FeeTier],
    computed_at: Optional[datetime] = None,
) -> SettlementQuote:
    """net payout = floor(usdc * rate) - tiered_fee(floor(usdc * rate))"""
    if exchange_rate <= 0:
        raise ValueError(f"Exchange rate must be positive, got {exchange_rate}")
    ngn_amount = fiat_equivalent(usdc_amount, exchange_rate)
    fee_ngn = tiered_fee(ngn_amount, tiers)
    net = max(ngn_amount - fee_ngn, Decimal("0"))
    fee_usdc = (fee_ngn / exchange_rate).quantize(USDC_QUANT, rounding=ROUND_HALF_UP)
    return SettlementQuote(
        usdc_amount=usdc_amount,
        exchange_rate=exchange_rate,
        ngn_amount=ngn_amount,
        fee_ngn=fee_ngn,
        fee_usdc=fee_usdc,
        net_payout_ngn=net,
        fee_tiers=list(tiers),
        computed_at=(computed_at or datetime.now(timezone.utc)).isoformat(),
    )


def recompute_from_snapshot(snapshot: Dict[str, Any]) -> SettlementQuote:
    """Rebuild the quote using only what was captured on the row"""
    return compute_settlement_quote(
        Decimal(snapshot["usdc_amount"]),
        Decimal(snapshot["exchange_rate"]),
        parse_fee_tiers(snapshot.get("fee_tiers", [])),
        computed_at=datetime.fromisoformat(snapshot["computed_at"]) if snapshot.get("computed_at") else None,
    )
