"""
Off-ramp Settlement Service - Database Schema
=============================================

One row per off-ramp request plus a per-token swap leg log:
- Custodial deposit address derived from the master mnemonic
- Detected token deposit, USDC settlement and NGN payout figures
- Status machine with per-stage timestamps and attempt counters

Every failure is written back to these rows so the ledger alone is enough to
reconstruct what happened to a transaction.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Text, JSON,
    ForeignKey, Index, CheckConstraint, func
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB, "postgresql")


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OfframpStatus(Enum):
    """Off-ramp transaction states"""
    PENDING = "pending"
    TOKEN_RECEIVED = "token_received"
    SWAPPING = "swapping"
    USDC_RECEIVED = "usdc_received"
    PAYING = "paying"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class DerivationScheme(Enum):
    """Which identifier fed the deposit address derivation"""
    USER_ID = "user_id"
    TRANSACTION_ID = "transaction_id"


class SwapProvider(Enum):
    ZEROX = "0x"
    AERODROME = "aerodrome"
    NONE = "none"  # deposit was already USDC


class SwapLegStatus(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    SKIPPED_DUST = "skipped_dust"


def _in_values(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# OFF-RAMP TRANSACTIONS
# ============================================================================

class OfframpTransaction(Base):
    """Off-ramp request: token deposit -> USDC -> NGN bank payout"""
    __tablename__ = 'offramp_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)  # Public ID, payout reference
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)  # Null for guest flows
    user_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Custody
    deposit_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)  # Stored lowercased, reused per user
    encrypted_private_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    derivation_identifier: Mapped[str] = mapped_column(String(64), nullable=False)
    derivation_scheme: Mapped[str] = mapped_column(String(20), nullable=False, default=DerivationScheme.USER_ID.value)
    derivation_index: Mapped[int] = mapped_column(Integer, nullable=False)

    # Payout target (name verified by enquiry before the row exists)
    account_number: Mapped[str] = mapped_column(String(20), nullable=False)
    account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    bank_code: Mapped[str] = mapped_column(String(20), nullable=False)
    bank_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Detected deposit (token_address NULL = native ETH)
    token_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    token_symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    token_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(38, 18), nullable=True)
    token_amount_raw: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    # Settlement figures
    usdc_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(38, 6), nullable=True)
    usdc_amount_raw: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    ngn_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)  # Gross fiat equivalent
    fee_ngn: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)
    fee_in_token: Mapped[Optional[Decimal]] = mapped_column(Numeric(38, 6), nullable=True)  # Fee in USDC terms
    net_payout_ngn: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)
    exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 6), nullable=True)
    # Immutable rate and fee tiers used for the figures above
    pricing_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Swap and on-chain audit
    swap_provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    quoted_usdc_raw: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    swap_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    settlement_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)  # USDC -> treasury
    refund_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    # Payout audit
    payout_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payout_attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Amount the user asked to cash out when requesting the quote
    requested_ngn_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)
    # On-ramp linkage used by expired-but-paid reconciliation
    fiat_deposit_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Status and processing
    status: Mapped[str] = mapped_column(String(20), default=OfframpStatus.PENDING.value, nullable=False)
    swap_attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
    token_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    swapping_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    usdc_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paying_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    swap_legs: Mapped[list["OfframpSwapLeg"]] = relationship(
        "OfframpSwapLeg", back_populates="transaction", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(_in_values("status", OfframpStatus), name='ck_offramp_status_valid'),
        CheckConstraint(_in_values("derivation_scheme", DerivationScheme), name='ck_offramp_derivation_scheme_valid'),
        CheckConstraint('swap_attempt_count >= 0', name='ck_offramp_swap_attempts_positive'),
        CheckConstraint('payout_attempt_count >= 0', name='ck_offramp_payout_attempts_positive'),
        CheckConstraint(
            f"status != '{OfframpStatus.COMPLETED.value}' OR settlement_tx_hash IS NOT NULL",
            name='ck_offramp_completed_has_settlement_hash'
        ),
        Index('ix_offramp_status_created', 'status', 'created_at'),
        Index('ix_offramp_status_updated', 'status', 'updated_at'),
        Index('ix_offramp_user_status', 'user_id', 'status'),
    )

    @property
    def status_enum(self) -> OfframpStatus:
        return OfframpStatus(self.status)

    def __repr__(self):
        return f"<OfframpTransaction {self.transaction_id} {self.status}>"


class OfframpSwapLeg(Base):
    """One token swapped (or skipped) out of a deposit wallet"""
    __tablename__ = 'offramp_swap_legs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_pk: Mapped[int] = mapped_column(Integer, ForeignKey('offramp_transactions.id', ondelete='CASCADE'), nullable=False, index=True)
    token_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    token_symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    amount_raw: Mapped[str] = mapped_column(String(80), nullable=False)
    provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    quoted_output_raw: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    realized_output_raw: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)

    transaction: Mapped["OfframpTransaction"] = relationship("OfframpTransaction", back_populates="swap_legs")

    __table_args__ = (
        CheckConstraint(_in_values("status", SwapLegStatus), name='ck_offramp_swap_leg_status_valid'),
    )
