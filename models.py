"""
Gift Escrow Settlement - Database Schema
========================================

Tables backing the gift link lifecycle:
- Gifts (single asset or bundle) and their status/audit trail
- Bundle templates and their ordered asset legs
- One-time escrow accounts holding encrypted secrets
- Swap operations converting the funding asset into bundle legs
- Onramp credit ledger entries, onramp transactions and the card/fee charge log

Rows are never deleted; only status and audit columns advance.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, text
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class GiftStatus(Enum):
    """Gift lifecycle states"""
    PENDING_PAYMENT = "pending_payment"
    SENT = "SENT"
    CLAIMED = "CLAIMED"
    EXPIRED = "EXPIRED"
    EXPIRED_EMPTY = "EXPIRED_EMPTY"
    EXPIRED_LOW_BALANCE = "EXPIRED_LOW_BALANCE"
    REFUNDED = "REFUNDED"


class GiftKind(Enum):
    """Single-asset gift or multi-asset bundle gift"""
    SINGLE = "single"
    BUNDLE = "bundle"


class OnrampStatus(Enum):
    """Funding progress reported by the payment collaborator"""
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SwapStatus(Enum):
    """Swap operation lifecycle (also used as the gift-level swap summary)"""
    NOT_REQUIRED = "not_required"
    PREPARED = "prepared"
    PENDING_SIGNATURE = "pending_signature"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentChannel(Enum):
    """How the sender funds a gift"""
    WALLET = "wallet"
    ONRAMP = "onramp"


class CardTransactionKind(Enum):
    """Charges that may be waived by onramp credits"""
    CARD_ADD = "card_add"
    SERVICE_FEE = "service_fee"


# ============================================================================
# GIFTS
# ============================================================================

class BundleTemplate(Base):
    """Curated multi-asset bundle offered to senders"""
    __tablename__ = "bundle_templates"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    total_usd_value = Column(Numeric(38, 18), nullable=False)
    display_order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    badge_text = Column(String(50), nullable=True)
    badge_color = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    legs = relationship(
        "BundleLeg",
        back_populates="bundle",
        order_by="BundleLeg.display_order",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_bundle_active_order", "is_active", "display_order"),
        CheckConstraint("total_usd_value > 0", name="ck_bundle_positive_value"),
    )

    def __repr__(self):
        return f"<BundleTemplate(id={self.id}, name='{self.name}', total_usd_value={self.total_usd_value})>"


class BundleLeg(Base):
    """One asset allocation within a bundle"""
    __tablename__ = "bundle_legs"

    id = Column(Integer, primary_key=True)
    bundle_id = Column(Integer, ForeignKey("bundle_templates.id"), nullable=False, index=True)
    mint = Column(String(64), nullable=False)
    symbol = Column(String(20), nullable=False)
    decimals = Column(Integer, nullable=False, default=9)
    percentage = Column(Numeric(7, 4), nullable=False)
    display_order = Column(Integer, default=0, nullable=False)

    bundle = relationship("BundleTemplate", back_populates="legs")

    __table_args__ = (
        UniqueConstraint("bundle_id", "mint", name="uq_bundle_leg_mint"),
        CheckConstraint("percentage > 0 AND percentage <= 100", name="ck_bundle_leg_percentage"),
    )

    def __repr__(self):
        return f"<BundleLeg(bundle_id={self.bundle_id}, symbol='{self.symbol}', percentage={self.percentage})>"


class Gift(Base):
    """A value commitment redeemable once through a claim link"""
    __tablename__ = "gifts"

    id = Column(String(64), primary_key=True)
    kind = Column(String(10), nullable=False, default=GiftKind.SINGLE.value)

    # Parties
    sender_identity = Column(String(255), nullable=False, index=True)
    sender_contact = Column(String(255), nullable=False)
    sender_wallet = Column(String(64), nullable=False)
    recipient_contact = Column(String(255), nullable=False, index=True)

    # Requested value: single asset fields, or a bundle reference
    token_mint = Column(String(64), nullable=True)
    token_symbol = Column(String(20), nullable=True)
    token_decimals = Column(Integer, nullable=True)
    amount = Column(Numeric(38, 18), nullable=True)
    bundle_id = Column(Integer, ForeignKey("bundle_templates.id"), nullable=True, index=True)
    usd_value = Column(Numeric(38, 18), nullable=True)
    message = Column(Text, nullable=True)
    include_add_on = Column(Boolean, default=False, nullable=False)
    payment_channel = Column(String(20), nullable=False, default=PaymentChannel.WALLET.value)

    # Lifecycle
    status = Column(String(30), nullable=False, default=GiftStatus.PENDING_PAYMENT.value, index=True)
    onramp_status = Column(String(30), nullable=False, default=OnrampStatus.NOT_REQUIRED.value)
    swap_status = Column(String(30), nullable=False, default=SwapStatus.NOT_REQUIRED.value)
    funding_signature = Column(String(128), nullable=True)

    # Claim link
    claim_token = Column(String(64), unique=True, nullable=False, index=True)
    claim_attempts = Column(Integer, default=0, nullable=False)
    last_claim_attempt = Column(DateTime(timezone=True), nullable=True)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    claimed_by = Column(String(255), nullable=True)
    claim_signature = Column(String(128), nullable=True)

    # Refund tracking
    refund_attempts = Column(Integer, default=0, nullable=False)
    last_refund_attempt = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    refund_transaction_signature = Column(String(128), nullable=True)
    refunded_amount = Column(Numeric(38, 18), nullable=True)
    refund_error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    bundle = relationship("BundleTemplate")
    escrow_accounts = relationship("EscrowAccount", back_populates="gift", order_by="EscrowAccount.id")
    swap_operations = relationship("SwapOperation", back_populates="gift", order_by="SwapOperation.id")

    __table_args__ = (
        Index("idx_gift_refund_scan", "status", "expires_at", "refund_attempts"),
        Index("idx_gift_sender_created", "sender_identity", "created_at"),
        CheckConstraint(
            "claimed_at IS NULL OR refunded_at IS NULL",
            name="ck_gift_claim_xor_refund",
        ),
        CheckConstraint("refund_attempts >= 0", name="ck_gift_refund_attempts_non_negative"),
    )

    @property
    def is_bundle(self) -> bool:
        return self.kind == GiftKind.BUNDLE.value

    def __repr__(self):
        return f"<Gift(id='{self.id}', kind='{self.kind}', status='{self.status}')>"


class EscrowAccount(Base):
    """One-time custodied account holding one asset of one gift"""
    __tablename__ = "escrow_accounts"

    id = Column(Integer, primary_key=True)
    gift_id = Column(String(64), ForeignKey("gifts.id"), nullable=False, index=True)
    mint = Column(String(64), nullable=False)
    symbol = Column(String(20), nullable=False)
    decimals = Column(Integer, nullable=False, default=9)
    public_key = Column(String(64), unique=True, nullable=False)
    encrypted_secret = Column(Text, nullable=False)
    token_amount = Column(Numeric(38, 18), nullable=False)

    funded = Column(Boolean, default=False, nullable=False)
    funding_signature = Column(String(128), nullable=True)
    claimed = Column(Boolean, default=False, nullable=False)
    refunded = Column(Boolean, default=False, nullable=False)
    refund_signature = Column(String(128), nullable=True)
    refunded_amount = Column(Numeric(38, 18), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    gift = relationship("Gift", back_populates="escrow_accounts")

    __table_args__ = (
        UniqueConstraint("gift_id", "mint", name="uq_escrow_gift_mint"),
        CheckConstraint("NOT (claimed AND refunded)", name="ck_escrow_claim_xor_refund"),
    )

    def __repr__(self):
        # Never include the encrypted secret
        return f"<EscrowAccount(gift_id='{self.gift_id}', symbol='{self.symbol}', public_key='{self.public_key}')>"


class SwapOperation(Base):
    """Conversion of the funding asset into one bundle leg via the aggregator"""
    __tablename__ = "swap_operations"

    id = Column(Integer, primary_key=True)
    gift_id = Column(String(64), ForeignKey("gifts.id"), nullable=False, index=True)
    input_mint = Column(String(64), nullable=False)
    output_mint = Column(String(64), nullable=False)
    output_symbol = Column(String(20), nullable=True)
    input_amount = Column(Numeric(38, 18), nullable=False)
    expected_output_amount = Column(Numeric(38, 18), nullable=True)
    output_amount = Column(Numeric(38, 18), nullable=True)
    slippage_bps = Column(Integer, nullable=False, default=300)
    quote_response = Column(JSON, nullable=True)
    unsigned_transaction = Column(Text, nullable=True)
    transaction_signature = Column(String(128), nullable=True)
    status = Column(String(30), nullable=False, default=SwapStatus.PREPARED.value, index=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    gift = relationship("Gift", back_populates="swap_operations")

    __table_args__ = (
        CheckConstraint(
            "status != 'completed' OR transaction_signature IS NOT NULL",
            name="ck_swap_completed_has_signature",
        ),
    )

    def __repr__(self):
        return f"<SwapOperation(id={self.id}, gift_id='{self.gift_id}', status='{self.status}')>"


# ============================================================================
# ONRAMP CREDITS
# ============================================================================

class CreditLedgerEntry(Base):
    """Time-boxed allowance of free sends and fee waivers tied to a funding event"""
    __tablename__ = "credit_ledger_entries"

    id = Column(Integer, primary_key=True)
    identity = Column(String(255), nullable=False, index=True)
    funding_tx_ref = Column(String(255), unique=True, nullable=False)

    total_credits_issued = Column(Numeric(38, 18), nullable=False)
    credits_remaining = Column(Numeric(38, 18), nullable=False)
    card_adds_free_used = Column(Integer, default=0, nullable=False)
    card_adds_allowed = Column(Integer, default=0, nullable=False)
    service_fee_free_used = Column(Integer, default=0, nullable=False)
    service_fee_free_allowed = Column(Integer, default=0, nullable=False)

    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    __table_args__ = (
        Index("idx_credit_identity_active", "identity", "is_active", "expires_at"),
        # One active entry per identity; expired ones are deactivated before a new one is opened
        Index(
            "uq_credit_one_active_per_identity",
            "identity",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
        CheckConstraint("card_adds_free_used <= card_adds_allowed", name="ck_credit_card_adds_bounded"),
        CheckConstraint(
            "service_fee_free_used <= service_fee_free_allowed",
            name="ck_credit_service_fee_bounded",
        ),
        CheckConstraint("credits_remaining >= 0", name="ck_credit_remaining_non_negative"),
    )

    def __repr__(self):
        return f"<CreditLedgerEntry(identity='{self.identity}', remaining={self.credits_remaining}, active={self.is_active})>"


class CreditIssuance(Base):
    """Idempotency record: one row per funding event that issued or topped up credit"""
    __tablename__ = "credit_issuances"

    id = Column(Integer, primary_key=True)
    funding_tx_ref = Column(String(255), unique=True, nullable=False)
    identity = Column(String(255), nullable=False, index=True)
    credit_entry_id = Column(Integer, ForeignKey("credit_ledger_entries.id"), nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)
    is_top_up = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<CreditIssuance(ref='{self.funding_tx_ref}', entry={self.credit_entry_id}, top_up={self.is_top_up})>"


class OnrampTransaction(Base):
    """Fiat onramp purchase reported by the payment provider"""
    __tablename__ = "onramp_transactions"

    id = Column(Integer, primary_key=True)
    identity = Column(String(255), nullable=False, index=True)
    provider_tx_ref = Column(String(255), unique=True, nullable=False)
    amount_fiat = Column(Numeric(38, 18), nullable=True)
    currency = Column(String(10), nullable=False, default="USD")
    asset_amount = Column(Numeric(38, 18), nullable=True)
    wallet_address = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False, default=OnrampStatus.PENDING.value)
    credit_issued = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<OnrampTransaction(ref='{self.provider_tx_ref}', status='{self.status}')>"


class CardTransaction(Base):
    """Log of every waivable charge and whether a credit covered it"""
    __tablename__ = "card_transactions"

    id = Column(Integer, primary_key=True)
    identity = Column(String(255), nullable=False, index=True)
    gift_id = Column(String(64), ForeignKey("gifts.id"), nullable=True)
    credit_entry_id = Column(Integer, ForeignKey("credit_ledger_entries.id"), nullable=True)
    kind = Column(String(20), nullable=False)
    amount_charged = Column(Numeric(38, 18), nullable=False, default=Decimal("0"))
    is_free = Column(Boolean, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<CardTransaction(identity='{self.identity}', kind='{self.kind}', is_free={self.is_free})>"


def utcnow() -> datetime:
    """Naive UTC timestamp used for all writes and comparisons"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value):
    """Normalize a stored timestamp to naive UTC for Python-side comparisons"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
