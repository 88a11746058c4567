"""
Onramp Credit Ledger
Funding-linked allowances of free card adds (sends) and service-fee waivers.

Issuance is idempotent per funding reference; consumption is a conditional
UPDATE ... WHERE used < allowed so concurrent sends can never overdraw a counter.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from database import managed_session
from models import (
    CardTransaction,
    CardTransactionKind,
    CreditIssuance,
    CreditLedgerEntry,
    OnrampStatus,
    OnrampTransaction,
    to_naive_utc,
    utcnow,
)
from utils.exceptions import IdempotencyConflict, ValidationError
from utils.retry_policy import CREDIT_SWEEP_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaiverResult:
    is_free: bool
    free_remaining: int
    credits_remaining: Decimal
    amount_charged: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isFree": self.is_free,
            "freeRemaining": self.free_remaining,
            "creditsRemaining": float(self.credits_remaining),
            "amountCharged": float(self.amount_charged),
        }


@dataclass(frozen=True)
class CreditIssueResult:
    credit_entry_id: Optional[int]
    issued: bool
    topped_up: bool
    already_issued: bool
    credits_remaining: Decimal


class CreditLedger:
    """Issues, consumes and expires onramp credits"""

    # Counter columns per waiver kind: (used, allowed)
    _COUNTERS = {
        CardTransactionKind.CARD_ADD: ("card_adds_free_used", "card_adds_allowed"),
        CardTransactionKind.SERVICE_FEE: ("service_fee_free_used", "service_fee_free_allowed"),
    }

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Config,
        sweep_retry_policy: RetryPolicy = CREDIT_SWEEP_RETRY_POLICY,
    ):
        self.session_factory = session_factory
        self.config = config
        self.sweep_retry_policy = sweep_retry_policy

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _active_entry(session: Session, identity: str) -> Optional[CreditLedgerEntry]:
        return session.execute(
            select(CreditLedgerEntry)
            .where(
                CreditLedgerEntry.identity == identity,
                CreditLedgerEntry.is_active.is_(True),
                CreditLedgerEntry.expires_at > utcnow(),
            )
            .order_by(CreditLedgerEntry.issued_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def get_active(self, identity: str) -> Optional[CreditLedgerEntry]:
        """Single active, non-expired entry for the identity, or None"""
        with managed_session(self.session_factory) as session:
            return self._active_entry(session, identity)

    def get_status(self, identity: str) -> Dict[str, Any]:
        entry = self.get_active(identity)
        if entry is None:
            return {"isActive": False, "message": "No active onramp credit"}

        now = utcnow()
        expires_at = to_naive_utc(entry.expires_at)
        seconds_left = max(0.0, (expires_at - now).total_seconds())
        return {
            "isActive": True,
            "id": entry.id,
            "totalCreditsIssued": float(entry.total_credits_issued),
            "creditsRemaining": float(entry.credits_remaining),
            "freeSendsRemaining": entry.card_adds_allowed - entry.card_adds_free_used,
            "cardAddsFreeUsed": entry.card_adds_free_used,
            "cardAddsAllowed": entry.card_adds_allowed,
            "feeWaiversRemaining": entry.service_fee_free_allowed - entry.service_fee_free_used,
            "serviceFeeFreeUsed": entry.service_fee_free_used,
            "serviceFeeFreeAllowed": entry.service_fee_free_allowed,
            "daysRemaining": int(-(-seconds_left // 86400)),
            "issuedAt": to_naive_utc(entry.issued_at).isoformat(),
            "expiresAt": expires_at.isoformat(),
        }

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def _issue_in_session(
        self,
        session: Session,
        identity: str,
        funding_tx_ref: str,
        amount: Decimal,
        free_sends: int,
        free_fee_waivers: int,
        ttl: timedelta,
    ) -> CreditIssueResult:
        already = session.execute(
            select(CreditIssuance.id).where(CreditIssuance.funding_tx_ref == funding_tx_ref)
        ).first()
        if already is not None:
            raise IdempotencyConflict(f"Credit already issued for {funding_tx_ref}")

        now = utcnow()
        # Expired entries must stop counting as active before a new one can open
        session.execute(
            update(CreditLedgerEntry)
            .where(
                CreditLedgerEntry.identity == identity,
                CreditLedgerEntry.is_active.is_(True),
                CreditLedgerEntry.expires_at <= now,
            )
            .values(is_active=False)
        )

        entry = self._active_entry(session, identity)
        if entry is not None:
            session.execute(
                update(CreditLedgerEntry)
                .where(CreditLedgerEntry.id == entry.id, CreditLedgerEntry.is_active.is_(True))
                .values(
                    credits_remaining=CreditLedgerEntry.credits_remaining + amount,
                    total_credits_issued=CreditLedgerEntry.total_credits_issued + amount,
                    card_adds_allowed=CreditLedgerEntry.card_adds_allowed + free_sends,
                )
            )
            session.add(CreditIssuance(
                funding_tx_ref=funding_tx_ref,
                identity=identity,
                credit_entry_id=entry.id,
                amount=amount,
                is_top_up=True,
            ))
            session.flush()
            session.refresh(entry)
            logger.info(f"💚 CREDIT_TOPPED_UP: {identity} +${amount} remaining=${entry.credits_remaining}")
            return CreditIssueResult(entry.id, True, True, False, Decimal(entry.credits_remaining))

        prior_entries = session.execute(
            select(func.count(CreditLedgerEntry.id)).where(CreditLedgerEntry.identity == identity)
        ).scalar() or 0

        entry = CreditLedgerEntry(
            identity=identity,
            funding_tx_ref=funding_tx_ref,
            total_credits_issued=amount,
            credits_remaining=amount,
            card_adds_free_used=0,
            card_adds_allowed=free_sends,
            service_fee_free_used=0,
            # Fee waivers are a first-funding perk only
            service_fee_free_allowed=free_fee_waivers if prior_entries == 0 else 0,
            issued_at=now,
            expires_at=now + ttl,
            is_active=True,
        )
        session.add(entry)
        session.flush()
        session.add(CreditIssuance(
            funding_tx_ref=funding_tx_ref,
            identity=identity,
            credit_entry_id=entry.id,
            amount=amount,
            is_top_up=False,
        ))
        session.flush()
        logger.info(f"💚 CREDIT_ISSUED: {identity} ${amount} ({free_sends} free sends) entry={entry.id}")
        return CreditIssueResult(entry.id, True, False, False, Decimal(amount))

    def issue(
        self,
        identity: str,
        funding_tx_ref: str,
        amount: Optional[Decimal] = None,
        free_sends: Optional[int] = None,
        free_fee_waivers: Optional[int] = None,
        ttl: Optional[timedelta] = None,
    ) -> CreditIssueResult:
        """Issue or top up credit for a funding event; repeats of the same ref are no-ops"""
        if not identity or not funding_tx_ref:
            raise ValidationError("identity and funding_tx_ref are required")

        amount = Decimal(str(amount)) if amount is not None else self.config.CREDIT_AMOUNT_USD
        free_sends = self.config.CREDIT_FREE_SENDS if free_sends is None else free_sends
        free_fee_waivers = self.config.CREDIT_FREE_FEE_WAIVERS if free_fee_waivers is None else free_fee_waivers
        ttl = ttl or timedelta(days=self.config.CREDIT_TTL_DAYS)

        try:
            with managed_session(self.session_factory) as session:
                return self._issue_in_session(
                    session, identity, funding_tx_ref, amount, free_sends, free_fee_waivers, ttl
                )
        except IdempotencyConflict:
            logger.info(f"🔁 CREDIT_ALREADY_ISSUED: {funding_tx_ref} - no-op")
        except IntegrityError:
            # A concurrent issuance won the unique key race
            logger.info(f"🔁 CREDIT_ISSUE_RACE: {funding_tx_ref} issued concurrently - no-op")

        entry = self.get_active(identity)
        return CreditIssueResult(
            credit_entry_id=entry.id if entry else None,
            issued=False,
            topped_up=False,
            already_issued=True,
            credits_remaining=Decimal(entry.credits_remaining) if entry else Decimal("0"),
        )

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def _consume(
        self,
        kind: CardTransactionKind,
        identity: str,
        price: Decimal,
        gift_id: Optional[str] = None,
    ) -> WaiverResult:
        used_name, allowed_name = self._COUNTERS[kind]
        used_col = getattr(CreditLedgerEntry, used_name)
        allowed_col = getattr(CreditLedgerEntry, allowed_name)

        with managed_session(self.session_factory) as session:
            entry = self._active_entry(session, identity)
            is_free = False
            if entry is not None:
                conditions = [
                    CreditLedgerEntry.id == entry.id,
                    CreditLedgerEntry.is_active.is_(True),
                    used_col < allowed_col,
                ]
                values = {used_name: used_col + 1}
                # Only card adds draw down the credit balance; fee waivers are counted only
                if kind == CardTransactionKind.CARD_ADD:
                    conditions.append(CreditLedgerEntry.credits_remaining >= price)
                    values["credits_remaining"] = CreditLedgerEntry.credits_remaining - price
                result = session.execute(
                    update(CreditLedgerEntry).where(*conditions).values(values)
                )
                is_free = result.rowcount == 1
                session.refresh(entry)

            session.add(CardTransaction(
                identity=identity,
                gift_id=gift_id,
                credit_entry_id=entry.id if entry else None,
                kind=kind.value,
                amount_charged=Decimal("0") if is_free else price,
                is_free=is_free,
            ))

            free_remaining = (getattr(entry, allowed_name) - getattr(entry, used_name)) if entry else 0
            credits_remaining = Decimal(entry.credits_remaining) if entry else Decimal("0")

        label = "FREE" if is_free else "PAID"
        logger.info(f"📋 {kind.value.upper()}_{label}: {identity} free_remaining={free_remaining}")
        return WaiverResult(
            is_free=is_free,
            free_remaining=free_remaining,
            credits_remaining=credits_remaining,
            amount_charged=Decimal("0") if is_free else price,
        )

    def consume_send_waiver(self, identity: str, gift_id: Optional[str] = None) -> WaiverResult:
        """Use one free card add if any remain; otherwise the send is charged"""
        return self._consume(CardTransactionKind.CARD_ADD, identity, self.config.CARD_ADD_ON_FEE_USD, gift_id)

    def consume_fee_waiver(self, identity: str, gift_id: Optional[str] = None) -> WaiverResult:
        """Use one service-fee waiver if any remain; otherwise the fee is charged"""
        return self._consume(CardTransactionKind.SERVICE_FEE, identity, self.config.SERVICE_FEE_USD, gift_id)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def _deactivate_expired(self) -> int:
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(CreditLedgerEntry)
                .where(CreditLedgerEntry.is_active.is_(True), CreditLedgerEntry.expires_at <= utcnow())
                .values(is_active=False)
            )
            return result.rowcount or 0

    async def expire_sweep(self) -> int:
        """Mark every expired active entry inactive; safe to run any number of times"""

        async def attempt() -> int:
            return self._deactivate_expired()

        count = await self.sweep_retry_policy.run(attempt, retry_on=(OperationalError,), name="credit_expire_sweep")
        logger.info(f"🧹 CREDIT_SWEEP: deactivated {count} expired credit(s)")
        return count

    # ------------------------------------------------------------------
    # Onramp transactions
    # ------------------------------------------------------------------

    def record_onramp(
        self,
        identity: str,
        provider_tx_ref: str,
        status: str = OnrampStatus.COMPLETED.value,
        amount_fiat: Optional[Decimal] = None,
        currency: str = "USD",
        asset_amount: Optional[Decimal] = None,
        wallet_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Track an onramp purchase and issue credit once it completes"""
        with managed_session(self.session_factory) as session:
            tx = session.execute(
                select(OnrampTransaction).where(OnrampTransaction.provider_tx_ref == provider_tx_ref)
            ).scalar_one_or_none()
            if tx is None:
                tx = OnrampTransaction(
                    identity=identity,
                    provider_tx_ref=provider_tx_ref,
                    amount_fiat=amount_fiat,
                    currency=currency,
                    asset_amount=asset_amount,
                    wallet_address=wallet_address,
                    status=status,
                )
                session.add(tx)
            elif tx.status != OnrampStatus.COMPLETED.value:
                tx.status = status
            if status == OnrampStatus.COMPLETED.value and tx.completed_at is None:
                tx.completed_at = utcnow()
            session.flush()
            completed = tx.status == OnrampStatus.COMPLETED.value
            credit_issued = tx.credit_issued

        if not completed or credit_issued:
            return {"success": True, "creditIssued": credit_issued, "status": status}

        result = self.issue(identity, provider_tx_ref)
        with managed_session(self.session_factory) as session:
            session.execute(
                update(OnrampTransaction)
                .where(
                    OnrampTransaction.provider_tx_ref == provider_tx_ref,
                    OnrampTransaction.credit_issued.is_(False),
                )
                .values(credit_issued=True)
            )
        return {
            "success": True,
            "creditIssued": True,
            "creditId": result.credit_entry_id,
            "creditsRemaining": float(result.credits_remaining),
        }
