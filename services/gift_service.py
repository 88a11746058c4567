"""
Gift Service
The entry points the outer surface calls: send creation, fee quotes, status polling,
swap confirmation, send completion, claim bookkeeping, credit reads and the sweeps.

Every collaborator is passed in; nothing here reaches for a module-level engine,
config or client.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from config import Config
from database import managed_session
from models import (
    EscrowAccount,
    Gift,
    GiftKind,
    GiftStatus,
    OnrampStatus,
    PaymentChannel,
    SwapStatus,
    to_naive_utc,
    utcnow,
)
from services.bundle_catalog import BundleCatalog, BundlePlan
from services.credit_ledger import CreditLedger
from services.escrow_funding import EscrowFundingInstruction, EscrowFundingService
from services.gift_refund_service import GiftRefundService
from services.notification_service import GiftNotifier, LoggingGiftNotifier, notify_best_effort
from services.price_oracle import PriceOracle
from services.secret_custody import generate_claim_token
from services.swap_orchestrator import PreparedSwap, SwapOrchestrator
from utils.exceptions import (
    GiftLockedError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from utils.fee_calculator import FeeBreakdown, FeeCalculator, GiftLeg
from utils.gift_state_machine import GiftStateValidator, transition_gift
from utils.token_registry import KNOWN_TOKENS, TokenInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SenderIdentity:
    """Caller as resolved by the identity collaborator"""
    identity: str
    contact: str
    wallet: str


def generate_gift_id() -> str:
    return f"GF{secrets.token_hex(8).upper()}"


class GiftService:
    """Facade over the settlement components"""

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Config,
        price_oracle: PriceOracle,
        fee_calculator: FeeCalculator,
        bundle_catalog: BundleCatalog,
        escrow_funding: EscrowFundingService,
        swap_orchestrator: SwapOrchestrator,
        refund_service: GiftRefundService,
        credit_ledger: CreditLedger,
        notifier: Optional[GiftNotifier] = None,
    ):
        self.session_factory = session_factory
        self.config = config
        self.price_oracle = price_oracle
        self.fee_calculator = fee_calculator
        self.bundle_catalog = bundle_catalog
        self.escrow_funding = escrow_funding
        self.swap_orchestrator = swap_orchestrator
        self.refund_service = refund_service
        self.credit_ledger = credit_ledger
        self.notifier = notifier or LoggingGiftNotifier()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_token(mint: str, symbol: Optional[str], decimals: Optional[int]) -> TokenInfo:
        known = KNOWN_TOKENS.get(mint)
        if known is not None:
            return known
        if symbol and decimals is not None:
            return TokenInfo(mint, symbol, int(decimals))
        raise NotFoundError(f"Unknown asset {mint}", details={"mint": mint})

    @staticmethod
    def _validate_request(token_mint: Optional[str], amount: Optional[Decimal], bundle_id: Optional[int]) -> None:
        if bundle_id is not None and token_mint:
            raise ValidationError("A send is either a single asset or a bundle, not both")
        if bundle_id is None:
            if not token_mint:
                raise ValidationError("A send needs an asset or a bundle")
            if amount is None or Decimal(str(amount)) <= 0:
                raise ValidationError("Amount must be positive")

    @staticmethod
    def _validate_channel(payment_channel: str) -> None:
        if payment_channel not in {c.value for c in PaymentChannel}:
            raise ValidationError(f"Unknown payment channel: {payment_channel}")

    def _load_gift(self, gift_id: str) -> Gift:
        with managed_session(self.session_factory) as session:
            gift = session.get(Gift, gift_id)
            if gift is None:
                raise NotFoundError(f"Gift {gift_id} not found", details={"gift_id": gift_id})
            return gift

    def _bundle_for(self, gift: Gift) -> BundlePlan:
        if not gift.is_bundle or gift.bundle_id is None:
            raise ValidationError(f"Gift {gift.id} is not a bundle gift")
        return self.bundle_catalog.get(gift.bundle_id)

    def _expiry_window(self, gift: Gift) -> timedelta:
        hours = self.config.BUNDLE_GIFT_EXPIRY_HOURS if gift.is_bundle else self.config.GIFT_EXPIRY_HOURS
        return timedelta(hours=hours)

    @staticmethod
    def _summary(gift: Gift) -> Dict[str, Any]:
        return {
            "id": gift.id,
            "kind": gift.kind,
            "status": gift.status,
            "recipient_contact": gift.recipient_contact,
            "token_symbol": gift.token_symbol,
            "amount": str(gift.amount) if gift.amount is not None else None,
            "bundle_id": gift.bundle_id,
            "usd_value": str(gift.usd_value) if gift.usd_value is not None else None,
            "message": gift.message,
            "created_at": gift.created_at.isoformat() if gift.created_at else None,
            "sent_at": gift.sent_at.isoformat() if gift.sent_at else None,
            "expires_at": gift.expires_at.isoformat() if gift.expires_at else None,
            "claimed_at": gift.claimed_at.isoformat() if gift.claimed_at else None,
            "refunded_at": gift.refunded_at.isoformat() if gift.refunded_at else None,
            "refund_transaction_signature": gift.refund_transaction_signature,
        }

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def _legs_for(
        self,
        token_mint: Optional[str],
        amount: Optional[Decimal],
        bundle_id: Optional[int],
        token_symbol: Optional[str] = None,
        token_decimals: Optional[int] = None,
    ) -> List[GiftLeg]:
        if bundle_id is not None:
            return self.bundle_catalog.get(bundle_id).gift_legs()
        token = self._resolve_token(token_mint, token_symbol, token_decimals)
        price = await self.price_oracle.current_price(token.mint)
        return [GiftLeg(token.mint, token.symbol, Decimal(str(amount)) * price)]

    async def calculate_fees(
        self,
        token_mint: Optional[str] = None,
        amount: Optional[Decimal] = None,
        bundle_id: Optional[int] = None,
        include_add_on: bool = False,
        payment_channel: str = PaymentChannel.WALLET.value,
        token_symbol: Optional[str] = None,
        token_decimals: Optional[int] = None,
    ) -> FeeBreakdown:
        """Quote the full cost of a send before anything is persisted"""
        self._validate_request(token_mint, amount, bundle_id)
        self._validate_channel(payment_channel)
        legs = await self._legs_for(token_mint, amount, bundle_id, token_symbol, token_decimals)
        native_price = await self.price_oracle.native_price()
        return self.fee_calculator.calculate_fees(legs, native_price, include_add_on, payment_channel)

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def create_send(
        self,
        sender: SenderIdentity,
        recipient_contact: str,
        token_mint: Optional[str] = None,
        amount: Optional[Decimal] = None,
        bundle_id: Optional[int] = None,
        message: Optional[str] = None,
        include_add_on: bool = False,
        payment_channel: str = PaymentChannel.WALLET.value,
        token_symbol: Optional[str] = None,
        token_decimals: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Persist a pending_payment gift with its claim token.

        Single-asset gifts get their escrow immediately and return its funding
        instruction. Bundle gifts return the over-provisioned funding amount; their
        escrows are issued after swaps complete.
        """
        if not recipient_contact:
            raise ValidationError("Recipient contact is required")
        if not sender.wallet:
            raise ValidationError("Sender wallet is required")
        self._validate_request(token_mint, amount, bundle_id)
        self._validate_channel(payment_channel)
        GiftStateValidator.validate_transition(None, GiftStatus.PENDING_PAYMENT.value)

        plan: Optional[BundlePlan] = None
        token: Optional[TokenInfo] = None
        if bundle_id is not None:
            plan = self.bundle_catalog.get(bundle_id)
            usd_value = plan.total_usd_value
        else:
            token = self._resolve_token(token_mint, token_symbol, token_decimals)
            amount = Decimal(str(amount))
            usd_value = amount * await self.price_oracle.current_price(token.mint)

        gift_id = generate_gift_id()
        claim_token = generate_claim_token()
        onramp_status = (
            OnrampStatus.PENDING.value
            if payment_channel == PaymentChannel.ONRAMP.value
            else OnrampStatus.NOT_REQUIRED.value
        )
        swap_status = (
            SwapStatus.PREPARED.value
            if plan is not None and plan.swap_legs
            else SwapStatus.NOT_REQUIRED.value
        )

        instructions: List[EscrowFundingInstruction] = []
        with managed_session(self.session_factory) as session:
            gift = Gift(
                id=gift_id,
                kind=GiftKind.BUNDLE.value if plan else GiftKind.SINGLE.value,
                sender_identity=sender.identity,
                sender_contact=sender.contact,
                sender_wallet=sender.wallet,
                recipient_contact=recipient_contact.strip(),
                token_mint=token.mint if token else None,
                token_symbol=token.symbol if token else None,
                token_decimals=token.decimals if token else None,
                amount=amount if token else None,
                bundle_id=plan.id if plan else None,
                usd_value=usd_value,
                message=message,
                include_add_on=include_add_on,
                payment_channel=payment_channel,
                status=GiftStatus.PENDING_PAYMENT.value,
                onramp_status=onramp_status,
                swap_status=swap_status,
                claim_token=claim_token,
            )
            session.add(gift)
            session.flush()
            if token is not None:
                escrow = self.escrow_funding.issue_escrow(
                    session, gift_id, token.mint, token.symbol, token.decimals, amount
                )
                instructions.append(EscrowFundingInstruction.from_model(escrow))

        # Waivers are consumed once the gift row exists so the charge log can reference it
        fee_waiver = self.credit_ledger.consume_fee_waiver(sender.identity, gift_id)
        card_waiver = self.credit_ledger.consume_send_waiver(sender.identity, gift_id) if include_add_on else None

        logger.info(
            f"🎁 GIFT_CREATED: {gift_id} kind={'bundle' if plan else 'single'} "
            f"sender={sender.identity} usd={usd_value}"
        )
        result: Dict[str, Any] = {
            "success": True,
            "gift_id": gift_id,
            "claim_token": claim_token,
            "status": GiftStatus.PENDING_PAYMENT.value,
            "usd_value": str(usd_value),
            "service_fee": fee_waiver.to_dict(),
            "card_add_on": card_waiver.to_dict() if card_waiver else None,
        }
        if plan is not None:
            funding = await self.swap_orchestrator.calculate_funding_amount(plan, include_add_on)
            result["funding_amount"] = funding.to_dict()
        else:
            result["escrows"] = [i.to_dict() for i in instructions]
        return result

    def update_onramp_status(self, gift_id: str, status: str, provider_tx_ref: Optional[str] = None) -> Dict[str, Any]:
        """Record funding progress reported by the payment collaborator"""
        if status not in {s.value for s in OnrampStatus}:
            raise ValidationError(f"Unknown onramp status: {status}")
        gift = self._load_gift(gift_id)
        with managed_session(self.session_factory) as session:
            session.execute(
                update(Gift)
                .where(Gift.id == gift_id, Gift.onramp_status != OnrampStatus.COMPLETED.value)
                .values(onramp_status=status)
            )
        credit = None
        if provider_tx_ref:
            credit = self.credit_ledger.record_onramp(
                gift.sender_identity, provider_tx_ref, status=status, wallet_address=gift.sender_wallet
            )
        logger.info(f"💳 ONRAMP_STATUS: gift={gift_id} {status}")
        return {"success": True, "gift_id": gift_id, "onramp_status": status, "credit": credit}

    async def prepare_swaps(self, gift_id: str, available_native_balance: Decimal) -> List[PreparedSwap]:
        """Unsigned swap transactions for the sender's wallet to sign"""
        gift = self._load_gift(gift_id)
        if gift.status != GiftStatus.PENDING_PAYMENT.value:
            raise InvalidStateTransition(f"Gift {gift_id} is {gift.status}; swaps are only prepared before sending")
        plan = self._bundle_for(gift)
        return await self.swap_orchestrator.execute_swaps(gift_id, plan, gift.sender_wallet, available_native_balance)

    async def confirm_swap_signed(self, gift_id: str, swap_id: int, signature: str) -> Dict[str, Any]:
        return await self.swap_orchestrator.confirm_swap_signed(gift_id, swap_id, signature)

    async def issue_bundle_escrows(self, gift_id: str) -> List[EscrowFundingInstruction]:
        """Escrows for a bundle once every swap has settled"""
        gift = self._load_gift(gift_id)
        if gift.swap_status not in (SwapStatus.COMPLETED.value, SwapStatus.NOT_REQUIRED.value):
            raise InvalidStateTransition(f"Gift {gift_id} swaps are {gift.swap_status}, not completed")
        plan = self._bundle_for(gift)
        return await self.swap_orchestrator.create_bundle_escrow_accounts(gift_id, plan, gift.sender_wallet)

    def poll_status(self, gift_id: str) -> Dict[str, str]:
        gift = self._load_gift(gift_id)
        return {
            "onramp_status": gift.onramp_status,
            "swap_status": gift.swap_status,
            "gift_status": gift.status,
        }

    def record_funding(self, gift_id: str, escrow_public_key: str, signature: str) -> Dict[str, Any]:
        """Store the signature of the sender's transfer into one of the gift's escrows"""
        gift = self._load_gift(gift_id)
        if gift.status != GiftStatus.PENDING_PAYMENT.value:
            raise InvalidStateTransition(f"Gift {gift_id} is {gift.status}; funding is recorded before sending")
        self.escrow_funding.record_funding_signature(gift_id, escrow_public_key, signature)
        return {"success": True, "gift_id": gift_id, "escrow": escrow_public_key, "signature": signature}

    async def complete_send(self, gift_id: str, funding_signatures: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Move a fully funded gift to SENT and notify the recipient.

        funding_signatures maps escrow public key -> the transfer that funded it and is
        recorded before the balances are checked.

        Completion is idempotent: a gift that is already SENT reports success without
        sending a second notification.
        """
        gift = self._load_gift(gift_id)
        if gift.status == GiftStatus.SENT.value:
            return {"success": True, "gift_id": gift_id, "status": gift.status, "already_sent": True}
        if gift.status != GiftStatus.PENDING_PAYMENT.value:
            raise InvalidStateTransition(f"Gift {gift_id} is {gift.status}, cannot be sent")
        for public_key, signature in (funding_signatures or {}).items():
            self.record_funding(gift_id, public_key, signature)
        if gift.is_bundle and gift.swap_status not in (SwapStatus.COMPLETED.value, SwapStatus.NOT_REQUIRED.value):
            raise InvalidStateTransition(f"Gift {gift_id} swaps are {gift.swap_status}, not completed")

        funded = await self.escrow_funding.verify_funding(gift_id)
        if not all(funded.values()):
            unfunded = [key for key, ok in funded.items() if not ok]
            logger.warning(f"⚠️ SEND_NOT_FUNDED: gift={gift_id} unfunded escrows={len(unfunded)}")
            return {
                "success": False,
                "gift_id": gift_id,
                "status": gift.status,
                "error": "Escrow funding not yet confirmed",
                "unfunded_escrows": unfunded,
            }

        now = utcnow()
        expires_at = now + self._expiry_window(gift)
        with managed_session(self.session_factory) as session:
            changed = transition_gift(
                session, gift_id, GiftStatus.PENDING_PAYMENT.value, GiftStatus.SENT.value,
                sent_at=now, expires_at=expires_at,
            )
        if not changed:
            current = self._load_gift(gift_id)
            return {"success": current.status == GiftStatus.SENT.value, "gift_id": gift_id, "status": current.status}

        summary = self._summary(self._load_gift(gift_id))
        await notify_best_effort(
            self.notifier.gift_sent(gift.recipient_contact, gift.sender_contact, gift.claim_token, summary),
            f"gift notice for {gift_id}",
        )
        logger.info(f"✅ GIFT_SENT: {gift_id} expires_at={expires_at.isoformat()}")
        return {"success": True, "gift_id": gift_id, "status": GiftStatus.SENT.value, "expires_at": expires_at.isoformat()}

    # ------------------------------------------------------------------
    # Claim bookkeeping
    # ------------------------------------------------------------------

    def _check_lock(self, session, gift: Gift) -> None:
        locked_until = to_naive_utc(gift.locked_until)
        if locked_until is None:
            return
        now = utcnow()
        if locked_until > now:
            minutes = int(-(-(locked_until - now).total_seconds() // 60))
            raise GiftLockedError(
                "This gift is temporarily locked after repeated failed claim attempts",
                details={"locked_until": locked_until.isoformat(), "minutes_remaining": minutes},
            )
        # Lock elapsed: start a fresh attempt window
        session.execute(
            update(Gift).where(Gift.id == gift.id).values(locked_until=None, claim_attempts=0)
        )
        gift.locked_until = None
        gift.claim_attempts = 0
        logger.info(f"🔓 GIFT_UNLOCKED: {gift.id}")

    def get_gift_by_claim_token(self, claim_token: str) -> Dict[str, Any]:
        with managed_session(self.session_factory) as session:
            gift = session.execute(select(Gift).where(Gift.claim_token == claim_token)).scalar_one_or_none()
            if gift is None:
                raise NotFoundError("Gift not found")
            self._check_lock(session, gift)
            summary = self._summary(gift)
            summary["claim_attempts"] = gift.claim_attempts
            summary["escrows"] = [
                {"symbol": e.symbol, "mint": e.mint, "token_amount": str(e.token_amount), "public_key": e.public_key}
                for e in self.escrow_funding.escrows_for(session, gift.id)
            ]
            return summary

    def register_failed_claim(self, gift_id: str) -> Dict[str, Any]:
        """Count a mismatched claim; the gift locks once the limit is reached"""
        with managed_session(self.session_factory) as session:
            gift = session.get(Gift, gift_id)
            if gift is None:
                raise NotFoundError(f"Gift {gift_id} not found")
            self._check_lock(session, gift)
            session.execute(
                update(Gift)
                .where(Gift.id == gift_id)
                .values(claim_attempts=Gift.claim_attempts + 1, last_claim_attempt=utcnow())
            )
            session.refresh(gift)
            attempts = gift.claim_attempts
            locked_until = None
            if attempts >= self.config.CLAIM_MAX_FAILED_ATTEMPTS:
                locked_until = utcnow() + timedelta(minutes=self.config.CLAIM_LOCK_MINUTES)
                session.execute(update(Gift).where(Gift.id == gift_id).values(locked_until=locked_until))
                logger.error(f"🔒 GIFT_LOCKED: {gift_id} until {locked_until.isoformat()} after {attempts} failed attempts")
            else:
                logger.warning(f"⚠️ CLAIM_ATTEMPT_FAILED: {gift_id} attempt {attempts}")

        return {
            "gift_id": gift_id,
            "claim_attempts": attempts,
            "locked": locked_until is not None,
            "locked_until": locked_until.isoformat() if locked_until else None,
        }

    def record_claim(self, gift_id: str, claimed_by: str, claim_signature: str) -> Dict[str, Any]:
        """
        Called by the claim handler once the recipient's receive transaction is
        confirmed. SENT -> CLAIMED is conditional, so a refund that already won the
        race makes this fail instead of double-settling.
        """
        if not claim_signature:
            raise ValidationError("A confirmed claim signature is required")

        with managed_session(self.session_factory) as session:
            gift = session.get(Gift, gift_id)
            if gift is None:
                raise NotFoundError(f"Gift {gift_id} not found")
            self._check_lock(session, gift)
            if gift.status == GiftStatus.CLAIMED.value and gift.claim_signature == claim_signature:
                return {"success": True, "gift_id": gift_id, "status": gift.status, "already_claimed": True}
            expires_at = to_naive_utc(gift.expires_at)
            if gift.status == GiftStatus.SENT.value and expires_at is not None and expires_at <= utcnow():
                raise InvalidStateTransition(f"Gift {gift_id} has expired")

            changed = transition_gift(
                session, gift_id, GiftStatus.SENT.value, GiftStatus.CLAIMED.value,
                claimed_at=utcnow(), claimed_by=claimed_by, claim_signature=claim_signature,
            )
            if not changed:
                raise InvalidStateTransition(
                    f"Gift {gift_id} is {gift.status}, cannot be claimed",
                    details={"status": gift.status},
                )
            session.execute(
                update(EscrowAccount)
                .where(EscrowAccount.gift_id == gift_id, EscrowAccount.refunded.is_(False))
                .values(claimed=True)
            )

        logger.info(f"🎉 GIFT_CLAIMED: {gift_id} by {claimed_by}")
        return {"success": True, "gift_id": gift_id, "status": GiftStatus.CLAIMED.value}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_bundles(self) -> List[Dict[str, Any]]:
        return [plan.to_dict() for plan in self.bundle_catalog.list_active()]

    def get_sender_history(self, sender_identity: str, limit: int = 50) -> List[Dict[str, Any]]:
        with managed_session(self.session_factory) as session:
            gifts = session.execute(
                select(Gift)
                .where(Gift.sender_identity == sender_identity)
                .order_by(Gift.created_at.desc(), Gift.id.desc())
                .limit(limit)
            ).scalars().all()
            return [self._summary(g) for g in gifts]

    def get_active_credit(self, identity: str) -> Dict[str, Any]:
        return self.credit_ledger.get_status(identity)

    # ------------------------------------------------------------------
    # Sweeps (scheduler-invoked)
    # ------------------------------------------------------------------

    async def run_expiry_sweep(self) -> Dict[str, int]:
        return await self.refund_service.process_expired_gifts()

    async def run_credit_sweep(self) -> int:
        return await self.credit_ledger.expire_sweep()
