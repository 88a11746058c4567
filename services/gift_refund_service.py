"""
Gift Refund Service
Returns unclaimed, expired gifts to their senders.

Each pass picks SENT gifts whose claim window has closed and that still have refund
attempts left, counts the attempt before touching the ledger, then drains every
escrow leg back to the sender wallet. Status writes are conditional on SENT so a
claim racing the sweep can never be overwritten.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from solders.keypair import Keypair
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from config import Config
from database import managed_session
from models import EscrowAccount, Gift, GiftStatus, utcnow
from services.ledger_client import LedgerClient
from services.notification_service import GiftNotifier, LoggingGiftNotifier, notify_best_effort
from services.secret_custody import SecretCustody
from utils.exceptions import DecryptionError, InsufficientFundsError
from utils.gift_state_machine import transition_gift
from utils.retry_policy import RetryPolicy
from utils.token_registry import from_raw_units, is_native, to_raw_units

logger = logging.getLogger(__name__)

LEG_TRANSFERRED = "transferred"


@dataclass(frozen=True)
class EscrowLegSnapshot:
    escrow_id: int
    mint: str
    symbol: str
    decimals: int
    public_key: str
    encrypted_secret: str
    token_amount: Decimal
    refunded: bool
    refunded_amount: Optional[Decimal]
    refund_signature: Optional[str]

    @classmethod
    def from_model(cls, escrow: EscrowAccount) -> "EscrowLegSnapshot":
        return cls(
            escrow_id=escrow.id,
            mint=escrow.mint,
            symbol=escrow.symbol,
            decimals=escrow.decimals,
            public_key=escrow.public_key,
            encrypted_secret=escrow.encrypted_secret,
            token_amount=Decimal(escrow.token_amount),
            refunded=bool(escrow.refunded),
            refunded_amount=Decimal(escrow.refunded_amount) if escrow.refunded_amount is not None else None,
            refund_signature=escrow.refund_signature,
        )


@dataclass(frozen=True)
class LegRefundOutcome:
    symbol: str
    outcome: str
    amount: Decimal = Decimal("0")
    signature: Optional[str] = None
    partial: bool = False


class GiftRefundService:
    """Expiry sweep: refunds every expired, unclaimed gift it can reach"""

    # Left behind in a native escrow to pay the refund transaction fee
    NATIVE_FEE_RESERVE_LAMPORTS = 5_000

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Config,
        custody: SecretCustody,
        ledger: LedgerClient,
        notifier: Optional[GiftNotifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep=asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.config = config
        self.custody = custody
        self.ledger = ledger
        self.notifier = notifier or LoggingGiftNotifier()
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=config.REFUND_MAX_ATTEMPTS, backoff_seconds=0.0)
        self.sleep = sleep

    def find_expired_gifts(self) -> List[str]:
        """Ids of SENT gifts past expiry with attempts left, oldest first"""
        with managed_session(self.session_factory) as session:
            stmt = (
                select(Gift.id)
                .where(
                    Gift.status == GiftStatus.SENT.value,
                    Gift.expires_at < utcnow(),
                    Gift.refund_attempts < self.retry_policy.max_attempts,
                )
                .order_by(Gift.expires_at.asc())
                .limit(self.config.REFUND_BATCH_SIZE)
            )
            return list(session.execute(stmt).scalars().all())

    async def process_expired_gifts(self) -> Dict[str, int]:
        """
        One sweep pass. Gifts are handled one at a time; a failure never stops the batch.

        EXPIRED_EMPTY and EXPIRED_LOW_BALANCE add to "success" even though nothing was
        returned to the sender. Retryable errors, skipped gifts and undecryptable
        escrows (EXPIRED) count as "failed".
        """
        gift_ids = self.find_expired_gifts()
        if not gift_ids:
            logger.info("🔍 REFUND_SWEEP: no expired gifts")
            return {"success": 0, "failed": 0, "total": 0}

        logger.info(f"🔍 REFUND_SWEEP: {len(gift_ids)} expired gift(s) to process")
        success = failed = 0
        for index, gift_id in enumerate(gift_ids):
            if index:
                await self.sleep(self.config.REFUND_ITEM_DELAY_SECONDS)
            try:
                result = await self.refund_gift(gift_id)
            except Exception as e:
                logger.error(f"❌ REFUND_UNEXPECTED_ERROR: gift {gift_id}: {e}", exc_info=True)
                self._record_error(gift_id, str(e))
                failed += 1
                continue
            if result.get("success"):
                success += 1
            else:
                failed += 1

        logger.info(f"✅ REFUND_SWEEP_COMPLETE: {success} succeeded, {failed} failed, {len(gift_ids)} total")
        return {"success": success, "failed": failed, "total": len(gift_ids)}

    def _begin_attempt(self, gift_id: str) -> Optional[Dict[str, Any]]:
        """Count the attempt (committed) and snapshot what the refund needs"""
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(Gift)
                .where(
                    Gift.id == gift_id,
                    Gift.status == GiftStatus.SENT.value,
                    Gift.refund_attempts < self.retry_policy.max_attempts,
                )
                .values(refund_attempts=Gift.refund_attempts + 1, last_refund_attempt=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None

            gift = session.get(Gift, gift_id)
            session.refresh(gift)
            escrows = session.execute(
                select(EscrowAccount)
                .where(EscrowAccount.gift_id == gift_id, EscrowAccount.claimed.is_(False))
                .order_by(EscrowAccount.id)
            ).scalars().all()
            return {
                "attempt": gift.refund_attempts,
                "sender_wallet": gift.sender_wallet,
                "sender_contact": gift.sender_contact,
                "legs": [EscrowLegSnapshot.from_model(e) for e in escrows],
            }

    def _record_error(self, gift_id: str, message: str) -> None:
        with managed_session(self.session_factory) as session:
            session.execute(
                update(Gift)
                .where(Gift.id == gift_id, Gift.status == GiftStatus.SENT.value)
                .values(refund_error=message[:1000])
                .execution_options(synchronize_session=False)
            )

    def _mark_leg_refunded(self, escrow_id: int, amount: Decimal, signature: str) -> None:
        # Committed per leg so a later failure can never resend this leg
        with managed_session(self.session_factory) as session:
            session.execute(
                update(EscrowAccount)
                .where(EscrowAccount.id == escrow_id, EscrowAccount.refunded.is_(False))
                .values(refunded=True, refunded_amount=amount, refund_signature=signature)
            )

    async def _refund_leg(self, leg: EscrowLegSnapshot, signer: Keypair, sender_wallet: str) -> LegRefundOutcome:
        if leg.refunded:
            return LegRefundOutcome(leg.symbol, LEG_TRANSFERRED, leg.refunded_amount or Decimal("0"), leg.refund_signature)

        if is_native(leg.mint):
            balance = await self.ledger.get_native_balance(leg.public_key)
            if balance <= 0:
                raise InsufficientFundsError(f"{leg.symbol} escrow is empty", GiftStatus.EXPIRED_EMPTY.value)
            transferable = balance - self.NATIVE_FEE_RESERVE_LAMPORTS
            if transferable <= 0:
                raise InsufficientFundsError(
                    f"{leg.symbol} balance {balance} is below the fee reserve", GiftStatus.EXPIRED_LOW_BALANCE.value
                )
            signature = await self.ledger.transfer_native(signer, sender_wallet, transferable)
            partial = False
        else:
            balance = await self.ledger.get_token_balance(leg.public_key, leg.mint)
            if not balance:
                raise InsufficientFundsError(f"{leg.symbol} escrow is empty", GiftStatus.EXPIRED_EMPTY.value)
            recorded = to_raw_units(leg.token_amount, leg.decimals)
            transferable = min(balance, recorded)
            if transferable <= 0:
                raise InsufficientFundsError(f"{leg.symbol} has nothing to refund", GiftStatus.EXPIRED_LOW_BALANCE.value)
            needs_account = not await self.ledger.token_account_exists(sender_wallet, leg.mint)
            signature = await self.ledger.transfer_token(
                signer,
                sender_wallet,
                leg.mint,
                transferable,
                leg.decimals,
                create_destination_account=needs_account,
            )
            partial = transferable < recorded

        amount = from_raw_units(transferable, leg.decimals)
        self._mark_leg_refunded(leg.escrow_id, amount, signature)
        logger.info(f"💸 REFUND_LEG_SENT: {amount} {leg.symbol} -> {sender_wallet} sig={signature}")
        return LegRefundOutcome(leg.symbol, LEG_TRANSFERRED, amount, signature, partial)

    async def refund_gift(self, gift_id: str) -> Dict[str, Any]:
        """Refund one expired gift; every outcome is written to the gift before returning"""
        snapshot = self._begin_attempt(gift_id)
        if snapshot is None:
            logger.info(f"⏭️ REFUND_SKIPPED: gift {gift_id} no longer refundable")
            return {"success": False, "skipped": True, "gift_id": gift_id}

        legs: List[EscrowLegSnapshot] = snapshot["legs"]
        sender_wallet = snapshot["sender_wallet"]
        logger.info(f"🔄 REFUND_ATTEMPT: gift {gift_id} attempt {snapshot['attempt']} ({len(legs)} leg(s))")

        if not legs:
            return self._finish(gift_id, GiftStatus.EXPIRED_EMPTY.value, [])

        try:
            # Every secret is decrypted before any transfer so a bad record cannot strand a half-refunded gift
            signers = [None if leg.refunded else self.custody.load_keypair(leg.encrypted_secret) for leg in legs]
        except DecryptionError as e:
            logger.error(f"❌ REFUND_DECRYPTION_FAILED: gift {gift_id}: {e.message}")
            with managed_session(self.session_factory) as session:
                transition_gift(
                    session, gift_id, GiftStatus.SENT.value, GiftStatus.EXPIRED.value,
                    refund_error=f"Decryption failed: {e.message}",
                )
            return {"success": False, "gift_id": gift_id, "status": GiftStatus.EXPIRED.value, "error": e.message}

        outcomes: List[LegRefundOutcome] = []
        try:
            for leg, signer in zip(legs, signers):
                try:
                    outcomes.append(await self._refund_leg(leg, signer, sender_wallet))
                except InsufficientFundsError as e:
                    logger.warning(f"⚠️ REFUND_LEG_SKIPPED: gift {gift_id}: {e.message}")
                    outcomes.append(LegRefundOutcome(leg.symbol, e.terminal_status))
        except Exception as e:
            logger.error(f"❌ REFUND_FAILED: gift {gift_id} attempt {snapshot['attempt']}: {e}")
            self._record_error(gift_id, str(e))
            if not self.retry_policy.can_attempt(snapshot["attempt"]):
                logger.critical(f"🚨 REFUND_ATTEMPTS_EXHAUSTED: gift {gift_id} needs manual review")
            return {"success": False, "gift_id": gift_id, "error": str(e)}

        transferred = [o for o in outcomes if o.outcome == LEG_TRANSFERRED]
        if transferred:
            status = GiftStatus.REFUNDED.value
        elif all(o.outcome == GiftStatus.EXPIRED_EMPTY.value for o in outcomes):
            status = GiftStatus.EXPIRED_EMPTY.value
        else:
            status = GiftStatus.EXPIRED_LOW_BALANCE.value

        result = self._finish(gift_id, status, outcomes, single_leg=len(legs) == 1)
        if result.get("success") and transferred:
            partial = any(o.partial for o in transferred) or len(transferred) < len(outcomes)
            await notify_best_effort(
                self.notifier.gift_refunded(
                    snapshot["sender_contact"],
                    gift_id,
                    result.get("refunded_amount"),
                    transferred[0].signature,
                    partial=partial,
                ),
                f"refund notice for gift {gift_id}",
            )
        return result

    def _finish(
        self,
        gift_id: str,
        status: str,
        outcomes: List[LegRefundOutcome],
        single_leg: bool = True,
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {"refund_error": None}
        transferred = [o for o in outcomes if o.outcome == LEG_TRANSFERRED]
        refunded_amount = None
        if status == GiftStatus.REFUNDED.value:
            # Bundle legs are different assets; per-leg amounts live on the escrow rows
            refunded_amount = transferred[0].amount if single_leg else None
            values.update(
                refunded_at=utcnow(),
                refund_transaction_signature=transferred[0].signature,
                refunded_amount=refunded_amount,
            )

        with managed_session(self.session_factory) as session:
            changed = transition_gift(session, gift_id, GiftStatus.SENT.value, status, **values)

        if not changed:
            return {"success": False, "gift_id": gift_id, "error": "Gift left SENT during refund"}
        return {
            "success": True,
            "gift_id": gift_id,
            "status": status,
            "refunded_amount": refunded_amount,
            "legs": [
                {"symbol": o.symbol, "outcome": o.outcome, "amount": str(o.amount), "signature": o.signature}
                for o in outcomes
            ],
        }
