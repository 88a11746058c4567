"""
Escrow Funding & Link Issuance
Persists one-time escrow accounts for a gift and verifies on-chain that each one
received its recorded amount before the gift may become SENT.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from database import managed_session
from models import EscrowAccount, Gift
from services.ledger_client import LedgerClient
from services.secret_custody import SecretCustody
from utils.exceptions import NotFoundError, ValidationError
from utils.token_registry import is_native, to_raw_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscrowFundingInstruction:
    """What the sender's wallet must transfer into one escrow"""
    gift_id: str
    mint: str
    symbol: str
    decimals: int
    public_key: str
    token_amount: Decimal

    @property
    def raw_amount(self) -> int:
        return to_raw_units(self.token_amount, self.decimals)

    @classmethod
    def from_model(cls, escrow: EscrowAccount) -> "EscrowFundingInstruction":
        return cls(
            gift_id=escrow.gift_id,
            mint=escrow.mint,
            symbol=escrow.symbol,
            decimals=escrow.decimals,
            public_key=escrow.public_key,
            token_amount=Decimal(escrow.token_amount),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "mint": self.mint,
            "symbol": self.symbol,
            "public_key": self.public_key,
            "token_amount": str(self.token_amount),
            "raw_amount": str(self.raw_amount),
        }


class EscrowFundingService:
    """Creates escrow rows and reconciles their funding against the ledger"""

    def __init__(self, session_factory: sessionmaker, custody: SecretCustody, ledger: LedgerClient):
        self.session_factory = session_factory
        self.custody = custody
        self.ledger = ledger

    def issue_escrow(
        self,
        session: Session,
        gift_id: str,
        mint: str,
        symbol: str,
        decimals: int,
        token_amount: Decimal,
    ) -> EscrowAccount:
        """Create and stage one escrow account inside the caller's transaction"""
        if Decimal(token_amount) <= 0:
            raise ValidationError(f"Escrow amount for {symbol} must be positive")

        # (gift, mint) is unique: escrow accounts are never reused or duplicated
        existing = session.execute(
            select(EscrowAccount.id).where(EscrowAccount.gift_id == gift_id, EscrowAccount.mint == mint)
        ).first()
        if existing is not None:
            raise ValidationError(f"Gift {gift_id} already has an escrow for {symbol}")

        secret = self.custody.create()
        escrow = EscrowAccount(
            gift_id=gift_id,
            mint=mint,
            symbol=symbol,
            decimals=decimals,
            public_key=secret.public_key,
            encrypted_secret=secret.encrypted_secret,
            token_amount=Decimal(token_amount),
        )
        session.add(escrow)
        session.flush()
        logger.info(f"🔐 ESCROW_ISSUED: gift={gift_id} {symbol} amount={token_amount} escrow={secret.public_key}")
        return escrow

    def funding_instructions(self, gift_id: str) -> List[EscrowFundingInstruction]:
        with managed_session(self.session_factory) as session:
            escrows = session.execute(
                select(EscrowAccount).where(EscrowAccount.gift_id == gift_id).order_by(EscrowAccount.id)
            ).scalars().all()
            return [EscrowFundingInstruction.from_model(e) for e in escrows]

    def record_funding_signature(self, gift_id: str, public_key: str, signature: str) -> None:
        """
        Remember the sender-submitted transfer that funded an escrow. The gift keeps
        the first funding signature; each escrow keeps its own.
        """
        if not signature:
            raise ValidationError("A funding signature is required")
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(EscrowAccount)
                .where(EscrowAccount.gift_id == gift_id, EscrowAccount.public_key == public_key)
                .values(funding_signature=signature)
            )
            if result.rowcount != 1:
                raise NotFoundError(f"Escrow {public_key} not found for gift {gift_id}")
            session.execute(
                update(Gift)
                .where(Gift.id == gift_id, Gift.funding_signature.is_(None))
                .values(funding_signature=signature)
            )
        logger.info(f"📝 ESCROW_FUNDING_RECORDED: gift={gift_id} escrow={public_key} signature={signature}")

    async def _escrow_balance(self, escrow: EscrowFundingInstruction) -> int:
        if is_native(escrow.mint):
            return await self.ledger.get_native_balance(escrow.public_key)
        balance = await self.ledger.get_token_balance(escrow.public_key, escrow.mint)
        return balance or 0

    async def verify_funding(self, gift_id: str) -> Dict[str, bool]:
        """
        Check each escrow's on-chain balance against its recorded amount and flag
        funded ones. Returns public_key -> funded.
        """
        instructions = self.funding_instructions(gift_id)
        if not instructions:
            raise NotFoundError(f"Gift {gift_id} has no escrow accounts")

        results: Dict[str, bool] = {}
        for escrow in instructions:
            balance = await self._escrow_balance(escrow)
            funded = balance >= escrow.raw_amount
            results[escrow.public_key] = funded
            if funded:
                logger.info(f"✅ ESCROW_FUNDED: {escrow.symbol} {escrow.public_key} balance={balance}")
            else:
                logger.warning(
                    f"⚠️ ESCROW_UNDERFUNDED: {escrow.symbol} {escrow.public_key} "
                    f"balance={balance} expected={escrow.raw_amount}"
                )

        funded_keys = [key for key, ok in results.items() if ok]
        if funded_keys:
            with managed_session(self.session_factory) as session:
                session.execute(
                    update(EscrowAccount)
                    .where(EscrowAccount.gift_id == gift_id, EscrowAccount.public_key.in_(funded_keys))
                    .values(funded=True)
                )
        return results

    def escrows_for(self, session: Session, gift_id: str) -> List[EscrowAccount]:
        return list(
            session.execute(
                select(EscrowAccount).where(EscrowAccount.gift_id == gift_id).order_by(EscrowAccount.id)
            ).scalars().all()
        )
