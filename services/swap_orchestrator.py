"""
Swap Orchestrator
Turns a sender's native balance into the assets of a bundle:
- over-provisioned funding quotes
- proportional allocation of native balance across swap legs
- unsigned aggregator transactions recorded as pending-signature swaps
- confirmation once the sender's wallet reports a signature
- escrow issuance per funded leg
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from config import Config
from database import managed_session
from models import Gift, SwapOperation, SwapStatus, utcnow
from services.bundle_catalog import BundlePlan
from services.escrow_funding import EscrowFundingInstruction, EscrowFundingService
from services.ledger_client import LedgerClient
from services.price_oracle import PriceOracle
from services.swap_aggregator import SwapAggregator
from utils.exceptions import (
    ExternalServiceError,
    GiftEscrowError,
    InvalidStateTransition,
    NotFoundError,
)
from utils.token_registry import NATIVE_MINT, from_raw_units, lamports_to_sol, sol_to_lamports

logger = logging.getLogger(__name__)

USD_CENT = Decimal("0.01")
# Rent for one per-owner token account, in native units
ACCOUNT_BUFFER_NATIVE = Decimal("0.002")
SLIPPAGE_BUFFER_RATE = Decimal("0.03")


@dataclass(frozen=True)
class FundingAmount:
    base_amount: Decimal
    service_fee: Decimal
    card_fee: Decimal
    account_buffer: Decimal
    slippage_buffer: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {k: str(v) for k, v in self.__dict__.items()}


@dataclass(frozen=True)
class PreparedSwap:
    swap_id: int
    output_mint: str
    output_symbol: str
    input_amount: Decimal
    expected_output_amount: Decimal
    unsigned_transaction: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swap_id": self.swap_id,
            "output_mint": self.output_mint,
            "output_symbol": self.output_symbol,
            "input_amount": str(self.input_amount),
            "expected_output_amount": str(self.expected_output_amount),
            "transaction": self.unsigned_transaction,
        }


class SwapOrchestrator:
    """Coordinates aggregator swaps and bundle escrow issuance for one process"""

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Config,
        ledger: LedgerClient,
        aggregator: SwapAggregator,
        price_oracle: PriceOracle,
        escrow_funding: EscrowFundingService,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.config = config
        self.ledger = ledger
        self.aggregator = aggregator
        self.price_oracle = price_oracle
        self.escrow_funding = escrow_funding
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Funding quote
    # ------------------------------------------------------------------

    def funding_amount_for(self, bundle: BundlePlan, include_add_on: bool, native_price: Decimal) -> FundingAmount:
        base = bundle.total_usd_value
        service_fee = self.config.SERVICE_FEE_USD
        card_fee = self.config.CARD_ADD_ON_FEE_USD if include_add_on else Decimal("0")
        account_buffer = len(bundle.swap_legs) * ACCOUNT_BUFFER_NATIVE * native_price
        slippage_buffer = base * SLIPPAGE_BUFFER_RATE

        raw_total = base + service_fee + card_fee + account_buffer + slippage_buffer
        total = raw_total.quantize(USD_CENT, rounding=ROUND_CEILING)
        return FundingAmount(
            base_amount=base,
            service_fee=service_fee,
            card_fee=card_fee,
            account_buffer=account_buffer,
            slippage_buffer=slippage_buffer,
            total=total,
        )

    async def calculate_funding_amount(self, bundle: BundlePlan, include_add_on: bool = False) -> FundingAmount:
        """USD the sender should bring so every leg can be bought and escrowed"""
        native_price = await self.price_oracle.native_price()
        amount = self.funding_amount_for(bundle, include_add_on, native_price)
        logger.info(f"💰 FUNDING_AMOUNT: bundle={bundle.id} total=${amount.total}")
        return amount

    # ------------------------------------------------------------------
    # Swap preparation
    # ------------------------------------------------------------------

    def _existing_swaps(self, gift_id: str) -> List[PreparedSwap]:
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(SwapOperation)
                .where(
                    SwapOperation.gift_id == gift_id,
                    SwapOperation.status == SwapStatus.PENDING_SIGNATURE.value,
                )
                .order_by(SwapOperation.id)
            ).scalars().all()
            return [
                PreparedSwap(
                    swap_id=row.id,
                    output_mint=row.output_mint,
                    output_symbol=row.output_symbol,
                    input_amount=Decimal(row.input_amount),
                    expected_output_amount=Decimal(row.expected_output_amount or 0),
                    unsigned_transaction=row.unsigned_transaction,
                )
                for row in rows
            ]

    def _supersede_swaps(self, gift_id: str, reason: str, swap_ids: Optional[List[int]] = None) -> int:
        """Fail unsigned swaps so an abandoned attempt can never be signed or block completion"""
        with managed_session(self.session_factory) as session:
            stmt = update(SwapOperation).where(
                SwapOperation.gift_id == gift_id,
                SwapOperation.status == SwapStatus.PENDING_SIGNATURE.value,
            )
            if swap_ids is not None:
                if not swap_ids:
                    return 0
                stmt = stmt.where(SwapOperation.id.in_(swap_ids))
            result = session.execute(
                stmt.values(status=SwapStatus.FAILED.value, error_message=reason[:1000])
            )
            superseded = result.rowcount
        if superseded:
            logger.warning(f"⚠️ SWAPS_SUPERSEDED: gift={gift_id} count={superseded} reason={reason}")
        return superseded

    def _record_failed_swap(self, gift_id: str, output_mint: str, output_symbol: str, input_amount: Decimal, error: str) -> None:
        with managed_session(self.session_factory) as session:
            session.add(SwapOperation(
                gift_id=gift_id,
                input_mint=NATIVE_MINT,
                output_mint=output_mint,
                output_symbol=output_symbol,
                input_amount=input_amount,
                slippage_bps=self.config.SWAP_SLIPPAGE_BPS,
                status=SwapStatus.FAILED.value,
                error_message=error[:1000],
            ))

    async def execute_swaps(
        self,
        gift_id: str,
        bundle: BundlePlan,
        sender_account: str,
        available_native_balance: Decimal,
    ) -> List[PreparedSwap]:
        """
        Prepare one unsigned swap per non-native leg, allocating the native balance
        left after the native leg's reserve in proportion to each leg's USD share.

        Legs whose allocation rounds to zero are skipped with a warning. A quote or
        preparation failure is recorded as a failed swap and re-raised; swaps already
        prepared in the same attempt are failed as superseded and the gift's
        swap_status is left untouched. Unsigned swaps left by an earlier attempt are
        superseded before a new attempt starts.
        """
        with managed_session(self.session_factory) as session:
            gift = session.get(Gift, gift_id)
            if gift is None:
                raise NotFoundError(f"Gift {gift_id} not found")
            current_swap_status = gift.swap_status

        if current_swap_status in (SwapStatus.PENDING_SIGNATURE.value, SwapStatus.COMPLETED.value):
            logger.info(f"🔁 SWAPS_ALREADY_PREPARED: gift={gift_id} swap_status={current_swap_status}")
            return self._existing_swaps(gift_id)

        swap_legs = bundle.swap_legs
        if not swap_legs:
            logger.info(f"✅ SWAPS_NOT_REQUIRED: bundle {bundle.id} is native only")
            return []

        self._supersede_swaps(gift_id, "superseded by a new preparation attempt")

        native_price = await self.price_oracle.native_price()
        native_usd = bundle.native_usd_value
        native_needed = native_usd / native_price
        reserved = native_needed + self.config.SWAP_FEE_BUFFER_NATIVE
        remaining = max(Decimal("0"), Decimal(available_native_balance) - reserved)
        swap_usd_total = bundle.total_usd_value - native_usd

        logger.info(
            f"🔍 SWAP_PLAN: gift={gift_id} available={available_native_balance} reserved={reserved} "
            f"swappable={remaining} legs={len(swap_legs)}"
        )

        prepared: List[PreparedSwap] = []
        for leg in swap_legs:
            target_usd = leg.usd_value(bundle.total_usd_value)
            native_to_swap = (target_usd / swap_usd_total) * remaining if swap_usd_total > 0 else Decimal("0")
            lamports = sol_to_lamports(native_to_swap)

            if lamports <= 0:
                logger.warning(f"⚠️ SWAP_SKIPPED: not enough native balance for {leg.symbol}")
                continue

            try:
                quote = await self.aggregator.quote(
                    NATIVE_MINT, leg.mint, lamports, slippage_bps=self.config.SWAP_SLIPPAGE_BPS
                )
                swap_tx = await self.aggregator.build_swap_transaction(quote, sender_account)
            except Exception as e:
                logger.error(f"❌ SWAP_PREPARATION_FAILED: gift={gift_id} {leg.symbol}: {e}")
                self._record_failed_swap(gift_id, leg.mint, leg.symbol, lamports_to_sol(lamports), str(e))
                self._supersede_swaps(
                    gift_id,
                    f"superseded: {leg.symbol} failed in the same attempt",
                    swap_ids=[swap.swap_id for swap in prepared],
                )
                if isinstance(e, GiftEscrowError):
                    raise
                raise ExternalServiceError(f"Swap preparation failed for {leg.symbol}: {e}", service="jupiter_swap") from e

            expected_output = from_raw_units(quote.out_amount, leg.decimals)
            input_amount = lamports_to_sol(lamports)
            with managed_session(self.session_factory) as session:
                row = SwapOperation(
                    gift_id=gift_id,
                    input_mint=NATIVE_MINT,
                    output_mint=leg.mint,
                    output_symbol=leg.symbol,
                    input_amount=input_amount,
                    expected_output_amount=expected_output,
                    slippage_bps=quote.slippage_bps or self.config.SWAP_SLIPPAGE_BPS,
                    quote_response=quote.raw,
                    unsigned_transaction=swap_tx.transaction,
                    status=SwapStatus.PENDING_SIGNATURE.value,
                )
                session.add(row)
                session.flush()
                swap_id = row.id

            prepared.append(PreparedSwap(
                swap_id=swap_id,
                output_mint=leg.mint,
                output_symbol=leg.symbol,
                input_amount=input_amount,
                expected_output_amount=expected_output,
                unsigned_transaction=swap_tx.transaction,
            ))
            logger.info(f"✅ SWAP_PREPARED: gift={gift_id} {input_amount} SOL -> ~{expected_output} {leg.symbol}")

        # Nothing to sign means the bundle proceeds with its native leg only
        new_status = SwapStatus.PENDING_SIGNATURE.value if prepared else SwapStatus.COMPLETED.value
        with managed_session(self.session_factory) as session:
            session.execute(
                update(Gift)
                .where(Gift.id == gift_id, Gift.swap_status == current_swap_status)
                .values(swap_status=new_status)
            )
        return prepared

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def confirm_swap_signed(self, gift_id: str, swap_id: int, signature: str) -> Dict[str, Any]:
        """Mark a swap completed once its sender-submitted signature is confirmed on-chain"""
        if not signature:
            raise InvalidStateTransition("A confirmed signature is required to complete a swap")

        with managed_session(self.session_factory) as session:
            swap = session.get(SwapOperation, swap_id)
            if swap is None or swap.gift_id != gift_id:
                raise NotFoundError(f"Swap {swap_id} not found for gift {gift_id}")
            status = swap.status
            existing_signature = swap.transaction_signature

        if status == SwapStatus.COMPLETED.value and existing_signature == signature:
            return {"success": True, "swap_id": swap_id, "status": status, "already_confirmed": True}
        if status != SwapStatus.PENDING_SIGNATURE.value:
            raise InvalidStateTransition(
                f"Swap {swap_id} is {status}, expected {SwapStatus.PENDING_SIGNATURE.value}"
            )

        if not await self.ledger.is_confirmed(signature):
            logger.warning(f"⚠️ SWAP_NOT_CONFIRMED: swap={swap_id} signature={signature}")
            raise ExternalServiceError(f"Swap signature {signature} is not confirmed", service="ledger")

        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(SwapOperation)
                .where(SwapOperation.id == swap_id, SwapOperation.status == SwapStatus.PENDING_SIGNATURE.value)
                .values(
                    status=SwapStatus.COMPLETED.value,
                    transaction_signature=signature,
                    output_amount=SwapOperation.expected_output_amount,
                    completed_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                raise InvalidStateTransition(f"Swap {swap_id} changed state concurrently")

            open_swaps = session.execute(
                select(SwapOperation.id).where(
                    SwapOperation.gift_id == gift_id,
                    SwapOperation.status == SwapStatus.PENDING_SIGNATURE.value,
                )
            ).first()
            all_done = open_swaps is None
            if all_done:
                session.execute(
                    update(Gift)
                    .where(Gift.id == gift_id, Gift.swap_status == SwapStatus.PENDING_SIGNATURE.value)
                    .values(swap_status=SwapStatus.COMPLETED.value)
                )

        logger.info(f"✅ SWAP_CONFIRMED: gift={gift_id} swap={swap_id} all_complete={all_done}")
        return {"success": True, "swap_id": swap_id, "status": SwapStatus.COMPLETED.value, "all_complete": all_done}

    # ------------------------------------------------------------------
    # Escrow issuance
    # ------------------------------------------------------------------

    async def create_bundle_escrow_accounts(
        self,
        gift_id: str,
        bundle: BundlePlan,
        sender_account: str,
    ) -> List[EscrowFundingInstruction]:
        """
        Create one escrow per leg with a nonzero resolved amount: the native leg from
        the reserved native balance, swapped legs from their completed swaps. Calling
        again returns the escrows already issued.
        """
        existing = self.escrow_funding.funding_instructions(gift_id)
        if existing:
            return existing

        with managed_session(self.session_factory) as session:
            completed = session.execute(
                select(SwapOperation.output_mint, SwapOperation.output_amount).where(
                    SwapOperation.gift_id == gift_id,
                    SwapOperation.status == SwapStatus.COMPLETED.value,
                )
            ).all()
        swap_outputs: Dict[str, Decimal] = {}
        for mint, amount in completed:
            swap_outputs[mint] = swap_outputs.get(mint, Decimal("0")) + Decimal(amount or 0)

        native_amount = Decimal("0")
        native_leg = bundle.native_leg
        if native_leg is not None:
            native_price = await self.price_oracle.native_price()
            balance = lamports_to_sol(await self.ledger.get_native_balance(sender_account))
            native_amount = min(bundle.native_usd_value / native_price, balance)
            native_amount = native_amount.quantize(Decimal(10) ** -native_leg.decimals)

        amounts: Dict[str, Decimal] = {}
        for leg in bundle.legs:
            amount = native_amount if leg.is_native else swap_outputs.get(leg.mint, Decimal("0"))
            if amount <= 0:
                logger.warning(f"⚠️ ESCROW_LEG_SKIPPED: no amount available for {leg.symbol}")
                continue
            amounts[leg.mint] = amount

        with managed_session(self.session_factory) as session:
            escrows = []
            for leg in bundle.legs:
                if leg.mint not in amounts:
                    continue
                escrows.append(self.escrow_funding.issue_escrow(
                    session, gift_id, leg.mint, leg.symbol, leg.decimals, amounts[leg.mint]
                ))
            instructions = [EscrowFundingInstruction.from_model(e) for e in escrows]

        logger.info(f"✅ BUNDLE_ESCROWS_CREATED: gift={gift_id} legs={len(instructions)}/{len(bundle.legs)}")
        return instructions

    # ------------------------------------------------------------------
    # Balance arrival
    # ------------------------------------------------------------------

    async def poll_wallet_balance(
        self,
        owner: str,
        expected_native: Decimal,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> bool:
        """True once the wallet holds at least the threshold share of expected_native"""
        attempts = max_attempts or self.config.BALANCE_POLL_MAX_ATTEMPTS
        wait = self.config.BALANCE_POLL_INTERVAL_SECONDS if interval is None else interval
        target = Decimal(expected_native) * self.config.BALANCE_POLL_THRESHOLD

        for attempt in range(1, attempts + 1):
            try:
                balance = lamports_to_sol(await self.ledger.get_native_balance(owner))
                logger.info(f"🔍 BALANCE_POLL: {owner} {balance} SOL (expecting {expected_native}) attempt {attempt}/{attempts}")
                if balance >= target:
                    return True
            except ExternalServiceError as e:
                logger.warning(f"⚠️ BALANCE_POLL_ERROR: {owner}: {e}")
            if attempt < attempts:
                await self._sleep(wait)

        logger.warning(f"⚠️ BALANCE_POLL_TIMEOUT: {owner} did not reach {target} SOL")
        return False
