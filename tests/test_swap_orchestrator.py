"""
Swap Orchestrator Tests
Funding quotes, proportional swap allocation, signature confirmation and
bundle escrow issuance
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select

from database import managed_session
from models import EscrowAccount, GiftKind, GiftStatus, SwapOperation, SwapStatus
from services.escrow_funding import EscrowFundingService
from services.swap_aggregator import SwapQuote, SwapTransaction
from services.swap_orchestrator import SwapOrchestrator
from utils.exceptions import ExternalServiceError, InvalidStateTransition, NotFoundError
from utils.token_registry import NATIVE_MINT, USDC_MINT


BONK_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


def token_quote(output_mint, in_lamports, out_raw):
    return SwapQuote.from_payload(
        {
            "inputMint": NATIVE_MINT,
            "outputMint": output_mint,
            "inAmount": str(in_lamports),
            "outAmount": str(out_raw),
            "otherAmountThreshold": str(int(out_raw * 0.97)),
            "slippageBps": 300,
            "priceImpactPct": "0.001",
        },
        NATIVE_MINT,
        output_mint,
    )


def usdc_quote(in_lamports, out_raw):
    return token_quote(USDC_MINT, in_lamports, out_raw)


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def orchestrator(session_factory, config, ledger, aggregator, price_oracle, custody, sleep):
    escrow_funding = EscrowFundingService(session_factory, custody, ledger)
    return SwapOrchestrator(session_factory, config, ledger, aggregator, price_oracle, escrow_funding, sleep=sleep)


@pytest.fixture
def bundle_gift(make_gift, sol_usdc_bundle):
    return make_gift(
        status=GiftStatus.PENDING_PAYMENT.value,
        kind=GiftKind.BUNDLE.value,
        bundle_id=sol_usdc_bundle.id,
        swap_status=SwapStatus.PREPARED.value,
        legs=[],
    )


def swaps_for(session_factory, gift_id):
    with managed_session(session_factory) as session:
        return session.execute(
            select(SwapOperation).where(SwapOperation.gift_id == gift_id).order_by(SwapOperation.id)
        ).scalars().all()


class TestFundingAmount:

    def test_funding_covers_fees_and_buffers(self, orchestrator, sol_usdc_bundle):
        amount = orchestrator.funding_amount_for(sol_usdc_bundle, include_add_on=False, native_price=Decimal("100"))

        # 100 base + 1 service fee + 0.002 SOL rent for the swapped leg ($0.20) + 3% slippage
        assert amount.base_amount == Decimal("100")
        assert amount.account_buffer == Decimal("0.200")
        assert amount.total == Decimal("104.20")
        assert amount.total >= amount.base_amount

    def test_add_on_increases_funding(self, orchestrator, sol_usdc_bundle):
        without = orchestrator.funding_amount_for(sol_usdc_bundle, False, Decimal("100"))
        with_add_on = orchestrator.funding_amount_for(sol_usdc_bundle, True, Decimal("100"))
        assert with_add_on.total - without.total == Decimal("1.00")

    @pytest.mark.asyncio
    async def test_calculate_funding_amount_uses_oracle_price(self, orchestrator, sol_usdc_bundle, price_oracle):
        amount = await orchestrator.calculate_funding_amount(sol_usdc_bundle)
        price_oracle.native_price.assert_awaited_once()
        assert amount.total == Decimal("104.20")


class TestExecuteSwaps:

    @pytest.mark.asyncio
    async def test_native_leg_reserved_and_remainder_swapped(
        self, orchestrator, aggregator, bundle_gift, sol_usdc_bundle, session_factory, load_gift
    ):
        # 1.01 SOL held: 0.40 SOL ($40) reserved for the native leg + 0.01 fee buffer,
        # the remaining 0.60 SOL (~$60) goes to USDC
        aggregator.quote.return_value = usdc_quote(600_000_000, 60_000_000)
        aggregator.build_swap_transaction.return_value = SwapTransaction("dW5zaWduZWQ=", 1234)

        prepared = await orchestrator.execute_swaps(bundle_gift, sol_usdc_bundle, "SenderWallet111", Decimal("1.01"))

        aggregator.quote.assert_awaited_once_with(NATIVE_MINT, USDC_MINT, 600_000_000, slippage_bps=300)
        assert len(prepared) == 1
        assert prepared[0].output_symbol == "USDC"
        assert prepared[0].input_amount == Decimal("0.6")
        assert prepared[0].expected_output_amount == Decimal("60")

        rows = swaps_for(session_factory, bundle_gift)
        assert len(rows) == 1
        assert rows[0].status == SwapStatus.PENDING_SIGNATURE.value
        assert rows[0].unsigned_transaction == "dW5zaWduZWQ="
        assert rows[0].quote_response["outAmount"] == "60000000"
        assert load_gift(bundle_gift).swap_status == SwapStatus.PENDING_SIGNATURE.value

    @pytest.mark.asyncio
    async def test_repeated_call_returns_existing_swaps(
        self, orchestrator, aggregator, bundle_gift, sol_usdc_bundle, session_factory
    ):
        aggregator.quote.return_value = usdc_quote(600_000_000, 60_000_000)
        aggregator.build_swap_transaction.return_value = SwapTransaction("dHg=", None)

        first = await orchestrator.execute_swaps(bundle_gift, sol_usdc_bundle, "SenderWallet111", Decimal("1.01"))
        second = await orchestrator.execute_swaps(bundle_gift, sol_usdc_bundle, "SenderWallet111", Decimal("1.01"))

        assert [s.swap_id for s in first] == [s.swap_id for s in second]
        assert aggregator.quote.await_count == 1
        assert len(swaps_for(session_factory, bundle_gift)) == 1

    @pytest.mark.asyncio
    async def test_quote_failure_recorded_and_status_unchanged(
        self, orchestrator, aggregator, bundle_gift, sol_usdc_bundle, session_factory, load_gift
    ):
        aggregator.quote.side_effect = ExternalServiceError("No route found", service="jupiter_swap")

        with pytest.raises(ExternalServiceError):
            await orchestrator.execute_swaps(bundle_gift, sol_usdc_bundle, "SenderWallet111", Decimal("1.01"))

        rows = swaps_for(session_factory, bundle_gift)
        assert len(rows) == 1
        assert rows[0].status == SwapStatus.FAILED.value
        assert "No route found" in rows[0].error_message
        assert load_gift(bundle_gift).swap_status == SwapStatus.PREPARED.value

    @pytest.mark.asyncio
    async def test_retry_after_partial_failure_supersedes_earlier_swaps(
        self, orchestrator, aggregator, bundle_catalog, make_gift, session_factory, load_gift
    ):
        bundle = bundle_catalog.create_template(
            name="Three Leg Pack",
            total_usd_value=Decimal("100"),
            legs=[
                {"mint": NATIVE_MINT, "symbol": "SOL", "decimals": 9, "percentage": "20"},
                {"mint": USDC_MINT, "symbol": "USDC", "decimals": 6, "percentage": "40"},
                {"mint": BONK_MINT, "symbol": "BONK", "decimals": 5, "percentage": "40"},
            ],
        )
        gift_id = make_gift(
            status=GiftStatus.PENDING_PAYMENT.value,
            kind=GiftKind.BUNDLE.value,
            bundle_id=bundle.id,
            swap_status=SwapStatus.PREPARED.value,
            legs=[],
        )
        aggregator.build_swap_transaction.return_value = SwapTransaction("dHg=", None)
        aggregator.quote.side_effect = [
            usdc_quote(400_000_000, 40_000_000),
            ExternalServiceError("No route found", service="jupiter_swap"),
            usdc_quote(400_000_000, 40_000_000),
            token_quote(BONK_MINT, 400_000_000, 200_000_000_000),
        ]

        with pytest.raises(ExternalServiceError):
            await orchestrator.execute_swaps(gift_id, bundle, "SenderWallet111", Decimal("1.01"))
        first_attempt = swaps_for(session_factory, gift_id)
        assert [(s.output_symbol, s.status) for s in first_attempt] == [
            ("USDC", SwapStatus.FAILED.value),
            ("BONK", SwapStatus.FAILED.value),
        ]
        assert load_gift(gift_id).swap_status == SwapStatus.PREPARED.value

        prepared = await orchestrator.execute_swaps(gift_id, bundle, "SenderWallet111", Decimal("1.01"))
        assert [s.output_symbol for s in prepared] == ["USDC", "BONK"]

        for swap in prepared:
            result = await orchestrator.confirm_swap_signed(gift_id, swap.swap_id, f"sig-{swap.output_symbol}")
        assert result["all_complete"] is True
        assert load_gift(gift_id).swap_status == SwapStatus.COMPLETED.value

        # The abandoned USDC swap can no longer be signed into a second purchase
        with pytest.raises(InvalidStateTransition):
            await orchestrator.confirm_swap_signed(gift_id, first_attempt[0].id, "sig-stale")

    @pytest.mark.asyncio
    async def test_unsigned_swaps_from_interrupted_attempt_are_superseded(
        self, orchestrator, aggregator, bundle_gift, sol_usdc_bundle, session_factory, load_gift
    ):
        # A crash after the swap row was written but before the gift status moved on
        with managed_session(session_factory) as session:
            session.add(SwapOperation(
                gift_id=bundle_gift,
                input_mint=NATIVE_MINT,
                output_mint=USDC_MINT,
                output_symbol="USDC",
                input_amount=Decimal("0.6"),
                status=SwapStatus.PENDING_SIGNATURE.value,
            ))
        aggregator.quote.return_value = usdc_quote(600_000_000, 60_000_000)
        aggregator.build_swap_transaction.return_value = SwapTransaction("dHg=", None)

        prepared = await orchestrator.execute_swaps(bundle_gift, sol_usdc_bundle, "SenderWallet111", Decimal("1.01"))
        await orchestrator.confirm_swap_signed(bundle_gift, prepared[0].swap_id, "swap-signature")

        rows = swaps_for(session_factory, bundle_gift)
        assert [r.status for r in rows] == [SwapStatus.FAILED.value, SwapStatus.COMPLETED.value]
        assert load_gift(bundle_gift).swap_status == SwapStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_unexpected_failure_surfaces_as_external_service_error(
        self, orchestrator, aggregator, bundle_gift, sol_usdc_bundle
    ):
        aggregator.quote.return_value = usdc_quote(600_000_000, 60_000_000)
        aggregator.build_swap_transaction.side_effect = RuntimeError("connection reset")

        with pytest.raises(ExternalServiceError) as exc_info:
            await orchestrator.execute_swaps(bundle_gift, sol_usdc_bundle, "SenderWallet111", Decimal("1.01"))
        assert exc_info.value.service == "jupiter_swap"

    @pytest.mark.asyncio
    async def test_zero_allocation_skips_leg(
        self, orchestrator, aggregator, bundle_gift, sol_usdc_bundle, load_gift
    ):
        prepared = await orchestrator.execute_swaps(bundle_gift, sol_usdc_bundle, "SenderWallet111", Decimal("0.30"))

        assert prepared == []
        aggregator.quote.assert_not_awaited()
        assert load_gift(bundle_gift).swap_status == SwapStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_unknown_gift(self, orchestrator, sol_usdc_bundle):
        with pytest.raises(NotFoundError):
            await orchestrator.execute_swaps("GF-MISSING", sol_usdc_bundle, "SenderWallet111", Decimal("1"))


class TestConfirmAndEscrow:

    @pytest_asyncio.fixture
    async def prepared_swap(self, orchestrator, aggregator, bundle_gift, sol_usdc_bundle):
        aggregator.quote.return_value = usdc_quote(600_000_000, 60_000_000)
        aggregator.build_swap_transaction.return_value = SwapTransaction("dHg=", None)
        prepared = await orchestrator.execute_swaps(bundle_gift, sol_usdc_bundle, "SenderWallet111", Decimal("1.01"))
        return prepared[0]

    @pytest.mark.asyncio
    async def test_confirmed_signature_completes_swap(
        self, orchestrator, ledger, bundle_gift, prepared_swap, session_factory, load_gift
    ):
        result = await orchestrator.confirm_swap_signed(bundle_gift, prepared_swap.swap_id, "swap-signature")

        ledger.is_confirmed.assert_awaited_once_with("swap-signature")
        assert result["all_complete"] is True
        row = swaps_for(session_factory, bundle_gift)[0]
        assert row.status == SwapStatus.COMPLETED.value
        assert row.transaction_signature == "swap-signature"
        assert row.output_amount == Decimal("60")
        assert load_gift(bundle_gift).swap_status == SwapStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_confirmation_is_idempotent(self, orchestrator, bundle_gift, prepared_swap):
        await orchestrator.confirm_swap_signed(bundle_gift, prepared_swap.swap_id, "swap-signature")
        again = await orchestrator.confirm_swap_signed(bundle_gift, prepared_swap.swap_id, "swap-signature")
        assert again["already_confirmed"] is True

    @pytest.mark.asyncio
    async def test_unconfirmed_signature_leaves_swap_pending(
        self, orchestrator, ledger, bundle_gift, prepared_swap, session_factory, load_gift
    ):
        ledger.is_confirmed.return_value = False

        with pytest.raises(ExternalServiceError):
            await orchestrator.confirm_swap_signed(bundle_gift, prepared_swap.swap_id, "swap-signature")

        assert swaps_for(session_factory, bundle_gift)[0].status == SwapStatus.PENDING_SIGNATURE.value
        assert load_gift(bundle_gift).swap_status == SwapStatus.PENDING_SIGNATURE.value

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, orchestrator, bundle_gift, prepared_swap):
        with pytest.raises(InvalidStateTransition):
            await orchestrator.confirm_swap_signed(bundle_gift, prepared_swap.swap_id, "")

    @pytest.mark.asyncio
    async def test_bundle_escrows_from_reserve_and_swap_output(
        self, orchestrator, ledger, bundle_gift, sol_usdc_bundle, prepared_swap, session_factory
    ):
        await orchestrator.confirm_swap_signed(bundle_gift, prepared_swap.swap_id, "swap-signature")
        ledger.get_native_balance.return_value = 1_000_000_000

        escrows = await orchestrator.create_bundle_escrow_accounts(bundle_gift, sol_usdc_bundle, "SenderWallet111")

        by_symbol = {e.symbol: e for e in escrows}
        assert set(by_symbol) == {"SOL", "USDC"}
        assert by_symbol["SOL"].token_amount == Decimal("0.4")
        assert by_symbol["USDC"].token_amount == Decimal("60")
        assert by_symbol["USDC"].raw_amount == 60_000_000

        again = await orchestrator.create_bundle_escrow_accounts(bundle_gift, sol_usdc_bundle, "SenderWallet111")
        assert [e.public_key for e in again] == [e.public_key for e in escrows]
        with managed_session(session_factory) as session:
            count = len(session.execute(
                select(EscrowAccount).where(EscrowAccount.gift_id == bundle_gift)
            ).scalars().all())
        assert count == 2

    @pytest.mark.asyncio
    async def test_unfunded_legs_are_omitted(
        self, orchestrator, ledger, bundle_gift, sol_usdc_bundle, prepared_swap
    ):
        # Swap never confirmed and no native balance left: nothing to escrow
        ledger.get_native_balance.return_value = 0
        escrows = await orchestrator.create_bundle_escrow_accounts(bundle_gift, sol_usdc_bundle, "SenderWallet111")
        assert escrows == []


class TestBalancePolling:

    @pytest.mark.asyncio
    async def test_returns_true_once_threshold_reached(self, orchestrator, ledger, sleep):
        ledger.get_native_balance.side_effect = [0, 500_000_000, 960_000_000]

        arrived = await orchestrator.poll_wallet_balance("SenderWallet111", Decimal("1"), max_attempts=5)

        assert arrived is True
        assert ledger.get_native_balance.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self, orchestrator, ledger, sleep):
        ledger.get_native_balance.return_value = 100

        arrived = await orchestrator.poll_wallet_balance("SenderWallet111", Decimal("1"), max_attempts=3)

        assert arrived is False
        assert ledger.get_native_balance.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_transient_errors_count_as_attempts(self, orchestrator, ledger):
        ledger.get_native_balance.side_effect = [
            ExternalServiceError("rpc down", service="solana_rpc"),
            1_000_000_000,
        ]
        assert await orchestrator.poll_wallet_balance("SenderWallet111", Decimal("1"), max_attempts=2) is True
