"""Send cost quoting: asset value, network overhead and payment processing"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from config import Config
from models import PaymentChannel
from utils.exceptions import PriceUnavailableError, ValidationError
from utils.token_registry import LAMPORTS_PER_SOL, is_native

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GiftLeg:
    """One asset of a send with its USD share"""
    mint: str
    symbol: str
    usd_value: Decimal

    @property
    def is_native(self) -> bool:
        return is_native(self.mint)


@dataclass
class FeeBreakdown:
    base_value: Decimal
    network_fee: Decimal
    payment_processing_fee: Decimal
    total_cost: Decimal
    overhead_percent: Decimal
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_value": str(self.base_value),
            "network_fee": str(self.network_fee),
            "payment_processing_fee": str(self.payment_processing_fee),
            "total_cost": str(self.total_cost),
            "overhead_percent": str(self.overhead_percent),
            "detail": self.detail,
        }


class FeeCalculator:
    """Prices the full cost of a send in USD with Decimal precision"""

    USD_PRECISION = Decimal("0.01")
    PERCENT_PRECISION = Decimal("0.1")

    # Fixed ledger costs in lamports
    ACCOUNT_CREATION_LAMPORTS = 203_928
    BASE_TX_FEE_LAMPORTS = 5_000
    PRIORITY_FEE_SWAP_LAMPORTS = 80_000
    PRIORITY_FEE_OTHER_LAMPORTS = 10_000
    # Escrow issuance plus the eventual claim transaction
    ISSUANCE_TX_COUNT = 2

    def __init__(self, config: Config):
        self.config = config

    @classmethod
    def round_usd(cls, value: Decimal) -> Decimal:
        return Decimal(value).quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @staticmethod
    def lamports_to_usd(lamports: int, native_price_usd: Decimal) -> Decimal:
        return Decimal(lamports) / Decimal(LAMPORTS_PER_SOL) * native_price_usd

    @staticmethod
    def count_new_accounts(legs: List[GiftLeg]) -> Dict[str, int]:
        """
        Per-owner token accounts a send will open. The native asset needs none.
        The sender's account only has to be created for legs it receives via swap,
        which is every non-native leg of a multi-leg send.
        """
        non_native = sum(1 for leg in legs if not leg.is_native)
        swapped = non_native if len(legs) > 1 else 0
        return {
            "sender": swapped,
            "escrow": non_native,
            "recipient": non_native,
        }

    def calculate_fees(
        self,
        legs: List[GiftLeg],
        native_price_usd: Optional[Decimal],
        include_add_on: bool = False,
        payment_channel: str = PaymentChannel.WALLET.value,
    ) -> FeeBreakdown:
        """Quote total send cost for the given legs at the current native price"""
        if not legs:
            raise ValidationError("A send needs at least one asset")
        if native_price_usd is None or Decimal(native_price_usd) <= 0:
            logger.error("❌ FEE_CALC_NO_PRICE: native asset price unavailable")
            raise PriceUnavailableError("Native asset price unavailable")
        native_price_usd = Decimal(native_price_usd)

        asset_value = sum((Decimal(leg.usd_value) for leg in legs), Decimal("0"))
        add_on_fee = self.config.CARD_ADD_ON_FEE_USD if include_add_on else Decimal("0")
        base_value = asset_value + add_on_fee

        accounts = self.count_new_accounts(legs)
        account_count = sum(accounts.values())
        account_lamports = account_count * self.ACCOUNT_CREATION_LAMPORTS

        swap_legs = [leg for leg in legs if not leg.is_native] if len(legs) > 1 else []
        swap_count = len(swap_legs)
        swap_value = sum((Decimal(leg.usd_value) for leg in swap_legs), Decimal("0"))
        swap_service_fee_usd = swap_value * self.config.SWAP_SERVICE_FEE_RATE

        # One funding transfer per escrow leg besides the swaps
        other_tx_count = len(legs)
        priority_lamports = (
            swap_count * self.PRIORITY_FEE_SWAP_LAMPORTS
            + other_tx_count * self.PRIORITY_FEE_OTHER_LAMPORTS
        )
        issuance_lamports = self.ISSUANCE_TX_COUNT * self.BASE_TX_FEE_LAMPORTS

        network_lamports = account_lamports + priority_lamports + issuance_lamports
        network_fee_raw = self.lamports_to_usd(network_lamports, native_price_usd) + swap_service_fee_usd

        if payment_channel == PaymentChannel.ONRAMP.value:
            processing_raw = base_value * self.config.ONRAMP_FEE_RATE
        else:
            processing_raw = Decimal("0")

        network_fee = self.round_usd(network_fee_raw)
        processing_fee = self.round_usd(processing_raw)
        base_rounded = self.round_usd(base_value)
        total_cost = base_rounded + network_fee + processing_fee

        if base_value > 0:
            overhead = ((network_fee_raw + processing_raw) / base_value * 100).quantize(
                self.PERCENT_PRECISION, rounding=ROUND_HALF_UP
            )
        else:
            overhead = Decimal("0.0")

        detail = {
            "native_price_usd": str(self.round_usd(native_price_usd)),
            "account_count": account_count,
            "accounts": accounts,
            # Native legs are held in plain system accounts, so no escrow or recipient
            # token account is charged for them
            "native_accounts_not_charged": 2 * sum(1 for leg in legs if leg.is_native),
            "account_cost_lamports": account_lamports,
            "account_cost_usd": str(self.round_usd(self.lamports_to_usd(account_lamports, native_price_usd))),
            "swap_count": swap_count,
            "swap_service_fee_usd": str(self.round_usd(swap_service_fee_usd)),
            "priority_fee_lamports": priority_lamports,
            "issuance_fee_lamports": issuance_lamports,
            "add_on_fee_usd": str(self.round_usd(add_on_fee)),
            "payment_channel": payment_channel,
        }

        logger.info(
            f"💰 FEE_QUOTE: base=${base_rounded} network=${network_fee} "
            f"processing=${processing_fee} total=${total_cost} overhead={overhead}%"
        )

        return FeeBreakdown(
            base_value=base_rounded,
            network_fee=network_fee,
            payment_processing_fee=processing_fee,
            total_cost=total_cost,
            overhead_percent=overhead,
            detail=detail,
        )
