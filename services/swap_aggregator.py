"""
Swap Aggregator Client
Quotes and unsigned swap transactions from the Jupiter swap API. The sender signs
and submits the transaction; this client never holds signing authority.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from services.api_adapter_retry import APIAdapterRetry
from utils.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    try:
        parsed = int(str(value))
    except (TypeError, ValueError):
        raise ExternalServiceError(f"Aggregator quote field {key} is invalid: {value!r}", service="jupiter_swap")
    if parsed < 0:
        raise ExternalServiceError(f"Aggregator quote field {key} is negative", service="jupiter_swap")
    return parsed


@dataclass(frozen=True)
class SwapQuote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    other_amount_threshold: int
    slippage_bps: int
    price_impact_pct: str
    raw: Dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Any, input_mint: str, output_mint: str) -> "SwapQuote":
        """Validate a quote response against the request that produced it"""
        if not isinstance(payload, dict):
            raise ExternalServiceError("Aggregator quote is not an object", service="jupiter_swap")
        if payload.get("inputMint") != input_mint or payload.get("outputMint") != output_mint:
            raise ExternalServiceError("Aggregator quote does not match requested mints", service="jupiter_swap")

        out_amount = _require_int(payload, "outAmount")
        if out_amount == 0:
            raise ExternalServiceError("Aggregator quoted zero output", service="jupiter_swap")

        return cls(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=_require_int(payload, "inAmount"),
            out_amount=out_amount,
            other_amount_threshold=_require_int(payload, "otherAmountThreshold"),
            slippage_bps=int(payload.get("slippageBps", 0)),
            price_impact_pct=str(payload.get("priceImpactPct", "0")),
            raw=payload,
        )


@dataclass(frozen=True)
class SwapTransaction:
    """Base64 serialized, unsigned versioned transaction"""
    transaction: str
    last_valid_block_height: Optional[int]

    @classmethod
    def from_payload(cls, payload: Any) -> "SwapTransaction":
        if not isinstance(payload, dict) or not isinstance(payload.get("swapTransaction"), str):
            raise ExternalServiceError("Aggregator swap response has no transaction", service="jupiter_swap")
        if not payload["swapTransaction"]:
            raise ExternalServiceError("Aggregator returned an empty transaction", service="jupiter_swap")
        height = payload.get("lastValidBlockHeight")
        return cls(
            transaction=payload["swapTransaction"],
            last_valid_block_height=int(height) if height is not None else None,
        )


class SwapAggregator(APIAdapterRetry):
    """Jupiter quote + swap-transaction builder"""

    def __init__(self, config: Config, session: Optional[aiohttp.ClientSession] = None):
        super().__init__("jupiter_swap", timeout=config.HTTP_TIMEOUT_SECONDS, session=session)
        self.base_url = config.JUPITER_API_URL.rstrip("/")
        self.default_slippage_bps = config.SWAP_SLIPPAGE_BPS

    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: Optional[int] = None,
    ) -> SwapQuote:
        """Quote swapping `amount` raw units of input_mint into output_mint"""
        if amount <= 0:
            raise ExternalServiceError("Swap amount must be positive", service=self.service_name)

        slippage = slippage_bps if slippage_bps is not None else self.default_slippage_bps
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage),
        }
        logger.info(f"🔍 SWAP_QUOTE_REQUEST: {amount} {input_mint[:8]}... -> {output_mint[:8]}... ({slippage} bps)")
        payload = await self._make_http_request("GET", f"{self.base_url}/quote", params=params)
        quote = SwapQuote.from_payload(payload, input_mint, output_mint)
        logger.info(f"✅ SWAP_QUOTE: in={quote.in_amount} out={quote.out_amount} impact={quote.price_impact_pct}")
        return quote

    async def build_swap_transaction(self, quote: SwapQuote, payer: str) -> SwapTransaction:
        """Unsigned swap transaction for `payer` to sign"""
        body = {
            "quoteResponse": quote.raw,
            "userPublicKey": payer,
            "wrapAndUnwrapSol": True,
            "computeUnitPriceMicroLamports": "auto",
            "asLegacyTransaction": False,
        }
        # Not idempotent from the aggregator's point of view, so no automatic retry
        payload = await self._make_http_request("POST", f"{self.base_url}/swap", json=body, retry=False)
        return SwapTransaction.from_payload(payload)
