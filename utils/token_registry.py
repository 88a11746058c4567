"""Ledger asset constants and unit conversions"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Optional

NATIVE_MINT = "So11111111111111111111111111111111111111112"
NATIVE_SYMBOL = "SOL"
NATIVE_DECIMALS = 9
LAMPORTS_PER_SOL = 1_000_000_000

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


@dataclass(frozen=True)
class TokenInfo:
    mint: str
    symbol: str
    decimals: int

    @property
    def is_native(self) -> bool:
        return self.mint == NATIVE_MINT


KNOWN_TOKENS: Dict[str, TokenInfo] = {
    NATIVE_MINT: TokenInfo(NATIVE_MINT, NATIVE_SYMBOL, NATIVE_DECIMALS),
    USDC_MINT: TokenInfo(USDC_MINT, "USDC", 6),
}


def is_native(mint: Optional[str]) -> bool:
    return mint == NATIVE_MINT


def to_raw_units(amount: Decimal, decimals: int) -> int:
    """UI amount to integer base units, truncating dust"""
    scaled = (Decimal(amount) * (Decimal(10) ** decimals)).quantize(Decimal("1"), rounding=ROUND_DOWN)
    return int(scaled)


def from_raw_units(raw: int, decimals: int) -> Decimal:
    return Decimal(raw) / (Decimal(10) ** decimals)


def lamports_to_sol(lamports: int) -> Decimal:
    return from_raw_units(lamports, NATIVE_DECIMALS)


def sol_to_lamports(sol: Decimal) -> int:
    return to_raw_units(sol, NATIVE_DECIMALS)
