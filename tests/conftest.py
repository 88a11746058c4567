"""
Shared fixtures for the gift escrow test suites

- sqlite in-memory engine per test with the full schema
- real Secret Custody (scrypt key derived once per session)
- AsyncMock collaborators for the ledger, price oracle and swap aggregator
- gift and bundle factories
"""

import logging
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from solders.keypair import Keypair

from config import Config
from database import build_engine, build_session_factory, create_tables, managed_session
from models import EscrowAccount, Gift, GiftKind, GiftStatus, SwapStatus, utcnow
from services.bundle_catalog import BundleCatalog
from services.ledger_client import LedgerClient
from services.notification_service import GiftNotifier
from services.price_oracle import PriceOracle
from services.secret_custody import SecretCustody, generate_claim_token
from services.swap_aggregator import SwapAggregator
from utils.exceptions import PriceUnavailableError
from utils.token_registry import NATIVE_MINT, USDC_MINT

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

TEST_ENCRYPTION_KEY = "test-escrow-encryption-key-0123456789abcdef"
SENDER_WALLET = str(Keypair().pubkey())

TEST_PRICES = {
    NATIVE_MINT: Decimal("100"),
    USDC_MINT: Decimal("1"),
}


@pytest.fixture
def config():
    return Config(
        DATABASE_URL="sqlite:///:memory:",
        ESCROW_ENCRYPTION_KEY=TEST_ENCRYPTION_KEY,
        SOLANA_RPC_URL="http://localhost:8899",
        REFUND_ITEM_DELAY_SECONDS=0,
        BALANCE_POLL_INTERVAL_SECONDS=0,
    )


@pytest.fixture
def engine(config):
    engine = build_engine(config)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture(scope="session")
def custody():
    return SecretCustody(TEST_ENCRYPTION_KEY)


@pytest.fixture
def ledger():
    """Ledger with empty balances and successful transfers unless a test says otherwise"""
    ledger = AsyncMock(spec=LedgerClient)
    ledger.get_native_balance.return_value = 0
    ledger.get_token_balance.return_value = None
    ledger.token_account_exists.return_value = True
    ledger.transfer_native.return_value = "native-refund-signature"
    ledger.transfer_token.return_value = "token-refund-signature"
    ledger.is_confirmed.return_value = True
    return ledger


@pytest.fixture
def price_oracle():
    oracle = AsyncMock(spec=PriceOracle)

    async def current_price(mint):
        if mint not in TEST_PRICES:
            raise PriceUnavailableError(f"Price unavailable for {mint}")
        return TEST_PRICES[mint]

    oracle.current_price.side_effect = current_price
    oracle.native_price.return_value = TEST_PRICES[NATIVE_MINT]
    return oracle


@pytest.fixture
def aggregator():
    return AsyncMock(spec=SwapAggregator)


@pytest.fixture
def notifier():
    return AsyncMock(spec=GiftNotifier)


@pytest.fixture
def bundle_catalog(session_factory):
    return BundleCatalog(session_factory)


@pytest.fixture
def sol_usdc_bundle(bundle_catalog):
    """$100 bundle: 40% native SOL, 60% USDC"""
    return bundle_catalog.create_template(
        name="Starter Pack",
        total_usd_value=Decimal("100"),
        legs=[
            {"mint": NATIVE_MINT, "symbol": "SOL", "decimals": 9, "percentage": "40"},
            {"mint": USDC_MINT, "symbol": "USDC", "decimals": 6, "percentage": "60"},
        ],
    )


@pytest.fixture
def make_gift(session_factory, custody):
    """
    Insert a gift directly, optionally with escrow legs.

    legs: list of (mint, symbol, decimals, token_amount)
    """
    counter = {"n": 0}

    def _make(
        status=GiftStatus.SENT.value,
        legs=None,
        expires_in=timedelta(hours=-12),
        kind=GiftKind.SINGLE.value,
        bundle_id=None,
        swap_status=SwapStatus.NOT_REQUIRED.value,
        sender_wallet=SENDER_WALLET,
        refund_attempts=0,
    ):
        counter["n"] += 1
        gift_id = f"GFTEST{counter['n']:04d}"
        now = utcnow()
        if legs is None:
            legs = [(NATIVE_MINT, "SOL", 9, Decimal("0.5"))]
        first = legs[0] if legs else (None, None, None, None)
        with managed_session(session_factory) as session:
            session.add(Gift(
                id=gift_id,
                kind=kind,
                sender_identity="sender@example.com",
                sender_contact="sender@example.com",
                sender_wallet=sender_wallet,
                recipient_contact="friend@example.com",
                token_mint=first[0] if kind == GiftKind.SINGLE.value else None,
                token_symbol=first[1] if kind == GiftKind.SINGLE.value else None,
                token_decimals=first[2] if kind == GiftKind.SINGLE.value else None,
                amount=first[3] if kind == GiftKind.SINGLE.value else None,
                bundle_id=bundle_id,
                usd_value=Decimal("50"),
                status=status,
                swap_status=swap_status,
                claim_token=generate_claim_token(),
                refund_attempts=refund_attempts,
                sent_at=now - timedelta(hours=24) if status != GiftStatus.PENDING_PAYMENT.value else None,
                expires_at=now + expires_in if status != GiftStatus.PENDING_PAYMENT.value else None,
            ))
            session.flush()
            for mint, symbol, decimals, amount in legs:
                secret = custody.create()
                session.add(EscrowAccount(
                    gift_id=gift_id,
                    mint=mint,
                    symbol=symbol,
                    decimals=decimals,
                    public_key=secret.public_key,
                    encrypted_secret=secret.encrypted_secret,
                    token_amount=amount,
                    funded=True,
                ))
        return gift_id

    return _make


@pytest.fixture
def load_gift(session_factory):
    def _load(gift_id):
        with managed_session(session_factory) as session:
            return session.get(Gift, gift_id)

    return _load
