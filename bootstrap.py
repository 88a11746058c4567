"""
Application wiring
Builds every component from one validated Config and hands out explicit handles.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from config import Config
from database import build_engine, build_session_factory, create_tables
from jobs.scheduler import GiftScheduler
from services.bundle_catalog import BundleCatalog
from services.credit_ledger import CreditLedger
from services.escrow_funding import EscrowFundingService
from services.gift_refund_service import GiftRefundService
from services.gift_service import GiftService
from services.ledger_client import LedgerClient, SolanaLedgerClient
from services.notification_service import GiftNotifier, LoggingGiftNotifier
from services.price_oracle import PriceOracle
from services.secret_custody import SecretCustody
from services.swap_aggregator import SwapAggregator
from services.swap_orchestrator import SwapOrchestrator
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)


@dataclass
class Application:
    config: Config
    engine: Engine
    session_factory: sessionmaker
    ledger: LedgerClient
    price_oracle: PriceOracle
    aggregator: SwapAggregator
    gift_service: GiftService
    scheduler: GiftScheduler

    async def close(self) -> None:
        self.scheduler.stop()
        for client in (self.ledger, self.price_oracle, self.aggregator):
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        self.engine.dispose()
        logger.info("✅ Application shut down")


def build_application(
    config: Config,
    notifier: Optional[GiftNotifier] = None,
    ledger: Optional[LedgerClient] = None,
    create_schema: bool = False,
) -> Application:
    """Construct the whole object graph; the caller starts the scheduler"""
    config.validate()
    engine = build_engine(config)
    if create_schema:
        create_tables(engine)
    session_factory = build_session_factory(engine)

    notifier = notifier or LoggingGiftNotifier()
    custody = SecretCustody.from_config(config)
    ledger = ledger or SolanaLedgerClient(config)
    price_oracle = PriceOracle(config)
    aggregator = SwapAggregator(config)

    escrow_funding = EscrowFundingService(session_factory, custody, ledger)
    credit_ledger = CreditLedger(session_factory, config)
    gift_service = GiftService(
        session_factory=session_factory,
        config=config,
        price_oracle=price_oracle,
        fee_calculator=FeeCalculator(config),
        bundle_catalog=BundleCatalog(session_factory),
        escrow_funding=escrow_funding,
        swap_orchestrator=SwapOrchestrator(
            session_factory, config, ledger, aggregator, price_oracle, escrow_funding
        ),
        refund_service=GiftRefundService(session_factory, config, custody, ledger, notifier),
        credit_ledger=credit_ledger,
        notifier=notifier,
    )
    scheduler = GiftScheduler(gift_service, config)

    logger.info(f"✅ Application built: environment={config.ENVIRONMENT}")
    return Application(
        config=config,
        engine=engine,
        session_factory=session_factory,
        ledger=ledger,
        price_oracle=price_oracle,
        aggregator=aggregator,
        gift_service=gift_service,
        scheduler=scheduler,
    )
