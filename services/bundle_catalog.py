"""
Bundle Catalog Service
Reads and creates bundle templates; every consumer works on an immutable BundlePlan
snapshot rather than live ORM rows.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import selectinload, sessionmaker

from database import managed_session
from models import BundleLeg, BundleTemplate, Gift
from utils.exceptions import NotFoundError, ValidationError
from utils.fee_calculator import GiftLeg
from utils.token_registry import is_native

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class LegPlan:
    mint: str
    symbol: str
    decimals: int
    percentage: Decimal

    @property
    def is_native(self) -> bool:
        return is_native(self.mint)

    def usd_value(self, total_usd_value: Decimal) -> Decimal:
        return total_usd_value * self.percentage / HUNDRED


@dataclass(frozen=True)
class BundlePlan:
    id: int
    name: str
    total_usd_value: Decimal
    legs: Tuple[LegPlan, ...]
    description: Optional[str] = None
    badge_text: Optional[str] = None
    badge_color: Optional[str] = None

    @property
    def native_leg(self) -> Optional[LegPlan]:
        return next((leg for leg in self.legs if leg.is_native), None)

    @property
    def swap_legs(self) -> List[LegPlan]:
        return [leg for leg in self.legs if not leg.is_native]

    @property
    def native_usd_value(self) -> Decimal:
        leg = self.native_leg
        return leg.usd_value(self.total_usd_value) if leg else Decimal("0")

    def gift_legs(self) -> List[GiftLeg]:
        return [GiftLeg(leg.mint, leg.symbol, leg.usd_value(self.total_usd_value)) for leg in self.legs]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "total_usd_value": str(self.total_usd_value),
            "badge_text": self.badge_text,
            "badge_color": self.badge_color,
            "tokens": [
                {"mint": leg.mint, "symbol": leg.symbol, "percentage": str(leg.percentage)}
                for leg in self.legs
            ],
        }

    @classmethod
    def from_model(cls, bundle: BundleTemplate) -> "BundlePlan":
        return cls(
            id=bundle.id,
            name=bundle.name,
            total_usd_value=Decimal(bundle.total_usd_value),
            legs=tuple(
                LegPlan(leg.mint, leg.symbol, leg.decimals, Decimal(leg.percentage))
                for leg in bundle.legs
            ),
            description=bundle.description,
            badge_text=bundle.badge_text,
            badge_color=bundle.badge_color,
        )


def validate_leg_percentages(percentages: Sequence[Decimal]) -> None:
    """Legs must be positive and sum to exactly 100"""
    if not percentages:
        raise ValidationError("A bundle needs at least one token")
    if any(Decimal(p) <= 0 for p in percentages):
        raise ValidationError("Bundle token percentages must be positive")
    total = sum((Decimal(p) for p in percentages), Decimal("0"))
    if total != HUNDRED:
        raise ValidationError(f"Bundle token percentages must sum to 100, got {total}")


class BundleCatalog:
    """Bundle template reads and administration"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def list_active(self) -> List[BundlePlan]:
        with managed_session(self.session_factory) as session:
            stmt = (
                select(BundleTemplate)
                .options(selectinload(BundleTemplate.legs))
                .where(BundleTemplate.is_active.is_(True))
                .order_by(BundleTemplate.display_order.asc(), BundleTemplate.id.asc())
            )
            return [BundlePlan.from_model(b) for b in session.execute(stmt).scalars().all()]

    def get(self, bundle_id: int) -> BundlePlan:
        with managed_session(self.session_factory) as session:
            stmt = (
                select(BundleTemplate)
                .options(selectinload(BundleTemplate.legs))
                .where(BundleTemplate.id == bundle_id)
            )
            bundle = session.execute(stmt).scalar_one_or_none()
            if bundle is None:
                raise NotFoundError(f"Bundle {bundle_id} not found", details={"bundle_id": bundle_id})
            return BundlePlan.from_model(bundle)

    def create_template(
        self,
        name: str,
        total_usd_value: Decimal,
        legs: Sequence[Dict[str, Any]],
        description: Optional[str] = None,
        display_order: int = 0,
        badge_text: Optional[str] = None,
        badge_color: Optional[str] = None,
    ) -> BundlePlan:
        """legs: dicts with mint, symbol, decimals and percentage, in display order"""
        validate_leg_percentages([Decimal(str(leg["percentage"])) for leg in legs])
        if Decimal(total_usd_value) <= 0:
            raise ValidationError("Bundle value must be positive")
        mints = [leg["mint"] for leg in legs]
        if len(set(mints)) != len(mints):
            raise ValidationError("A bundle may list each token only once")

        with managed_session(self.session_factory) as session:
            bundle = BundleTemplate(
                name=name,
                description=description,
                total_usd_value=Decimal(total_usd_value),
                display_order=display_order,
                badge_text=badge_text,
                badge_color=badge_color,
                is_active=True,
            )
            for order, leg in enumerate(legs):
                bundle.legs.append(
                    BundleLeg(
                        mint=leg["mint"],
                        symbol=leg["symbol"],
                        decimals=int(leg.get("decimals", 9)),
                        percentage=Decimal(str(leg["percentage"])),
                        display_order=order,
                    )
                )
            session.add(bundle)
            session.flush()
            plan = BundlePlan.from_model(bundle)

        logger.info(f"✅ BUNDLE_CREATED: {plan.name} (${plan.total_usd_value}, {len(plan.legs)} tokens)")
        return plan

    def set_active(self, bundle_id: int, is_active: bool) -> None:
        """Retire or re-list a template; referenced templates are never edited in place"""
        with managed_session(self.session_factory) as session:
            bundle = session.get(BundleTemplate, bundle_id)
            if bundle is None:
                raise NotFoundError(f"Bundle {bundle_id} not found")
            bundle.is_active = is_active

    def is_referenced(self, bundle_id: int) -> bool:
        with managed_session(self.session_factory) as session:
            return session.execute(
                select(Gift.id).where(Gift.bundle_id == bundle_id).limit(1)
            ).first() is not None

    @staticmethod
    def calculate_token_amounts(plan: BundlePlan, prices: Dict[str, Decimal]) -> List[Dict[str, Any]]:
        """Per-leg USD value and token amount at the given prices"""
        rows = []
        for leg in plan.legs:
            usd_value = leg.usd_value(plan.total_usd_value)
            price = prices.get(leg.mint)
            amount = None
            if price and price > 0:
                amount = (usd_value / price).quantize(Decimal(10) ** -leg.decimals, rounding=ROUND_DOWN)
            rows.append({
                "symbol": leg.symbol,
                "mint": leg.mint,
                "percentage": leg.percentage,
                "usd_value": usd_value,
                "token_amount": amount,
                "current_price": price,
            })
        return rows
