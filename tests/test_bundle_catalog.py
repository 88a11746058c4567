"""
Bundle Catalog Tests
Template validation, listing and per-leg token amounts
"""

from decimal import Decimal

import pytest

from services.bundle_catalog import BundleCatalog, validate_leg_percentages
from utils.exceptions import NotFoundError, ValidationError
from utils.token_registry import NATIVE_MINT, USDC_MINT

BONK_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


class TestLegPercentages:

    @pytest.mark.parametrize("percentages", [
        [Decimal("100")],
        [Decimal("40"), Decimal("60")],
        [Decimal("33.3333"), Decimal("33.3333"), Decimal("33.3334")],
    ])
    def test_valid_splits(self, percentages):
        validate_leg_percentages(percentages)

    @pytest.mark.parametrize("percentages", [
        [],
        [Decimal("40"), Decimal("50")],
        [Decimal("120"), Decimal("-20")],
        [Decimal("100"), Decimal("0")],
    ])
    def test_invalid_splits(self, percentages):
        with pytest.raises(ValidationError):
            validate_leg_percentages(percentages)


class TestTemplates:

    def test_created_template_round_trips(self, bundle_catalog, sol_usdc_bundle):
        plan = bundle_catalog.get(sol_usdc_bundle.id)

        assert plan.name == "Starter Pack"
        assert plan.total_usd_value == Decimal("100")
        assert [leg.symbol for leg in plan.legs] == ["SOL", "USDC"]
        assert [leg.percentage for leg in plan.legs] == [Decimal("40"), Decimal("60")]
        assert plan.native_leg.symbol == "SOL"
        assert [leg.symbol for leg in plan.swap_legs] == ["USDC"]
        assert plan.native_usd_value == Decimal("40")

    def test_list_active_respects_order_and_retirement(self, bundle_catalog, sol_usdc_bundle):
        featured = bundle_catalog.create_template(
            name="Featured",
            total_usd_value=Decimal("25"),
            legs=[{"mint": USDC_MINT, "symbol": "USDC", "decimals": 6, "percentage": 100}],
            display_order=-1,
            badge_text="NEW",
        )
        assert [b.id for b in bundle_catalog.list_active()] == [featured.id, sol_usdc_bundle.id]

        bundle_catalog.set_active(featured.id, False)
        assert [b.id for b in bundle_catalog.list_active()] == [sol_usdc_bundle.id]
        # Retired templates stay readable for gifts that reference them
        assert bundle_catalog.get(featured.id).name == "Featured"

    def test_unknown_bundle(self, bundle_catalog):
        with pytest.raises(NotFoundError):
            bundle_catalog.get(999)
        with pytest.raises(NotFoundError):
            bundle_catalog.set_active(999, False)

    def test_duplicate_token_rejected(self, bundle_catalog):
        with pytest.raises(ValidationError):
            bundle_catalog.create_template(
                name="Twice",
                total_usd_value=Decimal("50"),
                legs=[
                    {"mint": USDC_MINT, "symbol": "USDC", "decimals": 6, "percentage": 50},
                    {"mint": USDC_MINT, "symbol": "USDC", "decimals": 6, "percentage": 50},
                ],
            )

    def test_non_positive_value_rejected(self, bundle_catalog):
        with pytest.raises(ValidationError):
            bundle_catalog.create_template(
                name="Free",
                total_usd_value=Decimal("0"),
                legs=[{"mint": NATIVE_MINT, "symbol": "SOL", "percentage": 100}],
            )

    def test_unreferenced_template(self, bundle_catalog, sol_usdc_bundle):
        assert bundle_catalog.is_referenced(sol_usdc_bundle.id) is False

    def test_referenced_template(self, bundle_catalog, sol_usdc_bundle, make_gift):
        make_gift(kind="bundle", bundle_id=sol_usdc_bundle.id)
        assert bundle_catalog.is_referenced(sol_usdc_bundle.id) is True

    def test_to_dict(self, sol_usdc_bundle):
        data = sol_usdc_bundle.to_dict()
        assert data["total_usd_value"] == "100"
        assert [t["symbol"] for t in data["tokens"]] == ["SOL", "USDC"]


class TestTokenAmounts:

    def test_amounts_at_current_prices(self, sol_usdc_bundle):
        rows = BundleCatalog.calculate_token_amounts(
            sol_usdc_bundle, {NATIVE_MINT: Decimal("100"), USDC_MINT: Decimal("1")}
        )

        assert rows[0]["usd_value"] == Decimal("40")
        assert rows[0]["token_amount"] == Decimal("0.4")
        assert rows[1]["usd_value"] == Decimal("60")
        assert rows[1]["token_amount"] == Decimal("60")

    def test_amounts_truncate_to_token_decimals(self, bundle_catalog):
        plan = bundle_catalog.create_template(
            name="Thirds",
            total_usd_value=Decimal("10"),
            legs=[{"mint": USDC_MINT, "symbol": "USDC", "decimals": 6, "percentage": 100}],
        )
        rows = BundleCatalog.calculate_token_amounts(plan, {USDC_MINT: Decimal("3")})
        assert rows[0]["token_amount"] == Decimal("3.333333")

    def test_missing_price_leaves_amount_empty(self, sol_usdc_bundle):
        rows = BundleCatalog.calculate_token_amounts(sol_usdc_bundle, {NATIVE_MINT: Decimal("100")})
        assert rows[1]["token_amount"] is None
        assert rows[1]["current_price"] is None

    def test_gift_legs_carry_usd_split(self, sol_usdc_bundle):
        legs = sol_usdc_bundle.gift_legs()
        assert [(leg.symbol, leg.usd_value) for leg in legs] == [("SOL", Decimal("40")), ("USDC", Decimal("60"))]
