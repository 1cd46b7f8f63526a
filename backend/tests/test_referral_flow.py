"""
End-to-end referral scenarios: click, signup, conversion, rewards and
discount redemption working together.
"""

from decimal import Decimal
from unittest.mock import patch

from referral_engine.discounts.models import DiscountSource, DiscountType
from referral_engine.referral.models import ReferralStatus, RewardType


class TestReferralLifecycle:
    """A referral from first click to a redeemed reward code."""

    def test_click_signup_convert_and_reward(
        self, referral_service, stats_service, reward_service, discount_service, season
    ):
        referral_service.create_tier(
            season_id=season.id,
            name="Bronze",
            referrals_required=1,
            reward_type=RewardType.DISCOUNT_CODE.value,
            reward_value={"percent": 10},
        )

        with patch("referral_engine.codes.generate_code", return_value="REF-ABC123"):
            code = referral_service.get_or_create_referral_code("user-a")
        assert code.code == "REF-ABC123"

        click = referral_service.track_click("REF-ABC123")
        assert click.status == ReferralStatus.CLICKED.value

        signup = referral_service.register_referral("REF-ABC123", "user-b", "b@example.com")
        assert signup.id == click.id
        assert signup.status == ReferralStatus.SIGNED_UP.value

        converted = referral_service.convert_referral(signup.id, "subscription", 29.99)
        assert converted.status == ReferralStatus.CONVERTED.value
        assert converted.conversion_value == Decimal("29.99")

        stats = stats_service.update_stats("user-a")
        assert stats.successful_referrals == 1

        rewards = reward_service.check_tier_progress("user-a")
        assert len(rewards) == 1

        discount = discount_service.get_discount_code_by_id(rewards[0].discount_code_id)
        assert discount.type == DiscountType.PERCENT.value
        assert discount.value == Decimal("10.00")
        assert discount.source == DiscountSource.REFERRAL.value

        application = discount_service.apply_discount_code(discount.code, "user-a", 100, "subscription")
        assert application.success is True
        assert application.final_amount == Decimal("90.00")

    def test_duplicate_conversion_event(self, referral_service, stats_service, season, convert_referred):
        """A replayed purchase event changes nothing."""
        code = referral_service.get_or_create_referral_code("user-a")
        converted = convert_referred(code.code, "user-b")

        assert referral_service.convert_referral(converted.id, "subscription", 29.99) is None
        assert stats_service.update_stats("user-a").successful_referrals == 1


class TestDiscountExhaustion:
    """A single-use code cannot be redeemed twice."""

    def test_second_redemption_rejected(self, discount_service):
        discount = discount_service.create_discount_code(value=20, code="ONEUSE", max_uses=1, max_uses_per_user=None)

        first = discount_service.apply_discount_code("ONEUSE", "user-a", 50, "subscription")
        assert first.success is True
        assert discount_service.get_discount_code_by_id(discount.id).current_uses == 1

        validation = discount_service.validate_discount_code("ONEUSE", "user-b")
        assert validation.valid is False
        assert validation.error.endswith("maximum uses")

        second = discount_service.apply_discount_code("ONEUSE", "user-b", 50, "subscription")
        assert second.success is False
        assert second.final_amount == Decimal("50.00")


class TestSelfReferral:
    """Users cannot refer themselves unless the season allows it."""

    def test_blocked(self, referral_service, season):
        assert season.config["allow_self_referral"] is False
        code = referral_service.get_or_create_referral_code("user-a")

        assert referral_service.register_referral(code.code, "user-a") is None


class TestMinimumPurchase:
    """Codes with a minimum purchase reject smaller baskets."""

    def test_below_minimum(self, discount_service):
        discount_service.create_discount_code(value=10, code="MIN50", min_purchase=50)

        validation = discount_service.validate_discount_code("MIN50", "user-a", "subscription", 30)

        assert validation.valid is False
