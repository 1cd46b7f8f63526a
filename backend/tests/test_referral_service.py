"""
Tests for the referral service: seasons, tiers, codes, clicks, signups,
conversions and expiry.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from referral_engine.codes import CodeGenerationError
from referral_engine.referral.models import Referral, ReferralCode, ReferralSeason, ReferralStatus, RewardType
from referral_engine.referral.service import ClickMetadata


class TestSeasons:
    """Test cases for season management."""

    def test_create_season_derives_slug_and_merges_config(self, referral_service):
        """Slug comes from the name; config is merged over defaults."""
        season = referral_service.create_season(
            name="Spring Launch 2026",
            config={"referral_code_prefix": "SPRING"},
        )

        assert season.slug == "spring-launch-2026"
        assert season.config["referral_code_prefix"] == "SPRING"
        assert season.config["allow_self_referral"] is False
        assert season.config["conversion_window_days"] == 30

    def test_only_one_default_season(self, referral_service, season):
        """A new default season clears the previous default."""
        newer = referral_service.create_season(name="Summer", is_default=True)

        assert referral_service.get_default_season().id == newer.id
        assert referral_service.get_season_by_id(season.id).is_default is False

    def test_active_seasons_list_default_first(self, referral_service, season):
        """The default season is listed first."""
        referral_service.create_season(name="Side Promo")

        seasons = referral_service.get_active_seasons()
        assert [s.id for s in seasons][0] == season.id
        assert len(seasons) == 2

    def test_update_season_is_partial(self, referral_service, season):
        """Only supplied fields change."""
        updated = referral_service.update_season(season.id, description="Updated")

        assert updated.description == "Updated"
        assert updated.name == "Launch Season"
        assert updated.is_default is True

    def test_update_season_default_clears_others(self, referral_service, season):
        """Promoting a season to default demotes the current one."""
        other = referral_service.create_season(name="Other")
        referral_service.update_season(other.id, is_default=True)

        assert referral_service.get_default_season().id == other.id
        assert referral_service.get_season_by_id(season.id).is_default is False

    def test_update_unknown_season_returns_none(self, referral_service):
        assert referral_service.update_season("missing", name="X") is None

    def test_update_season_rejects_unknown_fields(self, referral_service, season):
        with pytest.raises(ValueError):
            referral_service.update_season(season.id, slug="new-slug")


class TestTiers:
    """Test cases for tier management."""

    def test_tiers_ordered_by_requirement(self, referral_service, season):
        """Tiers come back in ascending requirement order regardless of creation order."""
        referral_service.create_tier(season.id, "Gold", 5, RewardType.CUSTOM.value)
        referral_service.create_tier(season.id, "Bronze", 1, RewardType.CUSTOM.value)
        referral_service.create_tier(season.id, "Silver", 3, RewardType.CUSTOM.value)

        names = [tier.name for tier in referral_service.get_tiers_by_season(season.id)]
        assert names == ["Bronze", "Silver", "Gold"]

    def test_ties_use_sort_order(self, referral_service, season):
        """Equal requirements fall back to sort_order."""
        referral_service.create_tier(season.id, "B", 2, RewardType.CUSTOM.value, sort_order=2)
        referral_service.create_tier(season.id, "A", 2, RewardType.CUSTOM.value, sort_order=1)

        names = [tier.name for tier in referral_service.get_tiers_by_season(season.id)]
        assert names == ["A", "B"]

    def test_inactive_tiers_hidden(self, referral_service, tiers, season):
        referral_service.update_tier(tiers[1].id, is_active=False)

        names = [tier.name for tier in referral_service.get_tiers_by_season(season.id)]
        assert names == ["Bronze", "Gold"]

    def test_update_tier_is_partial(self, referral_service, tiers):
        updated = referral_service.update_tier(tiers[0].id, referrals_required=2)

        assert updated.referrals_required == 2
        assert updated.name == "Bronze"
        assert updated.reward_value["percent"] == 10

    def test_update_tier_rejects_unknown_fields(self, referral_service, tiers):
        with pytest.raises(ValueError):
            referral_service.update_tier(tiers[0].id, season_id="other")

    def test_delete_tier(self, referral_service, tiers):
        assert referral_service.delete_tier(tiers[0].id) is True
        assert referral_service.get_tier_by_id(tiers[0].id) is None
        assert referral_service.delete_tier(tiers[0].id) is False


class TestReferralCodes:
    """Test cases for referral code issuance."""

    def test_get_or_create_is_idempotent(self, referral_service, season):
        """Two calls return the same code."""
        first = referral_service.get_or_create_referral_code("alice", season.id)
        second = referral_service.get_or_create_referral_code("alice", season.id)

        assert first.id == second.id
        assert first.code == second.code
        assert len(referral_service.get_all_referral_codes()) == 1

    def test_default_season_resolved(self, referral_service, season):
        """Without a season id the default season is used."""
        code = referral_service.get_or_create_referral_code("alice")

        assert code.season_id == season.id
        assert code.code.startswith("REF-")

    def test_season_prefix_used(self, referral_service):
        season = referral_service.create_season(
            name="Spring",
            is_default=True,
            config={"referral_code_prefix": "SPRING"},
        )

        code = referral_service.get_or_create_referral_code("alice")
        assert code.season_id == season.id
        assert code.code.startswith("SPRING-")

    def test_without_any_season(self, referral_service):
        """Codes can be issued before any season exists."""
        code = referral_service.get_or_create_referral_code("alice")

        assert code.season_id is None
        assert code.code.startswith("REF-")

    def test_distinct_users_get_distinct_codes(self, referral_service, season):
        alice = referral_service.get_or_create_referral_code("alice")
        bob = referral_service.get_or_create_referral_code("bob")

        assert alice.code != bob.code

    def test_collision_exhaustion_raises(self, referral_service, season):
        """When every candidate is taken, issuance fails hard."""
        with patch("referral_engine.codes.generate_code", return_value="REF-AAAAAA"):
            referral_service.get_or_create_referral_code("alice")

            with pytest.raises(CodeGenerationError):
                referral_service.get_or_create_referral_code("bob")

    def test_unknown_season_returns_none(self, referral_service, database, season):
        """An explicit season that does not exist creates nothing."""
        assert referral_service.get_or_create_referral_code("alice", "no-such-season") is None

        with database.session() as session:
            assert session.query(ReferralCode).count() == 0

    def test_foreign_key_failure_is_not_a_collision(self, referral_service, season):
        """A dangling season reference surfaces as IntegrityError, not exhaustion."""
        ghost = ReferralSeason(id="ghost-season", name="Ghost", slug="ghost", config={})

        with patch.object(referral_service, "get_season_by_id", return_value=ghost):
            with pytest.raises(IntegrityError, match="FOREIGN KEY"):
                referral_service.get_or_create_referral_code("alice", "ghost-season")

    def test_lookup_is_case_insensitive(self, referral_service, season):
        code = referral_service.get_or_create_referral_code("alice")

        found = referral_service.get_referral_code_by_code(f"  {code.code.lower()} ")
        assert found.id == code.id

    def test_deactivated_code_not_found(self, referral_service, season):
        code = referral_service.get_or_create_referral_code("alice")

        assert referral_service.deactivate_referral_code(code.id) is True
        assert referral_service.get_referral_code_by_code(code.code) is None
        assert referral_service.deactivate_referral_code(code.id) is False

    def test_new_code_after_deactivation(self, referral_service, season):
        old = referral_service.get_or_create_referral_code("alice")
        referral_service.deactivate_referral_code(old.id)

        new = referral_service.get_or_create_referral_code("alice")
        assert new.id != old.id
        assert new.is_active is True


class TestTrackClick:
    """Test cases for click tracking."""

    def test_unknown_code_returns_none(self, referral_service, season):
        assert referral_service.track_click("REF-NOPE99") is None

    def test_click_creates_referral_and_counts(self, referral_service, season):
        code = referral_service.get_or_create_referral_code("alice")
        metadata = ClickMetadata(
            ip_address="203.0.113.7",
            user_agent="Mozilla/5.0",
            utm_source="newsletter",
            utm_medium="email",
            utm_campaign="launch",
        )

        referral = referral_service.track_click(code.code.lower(), metadata)

        assert referral.status == ReferralStatus.CLICKED.value
        assert referral.referrer_id == "alice"
        assert referral.season_id == season.id
        assert referral.referred_user_id is None
        assert referral.utm_source == "newsletter"
        assert referral.ip_address == "203.0.113.7"

        refreshed = referral_service.get_referral_code_by_code(code.code)
        assert refreshed.clicks == 1
        assert refreshed.last_click_at is not None

    def test_every_click_is_a_new_referral(self, referral_service, season):
        code = referral_service.get_or_create_referral_code("alice")

        first = referral_service.track_click(code.code)
        second = referral_service.track_click(code.code)

        assert first.id != second.id
        assert referral_service.get_referral_code_by_code(code.code).clicks == 2
        assert len(referral_service.get_user_referrals("alice")) == 2


class TestRegisterReferral:
    """Test cases for signup attribution."""

    def test_upgrades_pending_click(self, referral_service, season):
        """The pending click row becomes the signup."""
        code = referral_service.get_or_create_referral_code("alice")
        click = referral_service.track_click(code.code)

        referral = referral_service.register_referral(code.code, "bob", "bob@example.com")

        assert referral.id == click.id
        assert referral.status == ReferralStatus.SIGNED_UP.value
        assert referral.referred_user_id == "bob"
        assert referral.referred_email == "bob@example.com"
        assert referral.signup_date is not None

    def test_creates_signup_without_click(self, referral_service, season):
        code = referral_service.get_or_create_referral_code("alice")

        referral = referral_service.register_referral(code.code, "bob")

        assert referral.status == ReferralStatus.SIGNED_UP.value
        assert referral.referrer_id == "alice"
        assert referral.referral_code_id == code.id

    def test_each_pending_click_claimed_once(self, referral_service, season):
        """A second signup does not steal the first signup's click."""
        code = referral_service.get_or_create_referral_code("alice")
        click = referral_service.track_click(code.code)

        bob = referral_service.register_referral(code.code, "bob")
        carol = referral_service.register_referral(code.code, "carol")

        assert bob.id == click.id
        assert carol.id != click.id
        assert carol.status == ReferralStatus.SIGNED_UP.value

    def test_registration_is_idempotent(self, referral_service, season):
        code = referral_service.get_or_create_referral_code("alice")

        first = referral_service.register_referral(code.code, "bob")
        second = referral_service.register_referral(code.code, "bob")

        assert first.id == second.id
        signups = referral_service.get_user_referrals("alice", ReferralStatus.SIGNED_UP.value)
        assert len(signups) == 1

    def test_concurrent_registration_returns_existing(self, referral_service, season):
        """When the pre-check misses a racing signup, the unique constraint wins."""
        code = referral_service.get_or_create_referral_code("alice")
        first = referral_service.register_referral(code.code, "bob")

        find_referral = referral_service._find_referral_for_user
        lookups = []

        def miss_first_lookup(session, referred_user_id, season_id):
            lookups.append(referred_user_id)
            if len(lookups) == 1:
                return None
            return find_referral(session, referred_user_id, season_id)

        with patch.object(referral_service, "_find_referral_for_user", side_effect=miss_first_lookup):
            second = referral_service.register_referral(code.code, "bob")

        assert len(lookups) == 2
        assert second.id == first.id
        assert len(referral_service.get_user_referrals("alice")) == 1

    def test_unknown_code_returns_none(self, referral_service, season):
        assert referral_service.register_referral("REF-NOPE99", "bob") is None

    def test_self_referral_blocked(self, referral_service, season):
        code = referral_service.get_or_create_referral_code("alice")

        assert referral_service.register_referral(code.code, "alice") is None

    def test_self_referral_allowed_by_season_config(self, referral_service):
        referral_service.create_season(
            name="Open",
            is_default=True,
            config={"allow_self_referral": True},
        )
        code = referral_service.get_or_create_referral_code("alice")

        referral = referral_service.register_referral(code.code, "alice")
        assert referral is not None
        assert referral.referred_user_id == "alice"


class TestConvertReferral:
    """Test cases for the guarded conversion transition."""

    def test_converts_signed_up_referral(self, referral_service, season):
        code = referral_service.get_or_create_referral_code("alice")
        referral = referral_service.register_referral(code.code, "bob")

        converted = referral_service.convert_referral(referral.id, "subscription", 29.99, "pro_monthly")

        assert converted.status == ReferralStatus.CONVERTED.value
        assert converted.conversion_value == Decimal("29.99")
        assert converted.conversion_type == "subscription"
        assert converted.conversion_product == "pro_monthly"
        assert converted.conversion_date is not None

    def test_second_conversion_is_noop(self, referral_service, season):
        code = referral_service.get_or_create_referral_code("alice")
        referral = referral_service.register_referral(code.code, "bob")

        first = referral_service.convert_referral(referral.id, "subscription", 29.99)
        second = referral_service.convert_referral(referral.id, "lifetime", 199)

        assert second is None
        stored = referral_service.get_user_referrals("alice")[0]
        assert stored.conversion_date == first.conversion_date
        assert stored.conversion_type == "subscription"
        assert stored.conversion_value == Decimal("29.99")

    def test_clicked_referral_cannot_convert(self, referral_service, season):
        code = referral_service.get_or_create_referral_code("alice")
        click = referral_service.track_click(code.code)

        assert referral_service.convert_referral(click.id, "subscription", 10) is None

    def test_unknown_referral_returns_none(self, referral_service):
        assert referral_service.convert_referral("missing", "subscription", 10) is None


class TestExpireReferrals:
    """Test cases for the expiry job."""

    def _backdate(self, database, referral_id, days):
        past = datetime.utcnow() - timedelta(days=days)
        with database.session() as session:
            session.query(Referral).filter(Referral.id == referral_id).update(
                {Referral.click_date: past, Referral.signup_date: past},
                synchronize_session=False,
            )

    def test_expires_stale_clicks_and_signups(self, referral_service, database, season):
        code = referral_service.get_or_create_referral_code("alice")
        stale_signup = referral_service.register_referral(code.code, "bob")
        stale_click = referral_service.track_click(code.code)
        fresh_click = referral_service.track_click(code.code)
        self._backdate(database, stale_click.id, 45)
        self._backdate(database, stale_signup.id, 45)

        assert referral_service.expire_referrals() == 2

        statuses = {r.id: r.status for r in referral_service.get_user_referrals("alice")}
        assert statuses[stale_click.id] == ReferralStatus.EXPIRED.value
        assert statuses[stale_signup.id] == ReferralStatus.EXPIRED.value
        assert statuses[fresh_click.id] == ReferralStatus.CLICKED.value

    def test_converted_referrals_never_expire(self, referral_service, database, season, convert_referred):
        code = referral_service.get_or_create_referral_code("alice")
        converted = convert_referred(code.code, "bob")
        self._backdate(database, converted.id, 90)

        assert referral_service.expire_referrals() == 0

    def test_explicit_window_overrides_config(self, referral_service, database, season):
        code = referral_service.get_or_create_referral_code("alice")
        click = referral_service.track_click(code.code)
        self._backdate(database, click.id, 10)

        assert referral_service.expire_referrals(older_than_days=30) == 0
        assert referral_service.expire_referrals(season_id=season.id, older_than_days=7) == 1

    def test_season_without_window_skipped(self, referral_service, database):
        referral_service.create_season(
            name="Endless",
            is_default=True,
            config={"conversion_window_days": None},
        )
        code = referral_service.get_or_create_referral_code("alice")
        click = referral_service.track_click(code.code)
        self._backdate(database, click.id, 365)

        assert referral_service.expire_referrals() == 0


class TestQueries:
    """Test cases for listing and export queries."""

    def test_user_referrals_filtered_by_status(self, referral_service, season):
        code = referral_service.get_or_create_referral_code("alice")
        referral_service.track_click(code.code)
        referral_service.register_referral(code.code, "bob")
        referral_service.track_click(code.code)

        clicked = referral_service.get_user_referrals("alice", ReferralStatus.CLICKED.value)
        assert len(clicked) == 1
        assert len(referral_service.get_user_referrals("alice")) == 2

    def test_export_includes_code(self, referral_service, season, convert_referred):
        code = referral_service.get_or_create_referral_code("alice")
        convert_referred(code.code, "bob")

        rows = referral_service.export_referral_data(season.id)

        assert len(rows) == 1
        assert rows[0]["referral_code"] == code.code
        assert rows[0]["status"] == ReferralStatus.CONVERTED.value
        assert rows[0]["conversion_value"] == Decimal("29.99")
