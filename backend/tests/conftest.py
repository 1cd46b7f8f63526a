"""
Test configuration and fixtures for the referral engine.

Each test gets its own file-backed SQLite database. The global database
used by the CLI points at a throwaway file as well.
"""

import itertools
import os
import tempfile

test_db_path = tempfile.mktemp(suffix=".db")
os.environ["REFERRAL_DATABASE_URL"] = f"sqlite:///{test_db_path}"
os.environ.setdefault("REFERRAL_LOG_LEVEL", "WARNING")

import pytest

from referral_engine.discounts.service import DiscountService
from referral_engine.referral.models import RewardType
from referral_engine.referral.rewards import RewardService
from referral_engine.referral.service import ReferralService
from referral_engine.referral.stats import StatsService
from referral_engine.storage.db import Database


@pytest.fixture
def database(tmp_path):
    """Fresh database with every table created."""
    database = Database(f"sqlite:///{tmp_path / 'referrals.db'}")
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def id_factory():
    """Deterministic identifier generator."""
    counter = itertools.count(1)
    return lambda: f"id-{next(counter):04d}"


@pytest.fixture
def referral_service(database, id_factory):
    return ReferralService(database, id_factory)


@pytest.fixture
def stats_service(database, id_factory):
    return StatsService(database, id_factory)


@pytest.fixture
def reward_service(database, id_factory):
    return RewardService(database, id_factory)


@pytest.fixture
def discount_service(database, id_factory):
    return DiscountService(database, id_factory)


@pytest.fixture
def season(referral_service):
    """Default season with the default config."""
    return referral_service.create_season(name="Launch Season", is_default=True)


@pytest.fixture
def tiers(referral_service, season):
    """Bronze (1), Silver (3) and Gold (5) tiers of the default season."""
    bronze = referral_service.create_tier(
        season_id=season.id,
        name="Bronze",
        referrals_required=1,
        reward_type=RewardType.DISCOUNT_CODE.value,
        reward_value={"percent": 10, "code_prefix": "BRONZE", "expires_days": 30},
    )
    silver = referral_service.create_tier(
        season_id=season.id,
        name="Silver",
        referrals_required=3,
        reward_type=RewardType.CREDITS.value,
        reward_value={"credits": 100},
    )
    gold = referral_service.create_tier(
        season_id=season.id,
        name="Gold",
        referrals_required=5,
        reward_type=RewardType.DISCOUNT_CODE.value,
        reward_value={"percent": 25, "max_discount": 50},
    )
    return [bronze, silver, gold]


@pytest.fixture
def convert_referred(referral_service):
    """Sign up and convert a referred user through a code."""

    def _convert(code: str, referred_user_id: str, value: float = 29.99):
        referral = referral_service.register_referral(code, referred_user_id)
        assert referral is not None
        return referral_service.convert_referral(referral.id, "subscription", value)

    return _convert
