"""
Smoke tests for the command-line interface.

The CLI works against the global database, which conftest points at a
throwaway SQLite file. Each test uses its own user ids.
"""

import uuid
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from referral_engine.cli import app
from referral_engine.codes import CodeGenerationError
from referral_engine.discounts import discount_service
from referral_engine.referral import ReferralStatus, referral_service, reward_service
from referral_engine.storage.db import db

runner = CliRunner()


@pytest.fixture(scope="module", autouse=True)
def cli_database():
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    yield
    db.drop_tables()


@pytest.fixture(scope="module")
def cli_season():
    result = runner.invoke(app, ["season-create", "--name", "CLI Season", "--default", "--prefix", "cli"])
    assert result.exit_code == 0, result.output
    season = referral_service.get_default_season()

    result = runner.invoke(app, [
        "tier-create", season.id,
        "--name", "Starter",
        "--required", "1",
        "--reward-value", '{"percent": 15, "code_prefix": "STARTER"}',
    ])
    assert result.exit_code == 0, result.output
    return season


def _user(name: str) -> str:
    return f"{name}-{uuid.uuid4().hex[:8]}"


class TestCli:
    """Test cases for the referral-engine commands."""

    def test_season_and_tier_listing(self, cli_season):
        result = runner.invoke(app, ["season-list"])
        assert result.exit_code == 0
        assert "CLI Season" in result.output

        result = runner.invoke(app, ["tier-list", cli_season.id])
        assert result.exit_code == 0
        assert "Starter" in result.output

    def test_tier_create_rejects_bad_json(self, cli_season):
        result = runner.invoke(app, ["tier-create", cli_season.id, "--name", "Bad", "--required", "2", "--reward-value", "{"])

        assert result.exit_code == 1

    def test_full_referral_flow(self, cli_season, tmp_path):
        referrer = _user("alice")
        friend = _user("bob")

        result = runner.invoke(app, ["code", referrer])
        assert result.exit_code == 0
        code = referral_service.get_user_referral_code(referrer)
        assert code.code.startswith("CLI-")
        assert code.code in result.output

        result = runner.invoke(app, ["click", code.code, "--utm-source", "twitter"])
        assert result.exit_code == 0

        result = runner.invoke(app, ["signup", code.code, friend, "--email", "bob@example.com"])
        assert result.exit_code == 0
        referral = referral_service.get_user_referrals(referrer)[0]
        assert referral.status == ReferralStatus.SIGNED_UP.value

        result = runner.invoke(app, ["convert", referral.id, "--value", "49.00"])
        assert result.exit_code == 0
        assert "Reward unlocked" in result.output

        result = runner.invoke(app, ["convert", referral.id, "--value", "49.00"])
        assert result.exit_code == 0
        assert "not awaiting conversion" in result.output

        result = runner.invoke(app, ["stats", referrer])
        assert result.exit_code == 0
        assert "Successful:" in result.output

        rewards = reward_service.get_user_rewards(referrer)
        assert len(rewards) == 1

        result = runner.invoke(app, ["rewards-list", referrer])
        assert result.exit_code == 0

        result = runner.invoke(app, ["reward-claim", rewards[0].id, referrer])
        assert result.exit_code == 0
        result = runner.invoke(app, ["reward-claim", rewards[0].id, referrer])
        assert result.exit_code == 1

        output = tmp_path / "referrals.jsonl"
        result = runner.invoke(app, ["export", "--output", str(output), "--format", "jsonl", "--status", "converted"])
        assert result.exit_code == 0
        assert referral.id in output.read_text(encoding="utf-8")

    def test_code_for_unknown_season_fails(self, cli_season):
        result = runner.invoke(app, ["code", _user("dave"), "--season", "no-such-season"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_convert_reports_code_generation_failure(self, cli_season):
        referrer = _user("erin")
        referral_code = referral_service.get_or_create_referral_code(referrer)
        referral = referral_service.register_referral(referral_code.code, _user("frank"))

        with patch("referral_engine.cli.reward_service.check_tier_progress", side_effect=CodeGenerationError("STARTER", 10)):
            result = runner.invoke(app, ["convert", referral.id, "--value", "20.00"])

        assert result.exit_code == 1
        assert "Could not generate" in result.output

    def test_unknown_code_fails(self):
        result = runner.invoke(app, ["click", "CLI-UNKNOWN"])

        assert result.exit_code == 1

    def test_discount_commands(self):
        code = f"CLI{uuid.uuid4().hex[:6].upper()}"
        user = _user("carol")

        result = runner.invoke(app, ["discount-create", "--value", "20", "--code", code, "--min-purchase", "50"])
        assert result.exit_code == 0
        assert discount_service.get_discount_code_by_code(code) is not None

        result = runner.invoke(app, ["discount-validate", code, user, "--amount", "30"])
        assert result.exit_code == 1
        assert "Minimum purchase" in result.output

        result = runner.invoke(app, ["discount-apply", code, user, "--amount", "100"])
        assert result.exit_code == 0
        assert "80.00" in result.output

        result = runner.invoke(app, ["discount-apply", code, user, "--amount", "100"])
        assert result.exit_code == 1

    def test_leaderboard_and_expiry(self, cli_season):
        result = runner.invoke(app, ["leaderboard"])
        assert result.exit_code == 0

        result = runner.invoke(app, ["referrals-expire", "--older-than", "30"])
        assert result.exit_code == 0
        assert "Expired" in result.output
