"""Referral engine schema

Revision ID: 001_referral_engine
Revises:
Create Date: 2026-10-18

Creates the referral and discount tables:
- Seasons and reward tiers
- Referral codes, referrals (click -> signup -> conversion)
- Per-user referral stats and granted rewards
- Discount codes and their usage ledger
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001_referral_engine"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create referral and discount tables."""

    # Seasons
    op.create_table(
        "referral_seasons",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("slug", sa.String(50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_date", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("is_default", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )

    # Tiers
    op.create_table(
        "referral_tiers",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("season_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("referrals_required", sa.Integer(), nullable=False),
        sa.Column("reward_type", sa.String(50), nullable=False),
        sa.Column("reward_value", sa.JSON(), nullable=False),
        sa.Column("badge_icon", sa.String(50), nullable=True),
        sa.Column("badge_color", sa.String(20), nullable=True),
        sa.Column("is_stackable", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("sort_order", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["season_id"], ["referral_seasons.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_referral_tiers_season_id", "referral_tiers", ["season_id"])

    # Referral codes
    op.create_table(
        "referral_codes",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("code", sa.String(50), nullable=False),
        sa.Column("season_id", sa.String(36), nullable=True),
        sa.Column("clicks", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_click_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["season_id"], ["referral_seasons.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_referral_codes_code", "referral_codes", ["code"], unique=True)
    op.create_index("ix_referral_codes_user_id", "referral_codes", ["user_id"])
    op.create_index("ix_referral_codes_season_id", "referral_codes", ["season_id"])

    # Referrals
    op.create_table(
        "referrals",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("referrer_id", sa.String(64), nullable=False),
        sa.Column("referral_code_id", sa.String(36), nullable=True),
        sa.Column("season_id", sa.String(36), nullable=True),
        sa.Column("referred_user_id", sa.String(64), nullable=True),
        sa.Column("referred_email", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), server_default="clicked", nullable=False),
        sa.Column("click_date", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("signup_date", sa.DateTime(), nullable=True),
        sa.Column("conversion_date", sa.DateTime(), nullable=True),
        sa.Column("conversion_type", sa.String(50), nullable=True),
        sa.Column("conversion_value", sa.Numeric(10, 2), nullable=True),
        sa.Column("conversion_product", sa.String(100), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("utm_source", sa.String(100), nullable=True),
        sa.Column("utm_medium", sa.String(100), nullable=True),
        sa.Column("utm_campaign", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["referral_code_id"], ["referral_codes.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["season_id"], ["referral_seasons.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("referred_user_id", "season_id", name="uq_referrals_referred_user_season"),
    )
    op.create_index("ix_referrals_referrer_id", "referrals", ["referrer_id"])
    op.create_index("ix_referrals_referred_user_id", "referrals", ["referred_user_id"])
    op.create_index("ix_referrals_season_id", "referrals", ["season_id"])
    op.create_index("ix_referrals_status", "referrals", ["status"])
    op.create_index("ix_referrals_code_status", "referrals", ["referral_code_id", "status"])

    # Stats
    op.create_table(
        "referral_stats",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("season_id", sa.String(36), nullable=True),
        sa.Column("total_clicks", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_referrals", sa.Integer(), server_default="0", nullable=False),
        sa.Column("successful_referrals", sa.Integer(), server_default="0", nullable=False),
        sa.Column("pending_referrals", sa.Integer(), server_default="0", nullable=False),
        sa.Column("expired_referrals", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_conversions", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_conversion_value", sa.Numeric(10, 2), server_default="0", nullable=False),
        sa.Column("total_rewards_earned", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_rewards_claimed", sa.Integer(), server_default="0", nullable=False),
        sa.Column("current_tier_id", sa.String(36), nullable=True),
        sa.Column("next_tier_id", sa.String(36), nullable=True),
        sa.Column("referrals_to_next_tier", sa.Integer(), nullable=True),
        sa.Column("last_referral_at", sa.DateTime(), nullable=True),
        sa.Column("last_conversion_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["season_id"], ["referral_seasons.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["current_tier_id"], ["referral_tiers.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["next_tier_id"], ["referral_tiers.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_referral_stats_user_id", "referral_stats", ["user_id"], unique=True)

    # Rewards
    op.create_table(
        "referral_rewards",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("tier_id", sa.String(36), nullable=True),
        sa.Column("season_id", sa.String(36), nullable=True),
        sa.Column("reward_type", sa.String(50), nullable=False),
        sa.Column("reward_data", sa.JSON(), nullable=False),
        sa.Column("discount_code_id", sa.String(36), nullable=True),
        sa.Column("is_unlocked", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("is_claimed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["tier_id"], ["referral_tiers.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["season_id"], ["referral_seasons.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "tier_id", name="uq_referral_rewards_user_tier"),
    )
    op.create_index("ix_referral_rewards_user_id", "referral_rewards", ["user_id"])
    op.create_index("ix_referral_rewards_tier_id", "referral_rewards", ["tier_id"])
    op.create_index("ix_referral_rewards_is_claimed", "referral_rewards", ["is_claimed"])

    # Discount codes
    op.create_table(
        "discount_codes",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("code", sa.String(50), nullable=False),
        sa.Column("name", sa.String(100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(20), server_default="percent", nullable=False),
        sa.Column("value", sa.Numeric(10, 2), nullable=False),
        sa.Column("applies_to", sa.String(50), server_default="all", nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("max_uses_per_user", sa.Integer(), server_default="1", nullable=True),
        sa.Column("current_uses", sa.Integer(), server_default="0", nullable=False),
        sa.Column("min_purchase", sa.Numeric(10, 2), nullable=True),
        sa.Column("max_discount", sa.Numeric(10, 2), nullable=True),
        sa.Column("source", sa.String(20), server_default="admin", nullable=False),
        sa.Column("referral_reward_id", sa.String(36), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("is_public", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("starts_at", sa.DateTime(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["referral_reward_id"], ["referral_rewards.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_discount_codes_code", "discount_codes", ["code"], unique=True)
    op.create_index("ix_discount_codes_source", "discount_codes", ["source"])
    op.create_index("ix_discount_codes_is_active", "discount_codes", ["is_active"])

    # Discount usage ledger
    op.create_table(
        "discount_code_usage",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("discount_code_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.String(100), nullable=True),
        sa.Column("original_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("final_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("product_type", sa.String(50), nullable=True),
        sa.Column("product_id", sa.String(100), nullable=True),
        sa.Column("used_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["discount_code_id"], ["discount_codes.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_discount_code_usage_discount_code_id", "discount_code_usage", ["discount_code_id"])
    op.create_index("ix_discount_code_usage_user_id", "discount_code_usage", ["user_id"])


def downgrade() -> None:
    """Drop referral and discount tables."""
    op.drop_index("ix_discount_code_usage_user_id", table_name="discount_code_usage")
    op.drop_index("ix_discount_code_usage_discount_code_id", table_name="discount_code_usage")
    op.drop_table("discount_code_usage")

    op.drop_index("ix_discount_codes_is_active", table_name="discount_codes")
    op.drop_index("ix_discount_codes_source", table_name="discount_codes")
    op.drop_index("ix_discount_codes_code", table_name="discount_codes")
    op.drop_table("discount_codes")

    op.drop_index("ix_referral_rewards_is_claimed", table_name="referral_rewards")
    op.drop_index("ix_referral_rewards_tier_id", table_name="referral_rewards")
    op.drop_index("ix_referral_rewards_user_id", table_name="referral_rewards")
    op.drop_table("referral_rewards")

    op.drop_index("ix_referral_stats_user_id", table_name="referral_stats")
    op.drop_table("referral_stats")

    op.drop_index("ix_referrals_code_status", table_name="referrals")
    op.drop_index("ix_referrals_status", table_name="referrals")
    op.drop_index("ix_referrals_season_id", table_name="referrals")
    op.drop_index("ix_referrals_referred_user_id", table_name="referrals")
    op.drop_index("ix_referrals_referrer_id", table_name="referrals")
    op.drop_table("referrals")

    op.drop_index("ix_referral_codes_season_id", table_name="referral_codes")
    op.drop_index("ix_referral_codes_user_id", table_name="referral_codes")
    op.drop_index("ix_referral_codes_code", table_name="referral_codes")
    op.drop_table("referral_codes")

    op.drop_index("ix_referral_tiers_season_id", table_name="referral_tiers")
    op.drop_table("referral_tiers")

    op.drop_table("referral_seasons")
