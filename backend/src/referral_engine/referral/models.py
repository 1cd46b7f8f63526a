"""Referral system database models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from referral_engine.storage.models import Base, new_id


class ReferralStatus(str, Enum):
    """Referral lifecycle states.

    clicked -> signed_up -> converted; clicked and signed_up rows can also
    be moved to expired by the expiry job.
    """
    CLICKED = "clicked"
    SIGNED_UP = "signed_up"
    CONVERTED = "converted"
    EXPIRED = "expired"


class RewardType(str, Enum):
    """Kinds of reward a tier can grant."""
    DISCOUNT_CODE = "discount_code"
    CREDITS = "credits"
    FREE_MONTH = "free_month"
    TIER_UPGRADE = "tier_upgrade"
    CUSTOM = "custom"


DEFAULT_SEASON_CONFIG = {
    "allow_self_referral": False,
    "require_conversion": True,
    "conversion_window_days": 30,
    "min_purchase_for_conversion": 0,
    "max_referrals_per_user": None,
    "referral_code_prefix": "REF",
}


class ReferralSeason(Base):
    """A named referral competition window with its own tiers and codes."""
    __tablename__ = "referral_seasons"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    slug = Column(String(50), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    end_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    config = Column(JSON, nullable=False, default=dict)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tiers = relationship("ReferralTier", back_populates="season")

    def __repr__(self):
        return f"<ReferralSeason(slug={self.slug}, default={self.is_default})>"

    @property
    def allow_self_referral(self) -> bool:
        return bool((self.config or {}).get("allow_self_referral", False))

    @property
    def code_prefix(self) -> str | None:
        return (self.config or {}).get("referral_code_prefix")


class ReferralTier(Base):
    """Reward threshold inside a season, ordered by referrals_required."""
    __tablename__ = "referral_tiers"

    id = Column(String(36), primary_key=True, default=new_id)
    season_id = Column(String(36), ForeignKey("referral_seasons.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    referrals_required = Column(Integer, nullable=False)

    # reward_value is interpreted per reward_type, e.g. for discount_code:
    # {"percent": 25, "code_prefix": "BRONZE25", "max_uses": 1, "expires_days": 60}
    reward_type = Column(String(50), nullable=False)
    reward_value = Column(JSON, nullable=False, default=dict)

    badge_icon = Column(String(50), nullable=True)
    badge_color = Column(String(20), nullable=True)
    is_stackable = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    season = relationship("ReferralSeason", back_populates="tiers")

    def __repr__(self):
        return f"<ReferralTier(name={self.name}, required={self.referrals_required})>"


class ReferralCode(Base):
    """Shareable code owned by a user for one season.

    Tracks clicks on the referral link.
    """
    __tablename__ = "referral_codes"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    season_id = Column(String(36), ForeignKey("referral_seasons.id", ondelete="SET NULL"), nullable=True, index=True)

    # Statistics
    clicks = Column(Integer, default=0, nullable=False)
    last_click_at = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<ReferralCode(code={self.code}, clicks={self.clicks})>"


class Referral(Base):
    """Attribution record from click to conversion."""
    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("referred_user_id", "season_id", name="uq_referrals_referred_user_season"),
        Index("ix_referrals_code_status", "referral_code_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    referrer_id = Column(String(64), nullable=False, index=True)
    referral_code_id = Column(String(36), ForeignKey("referral_codes.id", ondelete="SET NULL"), nullable=True)
    season_id = Column(String(36), ForeignKey("referral_seasons.id", ondelete="SET NULL"), nullable=True, index=True)

    referred_user_id = Column(String(64), nullable=True, index=True)
    referred_email = Column(String(255), nullable=True)

    # Status
    status = Column(String(20), default=ReferralStatus.CLICKED.value, nullable=False, index=True)
    click_date = Column(DateTime, default=datetime.utcnow)
    signup_date = Column(DateTime, nullable=True)
    conversion_date = Column(DateTime, nullable=True)

    # Conversion details
    conversion_type = Column(String(50), nullable=True)  # subscription, lifetime, credits, other
    conversion_value = Column(Numeric(10, 2), nullable=True)
    conversion_product = Column(String(100), nullable=True)

    # Click metadata
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    utm_source = Column(String(100), nullable=True)
    utm_medium = Column(String(100), nullable=True)
    utm_campaign = Column(String(100), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Referral(referrer={self.referrer_id}, referred={self.referred_user_id}, status={self.status})>"


class ReferralStats(Base):
    """Per-user aggregate counters, recomputed from the referral ledger."""
    __tablename__ = "referral_stats"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    season_id = Column(String(36), ForeignKey("referral_seasons.id", ondelete="SET NULL"), nullable=True)

    total_clicks = Column(Integer, default=0, nullable=False)
    total_referrals = Column(Integer, default=0, nullable=False)
    successful_referrals = Column(Integer, default=0, nullable=False)
    pending_referrals = Column(Integer, default=0, nullable=False)
    expired_referrals = Column(Integer, default=0, nullable=False)
    total_conversions = Column(Integer, default=0, nullable=False)
    total_conversion_value = Column(Numeric(10, 2), default=0, nullable=False)
    total_rewards_earned = Column(Integer, default=0, nullable=False)
    total_rewards_claimed = Column(Integer, default=0, nullable=False)

    # Tier progress
    current_tier_id = Column(String(36), ForeignKey("referral_tiers.id", ondelete="SET NULL"), nullable=True)
    next_tier_id = Column(String(36), ForeignKey("referral_tiers.id", ondelete="SET NULL"), nullable=True)
    referrals_to_next_tier = Column(Integer, nullable=True)

    last_referral_at = Column(DateTime, nullable=True)
    last_conversion_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<ReferralStats(user={self.user_id}, successful={self.successful_referrals})>"


class ReferralReward(Base):
    """Reward granted to a user for reaching a tier."""
    __tablename__ = "referral_rewards"
    __table_args__ = (
        UniqueConstraint("user_id", "tier_id", name="uq_referral_rewards_user_tier"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    tier_id = Column(String(36), ForeignKey("referral_tiers.id", ondelete="SET NULL"), nullable=True, index=True)
    season_id = Column(String(36), ForeignKey("referral_seasons.id", ondelete="SET NULL"), nullable=True)

    reward_type = Column(String(50), nullable=False)
    reward_data = Column(JSON, nullable=False, default=dict)  # Snapshot of the tier's reward_value
    discount_code_id = Column(String(36), nullable=True)

    is_unlocked = Column(Boolean, default=True, nullable=False)
    is_claimed = Column(Boolean, default=False, nullable=False, index=True)
    claimed_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tier = relationship("ReferralTier", lazy="joined")

    def __repr__(self):
        return f"<ReferralReward(user={self.user_id}, tier={self.tier_id}, claimed={self.is_claimed})>"
