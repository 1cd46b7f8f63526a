"""Referral module.

Season-based referral program:
- Shareable codes per user and season, with click tracking
- Click -> signup -> conversion attribution
- Tier rewards unlocked by successful referrals
"""

from referral_engine.referral.models import (
    Referral,
    ReferralCode,
    ReferralReward,
    ReferralSeason,
    ReferralStats,
    ReferralStatus,
    ReferralTier,
    RewardType,
)
from referral_engine.referral.rewards import RewardService, reward_service
from referral_engine.referral.service import ClickMetadata, ReferralService, referral_service
from referral_engine.referral.stats import LeaderboardEntry, StatsService, stats_service

__all__ = [
    "ClickMetadata",
    "LeaderboardEntry",
    "Referral",
    "ReferralCode",
    "ReferralReward",
    "ReferralSeason",
    "ReferralService",
    "ReferralStats",
    "ReferralStatus",
    "ReferralTier",
    "RewardService",
    "RewardType",
    "StatsService",
    "referral_service",
    "reward_service",
    "stats_service",
]
