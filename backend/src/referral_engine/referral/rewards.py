"""Tier progression and reward claiming."""

from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError

from referral_engine.codes import retry_on_collision
from referral_engine.discounts.service import DiscountService
from referral_engine.logging_config import get_logger
from referral_engine.referral.models import ReferralReward, ReferralStats, ReferralTier, RewardType
from referral_engine.referral.service import ReferralService
from referral_engine.referral.stats import StatsService
from referral_engine.settings import settings
from referral_engine.storage.db import Database, db
from referral_engine.storage.models import new_id

logger = get_logger(__name__)


class RewardService:
    """Service granting and claiming tier rewards."""

    def __init__(
        self,
        database: Database | None = None,
        generate_id: Callable[[], str] | None = None,
    ):
        self.db = database or db
        self.generate_id = generate_id or new_id
        self.referral_service = ReferralService(self.db, self.generate_id)
        self.stats_service = StatsService(self.db, self.generate_id)
        self.discount_service = DiscountService(self.db, self.generate_id)
        self.logger = get_logger(__name__)

    def check_tier_progress(self, user_id: str) -> list[ReferralReward]:
        """Grant every reached tier of the default season not yet rewarded.

        Safe to call after every conversion: tiers already rewarded are
        skipped and nothing is ever revoked.

        Args:
            user_id: Referrer to check

        Returns:
            Only the rewards granted by this call
        """
        stats = self.stats_service.get_stats(user_id)
        if not stats:
            return []

        season = self.referral_service.get_default_season()
        if not season:
            return []

        new_rewards = []
        for tier in self.referral_service.get_tiers_by_season(season.id):
            if stats.successful_referrals < tier.referrals_required:
                continue
            if self.has_reward_for_tier(user_id, tier.id):
                continue

            reward = self.grant_reward(user_id, tier)
            if reward:
                new_rewards.append(reward)

        if new_rewards:
            self.logger.info("tier_progress_rewards_granted", user_id=user_id, count=len(new_rewards))
        return new_rewards

    def grant_reward(self, user_id: str, tier: ReferralTier) -> ReferralReward | None:
        """Grant a tier's reward, minting a discount code when required.

        The reward row, its discount code and the stats bump commit
        together. The (user, tier) unique constraint makes a second grant
        a no-op.

        Args:
            user_id: Rewarded user
            tier: Tier reached

        Returns:
            The new reward, or None if the tier was already rewarded

        Raises:
            CodeGenerationError: If no unused discount code could be generated
        """
        prefix = (tier.reward_value or {}).get("code_prefix") or settings.reward_code_prefix

        def attempt() -> ReferralReward | None:
            try:
                return self._insert_reward(user_id, tier)
            except IntegrityError:
                if self.has_reward_for_tier(user_id, tier.id):
                    self.logger.info("reward_already_granted", user_id=user_id, tier_id=tier.id)
                    return None
                raise

        return retry_on_collision(attempt, prefix)

    def _insert_reward(self, user_id: str, tier: ReferralTier) -> ReferralReward:
        reward_value = dict(tier.reward_value or {})

        with self.db.session() as session:
            reward = ReferralReward(
                id=self.generate_id(),
                user_id=user_id,
                tier_id=tier.id,
                season_id=tier.season_id,
                reward_type=tier.reward_type,
                reward_data=reward_value,
                is_unlocked=True,
                is_claimed=False,
            )
            session.add(reward)
            session.flush()

            if tier.reward_type == RewardType.DISCOUNT_CODE.value:
                discount = self.discount_service.mint_reward_code(session, reward_value, reward.id)
                reward.discount_code_id = discount.id

            session.query(ReferralStats).filter(
                ReferralStats.user_id == user_id,
            ).update(
                {
                    ReferralStats.total_rewards_earned: ReferralStats.total_rewards_earned + 1,
                    ReferralStats.current_tier_id: tier.id,
                },
                synchronize_session=False,
            )
            session.flush()
            session.refresh(reward)

            self.logger.info(
                "reward_granted",
                user_id=user_id,
                tier_id=tier.id,
                tier=reward.tier.name,
                reward_type=tier.reward_type,
                discount_code_id=reward.discount_code_id,
            )
            return reward

    def claim_reward(self, reward_id: str, user_id: str) -> ReferralReward | None:
        """Claim an unlocked reward owned by the user.

        Returns:
            The claimed reward, or None if it is unknown, not the user's,
            locked or already claimed
        """
        with self.db.session() as session:
            claimed = session.query(ReferralReward).filter(
                ReferralReward.id == reward_id,
                ReferralReward.user_id == user_id,
                ReferralReward.is_unlocked == True,
                ReferralReward.is_claimed == False,
            ).update(
                {
                    ReferralReward.is_claimed: True,
                    ReferralReward.claimed_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )

            if not claimed:
                self.logger.info("reward_claim_skipped", reward_id=reward_id, user_id=user_id)
                return None

            session.query(ReferralStats).filter(
                ReferralStats.user_id == user_id,
            ).update(
                {ReferralStats.total_rewards_claimed: ReferralStats.total_rewards_claimed + 1},
                synchronize_session=False,
            )

            reward = session.get(ReferralReward, reward_id)
            self.logger.info("reward_claimed", reward_id=reward_id, user_id=user_id)
            return reward

    def get_user_rewards(self, user_id: str) -> list[ReferralReward]:
        """Get a user's rewards, newest first, with their tier loaded."""
        with self.db.session() as session:
            return session.query(ReferralReward).filter(
                ReferralReward.user_id == user_id,
            ).order_by(ReferralReward.created_at.desc()).all()

    def get_reward_by_id(self, reward_id: str) -> ReferralReward | None:
        """Get reward by ID."""
        with self.db.session() as session:
            return session.get(ReferralReward, reward_id)

    def has_reward_for_tier(self, user_id: str, tier_id: str) -> bool:
        """Check whether a user already holds a tier's reward."""
        with self.db.session() as session:
            return session.query(ReferralReward.id).filter(
                ReferralReward.user_id == user_id,
                ReferralReward.tier_id == tier_id,
            ).first() is not None


# Singleton instance
reward_service = RewardService()
