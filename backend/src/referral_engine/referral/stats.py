"""Referral statistics and leaderboard.

ReferralStats rows are a derived cache: every update recomputes them from
the referral ledger, the codes and the rewards, never incrementally.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from referral_engine.discounts.models import DiscountCode, DiscountCodeUsage
from referral_engine.logging_config import get_logger
from referral_engine.money import to_money
from referral_engine.referral.models import (
    Referral,
    ReferralCode,
    ReferralReward,
    ReferralStats,
    ReferralStatus,
    ReferralTier,
)
from referral_engine.referral.service import ReferralService
from referral_engine.settings import settings
from referral_engine.storage.db import Database, db
from referral_engine.storage.models import new_id

logger = get_logger(__name__)

CONVERTED = ReferralStatus.CONVERTED.value
SIGNED_UP = ReferralStatus.SIGNED_UP.value
EXPIRED = ReferralStatus.EXPIRED.value


@dataclass
class LeaderboardEntry:
    """One ranked row of the leaderboard."""
    rank: int
    user_id: str
    successful_referrals: int
    total_conversion_value: Decimal
    total_referrals: int


class StatsService:
    """Service for per-user referral statistics."""

    def __init__(
        self,
        database: Database | None = None,
        generate_id: Callable[[], str] | None = None,
    ):
        self.db = database or db
        self.generate_id = generate_id or new_id
        self.referral_service = ReferralService(self.db, self.generate_id)
        self.logger = get_logger(__name__)

    def get_stats(self, user_id: str) -> ReferralStats | None:
        """Get the cached stats row for a user."""
        with self.db.session() as session:
            return session.query(ReferralStats).filter(ReferralStats.user_id == user_id).first()

    def update_stats(self, user_id: str) -> ReferralStats:
        """Recompute a user's stats from source tables and upsert them.

        The next tier is the first tier of the default season whose
        requirement exceeds the user's successful referrals.

        Args:
            user_id: Referrer to recompute

        Returns:
            The stored ReferralStats row
        """
        season = self.referral_service.get_default_season()
        tiers = self.referral_service.get_tiers_by_season(season.id) if season else []

        # A concurrent first insert for the same user trips the unique index
        retrying = Retrying(
            retry=retry_if_exception_type(IntegrityError),
            stop=stop_after_attempt(3),
            reraise=True,
        )
        return retrying(self._recompute, user_id, season.id if season else None, tiers)

    def _recompute(self, user_id: str, season_id: str | None, tiers: list[ReferralTier]) -> ReferralStats:
        with self.db.session() as session:
            counts = session.query(
                func.count(case((Referral.status.in_([SIGNED_UP, CONVERTED]), 1))),
                func.count(case((Referral.status == CONVERTED, 1))),
                func.count(case((Referral.status == SIGNED_UP, 1))),
                func.count(case((Referral.status == EXPIRED, 1))),
                func.sum(case((Referral.status == CONVERTED, Referral.conversion_value))),
                func.max(Referral.signup_date),
                func.max(Referral.conversion_date),
            ).filter(Referral.referrer_id == user_id).one()

            (
                total_referrals,
                successful_referrals,
                pending_referrals,
                expired_referrals,
                conversion_value,
                last_referral_at,
                last_conversion_at,
            ) = counts

            total_clicks = session.query(
                func.coalesce(func.sum(ReferralCode.clicks), 0)
            ).filter(ReferralCode.user_id == user_id).scalar()

            rewards_earned, rewards_claimed = session.query(
                func.count(ReferralReward.id),
                func.count(case((ReferralReward.is_claimed == True, 1))),
            ).filter(ReferralReward.user_id == user_id).one()

            current_tier = session.query(ReferralTier).join(
                ReferralReward, ReferralReward.tier_id == ReferralTier.id
            ).filter(
                ReferralReward.user_id == user_id,
            ).order_by(ReferralTier.referrals_required.desc()).first()

            next_tier_id = None
            referrals_to_next_tier = None
            for tier in tiers:
                if tier.referrals_required > successful_referrals:
                    next_tier_id = tier.id
                    referrals_to_next_tier = tier.referrals_required - successful_referrals
                    break

            stats = session.query(ReferralStats).filter(ReferralStats.user_id == user_id).first()
            if not stats:
                stats = ReferralStats(id=self.generate_id(), user_id=user_id)
                session.add(stats)

            stats.season_id = season_id
            stats.total_clicks = int(total_clicks or 0)
            stats.total_referrals = total_referrals
            stats.successful_referrals = successful_referrals
            stats.pending_referrals = pending_referrals
            stats.expired_referrals = expired_referrals
            stats.total_conversions = successful_referrals
            stats.total_conversion_value = to_money(conversion_value)
            stats.total_rewards_earned = rewards_earned
            stats.total_rewards_claimed = rewards_claimed
            stats.current_tier_id = current_tier.id if current_tier else None
            stats.next_tier_id = next_tier_id
            stats.referrals_to_next_tier = referrals_to_next_tier
            stats.last_referral_at = last_referral_at
            stats.last_conversion_at = last_conversion_at
            stats.updated_at = datetime.utcnow()
            session.flush()

            self.logger.info(
                "referral_stats_updated",
                user_id=user_id,
                successful_referrals=successful_referrals,
                next_tier_id=next_tier_id,
                referrals_to_next_tier=referrals_to_next_tier,
            )
            return stats

    def get_leaderboard(self, season_id: str | None = None, limit: int | None = None) -> list[LeaderboardEntry]:
        """Rank users by successful referrals, then conversion value.

        Args:
            season_id: Only include stats recorded for this season
            limit: Maximum rows (defaults to settings)

        Returns:
            Entries with ranks starting at 1
        """
        limit = limit or settings.leaderboard_limit

        with self.db.session() as session:
            query = session.query(ReferralStats)
            if season_id:
                query = query.filter(ReferralStats.season_id == season_id)

            rows = query.order_by(
                ReferralStats.successful_referrals.desc(),
                ReferralStats.total_conversion_value.desc(),
                ReferralStats.user_id.asc(),
            ).limit(limit).all()

        return [
            LeaderboardEntry(
                rank=position,
                user_id=row.user_id,
                successful_referrals=row.successful_referrals,
                total_conversion_value=to_money(row.total_conversion_value),
                total_referrals=row.total_referrals,
            )
            for position, row in enumerate(rows, start=1)
        ]

    def get_admin_stats(self) -> dict[str, Any]:
        """Program-wide counters for the admin dashboard."""
        with self.db.session() as session:
            return {
                "total_codes": session.query(func.count(ReferralCode.id)).filter(
                    ReferralCode.is_active == True
                ).scalar(),
                "total_clicks": session.query(func.coalesce(func.sum(ReferralCode.clicks), 0)).scalar(),
                "total_referrals": session.query(func.count(Referral.id)).scalar(),
                "pending_referrals": session.query(func.count(Referral.id)).filter(
                    Referral.status == SIGNED_UP
                ).scalar(),
                "converted_referrals": session.query(func.count(Referral.id)).filter(
                    Referral.status == CONVERTED
                ).scalar(),
                "total_revenue": to_money(
                    session.query(func.sum(Referral.conversion_value)).filter(
                        Referral.status == CONVERTED
                    ).scalar()
                ),
                "claimed_rewards": session.query(func.count(ReferralReward.id)).filter(
                    ReferralReward.is_claimed == True
                ).scalar(),
                "active_discount_codes": session.query(func.count(DiscountCode.id)).filter(
                    DiscountCode.is_active == True
                ).scalar(),
                "discount_codes_used": session.query(func.count(DiscountCodeUsage.id)).scalar(),
            }


# Singleton instance
stats_service = StatsService()
