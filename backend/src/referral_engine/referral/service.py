"""Referral service: seasons, tiers, codes, clicks, signups and conversions."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

from slugify import slugify
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from referral_engine.codes import generate_unused_code, normalize_code, retry_on_collision
from referral_engine.logging_config import get_logger
from referral_engine.money import to_money
from referral_engine.referral.models import (
    DEFAULT_SEASON_CONFIG,
    Referral,
    ReferralCode,
    ReferralSeason,
    ReferralStatus,
    ReferralTier,
)
from referral_engine.settings import settings
from referral_engine.storage.db import Database, db
from referral_engine.storage.models import new_id

logger = get_logger(__name__)

SEASON_UPDATABLE_FIELDS = {"name", "description", "end_date", "is_active", "is_default", "config"}

TIER_UPDATABLE_FIELDS = {
    "name",
    "description",
    "referrals_required",
    "reward_type",
    "reward_value",
    "badge_icon",
    "badge_color",
    "is_stackable",
    "is_active",
    "sort_order",
}


@dataclass
class ClickMetadata:
    """Request metadata captured with a referral link click."""
    ip_address: str | None = None
    user_agent: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None


class ReferralService:
    """Service for referral seasons, tiers, codes and attribution."""

    def __init__(
        self,
        database: Database | None = None,
        generate_id: Callable[[], str] | None = None,
    ):
        """Initialize referral service.

        Args:
            database: Database to use (defaults to the global instance)
            generate_id: Identifier generator for new rows
        """
        self.db = database or db
        self.generate_id = generate_id or new_id
        self.logger = get_logger(__name__)

    # ==================== SEASONS ====================

    def get_active_seasons(self) -> list[ReferralSeason]:
        """Get active seasons, default season first."""
        with self.db.session() as session:
            return session.query(ReferralSeason).filter(
                ReferralSeason.is_active == True,
            ).order_by(
                ReferralSeason.is_default.desc(),
                ReferralSeason.start_date.desc(),
            ).all()

    def get_default_season(self) -> ReferralSeason | None:
        """Get the active default season, if any."""
        with self.db.session() as session:
            return session.query(ReferralSeason).filter(
                ReferralSeason.is_active == True,
                ReferralSeason.is_default == True,
            ).first()

    def get_season_by_id(self, season_id: str) -> ReferralSeason | None:
        """Get season by ID."""
        with self.db.session() as session:
            return session.get(ReferralSeason, season_id)

    def create_season(
        self,
        name: str,
        slug: str | None = None,
        description: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        is_active: bool = True,
        is_default: bool = False,
        config: dict[str, Any] | None = None,
    ) -> ReferralSeason:
        """Create a referral season.

        Args:
            name: Season name
            slug: URL slug (derived from the name when omitted)
            description: Optional description
            start_date: Start of the season (defaults to now)
            end_date: Optional end of the season
            is_active: Whether the season is active
            is_default: Make this the default season, clearing any other default
            config: Season rules, merged over the default config

        Returns:
            Created season
        """
        with self.db.session() as session:
            if is_default:
                self._clear_default_season(session)

            season = ReferralSeason(
                id=self.generate_id(),
                name=name,
                slug=slug or slugify(name),
                description=description,
                start_date=start_date or datetime.utcnow(),
                end_date=end_date,
                is_active=is_active,
                is_default=is_default,
                config={**DEFAULT_SEASON_CONFIG, **(config or {})},
            )
            session.add(season)
            session.flush()

            self.logger.info("season_created", season_id=season.id, slug=season.slug, is_default=is_default)
            return season

    def update_season(self, season_id: str, **fields: Any) -> ReferralSeason | None:
        """Update only the supplied season fields.

        Returns:
            Updated season, or None if it does not exist

        Raises:
            ValueError: If a field cannot be updated
        """
        unknown = set(fields) - SEASON_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update season fields: {', '.join(sorted(unknown))}")

        with self.db.session() as session:
            season = session.get(ReferralSeason, season_id)
            if not season:
                return None

            if fields.get("is_default"):
                self._clear_default_season(session, exclude_id=season_id)

            for field, value in fields.items():
                setattr(season, field, value)
            season.updated_at = datetime.utcnow()
            session.flush()

            self.logger.info("season_updated", season_id=season_id, fields=sorted(fields))
            return season

    def _clear_default_season(self, session: Session, exclude_id: str | None = None) -> None:
        query = session.query(ReferralSeason).filter(ReferralSeason.is_default == True)
        if exclude_id:
            query = query.filter(ReferralSeason.id != exclude_id)
        query.update({ReferralSeason.is_default: False}, synchronize_session=False)

    # ==================== TIERS ====================

    def get_tiers_by_season(self, season_id: str) -> list[ReferralTier]:
        """Get active tiers of a season in ascending requirement order."""
        with self.db.session() as session:
            return session.query(ReferralTier).filter(
                ReferralTier.season_id == season_id,
                ReferralTier.is_active == True,
            ).order_by(
                ReferralTier.referrals_required.asc(),
                ReferralTier.sort_order.asc(),
                ReferralTier.id.asc(),
            ).all()

    def get_tier_by_id(self, tier_id: str) -> ReferralTier | None:
        """Get tier by ID."""
        with self.db.session() as session:
            return session.get(ReferralTier, tier_id)

    def create_tier(
        self,
        season_id: str,
        name: str,
        referrals_required: int,
        reward_type: str,
        reward_value: dict[str, Any] | None = None,
        description: str | None = None,
        badge_icon: str | None = None,
        badge_color: str | None = None,
        is_stackable: bool = False,
        sort_order: int = 0,
    ) -> ReferralTier:
        """Create a reward tier in a season.

        Args:
            season_id: Owning season
            name: Tier name, e.g. Bronze
            referrals_required: Successful referrals needed to unlock
            reward_type: One of RewardType
            reward_value: Reward payload interpreted per reward type
            description: Optional description
            badge_icon: Optional badge icon name
            badge_color: Optional badge color
            is_stackable: Whether the reward can combine with others
            sort_order: Display order among tiers with equal requirements

        Returns:
            Created tier
        """
        with self.db.session() as session:
            tier = ReferralTier(
                id=self.generate_id(),
                season_id=season_id,
                name=name,
                description=description,
                referrals_required=referrals_required,
                reward_type=reward_type,
                reward_value=reward_value or {},
                badge_icon=badge_icon,
                badge_color=badge_color,
                is_stackable=is_stackable,
                sort_order=sort_order,
            )
            session.add(tier)
            session.flush()

            self.logger.info(
                "tier_created",
                tier_id=tier.id,
                season_id=season_id,
                referrals_required=referrals_required,
                reward_type=reward_type,
            )
            return tier

    def update_tier(self, tier_id: str, **fields: Any) -> ReferralTier | None:
        """Update only the supplied tier fields.

        Returns:
            Updated tier, or None if it does not exist

        Raises:
            ValueError: If a field cannot be updated
        """
        unknown = set(fields) - TIER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update tier fields: {', '.join(sorted(unknown))}")

        with self.db.session() as session:
            tier = session.get(ReferralTier, tier_id)
            if not tier:
                return None

            for field, value in fields.items():
                setattr(tier, field, value)
            tier.updated_at = datetime.utcnow()
            session.flush()

            self.logger.info("tier_updated", tier_id=tier_id, fields=sorted(fields))
            return tier

    def delete_tier(self, tier_id: str) -> bool:
        """Delete a tier. Returns True if a row was removed."""
        with self.db.session() as session:
            deleted = session.query(ReferralTier).filter(
                ReferralTier.id == tier_id,
            ).delete(synchronize_session=False)

        if deleted:
            self.logger.info("tier_deleted", tier_id=tier_id)
        return bool(deleted)

    # ==================== CODES ====================

    def get_user_referral_code(self, user_id: str, season_id: str | None = None) -> ReferralCode | None:
        """Get the user's newest active code, optionally for one season."""
        with self.db.session() as session:
            return self._find_user_code(session, user_id, season_id)

    def get_referral_code_by_code(self, code: str) -> ReferralCode | None:
        """Look up an active code, case-insensitively."""
        with self.db.session() as session:
            return self._find_active_code(session, code)

    def get_or_create_referral_code(self, user_id: str, season_id: str | None = None) -> ReferralCode | None:
        """Get the user's active code for a season, creating one if needed.

        The season is the given one, else the active default season. The
        code prefix comes from the season config.

        Args:
            user_id: Code owner
            season_id: Optional explicit season

        Returns:
            Existing or newly created ReferralCode, or None if an explicit
            season_id does not exist

        Raises:
            CodeGenerationError: If no unused code could be generated
        """
        if season_id:
            season = self.get_season_by_id(season_id)
            if not season:
                self.logger.info("referral_code_unknown_season", user_id=user_id, season_id=season_id)
                return None
        else:
            season = self.get_default_season()
        resolved_season_id = season.id if season else None
        prefix = (season.code_prefix if season else None) or settings.referral_code_prefix

        existing = self.get_user_referral_code(user_id, resolved_season_id)
        if existing:
            return existing

        def create_code() -> ReferralCode:
            with self.db.session() as session:
                # A concurrent request may have created it since the first check
                current = self._find_user_code(session, user_id, resolved_season_id)
                if current:
                    return current

                code = generate_unused_code(prefix, lambda candidate: self._code_exists(session, candidate))
                referral_code = ReferralCode(
                    id=self.generate_id(),
                    user_id=user_id,
                    code=code,
                    season_id=resolved_season_id,
                )
                session.add(referral_code)
                session.flush()

                self.logger.info(
                    "referral_code_created",
                    user_id=user_id,
                    season_id=resolved_season_id,
                    code=code,
                )
                return referral_code

        return retry_on_collision(create_code, prefix)

    def deactivate_referral_code(self, code_id: str) -> bool:
        """Deactivate a referral code. Returns True if it was active."""
        with self.db.session() as session:
            updated = session.query(ReferralCode).filter(
                ReferralCode.id == code_id,
                ReferralCode.is_active == True,
            ).update({ReferralCode.is_active: False}, synchronize_session=False)

        if updated:
            self.logger.info("referral_code_deactivated", code_id=code_id)
        return bool(updated)

    def _find_user_code(self, session: Session, user_id: str, season_id: str | None) -> ReferralCode | None:
        query = session.query(ReferralCode).filter(
            ReferralCode.user_id == user_id,
            ReferralCode.is_active == True,
        )
        if season_id:
            query = query.filter(ReferralCode.season_id == season_id)
        return query.order_by(ReferralCode.created_at.desc()).first()

    def _find_active_code(self, session: Session, code: str) -> ReferralCode | None:
        if not code or not code.strip():
            return None
        return session.query(ReferralCode).filter(
            ReferralCode.code == normalize_code(code),
            ReferralCode.is_active == True,
        ).first()

    def _code_exists(self, session: Session, code: str) -> bool:
        return session.query(ReferralCode.id).filter(ReferralCode.code == code).first() is not None

    # ==================== TRACKING ====================

    def track_click(self, code: str, metadata: ClickMetadata | None = None) -> Referral | None:
        """Record a click on a referral link.

        Every click creates a new Referral in ``clicked`` state.

        Args:
            code: Referral code from the link
            metadata: Request metadata (IP, user agent, UTM fields)

        Returns:
            The new Referral, or None if the code is unknown or inactive
        """
        metadata = metadata or ClickMetadata()
        now = datetime.utcnow()

        with self.db.session() as session:
            referral_code = self._find_active_code(session, code)
            if not referral_code:
                self.logger.info("referral_click_unknown_code", code=code)
                return None

            session.query(ReferralCode).filter(
                ReferralCode.id == referral_code.id,
            ).update(
                {
                    ReferralCode.clicks: ReferralCode.clicks + 1,
                    ReferralCode.last_click_at: now,
                },
                synchronize_session=False,
            )

            referral = Referral(
                id=self.generate_id(),
                referrer_id=referral_code.user_id,
                referral_code_id=referral_code.id,
                season_id=referral_code.season_id,
                status=ReferralStatus.CLICKED.value,
                click_date=now,
                ip_address=metadata.ip_address,
                user_agent=metadata.user_agent,
                utm_source=metadata.utm_source,
                utm_medium=metadata.utm_medium,
                utm_campaign=metadata.utm_campaign,
            )
            session.add(referral)
            session.flush()

            self.logger.info("referral_click_tracked", code=referral_code.code, referral_id=referral.id)
            return referral

    def register_referral(
        self,
        code: str,
        referred_user_id: str,
        referred_email: str | None = None,
    ) -> Referral | None:
        """Attribute a signup to a referral code.

        Reuses the newest pending click for the code when there is one,
        otherwise creates a referral directly in ``signed_up``. Registering
        the same user again for the season returns the existing row.

        Args:
            code: Referral code used at signup
            referred_user_id: The new user
            referred_email: Optional email of the new user

        Returns:
            The signed-up Referral, or None if the code is unknown or the
            self-referral policy rejects it
        """
        try:
            return self._register_referral(code, referred_user_id, referred_email)
        except IntegrityError:
            # Lost a race against a concurrent signup for the same user and season
            referral_code = self.get_referral_code_by_code(code)
            existing = self._get_referral_for_user(referred_user_id, referral_code.season_id) if referral_code else None
            if existing is None:
                raise
            self.logger.info("referral_already_registered", referral_id=existing.id, referred_user_id=referred_user_id)
            return existing

    def _register_referral(
        self,
        code: str,
        referred_user_id: str,
        referred_email: str | None,
    ) -> Referral | None:
        now = datetime.utcnow()

        with self.db.session() as session:
            referral_code = self._find_active_code(session, code)
            if not referral_code:
                self.logger.info("referral_signup_unknown_code", code=code)
                return None

            if referral_code.user_id == referred_user_id:
                season = session.get(ReferralSeason, referral_code.season_id) if referral_code.season_id else None
                if not (season and season.allow_self_referral):
                    self.logger.warning(
                        "self_referral_rejected",
                        user_id=referred_user_id,
                        code=referral_code.code,
                    )
                    return None

            existing = self._find_referral_for_user(session, referred_user_id, referral_code.season_id)
            if existing:
                return existing

            pending = session.query(Referral).filter(
                Referral.referral_code_id == referral_code.id,
                Referral.status == ReferralStatus.CLICKED.value,
                Referral.referred_user_id.is_(None),
            ).order_by(Referral.click_date.desc()).first()

            if pending:
                # Guarded so two signups cannot claim the same click
                claimed = session.query(Referral).filter(
                    Referral.id == pending.id,
                    Referral.status == ReferralStatus.CLICKED.value,
                    Referral.referred_user_id.is_(None),
                ).update(
                    {
                        Referral.referred_user_id: referred_user_id,
                        Referral.referred_email: referred_email,
                        Referral.status: ReferralStatus.SIGNED_UP.value,
                        Referral.signup_date: now,
                        Referral.updated_at: now,
                    },
                    synchronize_session=False,
                )
                if claimed:
                    session.refresh(pending)
                    self.logger.info(
                        "referral_signup_attributed",
                        referral_id=pending.id,
                        referrer_id=pending.referrer_id,
                        referred_user_id=referred_user_id,
                    )
                    return pending

            referral = Referral(
                id=self.generate_id(),
                referrer_id=referral_code.user_id,
                referral_code_id=referral_code.id,
                season_id=referral_code.season_id,
                referred_user_id=referred_user_id,
                referred_email=referred_email,
                status=ReferralStatus.SIGNED_UP.value,
                click_date=now,
                signup_date=now,
            )
            session.add(referral)
            session.flush()

            self.logger.info(
                "referral_signup_created",
                referral_id=referral.id,
                referrer_id=referral.referrer_id,
                referred_user_id=referred_user_id,
            )
            return referral

    def _get_referral_for_user(self, referred_user_id: str, season_id: str | None) -> Referral | None:
        with self.db.session() as session:
            return self._find_referral_for_user(session, referred_user_id, season_id)

    def _find_referral_for_user(self, session: Session, referred_user_id: str, season_id: str | None) -> Referral | None:
        return session.query(Referral).filter(
            Referral.referred_user_id == referred_user_id,
            Referral.season_id == season_id,
        ).first()

    def convert_referral(
        self,
        referral_id: str,
        conversion_type: str,
        conversion_value: Decimal | float | int,
        product_id: str | None = None,
    ) -> Referral | None:
        """Mark a signed-up referral as converted.

        The write only applies while the referral is ``signed_up``, so a
        repeated or concurrent conversion event changes nothing.

        Args:
            referral_id: Referral to convert
            conversion_type: subscription, lifetime, credits, ...
            conversion_value: Purchase value
            product_id: Optional purchased product

        Returns:
            The converted Referral, or None if it was not in ``signed_up``
        """
        now = datetime.utcnow()

        with self.db.session() as session:
            updated = session.query(Referral).filter(
                Referral.id == referral_id,
                Referral.status == ReferralStatus.SIGNED_UP.value,
            ).update(
                {
                    Referral.status: ReferralStatus.CONVERTED.value,
                    Referral.conversion_date: now,
                    Referral.conversion_type: conversion_type,
                    Referral.conversion_value: to_money(conversion_value),
                    Referral.conversion_product: product_id,
                    Referral.updated_at: now,
                },
                synchronize_session=False,
            )

            if not updated:
                self.logger.info("referral_conversion_skipped", referral_id=referral_id)
                return None

            referral = session.get(Referral, referral_id)
            self.logger.info(
                "referral_converted",
                referral_id=referral_id,
                referrer_id=referral.referrer_id,
                conversion_type=conversion_type,
                conversion_value=str(referral.conversion_value),
            )
            return referral

    def expire_referrals(self, season_id: str | None = None, older_than_days: int | None = None) -> int:
        """Expire referrals that never progressed within the conversion window.

        ``clicked`` rows older than the window (by click date) and
        ``signed_up`` rows older than the window (by signup date) move to
        ``expired``. The window is ``older_than_days`` when given, else the
        season's ``conversion_window_days``; seasons with neither are skipped.

        Args:
            season_id: Limit to one season (defaults to all active seasons)
            older_than_days: Explicit window in days

        Returns:
            Number of referrals expired
        """
        seasons = [self.get_season_by_id(season_id)] if season_id else self.get_active_seasons()
        now = datetime.utcnow()
        total = 0

        for season in seasons:
            if season is None:
                continue
            window = older_than_days if older_than_days is not None else (season.config or {}).get("conversion_window_days")
            if window is None:
                self.logger.info("referral_expiry_skipped", season_id=season.id)
                continue

            cutoff = now - timedelta(days=window)
            with self.db.session() as session:
                expired_clicks = session.query(Referral).filter(
                    Referral.season_id == season.id,
                    Referral.status == ReferralStatus.CLICKED.value,
                    Referral.click_date < cutoff,
                ).update(
                    {Referral.status: ReferralStatus.EXPIRED.value, Referral.updated_at: now},
                    synchronize_session=False,
                )
                expired_signups = session.query(Referral).filter(
                    Referral.season_id == season.id,
                    Referral.status == ReferralStatus.SIGNED_UP.value,
                    Referral.signup_date < cutoff,
                ).update(
                    {Referral.status: ReferralStatus.EXPIRED.value, Referral.updated_at: now},
                    synchronize_session=False,
                )

            total += expired_clicks + expired_signups
            self.logger.info(
                "referrals_expired",
                season_id=season.id,
                window_days=window,
                clicks=expired_clicks,
                signups=expired_signups,
            )

        return total

    # ==================== QUERIES ====================

    def get_user_referrals(self, user_id: str, status: str | None = None) -> list[Referral]:
        """Get referrals made by a user, newest first."""
        with self.db.session() as session:
            query = session.query(Referral).filter(Referral.referrer_id == user_id)
            if status:
                query = query.filter(Referral.status == status)
            return query.order_by(Referral.created_at.desc()).all()

    def get_all_referral_codes(
        self,
        season_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ReferralCode]:
        """List referral codes for administration."""
        with self.db.session() as session:
            query = session.query(ReferralCode)
            if season_id:
                query = query.filter(ReferralCode.season_id == season_id)
            return query.order_by(ReferralCode.created_at.desc()).limit(limit).offset(offset).all()

    def get_all_referrals(
        self,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Referral]:
        """List referrals for administration."""
        with self.db.session() as session:
            query = session.query(Referral)
            if status:
                query = query.filter(Referral.status == status)
            return query.order_by(Referral.created_at.desc()).limit(limit).offset(offset).all()

    def export_referral_data(self, season_id: str | None = None) -> list[dict[str, Any]]:
        """Flatten referrals with their code for export.

        Args:
            season_id: Optional season filter

        Returns:
            List of row dicts, newest first
        """
        with self.db.session() as session:
            query = session.query(Referral, ReferralCode.code).outerjoin(
                ReferralCode, Referral.referral_code_id == ReferralCode.id
            )
            if season_id:
                query = query.filter(Referral.season_id == season_id)

            rows = []
            for referral, code in query.order_by(Referral.created_at.desc()).all():
                rows.append({
                    "id": referral.id,
                    "status": referral.status,
                    "click_date": referral.click_date,
                    "signup_date": referral.signup_date,
                    "conversion_date": referral.conversion_date,
                    "conversion_type": referral.conversion_type,
                    "conversion_value": referral.conversion_value,
                    "referral_code": code,
                    "referrer_id": referral.referrer_id,
                })
            return rows


# Singleton instance
referral_service = ReferralService()
