"""Discount code service: minting, validation and redemption."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.orm import Session

from referral_engine.codes import generate_unused_code, normalize_code, retry_on_collision
from referral_engine.discounts.models import (
    APPLIES_TO_ALL,
    DiscountCode,
    DiscountCodeUsage,
    DiscountSource,
    DiscountType,
)
from referral_engine.logging_config import get_logger
from referral_engine.money import ZERO, to_money
from referral_engine.settings import settings
from referral_engine.storage.db import Database, db
from referral_engine.storage.models import new_id

logger = get_logger(__name__)

DISCOUNT_UPDATABLE_FIELDS = {
    "name",
    "description",
    "type",
    "value",
    "applies_to",
    "max_uses",
    "max_uses_per_user",
    "min_purchase",
    "max_discount",
    "is_active",
    "is_public",
    "starts_at",
    "expires_at",
}


@dataclass
class DiscountValidation:
    """Outcome of validating a discount code."""
    valid: bool
    discount: DiscountCode | None = None
    error: str | None = None


@dataclass
class DiscountApplication:
    """Outcome of redeeming a discount code."""
    success: bool
    final_amount: Decimal
    discount_amount: Decimal
    error: str | None = None
    usage_id: str | None = None


def compute_discount_amount(discount: DiscountCode, original_amount: Decimal) -> Decimal:
    """Compute the discount for an amount, capped at ``max_discount``.

    free_month and free_trial codes are honoured by subscription logic and
    take nothing off the amount here.
    """
    value = to_money(discount.value)

    if discount.type == DiscountType.PERCENT.value:
        amount = to_money(original_amount * value / 100)
    elif discount.type == DiscountType.FIXED.value:
        amount = value
    else:
        amount = ZERO

    if discount.max_discount is not None and amount > to_money(discount.max_discount):
        amount = to_money(discount.max_discount)

    return amount


class DiscountService:
    """Service for discount codes and their redemption ledger."""

    def __init__(
        self,
        database: Database | None = None,
        generate_id: Callable[[], str] | None = None,
    ):
        """Initialize discount service.

        Args:
            database: Database to use (defaults to the global instance)
            generate_id: Identifier generator for new rows
        """
        self.db = database or db
        self.generate_id = generate_id or new_id
        self.logger = get_logger(__name__)

    # ==================== CREATION ====================

    def mint_reward_code(
        self,
        session: Session,
        reward_value: dict[str, Any],
        reward_id: str,
    ) -> DiscountCode:
        """Add a percent code minted from a tier reward to an open transaction.

        Args:
            session: Transaction shared with the reward insert
            reward_value: Tier reward payload (percent, code_prefix, max_uses,
                max_discount, expires_days)
            reward_id: Reward the code belongs to

        Returns:
            The pending DiscountCode (flushed, not committed)
        """
        prefix = reward_value.get("code_prefix") or settings.reward_code_prefix
        code = generate_unused_code(prefix, lambda candidate: self._code_exists(session, candidate))

        expires_at = None
        if reward_value.get("expires_days"):
            expires_at = datetime.utcnow() + timedelta(days=int(reward_value["expires_days"]))

        max_discount = reward_value.get("max_discount")
        discount = DiscountCode(
            id=self.generate_id(),
            code=code,
            name=f"Referral Reward - {reward_value.get('percent', 0)}% off",
            type=DiscountType.PERCENT.value,
            value=to_money(reward_value.get("percent", 0)),
            applies_to=APPLIES_TO_ALL,
            max_uses=reward_value.get("max_uses", 1),
            max_uses_per_user=1,
            current_uses=0,
            max_discount=to_money(max_discount) if max_discount is not None else None,
            source=DiscountSource.REFERRAL.value,
            referral_reward_id=reward_id,
            is_active=True,
            is_public=False,
            starts_at=datetime.utcnow(),
            expires_at=expires_at,
        )
        session.add(discount)
        session.flush()

        self.logger.info("reward_discount_code_minted", code=code, reward_id=reward_id, percent=str(discount.value))
        return discount

    def generate_discount_code_from_reward(self, reward_value: dict[str, Any], reward_id: str) -> DiscountCode:
        """Mint a reward discount code in its own transaction.

        Raises:
            CodeGenerationError: If no unused code could be generated
        """
        prefix = reward_value.get("code_prefix") or settings.reward_code_prefix

        def mint() -> DiscountCode:
            with self.db.session() as session:
                return self.mint_reward_code(session, reward_value, reward_id)

        return retry_on_collision(mint, prefix)

    def create_discount_code(
        self,
        value: Decimal | float | int,
        code: str | None = None,
        type: str = DiscountType.PERCENT.value,
        name: str | None = None,
        description: str | None = None,
        applies_to: str = APPLIES_TO_ALL,
        max_uses: int | None = None,
        max_uses_per_user: int | None = 1,
        min_purchase: Decimal | float | int | None = None,
        max_discount: Decimal | float | int | None = None,
        is_active: bool = True,
        is_public: bool = False,
        starts_at: datetime | None = None,
        expires_at: datetime | None = None,
        created_by: str | None = None,
    ) -> DiscountCode:
        """Create an admin-authored discount code.

        Args:
            value: Percent (0-100) or fixed amount depending on type
            code: Explicit code; generated with the promo prefix when omitted
            type: One of DiscountType
            name: Display name
            description: Optional description
            applies_to: ``all`` or a purchase type
            max_uses: Global redemption cap (None = unlimited)
            max_uses_per_user: Per-user redemption cap (None = unlimited)
            min_purchase: Minimum purchase amount
            max_discount: Cap on the computed discount
            is_active: Whether the code can be redeemed
            is_public: Whether the code is advertised
            starts_at: Start of validity (defaults to now)
            expires_at: End of validity
            created_by: Admin user id

        Returns:
            Created DiscountCode

        Raises:
            ValueError: If the discount type is unknown
            CodeGenerationError: If no unused code could be generated
        """
        if type not in {t.value for t in DiscountType}:
            raise ValueError(f"Unknown discount type: {type}")

        def insert(session: Session, final_code: str) -> DiscountCode:
            discount = DiscountCode(
                id=self.generate_id(),
                code=final_code,
                name=name,
                description=description,
                type=type,
                value=to_money(value),
                applies_to=applies_to,
                max_uses=max_uses,
                max_uses_per_user=max_uses_per_user,
                current_uses=0,
                min_purchase=to_money(min_purchase) if min_purchase is not None else None,
                max_discount=to_money(max_discount) if max_discount is not None else None,
                source=DiscountSource.ADMIN.value,
                created_by=created_by,
                is_active=is_active,
                is_public=is_public,
                starts_at=starts_at or datetime.utcnow(),
                expires_at=expires_at,
            )
            session.add(discount)
            session.flush()

            self.logger.info("discount_code_created", code=final_code, type=type, value=str(discount.value))
            return discount

        if code:
            # Explicit codes are not retried; a duplicate is the caller's problem
            with self.db.session() as session:
                return insert(session, normalize_code(code))

        prefix = settings.promo_code_prefix

        def create_generated() -> DiscountCode:
            with self.db.session() as session:
                generated = generate_unused_code(prefix, lambda candidate: self._code_exists(session, candidate))
                return insert(session, generated)

        return retry_on_collision(create_generated, prefix)

    # ==================== LOOKUP / ADMIN ====================

    def get_discount_code_by_code(self, code: str) -> DiscountCode | None:
        """Get a discount code by its code string, case-insensitively."""
        with self.db.session() as session:
            return self._find_code(session, code)

    def get_discount_code_by_id(self, discount_code_id: str) -> DiscountCode | None:
        """Get discount code by ID."""
        with self.db.session() as session:
            return session.get(DiscountCode, discount_code_id)

    def get_public_discount_codes(self) -> list[DiscountCode]:
        """Get active, public codes that have not expired."""
        now = datetime.utcnow()
        with self.db.session() as session:
            return session.query(DiscountCode).filter(
                DiscountCode.is_active == True,
                DiscountCode.is_public == True,
                (DiscountCode.expires_at.is_(None)) | (DiscountCode.expires_at > now),
            ).order_by(DiscountCode.created_at.desc()).all()

    def update_discount_code(self, discount_code_id: str, **fields: Any) -> DiscountCode | None:
        """Update only the supplied discount code fields.

        Returns:
            Updated DiscountCode, or None if it does not exist

        Raises:
            ValueError: If a field cannot be updated
        """
        unknown = set(fields) - DISCOUNT_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update discount code fields: {', '.join(sorted(unknown))}")

        for money_field in ("value", "min_purchase", "max_discount"):
            if fields.get(money_field) is not None:
                fields[money_field] = to_money(fields[money_field])

        with self.db.session() as session:
            discount = session.get(DiscountCode, discount_code_id)
            if not discount:
                return None

            for field, value in fields.items():
                setattr(discount, field, value)
            discount.updated_at = datetime.utcnow()
            session.flush()

            self.logger.info("discount_code_updated", discount_code_id=discount_code_id, fields=sorted(fields))
            return discount

    def deactivate_discount_code(self, discount_code_id: str) -> bool:
        """Deactivate a discount code. Returns True if it was active."""
        with self.db.session() as session:
            updated = session.query(DiscountCode).filter(
                DiscountCode.id == discount_code_id,
                DiscountCode.is_active == True,
            ).update(
                {DiscountCode.is_active: False, DiscountCode.updated_at: datetime.utcnow()},
                synchronize_session=False,
            )

        if updated:
            self.logger.info("discount_code_deactivated", discount_code_id=discount_code_id)
        return bool(updated)

    def get_usage_for_code(self, discount_code_id: str) -> list[DiscountCodeUsage]:
        """Get the redemption ledger of a code, newest first."""
        with self.db.session() as session:
            return session.query(DiscountCodeUsage).filter(
                DiscountCodeUsage.discount_code_id == discount_code_id,
            ).order_by(DiscountCodeUsage.used_at.desc()).all()

    # ==================== VALIDATION / REDEMPTION ====================

    def validate_discount_code(
        self,
        code: str,
        user_id: str,
        purchase_type: str | None = None,
        purchase_amount: Decimal | float | int | None = None,
    ) -> DiscountValidation:
        """Validate a discount code for a user and purchase.

        Checks run in order and stop at the first failure.

        Args:
            code: Code entered by the user
            user_id: Redeeming user
            purchase_type: Product type being bought, if known
            purchase_amount: Purchase amount, if known

        Returns:
            DiscountValidation with the code on success or a reason on failure
        """
        with self.db.session() as session:
            return self._validate(session, code, user_id, purchase_type, purchase_amount)

    def _validate(
        self,
        session: Session,
        code: str,
        user_id: str,
        purchase_type: str | None,
        purchase_amount: Decimal | float | int | None,
    ) -> DiscountValidation:
        discount = self._find_code(session, code)
        if not discount or not discount.is_active:
            return DiscountValidation(valid=False, error="Invalid discount code")

        now = datetime.utcnow()
        if discount.expires_at and discount.expires_at < now:
            return DiscountValidation(valid=False, error="Discount code has expired")

        if discount.starts_at and discount.starts_at > now:
            return DiscountValidation(valid=False, error="Discount code is not active yet")

        if discount.max_uses is not None and discount.current_uses >= discount.max_uses:
            return DiscountValidation(valid=False, error="Discount code has reached maximum uses")

        if discount.max_uses_per_user is not None:
            user_uses = session.query(func.count(DiscountCodeUsage.id)).filter(
                DiscountCodeUsage.discount_code_id == discount.id,
                DiscountCodeUsage.user_id == user_id,
            ).scalar() or 0
            if user_uses >= discount.max_uses_per_user:
                return DiscountValidation(valid=False, error="You have already used this discount code")

        if discount.applies_to != APPLIES_TO_ALL and purchase_type and discount.applies_to != purchase_type:
            return DiscountValidation(
                valid=False,
                error=f"This discount only applies to {discount.applies_to} purchases",
            )

        if discount.min_purchase is not None and purchase_amount is not None:
            if to_money(purchase_amount) < to_money(discount.min_purchase):
                return DiscountValidation(
                    valid=False,
                    error=f"Minimum purchase of ${to_money(discount.min_purchase)} required",
                )

        return DiscountValidation(valid=True, discount=discount)

    def apply_discount_code(
        self,
        code: str,
        user_id: str,
        original_amount: Decimal | float | int,
        product_type: str,
        product_id: str | None = None,
        order_id: str | None = None,
    ) -> DiscountApplication:
        """Redeem a discount code against a purchase.

        Validation, the usage ledger insert and the ``current_uses``
        increment share one transaction.

        Args:
            code: Code entered by the user
            user_id: Redeeming user
            original_amount: Amount before discount
            product_type: Product type being bought
            product_id: Product being bought
            order_id: Payment intent or order reference

        Returns:
            DiscountApplication; on failure the amount is left untouched
        """
        original = to_money(original_amount)

        with self.db.session() as session:
            validation = self._validate(session, code, user_id, product_type, original)
            if not validation.valid:
                self.logger.info("discount_code_rejected", code=code, user_id=user_id, reason=validation.error)
                return DiscountApplication(
                    success=False,
                    final_amount=original,
                    discount_amount=ZERO,
                    error=validation.error,
                )

            discount = validation.discount
            discount_amount = compute_discount_amount(discount, original)
            final_amount = max(ZERO, original - discount_amount)

            usage = DiscountCodeUsage(
                id=self.generate_id(),
                discount_code_id=discount.id,
                user_id=user_id,
                order_id=order_id,
                original_amount=original,
                discount_amount=discount_amount,
                final_amount=final_amount,
                product_type=product_type,
                product_id=product_id,
            )
            session.add(usage)

            session.query(DiscountCode).filter(
                DiscountCode.id == discount.id,
            ).update(
                {DiscountCode.current_uses: DiscountCode.current_uses + 1},
                synchronize_session=False,
            )
            session.flush()

            self.logger.info(
                "discount_code_applied",
                code=discount.code,
                user_id=user_id,
                order_id=order_id,
                original_amount=str(original),
                discount_amount=str(discount_amount),
                final_amount=str(final_amount),
            )

            return DiscountApplication(
                success=True,
                final_amount=final_amount,
                discount_amount=discount_amount,
                usage_id=usage.id,
            )

    def _find_code(self, session: Session, code: str) -> DiscountCode | None:
        if not code or not code.strip():
            return None
        return session.query(DiscountCode).filter(DiscountCode.code == normalize_code(code)).first()

    def _code_exists(self, session: Session, code: str) -> bool:
        return session.query(DiscountCode.id).filter(DiscountCode.code == code).first() is not None


# Singleton instance
discount_service = DiscountService()
