"""Discount code models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text

from referral_engine.storage.models import Base, new_id


class DiscountType(str, Enum):
    """How a discount value is interpreted."""
    PERCENT = "percent"
    FIXED = "fixed"
    FREE_MONTH = "free_month"  # Applied by subscription logic, not here
    FREE_TRIAL = "free_trial"


class DiscountSource(str, Enum):
    """Who authored a discount code."""
    ADMIN = "admin"
    REFERRAL = "referral"


APPLIES_TO_ALL = "all"


class DiscountCode(Base):
    """Discount code, either admin-authored or minted from a referral reward."""
    __tablename__ = "discount_codes"

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)

    # Discount details
    type = Column(String(20), nullable=False, default=DiscountType.PERCENT.value)
    value = Column(Numeric(10, 2), nullable=False)  # 50 for 50%, or a fixed amount
    applies_to = Column(String(50), nullable=False, default=APPLIES_TO_ALL)  # all, lifetime, subscription, credits

    # Usage limits
    max_uses = Column(Integer, nullable=True)  # NULL = unlimited
    max_uses_per_user = Column(Integer, default=1, nullable=True)
    current_uses = Column(Integer, default=0, nullable=False)

    # Conditions
    min_purchase = Column(Numeric(10, 2), nullable=True)
    max_discount = Column(Numeric(10, 2), nullable=True)  # Cap on the discount amount

    # Origin
    source = Column(String(20), nullable=False, default=DiscountSource.ADMIN.value, index=True)
    referral_reward_id = Column(String(36), ForeignKey("referral_rewards.id", ondelete="SET NULL"), nullable=True)
    created_by = Column(String(64), nullable=True)

    # Status
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    is_public = Column(Boolean, default=False, nullable=False)  # Shown on pricing page

    # Validity window
    starts_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<DiscountCode(code={self.code}, type={self.type}, value={self.value})>"


class DiscountCodeUsage(Base):
    """Append-only ledger row for each redemption."""
    __tablename__ = "discount_code_usage"

    id = Column(String(36), primary_key=True, default=new_id)
    discount_code_id = Column(String(36), ForeignKey("discount_codes.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(100), nullable=True)  # Payment intent or order ID

    # Amounts
    original_amount = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    final_amount = Column(Numeric(10, 2), nullable=False)

    product_type = Column(String(50), nullable=True)
    product_id = Column(String(100), nullable=True)

    used_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<DiscountCodeUsage(code_id={self.discount_code_id}, user={self.user_id}, order={self.order_id})>"
