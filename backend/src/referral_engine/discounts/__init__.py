"""Discount codes: admin promotions and referral reward codes."""

from referral_engine.discounts.models import DiscountCode, DiscountCodeUsage, DiscountSource, DiscountType
from referral_engine.discounts.service import (
    DiscountApplication,
    DiscountService,
    DiscountValidation,
    discount_service,
)

__all__ = [
    "DiscountApplication",
    "DiscountCode",
    "DiscountCodeUsage",
    "DiscountService",
    "DiscountSource",
    "DiscountType",
    "DiscountValidation",
    "discount_service",
]
