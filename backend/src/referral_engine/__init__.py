"""Referral attribution, tier progression and discount redemption engine."""

__version__ = "0.1.0"
