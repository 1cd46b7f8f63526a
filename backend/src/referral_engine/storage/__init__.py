"""Storage layer: engine, sessions and exports."""

from referral_engine.storage.db import Database, db
from referral_engine.storage.models import Base, new_id

__all__ = ["Base", "Database", "db", "new_id"]
