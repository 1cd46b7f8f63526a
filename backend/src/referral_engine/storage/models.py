"""Declarative base shared by every engine table."""

import uuid

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def new_id() -> str:
    """Return a fresh opaque row identifier."""
    return str(uuid.uuid4())
