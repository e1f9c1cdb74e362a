"""
Declarative base shared by every model.
All models inherit from this base.
"""
from datetime import datetime, timezone
import secrets

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_reference(prefix: str, nbytes: int = 6) -> str:
    """
    Generate an external-facing reference such as ``PAY-1A2B3C4D5E6F``.

    Uniqueness is enforced by the unique index on the owning column;
    callers retry on collision.
    """
    return f"{prefix}-{secrets.token_hex(nbytes).upper()}"
