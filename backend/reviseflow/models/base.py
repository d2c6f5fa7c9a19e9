"""
Base model for all ORM tables.
All models inherit from this base.
"""
from datetime import datetime, timezone
from sqlalchemy.orm import DeclarativeBase
import uuid


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def generate_uuid():
    """Generate a UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
