"""
User model.
Authenticated via Firebase (firebase_uid); created on first authenticated request.
Plan and quota state live in UserEntitlement, keyed by the same id.
"""
from sqlalchemy import Column, String, Index, DateTime
from reviseflow.models.base import Base, generate_uuid, utcnow


class User(Base):
    """User identity record."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    firebase_uid = Column(String(128), nullable=False, unique=True)  # Firebase user ID
    email = Column(String(255), nullable=True)  # Email from Firebase token

    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Index on firebase_uid for fast lookups
    __table_args__ = (
        Index("idx_user_firebase_uid", "firebase_uid"),
    )

    def __repr__(self):
        return f"<User(id={self.id}, firebase_uid={self.firebase_uid})>"
