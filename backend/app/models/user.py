"""
User model.
Authenticated via Firebase (firebase_uid); admins can refund payments and scan tickets.
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, String
from app.models.base import Base, utcnow


class User(Base):
    """Platform user (payer, registrant or admin)."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    firebase_uid = Column(String(128), nullable=False, unique=True, index=True)  # Firebase user ID
    email = Column(String(255), nullable=True)  # Email from Firebase token
    name = Column(String(255), nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<User(id={self.id}, firebase_uid={self.firebase_uid}, is_admin={self.is_admin})>"
