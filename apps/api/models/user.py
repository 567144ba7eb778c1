"""User model."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Authenticated app user; `plan` mirrors the purchase entitlement."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, nullable=True, index=True)
    plan = Column(String, nullable=False, default="free", server_default="free")
    # Funnel requests made in the month starting at requests_period_start.
    requests_count = Column(Integer, nullable=False, default=0, server_default="0")
    requests_period_start = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    tag_preferences = relationship("TagPreference", back_populates="user", cascade="all, delete-orphan")

    @property
    def is_premium(self) -> bool:
        return (self.plan or "free") == "premium"
