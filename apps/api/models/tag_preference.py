"""Thematic tag preference scores fed back into recommendations."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class TagPreference(Base):
    __tablename__ = "tag_preferences"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    tag_slug = Column(String, primary_key=True)
    score = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="tag_preferences")
