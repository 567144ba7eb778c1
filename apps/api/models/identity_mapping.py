"""App user id -> stable original purchase identity."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class IdentityMapping(Base):
    """
    Mapping pushed by the purchase provider webhook.

    The original id survives account deletion and recreation, so quota usage
    bound to it cannot be reset by cycling accounts.
    """

    __tablename__ = "identity_mappings"

    app_user_id = Column(String, primary_key=True)
    original_app_user_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
