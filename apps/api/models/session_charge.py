"""SessionCharge model: one plumes charge per device and funnel session."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class SessionCharge(Base):
    __tablename__ = "session_charges"

    device_id = Column(String, primary_key=True)
    session_id = Column(String, primary_key=True)
    amount = Column(Integer, nullable=False)
    # Digest of the session's context and opening response.
    fingerprint = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
