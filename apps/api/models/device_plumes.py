"""DevicePlumes model: per-device plumes balance."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, false
from sqlalchemy.sql import func

from database import Base


class DevicePlumes(Base):
    """One row per device; created lazily on first access."""

    __tablename__ = "device_plumes"
    __table_args__ = (
        CheckConstraint("plumes_count >= 0", name="ck_device_plumes_non_negative"),
    )

    device_id = Column(String, primary_key=True)
    plumes_count = Column(Integer, nullable=False)
    is_premium = Column(Boolean, nullable=False, default=False, server_default=false())
    last_daily_reward_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
