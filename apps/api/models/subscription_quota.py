"""Monthly resolution-mode quota keyed by stable purchase identity."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class SubscriptionQuota(Base):
    __tablename__ = "subscription_quotas"
    __table_args__ = (
        CheckConstraint("monthly_scans_used >= 0", name="ck_subscription_quotas_non_negative"),
    )

    original_app_user_id = Column(String, primary_key=True)
    monthly_scans_used = Column(Integer, nullable=False, default=0)
    period_start = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
