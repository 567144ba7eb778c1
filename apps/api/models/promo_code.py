"""Promo code catalog and per-device redemptions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, false, true
from sqlalchemy.sql import func

from database import Base


class PromoCode(Base):
    """Promo code configured out-of-band. `code` is stored uppercased."""

    __tablename__ = "promo_codes"

    code = Column(String, primary_key=True)
    bonus = Column(Integer, nullable=False, default=0)
    grants_premium = Column(Boolean, nullable=False, default=False, server_default=false())
    active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PromoRedemption(Base):
    """Insert-once proof that a device used a code."""

    __tablename__ = "promo_redemptions"

    device_id = Column(String, primary_key=True)
    code = Column(String, ForeignKey("promo_codes.code"), primary_key=True)
    redeemed_at = Column(DateTime(timezone=True), server_default=func.now())
