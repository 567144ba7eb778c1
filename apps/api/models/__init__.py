"""Models package."""

from .user import User
from .device_plumes import DevicePlumes
from .promo_code import PromoCode, PromoRedemption
from .subscription_quota import SubscriptionQuota
from .identity_mapping import IdentityMapping
from .session_charge import SessionCharge
from .tag_preference import TagPreference
