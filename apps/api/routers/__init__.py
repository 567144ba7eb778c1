"""Routers package."""

from . import (
    health,
    auth,
    plumes,
    promo,
    quota,
    funnel,
    webhooks,
)
