"""Shared FastAPI dependencies."""

from replisync.services.subscription_service import subscription_hub
from replisync.sync.subscriptions import SubscriptionHub


def get_subscription_hub() -> SubscriptionHub:
    """The process-wide hub; overridden in tests for isolation."""
    return subscription_hub
