"""Process-wide subscription hub and its stale-subscription sweeper."""

import asyncio
import logging
from datetime import timedelta

from replisync.core.config import settings
from replisync.sync.subscriptions import SubscriptionHub

logger = logging.getLogger(__name__)

subscription_hub = SubscriptionHub(
    queue_capacity=settings.SUBSCRIPTION_QUEUE_CAPACITY,
    ttl=timedelta(seconds=settings.SUBSCRIPTION_TTL_SECONDS),
)


async def sweep_periodically(hub: SubscriptionHub, interval_seconds: float) -> None:
    """Run ``hub.sweep`` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            hub.sweep()
        except Exception:
            logger.exception("Subscription sweep failed")
