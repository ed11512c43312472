"""Server-sent event subscriptions to live changes."""

import json
import logging
from queue import Empty
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from replisync.api.dependencies import get_subscription_hub
from replisync.api.sync import CamelModel
from replisync.core.config import settings
from replisync.sync.subscriptions import DeliveryQueue, SubscriptionHub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["subscriptions"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class SubscriptionSchema(CamelModel):
    subscription_id: str
    table_name: Optional[str] = None
    record_id: Optional[str] = None
    queued: int
    dropped: int


class UnsubscribeResponse(CamelModel):
    subscription_id: str
    removed: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def format_sse(event: str, data) -> str:
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


async def event_stream(
    request: Request,
    hub: SubscriptionHub,
    queue: DeliveryQueue,
    keepalive_seconds: float,
) -> AsyncIterator[str]:
    """Yield SSE frames for ``queue`` until the client leaves or the queue closes."""
    yield format_sse("connected", {"subscriptionId": queue.subscription_id})
    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                entry = await queue.get_async(keepalive_seconds)
            except Empty:
                yield ": keep-alive\n\n"
                continue
            if entry is None:
                break
            yield format_sse("change", entry.to_wire())
    finally:
        hub.unsubscribe(queue.subscription_id)


def _stream(request: Request, hub: SubscriptionHub, table_name: Optional[str],
            record_id: Optional[str]) -> StreamingResponse:
    queue = hub.subscribe(table_name=table_name, record_filter=record_id)
    return StreamingResponse(
        event_stream(request, hub, queue, settings.SSE_KEEPALIVE_SECONDS),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("/subscribe")
async def subscribe(
    request: Request,
    table: Optional[str] = Query(None),
    record_id: Optional[str] = Query(None, alias="recordId"),
    hub: SubscriptionHub = Depends(get_subscription_hub),
):
    return _stream(request, hub, table, record_id)


@router.get("/subscribe/table/{table_name}")
async def subscribe_table(
    request: Request,
    table_name: str,
    hub: SubscriptionHub = Depends(get_subscription_hub),
):
    return _stream(request, hub, table_name, None)


@router.get("/subscribe/record/{table_name}/{record_id}")
async def subscribe_record(
    request: Request,
    table_name: str,
    record_id: str,
    hub: SubscriptionHub = Depends(get_subscription_hub),
):
    return _stream(request, hub, table_name, record_id)


@router.get("/subscriptions", response_model=List[SubscriptionSchema])
def list_subscriptions(hub: SubscriptionHub = Depends(get_subscription_hub)):
    return [s.to_wire() for s in hub.subscriptions()]


@router.delete("/subscriptions/{subscription_id}", response_model=UnsubscribeResponse)
def unsubscribe(subscription_id: str, hub: SubscriptionHub = Depends(get_subscription_hub)):
    """Remove a subscription. Unknown IDs succeed with ``removed: false``."""
    return {"subscriptionId": subscription_id, "removed": hub.unsubscribe(subscription_id)}
