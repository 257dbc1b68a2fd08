"""Webhook receiver — FastAPI endpoint for Linear webhook delivery.

Validates rate limits, HMAC-SHA256 signatures and payload freshness before
enqueuing events for the Session Event Router. Responds 200 immediately:
Linear expects an answer within 5 seconds and all real work happens on the
consumer side of the queue.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastapi import APIRouter, Header, Request, Response
from pydantic import ValidationError

from loom.models import LinearEvent

if TYPE_CHECKING:
    import asyncio

    from loom.linear_client import LinearClient

logger = logging.getLogger(__name__)

router = APIRouter()

# These are set during server startup (see server.py)
_event_queue: asyncio.Queue[LinearEvent] | None = None
_linear_client: LinearClient | None = None
_max_timestamp_skew: float = 60.0  # seconds, 0 = don't check

# Rate limiting state
_rate_limit_max: int = 60
_rate_limit_window: float = 60.0
_rate_limit_timestamps: list[float] = []


def configure(
    event_queue: asyncio.Queue[LinearEvent],
    linear_client: LinearClient,
    *,
    rate_limit_max: int = 60,
    max_timestamp_skew: float = 60.0,
) -> None:
    """Wire the webhook endpoint to the event queue and Linear client.

    Args:
        event_queue: Queue for async event processing.
        linear_client: Linear client for signature verification.
        rate_limit_max: Max webhook deliveries per minute (0 = unlimited).
        max_timestamp_skew: Reject payloads whose ``webhookTimestamp`` is further
            than this many seconds from now (0 = don't check).
    """
    global _event_queue, _linear_client, _max_timestamp_skew
    global _rate_limit_max, _rate_limit_timestamps
    _event_queue = event_queue
    _linear_client = linear_client
    _max_timestamp_skew = max_timestamp_skew
    _rate_limit_max = rate_limit_max
    _rate_limit_timestamps = []


def _check_rate_limit() -> bool:
    """Return True if the request is within rate limits."""
    global _rate_limit_timestamps
    if _rate_limit_max <= 0:
        return True

    now = time.monotonic()
    cutoff = now - _rate_limit_window
    _rate_limit_timestamps = [t for t in _rate_limit_timestamps if t > cutoff]

    if len(_rate_limit_timestamps) >= _rate_limit_max:
        return False

    _rate_limit_timestamps.append(now)
    return True


def _is_fresh(webhook_timestamp: int | None) -> bool:
    if _max_timestamp_skew <= 0 or webhook_timestamp is None:
        return True
    return abs(time.time() * 1000 - webhook_timestamp) <= _max_timestamp_skew * 1000


@router.post("/webhook/linear")
async def handle_webhook(
    request: Request,
    linear_delivery: str = Header(default=""),
    linear_signature: str = Header(default=""),
) -> Response:
    """Receive and enqueue a Linear webhook event.

    Checks (in order):
    1. Rate limit
    2. HMAC-SHA256 signature verification
    3. Payload shape and ``webhookTimestamp`` freshness (replay protection)
    4. Enqueue for async processing and return 200
    """
    if not _check_rate_limit():
        logger.warning("Webhook rate limit exceeded (delivery=%s)", linear_delivery)
        return Response(status_code=429, content="Rate limit exceeded")

    body = await request.body()

    if _linear_client and not _linear_client.verify_webhook_signature(body, linear_signature):
        logger.warning("Invalid webhook signature for delivery %s", linear_delivery)
        return Response(status_code=401, content="Invalid signature")

    try:
        payload = json.loads(body)
        # Event data normally sits under "data"; Linear's agent webhooks also
        # deliver agentSession at the top level
        data = payload.get("data")
        if not isinstance(data, dict):
            data = payload
        event = LinearEvent(
            type=payload.get("type", ""),
            action=payload.get("action"),
            data=data,
            delivery_id=linear_delivery or None,
            webhook_timestamp=payload.get("webhookTimestamp"),
        )
    except (ValueError, AttributeError, ValidationError):
        logger.warning("Malformed webhook payload (delivery=%s)", linear_delivery)
        return Response(status_code=400, content="Malformed payload")

    if not _is_fresh(event.webhook_timestamp):
        logger.warning(
            "Stale webhook rejected (delivery=%s, webhookTimestamp=%s)",
            linear_delivery,
            event.webhook_timestamp,
        )
        return Response(status_code=403, content="Stale webhook")

    logger.info(
        "Webhook received: %s (delivery=%s, session=%s)",
        event.full_type,
        linear_delivery,
        event.session_id,
    )

    if _event_queue is not None:
        await _event_queue.put(event)
    else:
        logger.error("Event queue not configured — dropping event %s", linear_delivery)

    return Response(status_code=200, content="ok")
