"""Fulfillment collaborator client (print magazine delivery).

Notices are POSTed as JSON with a Bearer secret and an Idempotency-Key
derived from the fulfillment record, so a notice re-sent by the retry sweep
is recognizable on the receiving side.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

import httpx

from memberhub_api.config.env import get_fulfillment_timeout_seconds, get_fulfillment_webhook_url

logger = logging.getLogger(__name__)


class FulfillmentNotConfigured(RuntimeError):
    """FULFILLMENT_WEBHOOK_URL is not set; notices stay retry-pending."""


def build_fulfillment_payload(record, member) -> dict:
    """Notice body for a fulfillment record.

    event is subscription.created while the record is active and
    subscription.canceled once it has been canceled.
    """
    canceled = record.status == "canceled"
    return {
        "event": "subscription.canceled" if canceled else "subscription.created",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "fulfillment_id": record.id,
        "subscription_id": record.subscription_ref,
        "customer": {
            "email": member.email if member else None,
            "name": member.name if member else None,
            "shipping_address": record.shipping_address,
        },
        "tier": (record.tier or "INSIDER").lower(),
        "billing_cycle": (record.billing_cycle or "MONTHLY").lower(),
        "start_date": record.started_at.isoformat() if record.started_at else None,
        "status": record.status,
    }


def idempotency_key_for(record) -> str:
    return f"fulfillment-{record.id}-{record.status}"


class FulfillmentClient:
    """Outbound client for the fulfillment collaborator.

    Environment Variables:
    - FULFILLMENT_WEBHOOK_URL: endpoint receiving notices
    - FULFILLMENT_WEBHOOK_SECRET: Bearer token (optional)
    - FULFILLMENT_TIMEOUT_SECONDS: per-request timeout (default 10)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or get_fulfillment_webhook_url()
        self.secret = secret if secret is not None else os.getenv("FULFILLMENT_WEBHOOK_SECRET")
        self.timeout = get_fulfillment_timeout_seconds()
        self._transport = transport

    async def send(self, payload: dict, *, idempotency_key: str) -> None:
        """POST one notice.

        Raises:
            FulfillmentNotConfigured: no endpoint configured
            httpx.HTTPStatusError: non-2xx response
            httpx.RequestError: network / timeout
        """
        if not self.url:
            raise FulfillmentNotConfigured("FULFILLMENT_WEBHOOK_URL is not configured")

        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if self.secret:
            headers["Authorization"] = f"Bearer {self.secret}"

        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(self.url, headers=headers, json=payload, timeout=self.timeout)
            response.raise_for_status()

        logger.info(
            "FULFILLMENT_NOTICE_SENT",
            extra={
                "fulfillment_event": payload.get("event"),
                "fulfillment_id": payload.get("fulfillment_id"),
                "idempotency_key": idempotency_key,
            },
        )
