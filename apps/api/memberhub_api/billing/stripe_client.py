"""Stripe REST client for checkout hydration.

A checkout.session.completed event usually carries only the ids of its
subscription and customer. Before reconciling, the webhook handler fetches
both objects so the reconciler works from a full snapshot.

Stripe API Reference:
- Subscriptions: https://docs.stripe.com/api/subscriptions/retrieve
- Customers: https://docs.stripe.com/api/customers/retrieve
"""

import logging
import os
from typing import Optional

import httpx

from memberhub_api.config.env import get_stripe_api_timeout_seconds

logger = logging.getLogger(__name__)


class StripeClient:
    """Minimal read-only Stripe API client.

    Environment Variables:
    - STRIPE_SECRET_KEY: restricted or secret key (rk_* / sk_*)
    - STRIPE_API_BASE_URL: override for stripe-mock / tests
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.secret_key = os.getenv("STRIPE_SECRET_KEY")

        if not self.secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required. Set it in environment configuration."
            )

        self.env = "test" if "_test_" in self.secret_key else "live"
        self.base_url = os.getenv("STRIPE_API_BASE_URL", "https://api.stripe.com").rstrip("/")
        self.timeout = get_stripe_api_timeout_seconds()
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    async def _get(self, path: str, params: Optional[list[tuple[str, str]]] = None) -> dict:
        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.get(
                f"{self.base_url}{path}",
                headers=self._headers(),
                params=params,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()

    async def get_subscription(self, subscription_ref: str) -> dict:
        """Retrieve a subscription with its prices expanded.

        Raises:
            httpx.HTTPStatusError: Non-2xx response
            httpx.RequestError: Network / timeout
        """
        result = await self._get(
            f"/v1/subscriptions/{subscription_ref}",
            params=[("expand[]", "items.data.price")],
        )
        logger.info(
            "STRIPE_SUBSCRIPTION_RETRIEVED",
            extra={
                "subscription_ref": subscription_ref,
                "status": result.get("status"),
                "stripe_env": self.env,
            },
        )
        return result

    async def get_customer(self, customer_ref: str) -> dict:
        """Retrieve a customer (email, name, shipping).

        Raises:
            httpx.HTTPStatusError: Non-2xx response
            httpx.RequestError: Network / timeout
        """
        result = await self._get(f"/v1/customers/{customer_ref}")
        logger.info(
            "STRIPE_CUSTOMER_RETRIEVED",
            extra={"customer_ref": customer_ref, "stripe_env": self.env},
        )
        return result


_stripe_client: Optional[StripeClient] = None


def get_stripe_client() -> StripeClient:
    """Get the process-wide Stripe client.

    Raises:
        ValueError: STRIPE_SECRET_KEY missing
    """
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeClient()
    return _stripe_client
