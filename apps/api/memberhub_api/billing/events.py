"""Normalized provider events.

The ingress layer turns loosely-shaped provider payloads into exactly one of
these models. The reconciler only ever sees these shapes.
"""

from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class CustomerSnapshot(BaseModel):
    """Customer data carried by a checkout (PII; never logged raw)."""

    customer_ref: str
    email: Optional[str] = None
    name: Optional[str] = None
    shipping_address: Optional[dict] = None


class SubscriptionSnapshot(BaseModel):
    """Provider subscription state at the time of the event."""

    subscription_ref: str
    customer_ref: Optional[str] = None
    status: str
    price_ref: Optional[str] = None
    tier: Optional[str] = None
    billing_cycle: Literal["MONTHLY", "ANNUAL"] = "MONTHLY"
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    account_ref: Optional[str] = None


class _EventBase(BaseModel):
    event_id: str
    event_type: str
    occurred_at: Optional[datetime] = None


class CheckoutCompleted(_EventBase):
    kind: Literal["checkout_completed"] = "checkout_completed"
    session_ref: str
    customer: CustomerSnapshot
    subscription_ref: str
    # None until hydrated when the session only carried an id
    subscription: Optional[SubscriptionSnapshot] = None
    tier_hint: Optional[str] = None
    billing_cycle_hint: Optional[Literal["MONTHLY", "ANNUAL"]] = None
    account_ref: Optional[str] = None

    @property
    def needs_hydration(self) -> bool:
        return self.subscription is None or not self.customer.email


class SubscriptionUpserted(_EventBase):
    kind: Literal["subscription_upserted"] = "subscription_upserted"
    subscription: SubscriptionSnapshot


class SubscriptionCanceled(_EventBase):
    kind: Literal["subscription_canceled"] = "subscription_canceled"
    subscription: SubscriptionSnapshot


class InvoicePaid(_EventBase):
    kind: Literal["invoice_paid"] = "invoice_paid"
    invoice_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    amount_paid: Optional[int] = None
    currency: Optional[str] = None


class InvoiceFailed(_EventBase):
    kind: Literal["invoice_failed"] = "invoice_failed"
    invoice_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    attempt_count: Optional[int] = None
    next_payment_attempt: Optional[datetime] = None


class UnknownEvent(_EventBase):
    """Recognized envelope, unhandled type. Acknowledged and discarded."""

    kind: Literal["unknown"] = "unknown"
    reason: str = Field(default="unhandled_event_type")


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionUpserted,
    SubscriptionCanceled,
    InvoicePaid,
    InvoiceFailed,
]
