"""Provider event ingress: signature verification and normalization.

Everything that depends on the shape of a Stripe payload lives here:
  - snake_case vs camelCase period fields (API versions and legacy relays)
  - period fields moved onto subscription items in newer API versions
  - expanded objects vs bare ids for customer / subscription / price
  - invoice → subscription reference under parent.subscription_details
  - epoch seconds vs ISO-8601 timestamps

normalize_event() is pure translation. Hydrating a checkout whose
subscription was not expanded is a separate async step (hydrate_checkout).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

import stripe

from memberhub_api.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    CustomerSnapshot,
    InvoiceFailed,
    InvoicePaid,
    SubscriptionCanceled,
    SubscriptionSnapshot,
    SubscriptionUpserted,
    UnknownEvent,
)
from memberhub_api.pricing import PriceCatalogModel

logger = logging.getLogger(__name__)

SUBSCRIPTION_UPSERT_TYPES = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.resumed",
    "customer.subscription.paused",
})
INVOICE_PAID_TYPES = frozenset({"invoice.paid", "invoice.payment_succeeded"})
INVOICE_FAILED_TYPES = frozenset({"invoice.payment_failed"})

_INTERVAL_TO_CYCLE = {"month": "MONTHLY", "year": "ANNUAL"}
_CYCLE_ALIASES = {
    "monthly": "MONTHLY",
    "month": "MONTHLY",
    "annual": "ANNUAL",
    "annually": "ANNUAL",
    "yearly": "ANNUAL",
    "year": "ANNUAL",
}
_ADDRESS_FIELDS = ("line1", "line2", "city", "state", "postal_code", "country")


class SignatureVerificationFailed(Exception):
    """Signature header does not authenticate the payload."""


class MalformedEvent(ValueError):
    """Payload is JSON but lacks fields a recognized event type requires."""


# ── Signature ─────────────────────────────────────────────────────────────────

def verify_signature(raw_body: bytes, signature_header: str, secret: str, tolerance: int) -> None:
    """Verify a Stripe-Signature header over the untouched request body.

    Raises:
        SignatureVerificationFailed: bad/expired signature or undecodable body
    """
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SignatureVerificationFailed("payload is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureVerificationFailed(str(e)) from e


# ── Field helpers ─────────────────────────────────────────────────────────────

def _ref(value: Any) -> Optional[str]:
    """Id of an expanded object or a bare id string."""
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value:
        return value
    return None


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Epoch seconds (int/float/numeric str) or ISO-8601 → aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise MalformedEvent(f"invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedEvent(f"invalid timestamp: {value!r}") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise MalformedEvent(f"invalid timestamp: {value!r}")


def _metadata(obj: Any) -> dict:
    metadata = _get(obj, "metadata")
    return metadata if isinstance(metadata, dict) else {}


def _normalize_cycle(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return _CYCLE_ALIASES.get(value.strip().lower())


def _first_item(subscription: dict) -> dict:
    items = _get(subscription, "items", "data")
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def _price(subscription: dict) -> Any:
    item = _first_item(subscription)
    return _first(item.get("price"), item.get("plan"), subscription.get("plan"), subscription.get("price"))


def _period_field(subscription: dict, snake: str, camel: str) -> Optional[datetime]:
    item = _first_item(subscription)
    return parse_timestamp(_first(subscription.get(snake), subscription.get(camel), item.get(snake)))


def _shipping_snapshot(*candidates: Any) -> Optional[dict]:
    """First usable address among candidates, reduced to postal fields."""
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        address = candidate.get("address") if isinstance(candidate.get("address"), dict) else candidate
        if not any(address.get(field) for field in _ADDRESS_FIELDS):
            continue
        snapshot = {field: address.get(field) for field in _ADDRESS_FIELDS}
        snapshot["name"] = candidate.get("name")
        return snapshot
    return None


# ── Snapshots ─────────────────────────────────────────────────────────────────

def subscription_snapshot(
    subscription: dict,
    catalog: PriceCatalogModel,
    *,
    tier_hint: Optional[str] = None,
    cycle_hint: Optional[str] = None,
) -> SubscriptionSnapshot:
    """Build a SubscriptionSnapshot from a provider subscription object.

    Tier: subscription metadata → tier_hint (checkout metadata) → price
    metadata → catalog entry → catalog default.
    Billing cycle: metadata → cycle_hint → price.recurring.interval →
    catalog entry → catalog default.

    Raises:
        MalformedEvent: id or status missing
    """
    subscription_ref = _ref(subscription)
    status = subscription.get("status")
    if not subscription_ref or not isinstance(status, str):
        raise MalformedEvent("subscription object requires id and status")

    metadata = _metadata(subscription)
    price = _price(subscription)
    price_ref = _ref(price)
    price_metadata = _metadata(price)
    catalog_entry = catalog.find(price_ref, _get(price, "lookup_key"))

    tier = _first(
        metadata.get("tier"),
        tier_hint,
        price_metadata.get("tier"),
        catalog_entry.tier if catalog_entry else None,
        catalog.default_tier,
    )
    billing_cycle = _first(
        _normalize_cycle(metadata.get("billingCycle")),
        _normalize_cycle(metadata.get("billing_cycle")),
        _normalize_cycle(cycle_hint),
        _INTERVAL_TO_CYCLE.get(_get(price, "recurring", "interval")),
        catalog_entry.billing_cycle if catalog_entry else None,
        catalog.default_billing_cycle,
    )

    return SubscriptionSnapshot(
        subscription_ref=subscription_ref,
        customer_ref=_ref(subscription.get("customer")),
        status=status,
        price_ref=price_ref,
        tier=str(tier).strip().lower(),
        billing_cycle=billing_cycle,
        current_period_start=_period_field(subscription, "current_period_start", "currentPeriodStart"),
        current_period_end=_period_field(subscription, "current_period_end", "currentPeriodEnd"),
        cancel_at_period_end=bool(
            _first(subscription.get("cancel_at_period_end"), subscription.get("cancelAtPeriodEnd"), False)
        ),
        trial_start=parse_timestamp(_first(subscription.get("trial_start"), subscription.get("trialStart"))),
        trial_end=parse_timestamp(_first(subscription.get("trial_end"), subscription.get("trialEnd"))),
        canceled_at=parse_timestamp(
            _first(subscription.get("canceled_at"), subscription.get("ended_at"), subscription.get("canceledAt"))
        ),
        account_ref=_first(metadata.get("userId"), metadata.get("user_id")),
    )


def customer_snapshot(customer_ref: str, *sources: Any) -> CustomerSnapshot:
    """Merge customer fields from a checkout session and/or customer object."""
    email = None
    name = None
    shipping_candidates: list[Any] = []
    for source in sources:
        if not isinstance(source, dict):
            continue
        email = email or _first(
            _get(source, "customer_details", "email"), source.get("customer_email"), source.get("email")
        )
        name = name or _first(_get(source, "customer_details", "name"), source.get("name"))
        shipping_candidates.extend([
            _get(source, "collected_information", "shipping_details"),
            source.get("shipping_details"),
            source.get("shipping"),
            _get(source, "customer_details", "address"),
            source.get("address"),
        ])
    return CustomerSnapshot(
        customer_ref=customer_ref,
        email=email,
        name=name,
        shipping_address=_shipping_snapshot(*shipping_candidates),
    )


# ── Normalization ─────────────────────────────────────────────────────────────

def _invoice_subscription_ref(invoice: dict) -> Optional[str]:
    line = {}
    lines = _get(invoice, "lines", "data")
    if isinstance(lines, list) and lines and isinstance(lines[0], dict):
        line = lines[0]
    return _first(
        _ref(invoice.get("subscription")),
        _ref(_get(invoice, "parent", "subscription_details", "subscription")),
        _ref(line.get("subscription")),
        _ref(_get(line, "parent", "subscription_item_details", "subscription")),
    )


def _normalize_checkout(base: dict, session: dict, catalog: PriceCatalogModel) -> Union[CheckoutCompleted, UnknownEvent]:
    if session.get("mode") not in (None, "subscription"):
        return UnknownEvent(**base, reason="non_subscription_checkout")

    customer_ref = _ref(session.get("customer"))
    subscription_ref = _ref(session.get("subscription"))
    session_ref = _ref(session)
    if not customer_ref or not subscription_ref or not session_ref:
        raise MalformedEvent("checkout session requires id, customer and subscription")

    metadata = _metadata(session)
    tier_hint = metadata.get("tier")
    cycle_hint = _first(
        _normalize_cycle(metadata.get("billingCycle")), _normalize_cycle(metadata.get("billing_cycle"))
    )

    subscription = None
    if isinstance(session.get("subscription"), dict):
        subscription = subscription_snapshot(
            session["subscription"], catalog, tier_hint=tier_hint, cycle_hint=cycle_hint
        )

    return CheckoutCompleted(
        **base,
        session_ref=session_ref,
        customer=customer_snapshot(customer_ref, session, session.get("customer")),
        subscription_ref=subscription_ref,
        subscription=subscription,
        tier_hint=tier_hint,
        billing_cycle_hint=cycle_hint,
        account_ref=_first(metadata.get("userId"), metadata.get("user_id"), session.get("client_reference_id")),
    )


def normalize_event(body: dict, catalog: PriceCatalogModel) -> Union[BillingEvent, UnknownEvent]:
    """Decode a verified provider payload into a normalized event.

    Raises:
        MalformedEvent: envelope or recognized object lacks required fields
    """
    if not isinstance(body, dict):
        raise MalformedEvent("event payload must be a JSON object")

    event_id = body.get("id")
    event_type = body.get("type")
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not event_type:
        raise MalformedEvent("missing required fields: id, type")

    base = {
        "event_id": event_id,
        "event_type": event_type,
        "occurred_at": parse_timestamp(body.get("created")),
    }
    obj = _get(body, "data", "object")

    if event_type == "checkout.session.completed":
        if not isinstance(obj, dict):
            raise MalformedEvent("data.object missing")
        return _normalize_checkout(base, obj, catalog)

    if event_type in SUBSCRIPTION_UPSERT_TYPES or event_type == "customer.subscription.deleted":
        if not isinstance(obj, dict):
            raise MalformedEvent("data.object missing")
        snapshot = subscription_snapshot(obj, catalog)
        if event_type == "customer.subscription.deleted":
            return SubscriptionCanceled(**base, subscription=snapshot)
        return SubscriptionUpserted(**base, subscription=snapshot)

    if event_type in INVOICE_PAID_TYPES or event_type in INVOICE_FAILED_TYPES:
        if not isinstance(obj, dict):
            raise MalformedEvent("data.object missing")
        common = {
            "invoice_ref": _ref(obj),
            "subscription_ref": _invoice_subscription_ref(obj),
            "customer_ref": _ref(obj.get("customer")),
        }
        if event_type in INVOICE_PAID_TYPES:
            return InvoicePaid(
                **base,
                **common,
                amount_paid=obj.get("amount_paid"),
                currency=obj.get("currency"),
            )
        return InvoiceFailed(
            **base,
            **common,
            attempt_count=obj.get("attempt_count"),
            next_payment_attempt=parse_timestamp(obj.get("next_payment_attempt")),
        )

    return UnknownEvent(**base)


# ── Hydration ─────────────────────────────────────────────────────────────────

async def hydrate_checkout(event: CheckoutCompleted, client, catalog: PriceCatalogModel) -> CheckoutCompleted:
    """Fetch the subscription / customer a checkout only referenced by id.

    Raises:
        httpx.RequestError / httpx.HTTPStatusError: provider lookup failed
        MalformedEvent: provider returned an unusable subscription object
    """
    update: dict[str, Any] = {}

    if event.subscription is None:
        subscription = await client.get_subscription(event.subscription_ref)
        update["subscription"] = subscription_snapshot(
            subscription, catalog, tier_hint=event.tier_hint, cycle_hint=event.billing_cycle_hint
        )

    if not event.customer.email:
        customer = await client.get_customer(event.customer.customer_ref)
        fetched = customer_snapshot(event.customer.customer_ref, customer)
        update["customer"] = CustomerSnapshot(
            customer_ref=event.customer.customer_ref,
            email=fetched.email,
            name=event.customer.name or fetched.name,
            shipping_address=event.customer.shipping_address or fetched.shipping_address,
        )

    if not update:
        return event
    return event.model_copy(update=update)
