"""Stripe webhook ingress.

Two routes share one handler and one processed-event ledger:
  POST /webhooks/stripe       canonical
  POST /api/stripe/webhook    legacy path still configured in the provider dashboard

Error taxonomy (provider retries 5xx, never 4xx):
  (A) Invalid JSON / unusable event payload          → 400
  (B) Signature invalid or expired                   → 401
  (C) Stripe-Signature header missing                → 400
  (D) Our misconfig (webhook secret / API key)       → 500 WEBHOOK_PROVIDER_MISCONFIG
  (E) Provider lookup failed during hydration        → 500 WEBHOOK_VERIFY_UPSTREAM_FAILED
  (F) Reconciliation / invariant failure             → 500 WEBHOOK_INTERNAL_ERROR
  (G) Database unreachable / statement timeout       → 503 WEBHOOK_STORE_UNAVAILABLE
  Signature mismatch is NEVER 5xx.

200 bodies: processed | skipped | already_processed | ignored.
"""

import json as _json
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from memberhub_api.billing.event_ledger import set_outcome, try_record_event
from memberhub_api.billing.events import CheckoutCompleted, UnknownEvent
from memberhub_api.billing.ingress import (
    MalformedEvent,
    SignatureVerificationFailed,
    hydrate_checkout,
    normalize_event,
    verify_signature,
)
from memberhub_api.billing.reconciler import reconcile
from memberhub_api.billing.stripe_client import get_stripe_client
from memberhub_api.config.env import get_stripe_webhook_secret, get_stripe_webhook_tolerance_seconds
from memberhub_api.context import event_id_var, request_id_var
from memberhub_api.db.session import get_db, get_session_factory
from memberhub_api.dispatch.dispatcher import deliver
from memberhub_api.middleware.logging_redaction import get_safe_headers
from memberhub_api.pricing import get_price_catalog
from memberhub_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
legacy_router = APIRouter(prefix="/api/stripe", tags=["webhooks"])
logger = logging.getLogger(__name__)

PROVIDER = "stripe"


# ============================================================================
# Webhook Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    payload_hash: str | None,
    extra: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures → warning log.
    5xx failures → error log + Retry-After: 60 response header.

    Response extensions (beyond RFC 9457 base):
      provider, payload_hash, error_code  (never raw payload or secrets)
    """
    request_id = request_id_var.get(None)
    instance = f"urn:memberhub:trace:{request_id}" if request_id else str(request.url.path)

    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "provider": PROVIDER,
        "path": request.url.path,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:memberhub:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": PROVIDER,
        "error_code": code,
        "instance": instance,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash

    response_headers = {"Content-Type": "application/problem+json"}
    if status >= 500:
        response_headers["Retry-After"] = "60"

    return JSONResponse(status_code=status, content=content, headers=response_headers)


# ============================================================================
# Stripe Webhook Handler
# ============================================================================


async def handle_stripe_webhook(request: Request, stripe_signature: Optional[str]):
    # ── Step 0: Raw body ingestion (never re-serialized before verification) ─
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)
    request.state.payload_hash = payload_hash

    # ── Step 1: JSON parsing (A → 400) ──────────────────────────────────────
    try:
        body = _json.loads(raw_body)
    except (_json.JSONDecodeError, UnicodeDecodeError):
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_JSON",
            title="Invalid JSON payload",
            detail="Request body is not valid JSON",
            payload_hash=payload_hash,
        )

    logger.info(
        "WEBHOOK_RECEIVED",
        extra={
            "provider": PROVIDER,
            "path": request.url.path,
            "payload_hash": payload_hash,
            "payload_size": len(raw_body),
            "headers": get_safe_headers(request),
        },
    )

    # ── Step 2: Required header (C → 400) ───────────────────────────────────
    if not stripe_signature:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_MISSING_SIGNATURE",
            title="Missing Stripe-Signature header",
            detail="The Stripe-Signature header is required",
            payload_hash=payload_hash,
        )

    # ── Step 3: Webhook secret (D → 500) ────────────────────────────────────
    try:
        secret = get_stripe_webhook_secret()
    except ValueError:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Webhook signing secret is not configured",
            payload_hash=payload_hash,
        )

    # ── Step 4: Signature verification (B → 401) ────────────────────────────
    try:
        verify_signature(raw_body, stripe_signature, secret, get_stripe_webhook_tolerance_seconds())
    except SignatureVerificationFailed as exc:
        return _webhook_problem(
            request, 401,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail="Stripe-Signature does not match the payload",
            payload_hash=payload_hash,
            extra={"error_msg": sanitize_str(str(exc))},
        )

    # ── Step 5: Normalization (A → 400, unknown kinds → 200) ────────────────
    try:
        event = normalize_event(body, get_price_catalog())
    except (MalformedEvent, ValidationError) as exc:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail=sanitize_str(str(exc)),
            payload_hash=payload_hash,
        )

    event_id_var.set(event.event_id)
    if isinstance(event, UnknownEvent):
        logger.info(
            "WEBHOOK_EVENT_IGNORED",
            extra={"provider": PROVIDER, "event_type": event.event_type, "reason": event.reason},
        )
        return {"status": "ignored"}

    # ── Step 6: Checkout hydration (D → 500 misconfig, E → 500 upstream) ────
    if isinstance(event, CheckoutCompleted) and event.needs_hydration:
        try:
            stripe_client = get_stripe_client()
        except ValueError:
            return _webhook_problem(
                request, 500,
                code="WEBHOOK_PROVIDER_MISCONFIG",
                title="Webhook provider misconfiguration",
                detail="Stripe API client is not properly configured",
                payload_hash=payload_hash,
            )
        try:
            event = await hydrate_checkout(event, stripe_client, get_price_catalog())
        except (MalformedEvent, ValidationError) as exc:
            return _webhook_problem(
                request, 400,
                code="WEBHOOK_INVALID_PAYLOAD",
                title="Invalid webhook payload",
                detail=sanitize_str(str(exc)),
                payload_hash=payload_hash,
            )
        except (httpx.RequestError, httpx.HTTPStatusError) as exc:
            return _webhook_problem(
                request, 500,
                code="WEBHOOK_VERIFY_UPSTREAM_FAILED",
                title="Webhook verification upstream failure",
                detail="Unable to load the checkout subscription from Stripe",
                payload_hash=payload_hash,
                extra={"error_type": type(exc).__name__},
            )

    # ── Step 7: Ledger claim + reconciliation, one transaction (F/G → 5xx) ──
    db: Session = next(get_db())
    try:
        # INSERT ON CONFLICT DO NOTHING: exactly one claim succeeds under concurrency
        is_first = try_record_event(db, event.event_id, event.event_type, payload_hash=payload_hash)
        if not is_first:
            db.rollback()
            logger.info(
                "WEBHOOK_ALREADY_PROCESSED",
                extra={"provider": PROVIDER, "event_type": event.event_type, "path": request.url.path},
            )
            return {"status": "already_processed"}

        result = reconcile(db, event)
        set_outcome(db, event.event_id, result.outcome)
        db.commit()

    except OperationalError as exc:
        db.rollback()
        return _webhook_problem(
            request, 503,
            code="WEBHOOK_STORE_UNAVAILABLE",
            title="Billing store unavailable",
            detail="The event could not be recorded; it will be retried",
            payload_hash=payload_hash,
            extra={"error_type": type(exc).__name__},
        )
    except Exception as exc:
        db.rollback()
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Internal processing error",
            detail="An internal error occurred while processing the webhook",
            payload_hash=payload_hash,
            extra={
                "event_type": event.event_type,
                "error_type": type(exc).__name__,
                "error_msg": sanitize_str(str(exc)),
            },
        )
    finally:
        db.close()

    # ── Step 8: Post-commit side effects (best-effort, never affect the ACK) ─
    await deliver(get_session_factory(), result.transition, result.staged)

    logger.info(
        "WEBHOOK_PROCESSED",
        extra={"provider": PROVIDER, "event_type": event.event_type, "outcome": result.outcome},
    )
    return {"status": "processed" if result.outcome == "applied" else "skipped"}


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """Stripe webhook handler (canonical path)."""
    return await handle_stripe_webhook(request, stripe_signature)


@legacy_router.post("/webhook")
async def stripe_webhook_legacy(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """Legacy Stripe webhook path. Same handler, same ledger."""
    return await handle_stripe_webhook(request, stripe_signature)
