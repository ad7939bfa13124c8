"""
Stripe webhook route.

POST /v1/storage/billing/webhook verifies the signature through the provider
and refreshes cached subscription status on customer.subscription.* events.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from storage_manager.api.deps import get_reconciler
from storage_manager.core.errors import BillingDisabledError
from storage_manager.core.logging import log_event
from storage_manager.features.billing.provider import BillingWebhookError
from storage_manager.features.billing.reconciliation import BillingReconciler


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/storage", tags=["billing-webhooks"])


@router.post("/billing/webhook")
async def handle_webhook(request: Request, reconciler: BillingReconciler = Depends(get_reconciler)):
    """
    Handle Stripe webhook events.

    Returns:
        {"received": true, "event_id": ..., "updated": <assignments refreshed>}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    if not reconciler.is_enabled():
        raise BillingDisabledError("Stripe billing is disabled")

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = reconciler.store.handle_webhook(headers, body)
    except BillingWebhookError as e:
        logger.warning("[webhooks] rejected Stripe webhook", extra={"error": str(e)})
        raise HTTPException(status_code=400, detail=str(e))

    updated = 0
    if result.event_type.startswith("customer.subscription.") and result.subscription_id:
        updated = reconciler.apply_subscription_event(result.subscription_id, result.status)

    log_event(
        "info",
        "billing.webhook.received",
        subscription_id=result.subscription_id,
        event_type=result.event_type,
        extra={"event_id": result.event_id, "updated": updated},
    )
    return {"received": True, "event_id": result.event_id, "updated": updated}
