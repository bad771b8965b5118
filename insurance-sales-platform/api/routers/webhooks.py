"""
Webhook Endpoints.

Stripe posts payment events here. The raw body is verified against the
`Stripe-Signature` header whenever STRIPE_WEBHOOK_SECRET is configured.
Each event runs as a `payment-webhook` workflow, in the threadpool since the
service layer blocks on storage calls.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from api.models import WebhookResponse
from api.pipeline import get_context
from domain.errors import ValidationError
from domain.workflow import TriggerType, WorkflowId
from services.context import ServiceContext
from services.payment_service import parse_stripe_event, verify_stripe_signature
from services.workflow_orchestrator import execute

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/webhooks/stripe",
    response_model=WebhookResponse,
    summary="Stripe Webhook",
    description="Receive Stripe payment events. Re-delivered events are acknowledged without side effects.",
)
async def stripe_webhook(request: Request, ctx: ServiceContext = Depends(get_context)):
    payload = await request.body()
    secret = ctx.settings.stripe_webhook_secret

    try:
        if secret:
            verify_stripe_signature(payload, request.headers.get("stripe-signature"), secret)
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET not set; accepting unsigned webhook")
        event = parse_stripe_event(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc

    run = await run_in_threadpool(execute, ctx, WorkflowId.PAYMENT_WEBHOOK, TriggerType.WEBHOOK, event)
    summary = dict(run.result)
    summary["execution_id"] = run.execution_id
    event_type = summary.pop("event_type")
    handled = bool(summary.pop("handled"))
    return WebhookResponse(event_type=event_type, handled=handled, detail=summary)
