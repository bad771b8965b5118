"""
Policy issuance workflow.

Given a paid sale, produces the policy record, its PDF, and the WhatsApp
delivery, measuring how long document generation took.

Steps:
1. Draw a policy number (re-drawn while it already exists)
2. Select the insurer from the configured table
3. Insert the policy as `processando` with a 365-day coverage window
4. Generate the document (bounded by DOCUMENT_TIMEOUT_SECONDS), timed
5. Mark the policy `emitida` with the document URL
6. Claim the delivery attempt, then send the `apolice_emitida` message
7. Record the delivery on the policy
8. Record the policy document
9. Notify operators (best-effort)
10. Enqueue the welcome-kit follow-up (best-effort)

Re-invoking for the same sale is safe: an issued and delivered policy is
returned unchanged, an issued but undelivered one only retries delivery, and
a policy left in `erro` is re-driven on the same row. A `processando` policy
belongs to the run that claimed it; it is only taken over once that run has
been quiet for PROCESSING_GRACE, and concurrent runs lose with ConflictError
rather than issuing or delivering twice.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Mapping
from uuid import UUID, uuid4

from domain.client import Client, Product
from domain.errors import ConflictError, IntegrationError, SalesPlatformError, StorageError, ValidationError
from domain.policy import (
    DEFAULT_INSURER_TABLE,
    Policy,
    PolicyStatus,
    coverage_window,
    generate_policy_number,
    select_insurer,
    validate_policy_transition,
)
from domain.sale import Sale, SaleStatus
from domain.time import to_iso_utc
from domain.workflow import WorkflowId
from repositories.client_repository import require_client, require_product
from repositories.message_repository import get_active_template, insert_notification, record_outbound_message
from repositories.policy_repository import (
    delivery_claim,
    get_configured_insurer_table,
    get_policy_for_sale,
    insert_policy,
    insert_policy_document,
    list_policy_documents,
    policy_number_exists,
    processing_claim,
    require_policy,
    update_policy,
)
from repositories.sale_repository import require_sale
from services.context import ServiceContext
from services.documents import call_with_timeout
from services.messaging import render_template
from services.outbox_service import dedupe_key_for, enqueue_follow_up

logger = logging.getLogger(__name__)

POLICY_TEMPLATE_NAME = "apolice_emitida"

DEFAULT_POLICY_MESSAGE = (
    "🎉 Parabéns {{client_name}}! Seu seguro foi aprovado!\n\n"
    "📄 Apólice: {{policy_number}}\n\n"
    "📎 {{policy_url}}"
)

_MAX_NUMBER_DRAWS = 5


def issue_policy(ctx: ServiceContext, sale_id: UUID) -> Policy:
    """
    Issue and deliver the policy for a paid sale.

    Raises:
        NotFoundError: sale, client or product missing.
        ValidationError: the sale is not `pago`, or client/product data is
            incomplete for issuance.
        IntegrationError: document generation or delivery failed. The policy
            is left in `erro` (not issued) or keeps `emitida` with the failed
            delivery recorded; nothing is retried here.
        ConflictError: another run owns the policy or has claimed its
            delivery attempt.
    """

    sale = require_sale(ctx.storage, sale_id)
    if sale.status is not SaleStatus.PAGO:
        raise ValidationError(
            f"sale {sale_id} must be 'pago' to issue a policy, found '{sale.status.value}'",
            details={"sale_id": str(sale_id), "status": sale.status.value},
        )
    client = require_client(ctx.storage, sale.client_id)
    product = require_product(ctx.storage, sale.product_id)
    _validate_issuance_data(client, product)

    existing = get_policy_for_sale(ctx.storage, sale.sale_id)
    if existing is not None and existing.status.is_issued:
        if existing.is_delivered:
            logger.info("Policy already issued and delivered", extra={"policy_number": existing.policy_number})
            return existing
        logger.info("Retrying policy delivery", extra={"policy_number": existing.policy_number})
        return _deliver_and_finish(ctx, existing, sale, client)

    if existing is None:
        policy = _create_policy(ctx, sale, product)
    else:
        policy = _redrive(ctx, existing)

    try:
        policy = _emit_document(ctx, policy, sale, client, product)
    except ConflictError:
        # The policy was taken over; the row is no longer ours to mark.
        raise
    except Exception as exc:
        _mark_error(ctx, policy, exc)
        raise

    return _deliver_and_finish(ctx, policy, sale, client)


def _validate_issuance_data(client: Client, product: Product) -> None:
    errors = []
    if not client.cpf and not client.cnpj:
        errors.append("CPF or CNPJ required")
    if not client.full_name.strip():
        errors.append("Full name required")
    if not product.category:
        errors.append("Product category required")
    if errors:
        raise ValidationError(f"Validation failed: {', '.join(errors)}", details={"errors": errors})


def _create_policy(ctx: ServiceContext, sale: Sale, product: Product) -> Policy:
    table = get_configured_insurer_table(ctx.storage) or DEFAULT_INSURER_TABLE
    insurer = select_insurer(product.category, sale.value, table)
    now = ctx.now()
    start, end = coverage_window(now.date())

    for _ in range(_MAX_NUMBER_DRAWS):
        number = generate_policy_number(ctx.now(), ctx.rng)
        if policy_number_exists(ctx.storage, number):
            continue
        policy = Policy(
            policy_id=uuid4(),
            policy_number=number,
            sale_id=sale.sale_id,
            client_id=sale.client_id,
            product_id=sale.product_id,
            insurer=insurer,
            status=PolicyStatus.PROCESSANDO,
            coverage_start=start,
            coverage_end=end,
            created_at=now,
            processing_started_at=now,
        )
        try:
            stored = insert_policy(ctx.storage, policy)
        except ConflictError as exc:
            winner = get_policy_for_sale(ctx.storage, sale.sale_id)
            if winner is not None:
                raise ConflictError(
                    f"policy {winner.policy_number} for sale {sale.sale_id} was created by another run",
                    details={"sale_id": str(sale.sale_id), "policy_number": winner.policy_number},
                ) from exc
            # Number taken between the check and the insert.
            continue
        logger.info(
            "Policy created",
            extra={"policy_number": stored.policy_number, "sale_id": str(sale.sale_id), "insurer": insurer},
        )
        return stored

    raise StorageError(f"Could not allocate a unique policy number after {_MAX_NUMBER_DRAWS} draws")


def _redrive(ctx: ServiceContext, policy: Policy) -> Policy:
    now = ctx.now()
    if policy.status is PolicyStatus.PROCESSANDO and not policy.is_stalled(now):
        raise ConflictError(
            f"policy {policy.policy_number} is being issued by another run",
            details={"policy_number": policy.policy_number, "sale_id": str(policy.sale_id)},
        )
    if policy.status is not PolicyStatus.PROCESSANDO:
        validate_policy_transition(policy.status, PolicyStatus.PROCESSANDO)

    logger.info(
        "Re-driving policy",
        extra={"policy_number": policy.policy_number, "status": policy.status.value},
    )
    return update_policy(
        ctx.storage,
        policy,
        {
            "status": PolicyStatus.PROCESSANDO.value,
            "error_message": None,
            "processing_started_at": to_iso_utc(now, name="processing_started_at"),
        },
        expected=processing_claim(policy),
    )


def _emit_document(
    ctx: ServiceContext,
    policy: Policy,
    sale: Sale,
    client: Client,
    product: Product,
) -> Policy:
    started = time.perf_counter()
    url = call_with_timeout(
        lambda: ctx.documents.generate_policy_document(policy, sale, client, product),
        ctx.settings.document_timeout_seconds,
        "Policy document generation",
    )
    emission_ms = int((time.perf_counter() - started) * 1000)
    if not url:
        raise IntegrationError("Policy document generation returned no URL")

    validate_policy_transition(policy.status, PolicyStatus.EMITIDA)
    issued = update_policy(
        ctx.storage,
        policy,
        {
            "status": PolicyStatus.EMITIDA.value,
            "pdf_url": url,
            "emission_time_ms": emission_ms,
            "error_message": None,
        },
        expected=processing_claim(policy),
    )
    logger.info(
        "Policy issued",
        extra={"policy_number": issued.policy_number, "emission_time_ms": emission_ms},
    )
    return issued


def _mark_error(ctx: ServiceContext, policy: Policy, exc: BaseException) -> None:
    message = exc.message if isinstance(exc, SalesPlatformError) else str(exc)
    logger.error(
        "Policy issuance failed",
        extra={"policy_number": policy.policy_number, "error": message},
    )
    try:
        validate_policy_transition(policy.status, PolicyStatus.ERRO)
        update_policy(
            ctx.storage,
            policy,
            {"status": PolicyStatus.ERRO.value, "error_message": message[:500]},
            expected=processing_claim(policy),
        )
    except SalesPlatformError:
        logger.exception("Could not mark policy as erro", extra={"policy_number": policy.policy_number})


def policy_message_values(policy: Policy, client: Client) -> Dict[str, Any]:
    return {
        "client_name": client.first_name,
        "policy_number": policy.policy_number,
        "insurer": policy.insurer,
        "start_date": policy.coverage_start.isoformat(),
        "end_date": policy.coverage_end.isoformat(),
        "policy_url": policy.document_url,
    }


def _deliver_and_finish(ctx: ServiceContext, policy: Policy, sale: Sale, client: Client) -> Policy:
    template = get_active_template(ctx.storage, POLICY_TEMPLATE_NAME) or DEFAULT_POLICY_MESSAGE
    text = render_template(template, policy_message_values(policy, client))
    attempted_at = ctx.now()

    # The attempt is claimed before sending: of two runs holding the same read,
    # only the one whose counter write lands sends the message.
    try:
        claimed = update_policy(
            ctx.storage,
            policy,
            {
                "delivery_attempts": policy.delivery_attempts + 1,
                "last_delivery_attempt": to_iso_utc(attempted_at, name="last_delivery_attempt"),
            },
            expected=delivery_claim(policy),
        )
    except ConflictError as exc:
        raise ConflictError(
            f"delivery of policy {policy.policy_number} was claimed by another run",
            details={"policy_number": policy.policy_number, "delivery_attempts": policy.delivery_attempts},
        ) from exc

    try:
        if not client.phone:
            raise IntegrationError(f"client {client.client_id} has no phone for policy delivery")
        result = ctx.messaging.send(client.phone, text)
    except SalesPlatformError as exc:
        logger.error(
            "Policy delivery failed",
            extra={"policy_number": policy.policy_number, "error": exc.message},
        )
        try:
            update_policy(
                ctx.storage,
                claimed,
                {"error_message": f"Delivery failed: {exc.message}"[:500]},
                expected=delivery_claim(claimed),
            )
        except ConflictError:
            logger.warning("Delivery failure not recorded", extra={"policy_number": policy.policy_number})
        raise

    delivered = update_policy(
        ctx.storage,
        claimed,
        {"delivery_whatsapp": True, "error_message": None},
        expected=delivery_claim(claimed),
    )

    _best_effort(
        "outbound message log",
        lambda: record_outbound_message(
            ctx.storage,
            result.address,
            text,
            attempted_at,
            external_id=result.external_id,
            client_id=client.client_id,
            message_type="template",
        ),
    )

    if not list_policy_documents(ctx.storage, delivered.policy_id):
        insert_policy_document(
            ctx.storage,
            delivered,
            file_name=delivered.document_file_name,
            file_url=delivered.document_url or "",
            mime_type="application/pdf",
        )

    seconds = (delivered.emission_time_ms or 0) // 1000
    _best_effort(
        "issuance notification",
        lambda: insert_notification(
            ctx.storage,
            "Apólice emitida",
            f"Apólice {delivered.policy_number} emitida em {seconds}s",
            ctx.now(),
            notification_type="success",
            data={"policy_id": str(delivered.policy_id), "sale_id": str(sale.sale_id)},
        ),
    )
    _best_effort(
        "welcome kit follow-up",
        lambda: enqueue_follow_up(
            ctx,
            WorkflowId.WELCOME_KIT,
            {
                "policy_id": str(delivered.policy_id),
                "sale_id": str(sale.sale_id),
                "client_id": str(client.client_id),
            },
            delay=timedelta(seconds=ctx.settings.welcome_kit_delay_seconds),
            dedupe_key=dedupe_key_for(WorkflowId.WELCOME_KIT, delivered.policy_id),
        ),
    )

    logger.info("Policy delivered", extra={"policy_number": delivered.policy_number, "channel": result.channel})
    return delivered


def _best_effort(what: str, call: Callable[[], Any]) -> None:
    try:
        call()
    except SalesPlatformError:
        logger.warning("Best-effort step failed: %s", what, exc_info=True)


def trigger_welcome_kit(ctx: ServiceContext, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Fire the welcome-kit generation for an issued policy.

    Raises:
        ValidationError: payload lacks policy_id.
        IntegrationError: no trigger configured, or the call failed.
    """

    raw_id = payload.get("policy_id")
    if not raw_id:
        raise ValidationError("policy_id is required")
    policy = require_policy(ctx.storage, UUID(str(raw_id)))
    if ctx.welcome_kit is None:
        raise IntegrationError("Welcome kit trigger not configured")

    trigger = ctx.welcome_kit
    response = call_with_timeout(
        lambda: trigger.trigger(
            {
                "policy_id": str(policy.policy_id),
                "sale_id": str(policy.sale_id),
                "client_id": str(policy.client_id),
            }
        ),
        ctx.settings.document_timeout_seconds,
        "Welcome kit generation",
    )
    return {"policy_id": str(policy.policy_id), "triggered": True, "response": dict(response)}


def policy_summary(policy: Policy) -> Dict[str, Any]:
    return {
        "policy_id": str(policy.policy_id),
        "policy_number": policy.policy_number,
        "sale_id": str(policy.sale_id),
        "insurer": policy.insurer,
        "status": policy.status.value,
        "document_url": policy.document_url,
        "emission_time_ms": policy.emission_time_ms,
        "delivered": policy.is_delivered,
    }


__all__ = [
    "POLICY_TEMPLATE_NAME",
    "DEFAULT_POLICY_MESSAGE",
    "issue_policy",
    "policy_message_values",
    "trigger_welcome_kit",
    "policy_summary",
]
