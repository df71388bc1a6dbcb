from __future__ import annotations

from datetime import UTC, datetime
import logging
import uuid

from app.domain.briefs import validate_quiz_payload
from app.domain.contracts import OrderRepository
from app.domain.dto import CreateOrderCommand, CreateOrderResult
from app.domain.error_taxonomy import error_code_for, resolve_component_error
from app.domain.errors import DomainValidationError
from app.domain.lifecycle import RetryQueueLifecycle
from app.domain.models import RetryQueueKind

COMPONENT_ID = "domain.order.create"

logger = logging.getLogger("runtime")


def validate_create_order(cmd: CreateOrderCommand) -> dict[str, object]:
    try:
        uuid.UUID(cmd.session_id)
    except (TypeError, ValueError) as exc:
        raise DomainValidationError("session_id must be a UUID") from exc
    if not cmd.customer_email.strip() or "@" not in cmd.customer_email:
        raise DomainValidationError("customer_email is required")
    if not cmd.customer_whatsapp.strip():
        raise DomainValidationError("customer_whatsapp is required")
    if cmd.amount_cents <= 0:
        raise DomainValidationError("amount_cents must be positive")
    return validate_quiz_payload(cmd.quiz)


def _audit_inputs(cmd: CreateOrderCommand) -> dict[str, object]:
    return {
        "session_id": cmd.session_id,
        "customer_email": cmd.customer_email,
        "customer_whatsapp": cmd.customer_whatsapp,
        "plan": str(cmd.plan),
        "amount_cents": cmd.amount_cents,
        "transaction_id": cmd.transaction_id,
        "source": cmd.source,
        "ip_address": cmd.ip_address,
        "user_agent": cmd.user_agent,
        "quiz": dict(cmd.quiz) if isinstance(cmd.quiz, dict) else None,
    }


async def create_order(
    cmd: CreateOrderCommand,
    *,
    repository: OrderRepository,
    lifecycle: RetryQueueLifecycle = RetryQueueLifecycle(),
    now: datetime | None = None,
) -> CreateOrderResult:
    """Create the Quiz and Order pair atomically.

    Failures never leave a half-written pair. Instead they leave a creation log
    row and, when the brief itself was valid, a retry queue item that
    re-attempts the quiz write so the brief is not lost.
    """
    quiz_fields: dict[str, object] | None = None
    try:
        quiz_fields = validate_create_order(cmd)
        outcome = await repository.create_order_with_quiz(
            session_id=cmd.session_id,
            quiz=quiz_fields,
            customer_email=cmd.customer_email,
            customer_whatsapp=cmd.customer_whatsapp,
            plan=str(cmd.plan),
            amount_cents=cmd.amount_cents,
            transaction_id=cmd.transaction_id,
            payment_provider="hotmart",
        )
    except Exception as exc:
        code = resolve_component_error(component="order_creation", code=error_code_for(exc))
        logger.error(
            "order creation failed",
            extra={"component": COMPONENT_ID, "error_code": code, "error": str(exc)},
        )
        log_id = await repository.record_order_creation_log(
            session_id=cmd.session_id,
            status="failed",
            inputs=_audit_inputs(cmd),
            error=str(exc),
        )
        if quiz_fields is not None:
            await repository.enqueue_retry_item(
                kind=RetryQueueKind.QUIZ_UPSERT,
                session_id=cmd.session_id,
                payload={"session_id": cmd.session_id, "quiz": quiz_fields},
                max_attempts=lifecycle.max_attempts,
                next_retry_at=now or datetime.now(tz=UTC),
            )
        return CreateOrderResult(success=False, log_id=log_id, error=str(exc))

    log_id = await repository.record_order_creation_log(
        session_id=cmd.session_id,
        status="success" if outcome.created else "duplicate",
        inputs=_audit_inputs(cmd),
        quiz_id=outcome.quiz_id,
        order_id=outcome.order_id,
    )
    logger.info(
        "order created" if outcome.created else "order already exists for session",
        extra={"component": COMPONENT_ID, "order_id": outcome.order_id},
    )
    return CreateOrderResult(
        success=True,
        order_id=outcome.order_id,
        quiz_id=outcome.quiz_id,
        log_id=log_id,
        created=outcome.created,
    )
