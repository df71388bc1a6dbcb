from __future__ import annotations

from app.api.handlers.deps import ApiDeps
from app.api.handlers.lyrics import schedule_lyrics_generation
from app.api.schemas import PaymentWebhookResponse
from app.domain.use_cases.payments import (
    PostPaymentActions,
    parse_payment_payload,
    process_payment_webhook,
    verify_webhook_secret,
)

COMPONENT_ID = "api.payment_webhook"


def build_post_payment_actions(api_deps: ApiDeps) -> PostPaymentActions:
    return PostPaymentActions(
        repository=api_deps.repository,
        notifications=api_deps.notifications,
        schedule_lyrics=schedule_lyrics_generation(api_deps),
    )


async def payment_webhook_handler(
    *,
    payload: dict[str, object],
    internal_authorized: bool,
    api_deps: ApiDeps,
) -> PaymentWebhookResponse:
    notification = parse_payment_payload(payload)
    verify_webhook_secret(
        notification.secret,
        api_deps.settings.payment_webhook_secret,
        internal_authorized=internal_authorized,
    )
    result = await process_payment_webhook(
        notification,
        repository=api_deps.repository,
        post_payment=build_post_payment_actions(api_deps),
    )
    return PaymentWebhookResponse(
        success=True,
        outcome=result.outcome,
        order_id=result.order_id,
        strategy=result.strategy,
        already_paid=result.already_paid,
        warnings=list(result.warnings),
        notification_scheduled=result.notification_scheduled,
    )
