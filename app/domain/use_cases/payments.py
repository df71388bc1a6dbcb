from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
import hmac
import logging

from app.domain.contracts import OrderRepository
from app.domain.dto import NotificationRequest, PaymentNotification, PaymentWebhookResult, PostPaymentOutcome
from app.domain.errors import DomainAuthorizationError, DomainNotFoundError, DomainValidationError
from app.domain.ids import is_order_id
from app.domain.models import NotificationType, OrderSnapshot, OrderStatus, PaymentStatus
from app.domain.use_cases.notifications import NotificationScheduler

COMPONENT_ID = "domain.payment.webhook"
PAYMENT_PROVIDER = "hotmart"

# Vendor status -> canonical status. Anything unlisted is pending.
PAYMENT_STATUS_MAP: dict[str, PaymentStatus] = {
    "approved": PaymentStatus.APPROVED,
    "completed": PaymentStatus.APPROVED,
    "refunded": PaymentStatus.REFUNDED,
    "canceled": PaymentStatus.CANCELLED,
    "cancelled": PaymentStatus.CANCELLED,
    "expired": PaymentStatus.CANCELLED,
    "chargeback": PaymentStatus.CANCELLED,
    "billet_printed": PaymentStatus.PENDING,
    "waiting_payment": PaymentStatus.PENDING,
}

logger = logging.getLogger("runtime")


def normalize_payment_status(raw_status: str | None) -> PaymentStatus:
    if not raw_status:
        return PaymentStatus.PENDING
    return PAYMENT_STATUS_MAP.get(raw_status.strip().lower(), PaymentStatus.PENDING)


def _as_dict(value: object) -> Mapping[str, object]:
    return value if isinstance(value, Mapping) else {}


def _first_str(*values: object) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_payment_payload(payload: object) -> PaymentNotification:
    """Normalize flat form fields and the nested JSON layout into one shape."""
    if not isinstance(payload, Mapping):
        raise DomainValidationError("webhook payload must be an object")
    data = _as_dict(payload.get("data"))
    purchase = _as_dict(data.get("purchase"))
    origin = _as_dict(purchase.get("origin"))
    buyer = _as_dict(data.get("buyer"))
    metadata = _as_dict(payload.get("metadata"))
    custom_data = _as_dict(payload.get("custom_data"))

    raw_status = _first_str(payload.get("status"), purchase.get("status"), data.get("status")) or ""
    email = _first_str(payload.get("email"), buyer.get("email"))
    return PaymentNotification(
        raw_status=raw_status,
        status=normalize_payment_status(raw_status),
        email=email.lower() if email else None,
        transaction_id=_first_str(payload.get("transaction"), purchase.get("transaction"), payload.get("transaction_id")),
        order_reference=_first_str(
            payload.get("xcod"),
            payload.get("sck"),
            origin.get("xcod"),
            origin.get("sck"),
            metadata.get("order_id"),
            custom_data.get("order_id"),
        ),
        secret=_first_str(payload.get("hottok"), data.get("hottok")),
        event=_first_str(payload.get("event")),
        raw_payload=dict(payload),
    )


def verify_webhook_secret(provided: str | None, expected: str | None, *, internal_authorized: bool = False) -> None:
    if internal_authorized:
        return
    if not expected:
        logger.error(
            "payment webhook secret is not configured",
            extra={"component": COMPONENT_ID, "error_code": "fatal_configuration"},
        )
        return
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise DomainAuthorizationError("invalid webhook secret")


async def resolve_order(
    notification: PaymentNotification,
    *,
    repository: OrderRepository,
) -> tuple[OrderSnapshot | None, str | None]:
    if notification.order_reference and is_order_id(notification.order_reference):
        order = await repository.get_order(order_id=notification.order_reference)
        if order is not None:
            return order, "order_id"
    if notification.transaction_id:
        order = await repository.find_order_by_transaction(transaction_id=notification.transaction_id)
        if order is not None:
            return order, "transaction_id"
    if notification.email:
        order = await repository.find_latest_pending_order_by_email(email=notification.email)
        if order is not None:
            return order, "email_fallback"
        # A redelivery that only carries the email must still resolve to the order it already paid.
        order = await repository.find_latest_paid_order_by_email(email=notification.email)
        if order is not None:
            return order, "email_fallback"
    return None, None


@dataclass
class PostPaymentActions:
    """Best-effort follow-ups of a fresh paid transition; each failure becomes a warning.

    The paid email only gets scheduled here. Delivery outcome lands in the
    notification log, never in the webhook response.
    """

    repository: OrderRepository
    notifications: NotificationScheduler
    schedule_lyrics: Callable[[str], None] | None = None

    async def run(self, order: OrderSnapshot) -> PostPaymentOutcome:
        warnings: list[str] = []
        log_extra = {"component": COMPONENT_ID, "order_id": order.order_id}
        try:
            await self.repository.complete_checkout_funnel(order_id=order.order_id)
        except Exception as exc:
            logger.error("funnel completion failed", extra={**log_extra, "error": str(exc)})
            warnings.append(f"funnel_completion_failed: {exc}")

        scheduled = False
        try:
            self.notifications.schedule(
                NotificationRequest(
                    order_id=order.order_id,
                    notification_type=NotificationType.ORDER_PAID,
                    recipient=order.customer_email,
                    variables={"plan": str(order.plan), "amount_cents": order.amount_cents},
                )
            )
            scheduled = True
        except Exception as exc:
            logger.error("paid notification scheduling failed", extra={**log_extra, "error": str(exc)})
            warnings.append(f"notification_schedule_failed: {exc}")

        if self.schedule_lyrics is not None:
            try:
                self.schedule_lyrics(order.order_id)
            except Exception as exc:
                logger.error("lyrics kickoff failed", extra={**log_extra, "error": str(exc)})
                warnings.append(f"lyrics_kickoff_failed: {exc}")
        return PostPaymentOutcome(warnings=tuple(warnings), notification_scheduled=scheduled)


async def _audit(
    repository: OrderRepository,
    notification: PaymentNotification,
    *,
    outcome: str,
    strategy: str | None = None,
    order_id: str | None = None,
    error: str | None = None,
) -> None:
    try:
        await repository.record_webhook_log(
            event=notification.event,
            status=str(notification.status),
            strategy=strategy,
            order_id=order_id,
            order_found=order_id is not None,
            outcome=outcome,
            payload=notification.raw_payload,
            error=error,
        )
    except Exception as exc:
        logger.error(
            "webhook audit write failed",
            extra={"component": COMPONENT_ID, "order_id": order_id, "outcome": outcome, "error": str(exc)},
        )


async def process_payment_webhook(
    notification: PaymentNotification,
    *,
    repository: OrderRepository,
    post_payment: PostPaymentActions,
    now: datetime | None = None,
) -> PaymentWebhookResult:
    if notification.status != PaymentStatus.APPROVED:
        logger.info(
            "payment notification ignored",
            extra={"component": COMPONENT_ID, "outcome": "ignored", "payment_status": notification.raw_status},
        )
        await _audit(repository, notification, outcome="ignored")
        return PaymentWebhookResult(outcome="ignored")

    order, strategy = await resolve_order(notification, repository=repository)
    if order is None:
        logger.warning("payment order not found", extra={"component": COMPONENT_ID, "outcome": "order_not_found"})
        await _audit(repository, notification, outcome="order_not_found")
        raise DomainNotFoundError("order not found for payment notification")

    log_extra = {"component": COMPONENT_ID, "order_id": order.order_id, "strategy": strategy}
    if order.status == OrderStatus.PAID:
        logger.info("order already paid", extra={**log_extra, "outcome": "already_paid"})
        await _audit(repository, notification, outcome="already_paid", strategy=strategy, order_id=order.order_id)
        return PaymentWebhookResult(outcome="already_paid", order_id=order.order_id, strategy=strategy)

    try:
        updated = await repository.mark_order_paid(
            order_id=order.order_id,
            payment_provider=PAYMENT_PROVIDER,
            transaction_id=notification.transaction_id,
            payment_status=notification.raw_status,
            paid_at=now or datetime.now(tz=UTC),
        )
    except Exception as exc:
        logger.error("payment transition failed", extra={**log_extra, "outcome": "failed", "error": str(exc)})
        await _audit(
            repository,
            notification,
            outcome="failed",
            strategy=strategy,
            order_id=order.order_id,
            error=str(exc),
        )
        raise

    if not updated:
        current = await repository.get_order(order_id=order.order_id)
        if current is not None and current.status == OrderStatus.PAID:
            # Lost the race to a concurrent delivery of the same notification.
            await _audit(repository, notification, outcome="already_paid", strategy=strategy, order_id=order.order_id)
            return PaymentWebhookResult(outcome="already_paid", order_id=order.order_id, strategy=strategy)
        current_status = current.status if current is not None else "deleted"
        logger.warning("order is not payable", extra={**log_extra, "outcome": "not_payable"})
        await _audit(repository, notification, outcome="not_payable", strategy=strategy, order_id=order.order_id)
        return PaymentWebhookResult(
            outcome="not_payable",
            order_id=order.order_id,
            strategy=strategy,
            warnings=(f"order_not_payable:{current_status}",),
        )

    logger.info("order marked as paid", extra={**log_extra, "outcome": "paid"})
    await _audit(repository, notification, outcome="paid", strategy=strategy, order_id=order.order_id)
    follow_up = await post_payment.run(order)
    return PaymentWebhookResult(
        outcome="paid",
        order_id=order.order_id,
        strategy=strategy,
        warnings=follow_up.warnings,
        notification_scheduled=follow_up.notification_scheduled,
    )
