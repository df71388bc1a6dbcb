from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging

from app.domain.contracts import EmailClient, OrderRepository, TaskSpawner
from app.domain.dto import NotificationRequest, NotificationResult
from app.domain.error_taxonomy import error_code_for
from app.domain.models import NotificationType
from app.lib.resilience import RETRY_POLICIES, TIMEOUTS, RetryPolicy, call_external

COMPONENT_ID = "domain.notification.dispatch"

TEMPLATES: dict[NotificationType, str] = {
    NotificationType.ORDER_PAID: "order-paid",
    NotificationType.SONG_READY: "song-ready",
    NotificationType.SONG_RELEASED: "song-released",
}

logger = logging.getLogger("runtime")


@dataclass
class NotificationDispatcher:
    """Deduplicated, bounded-retry notification sender.

    ``dispatch`` never raises: every failure, including storage failures while
    checking or recording the log, is logged and reported in the result.
    """

    repository: OrderRepository
    email: EmailClient
    policy: RetryPolicy = RETRY_POLICIES["notification"]
    timeout_ms: int = TIMEOUTS["email_send"]
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def dispatch(self, request: NotificationRequest) -> NotificationResult:
        log_extra = {
            "component": COMPONENT_ID,
            "order_id": request.order_id,
            "notification_type": str(request.notification_type),
        }
        try:
            existing = await self.repository.find_successful_notification(
                order_id=request.order_id,
                notification_type=request.notification_type,
            )
        except Exception as exc:
            logger.error("notification dedup lookup failed", extra={**log_extra, "error": str(exc)})
            return NotificationResult(sent=False, error=f"dedup lookup failed: {exc}")
        if existing is not None:
            logger.info("notification already sent", extra=log_extra)
            return NotificationResult(
                sent=False,
                already_sent=True,
                provider_message_id=existing.provider_message_id,
            )

        if not request.recipient:
            await self._record(request, status="failed", attempts=0, error="recipient is missing")
            return NotificationResult(sent=False, error="recipient is missing")

        attempts = 0

        async def _send() -> str | None:
            nonlocal attempts
            attempts += 1
            return await self.email.send(
                recipient=request.recipient,
                template=TEMPLATES[request.notification_type],
                variables={"order_id": request.order_id, **request.variables},
            )

        try:
            message_id = await call_external(
                _send,
                policy=self.policy,
                timeout_ms=self.timeout_ms,
                operation_name="notification.send",
                sleep=self.sleep,
            )
        except Exception as exc:
            logger.error(
                "notification failed",
                extra={**log_extra, "attempt": attempts, "error_code": error_code_for(exc), "error": str(exc)},
            )
            await self._record(request, status="failed", attempts=attempts, error=str(exc))
            return NotificationResult(sent=False, attempts=attempts, error=str(exc))

        await self._record(request, status="sent", attempts=attempts, provider_message_id=message_id)
        logger.info("notification sent", extra={**log_extra, "attempt": attempts})
        return NotificationResult(sent=True, attempts=attempts, provider_message_id=message_id)

    async def _record(
        self,
        request: NotificationRequest,
        *,
        status: str,
        attempts: int,
        provider_message_id: str | None = None,
        error: str | None = None,
    ) -> None:
        try:
            await self.repository.record_notification(
                order_id=request.order_id,
                notification_type=request.notification_type,
                status=status,
                attempts=attempts,
                provider_message_id=provider_message_id,
                error=error,
            )
        except Exception as exc:
            logger.error(
                "notification log write failed",
                extra={"component": COMPONENT_ID, "order_id": request.order_id, "error": str(exc)},
            )


@dataclass
class NotificationScheduler:
    """Hands notifications to a background spawner so request handlers never wait on email delivery."""

    dispatcher: NotificationDispatcher
    spawner: TaskSpawner

    def schedule(self, request: NotificationRequest) -> None:
        self.spawner.spawn(
            self.dispatcher.dispatch(request),
            name=f"{COMPONENT_ID}:{request.notification_type}:{request.order_id}",
        )
