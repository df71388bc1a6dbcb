from __future__ import annotations

from datetime import UTC, datetime
import logging

from app.domain.contracts import OrderRepository
from app.domain.dto import NotificationRequest, ReleaseSweepResult
from app.domain.models import NotificationType
from app.domain.use_cases.notifications import NotificationDispatcher

COMPONENT_ID = "domain.song.release"

logger = logging.getLogger("runtime")


async def release_due_songs(
    *,
    repository: OrderRepository,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
) -> ReleaseSweepResult:
    """Release approved songs whose scheduled time has passed, one order at a time."""
    current_time = now or datetime.now(tz=UTC)
    due = await repository.list_due_songs(now=current_time)
    order_ids = list(dict.fromkeys(song.order_id for song in due))

    processed = sent = errors = 0
    for order_id in order_ids:
        log_extra = {"component": COMPONENT_ID, "order_id": order_id}
        try:
            released = await repository.release_order_songs(order_id=order_id, released_at=current_time)
        except Exception as exc:
            errors += 1
            logger.error("song release failed", extra={**log_extra, "error": str(exc)})
            continue
        if not released:
            continue
        processed += 1
        order = await repository.get_order(order_id=order_id)
        if order is None:
            continue
        result = await notifier.dispatch(
            NotificationRequest(
                order_id=order_id,
                notification_type=NotificationType.SONG_RELEASED,
                recipient=order.customer_email,
                variables={"song_ids": released},
            )
        )
        if result.sent:
            sent += 1
        elif not result.already_sent:
            errors += 1
        logger.info("songs released", extra={**log_extra, "outcome": "released", "count": len(released)})

    return ReleaseSweepResult(processed_orders=processed, notifications_sent=sent, errors=errors)
