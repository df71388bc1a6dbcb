from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
import logging

from app.domain.contracts import OrderRepository
from app.domain.dto import ActionFailure, ActionSuccess, AdminActionCommand, AdminActionResult
from app.domain.error_taxonomy import error_code_for
from app.domain.errors import DomainError
from app.domain.models import OrderSnapshot, OrderStatus
from app.domain.use_cases.payments import PostPaymentActions

COMPONENT_ID = "domain.admin.actions"
ADMIN_PAYMENT_PROVIDER = "admin"
STALE_PENDING_DAYS = 7

logger = logging.getLogger("runtime")

ActionHandler = Callable[["AdminActionContext", AdminActionCommand], Awaitable[AdminActionResult]]


class AdminActionContext:
    def __init__(self, *, repository: OrderRepository, post_payment: PostPaymentActions, now: datetime) -> None:
        self.repository = repository
        self.post_payment = post_payment
        self.now = now

    async def load_order(self, order_id: str | None) -> OrderSnapshot | None:
        if not order_id:
            return None
        return await self.repository.get_order(order_id=order_id)

    async def audit(self, cmd: AdminActionCommand, *, target_table: str, target_id: str | None, changes: dict[str, object]) -> None:
        await self.repository.record_admin_log(
            actor=cmd.actor,
            action=cmd.action,
            target_table=target_table,
            target_id=target_id,
            changes=changes,
        )


async def _mark_as_paid(ctx: AdminActionContext, cmd: AdminActionCommand) -> AdminActionResult:
    order = await ctx.load_order(cmd.order_id)
    if order is None:
        return ActionFailure(error="Order not found", code="not_found")
    if order.status == OrderStatus.PAID:
        return ActionSuccess(message="Order already paid", data={"already_paid": True})
    updated = await ctx.repository.mark_order_paid(
        order_id=order.order_id,
        payment_provider=ADMIN_PAYMENT_PROVIDER,
        transaction_id=order.transaction_id,
        payment_status="approved",
        paid_at=ctx.now,
    )
    if not updated:
        return ActionFailure(error=f"Order cannot be marked as paid from {order.status}", code="conflict")
    await ctx.audit(
        cmd,
        target_table="orders",
        target_id=order.order_id,
        changes={"status": {"from": str(order.status), "to": "paid"}},
    )
    paid = await ctx.load_order(order.order_id) or order
    follow_up = await ctx.post_payment.run(paid)
    return ActionSuccess(
        message="Order marked as paid",
        data={
            "warnings": list(follow_up.warnings),
            "notification_scheduled": follow_up.notification_scheduled,
        },
    )


async def _unmark_as_paid(ctx: AdminActionContext, cmd: AdminActionCommand) -> AdminActionResult:
    order = await ctx.load_order(cmd.order_id)
    if order is None:
        return ActionFailure(error="Order not found", code="not_found")
    if order.status != OrderStatus.PAID:
        return ActionFailure(error=f"Order is not paid (status: {order.status})")
    await ctx.repository.transition_order(
        order_id=order.order_id, from_state=OrderStatus.PAID, to_state=OrderStatus.PENDING
    )
    await ctx.audit(
        cmd,
        target_table="orders",
        target_id=order.order_id,
        changes={"status": {"from": "paid", "to": "pending"}, "paid_at": None},
    )
    return ActionSuccess(message="Order unmarked as paid")


async def _refund(ctx: AdminActionContext, cmd: AdminActionCommand) -> AdminActionResult:
    order = await ctx.load_order(cmd.order_id)
    if order is None:
        return ActionFailure(error="Order not found", code="not_found")
    if order.status == OrderStatus.REFUNDED:
        return ActionSuccess(message="Order already refunded", data={"already_refunded": True})
    await ctx.repository.transition_order(
        order_id=order.order_id, from_state=order.status, to_state=OrderStatus.REFUNDED
    )
    await ctx.audit(
        cmd,
        target_table="orders",
        target_id=order.order_id,
        changes={"status": {"from": str(order.status), "to": "refunded"}},
    )
    return ActionSuccess(message="Order refunded")


async def _cancel(ctx: AdminActionContext, cmd: AdminActionCommand) -> AdminActionResult:
    order = await ctx.load_order(cmd.order_id)
    if order is None:
        return ActionFailure(error="Order not found", code="not_found")
    if order.status == OrderStatus.CANCELLED:
        return ActionSuccess(message="Order already cancelled", data={"already_cancelled": True})
    if order.status == OrderStatus.PAID:
        return ActionFailure(error="Paid orders must be refunded or unmarked before cancelling")
    await ctx.repository.transition_order(
        order_id=order.order_id, from_state=order.status, to_state=OrderStatus.CANCELLED
    )
    await ctx.audit(
        cmd,
        target_table="orders",
        target_id=order.order_id,
        changes={"status": {"from": str(order.status), "to": "cancelled"}},
    )
    return ActionSuccess(message="Order cancelled")


async def _delete_order(ctx: AdminActionContext, cmd: AdminActionCommand) -> AdminActionResult:
    if not cmd.order_id:
        return ActionFailure(error="order_id is required", code="validation_error")
    if not await ctx.repository.delete_order(order_id=cmd.order_id):
        return ActionFailure(error="Order not found", code="not_found")
    await ctx.audit(cmd, target_table="orders", target_id=cmd.order_id, changes={"deleted": True})
    return ActionSuccess(message="Order deleted")


def _song_id(cmd: AdminActionCommand) -> str | None:
    song_id = cmd.data.get("song_id")
    return song_id if isinstance(song_id, str) and song_id else None


async def _release_song_now(ctx: AdminActionContext, cmd: AdminActionCommand) -> AdminActionResult:
    song_id = _song_id(cmd)
    if song_id is None:
        return ActionFailure(error="data.song_id is required", code="validation_error")
    song = await ctx.repository.get_song(song_id=song_id)
    if song is None:
        return ActionFailure(error="Song not found", code="not_found")
    if not song.audio_url:
        return ActionFailure(error="Song has no media URL and cannot be released")
    released = await ctx.repository.release_song(song_id=song_id, released_at=ctx.now)
    await ctx.audit(
        cmd,
        target_table="songs",
        target_id=song_id,
        changes={"status": {"from": str(song.status), "to": str(released.status)}},
    )
    return ActionSuccess(message="Song released", data={"song_id": song_id})


async def _approve_song(ctx: AdminActionContext, cmd: AdminActionCommand) -> AdminActionResult:
    song_id = _song_id(cmd)
    if song_id is None:
        return ActionFailure(error="data.song_id is required", code="validation_error")
    song = await ctx.repository.get_song(song_id=song_id)
    if song is None:
        return ActionFailure(error="Song not found", code="not_found")
    approved = await ctx.repository.approve_song(song_id=song_id)
    await ctx.audit(
        cmd,
        target_table="songs",
        target_id=song_id,
        changes={"status": {"from": str(song.status), "to": str(approved.status)}},
    )
    return ActionSuccess(message="Song approved for release", data={"song_id": song_id})


async def _cleanup_pending(ctx: AdminActionContext, cmd: AdminActionCommand) -> AdminActionResult:
    cutoff = ctx.now - timedelta(days=STALE_PENDING_DAYS)
    deleted = await ctx.repository.delete_stale_pending_orders(created_before=cutoff)
    await ctx.audit(
        cmd,
        target_table="orders",
        target_id=None,
        changes={"deleted_pending_orders": deleted, "created_before": cutoff.isoformat()},
    )
    return ActionSuccess(message=f"Deleted {deleted} pending orders", data={"deleted": deleted})


ACTION_HANDLERS: dict[str, ActionHandler] = {
    "mark_as_paid": _mark_as_paid,
    "unmark_as_paid": _unmark_as_paid,
    "refund": _refund,
    "cancel": _cancel,
    "delete_order": _delete_order,
    "release_song_now": _release_song_now,
    "approve_song": _approve_song,
    "cleanup_pending": _cleanup_pending,
}


async def perform_admin_action(
    cmd: AdminActionCommand,
    *,
    repository: OrderRepository,
    post_payment: PostPaymentActions,
    now: datetime | None = None,
) -> AdminActionResult:
    """Run one operator action and return a typed result.

    Business-rule failures come back as ActionFailure; unexpected exceptions
    propagate to the caller.
    """
    handler = ACTION_HANDLERS.get(cmd.action)
    if handler is None:
        return ActionFailure(error=f"Unknown action: {cmd.action}", code="unknown_action")
    ctx = AdminActionContext(
        repository=repository,
        post_payment=post_payment,
        now=now or datetime.now(tz=UTC),
    )
    log_extra = {"component": COMPONENT_ID, "order_id": cmd.order_id, "action": cmd.action}
    try:
        result = await handler(ctx, cmd)
    except DomainError as exc:
        logger.warning("admin action rejected", extra={**log_extra, "error": str(exc)})
        return ActionFailure(error=str(exc), code=error_code_for(exc))
    outcome = "success" if isinstance(result, ActionSuccess) else "failure"
    logger.info("admin action handled", extra={**log_extra, "outcome": outcome})
    return result
