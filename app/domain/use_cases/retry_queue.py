from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
import logging

from app.domain.briefs import validate_quiz_payload
from app.domain.contracts import OrderRepository
from app.domain.dto import RetrySweepResult
from app.domain.error_taxonomy import error_code_for, resolve_component_error
from app.domain.errors import DomainValidationError
from app.domain.lifecycle import RetryQueueLifecycle
from app.domain.models import RetryQueueItemSnapshot, RetryQueueKind
from app.lib.resilience import RETRY_POLICIES, RetryPolicy, backoff_delay_ms, with_retry

COMPONENT_ID = "domain.retry_queue.sweep"

logger = logging.getLogger("runtime")


def next_retry_at(*, attempts: int, now: datetime, lifecycle: RetryQueueLifecycle) -> datetime:
    delay_ms = backoff_delay_ms(
        attempts,
        initial_delay_ms=lifecycle.base_delay_ms,
        max_delay_ms=lifecycle.max_delay_ms,
    )
    return now + timedelta(milliseconds=delay_ms)


async def _replay(item: RetryQueueItemSnapshot, *, repository: OrderRepository) -> None:
    if item.kind == RetryQueueKind.QUIZ_UPSERT:
        session_id = item.payload.get("session_id") or item.session_id
        if not isinstance(session_id, str) or not session_id:
            raise DomainValidationError("quiz_upsert payload has no session_id")
        quiz = validate_quiz_payload(item.payload.get("quiz"))
        await repository.upsert_quiz_by_session(session_id=session_id, quiz=quiz)
        return
    raise DomainValidationError(f"unsupported retry item kind: {item.kind}")


async def sweep_retry_queue(
    *,
    repository: OrderRepository,
    lifecycle: RetryQueueLifecycle = RetryQueueLifecycle(),
    local_policy: RetryPolicy | None = None,
    now_fn: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetrySweepResult:
    """Replay due retry items one at a time.

    Stale ``processing`` claims older than the lease are released first. Each
    item is claimed with a conditional update so overlapping sweeps never
    replay the same item concurrently.
    """
    policy = local_policy or RetryPolicy(
        max_attempts=lifecycle.local_attempts,
        initial_delay_ms=RETRY_POLICIES["queue_write"].initial_delay_ms,
    )
    started = now_fn()
    reclaimed = await repository.reclaim_stale_retry_items(
        claimed_before=started - timedelta(seconds=lifecycle.lease_seconds)
    )
    if reclaimed:
        logger.warning("reclaimed stale retry items", extra={"component": COMPONENT_ID, "count": reclaimed})

    due = await repository.list_due_retry_items(now=started, limit=lifecycle.batch_size)
    processed = completed = failed = still_pending = 0
    for index, item in enumerate(due):
        if index:
            await sleep(lifecycle.item_delay_ms / 1000)
        if not await repository.claim_retry_item(item_id=item.item_id, claimed_at=now_fn()):
            continue
        processed += 1
        log_extra = {"component": COMPONENT_ID, "item_id": item.item_id}
        try:
            await with_retry(
                lambda: _replay(item, repository=repository),
                policy,
                operation_name="retry_queue.replay",
                sleep=sleep,
            )
        except Exception as exc:
            attempts = item.attempts + 1
            code = resolve_component_error(component="retry_queue", code=error_code_for(exc))
            # Malformed payloads can never succeed on replay.
            if isinstance(exc, DomainValidationError) or attempts >= item.max_attempts:
                await repository.fail_retry_item(item_id=item.item_id, attempts=attempts, last_error=str(exc))
                failed += 1
                logger.error(
                    "retry item failed permanently",
                    extra={**log_extra, "attempt": attempts, "error_code": code, "error": str(exc)},
                )
                continue
            await repository.reschedule_retry_item(
                item_id=item.item_id,
                attempts=attempts,
                next_retry_at=next_retry_at(attempts=attempts, now=now_fn(), lifecycle=lifecycle),
                last_error=str(exc),
            )
            still_pending += 1
            logger.warning(
                "retry item rescheduled",
                extra={**log_extra, "attempt": attempts, "error_code": code, "error": str(exc)},
            )
            continue
        await repository.complete_retry_item(item_id=item.item_id)
        completed += 1
        logger.info("retry item completed", extra=log_extra)

    return RetrySweepResult(
        processed=processed,
        completed=completed,
        failed=failed,
        still_pending=still_pending,
        reclaimed=reclaimed,
    )
