from __future__ import annotations

from app.api.handlers.deps import ApiDeps
from app.api.schemas import ReleaseSweepResponse, RetrySweepResponse
from app.domain.use_cases.release import release_due_songs
from app.domain.use_cases.retry_queue import sweep_retry_queue

COMPONENT_ID = "api.sweeps"


async def retry_queue_sweep_handler(*, api_deps: ApiDeps) -> RetrySweepResponse:
    result = await sweep_retry_queue(
        repository=api_deps.repository,
        lifecycle=api_deps.settings.retry_queue,
        sleep=api_deps.sleep,
    )
    return RetrySweepResponse(
        processed=result.processed,
        completed=result.completed,
        failed=result.failed,
        still_pending=result.still_pending,
        reclaimed=result.reclaimed,
    )


async def release_sweep_handler(*, api_deps: ApiDeps) -> ReleaseSweepResponse:
    result = await release_due_songs(repository=api_deps.repository, notifier=api_deps.notifier)
    return ReleaseSweepResponse(
        processed_orders=result.processed_orders,
        notifications_sent=result.notifications_sent,
        errors=result.errors,
    )
