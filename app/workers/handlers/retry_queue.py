from __future__ import annotations

from app.domain.use_cases.retry_queue import sweep_retry_queue
from app.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.retry_queue"


async def run_sweep(deps: WorkerDeps) -> int:
    result = await sweep_retry_queue(
        repository=deps.repository,
        lifecycle=deps.settings.retry_queue,
        sleep=deps.sleep,
    )
    return result.processed + result.reclaimed
