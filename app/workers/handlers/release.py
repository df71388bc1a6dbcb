from __future__ import annotations

from app.domain.use_cases.release import release_due_songs
from app.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.release_scheduler"


async def run_sweep(deps: WorkerDeps) -> int:
    result = await release_due_songs(repository=deps.repository, notifier=deps.notifier)
    return result.processed_orders + result.errors
