from __future__ import annotations

from app.workers.handlers import release, retry_queue
from app.workers.handlers.deps import WorkerDeps
from app.workers.loop import SweepHandler, WorkerLoop

ROLE_TO_SWEEP = {
    "worker-retry-queue": retry_queue.COMPONENT_ID,
    "worker-release-scheduler": release.COMPONENT_ID,
}


def build_sweep_handler(role: str, deps: WorkerDeps) -> SweepHandler:
    async def _retry_queue() -> int:
        return await retry_queue.run_sweep(deps)

    async def _release() -> int:
        return await release.run_sweep(deps)

    handlers: dict[str, SweepHandler] = {
        "worker-retry-queue": _retry_queue,
        "worker-release-scheduler": _release,
    }
    handler = handlers.get(role)
    if handler is None:
        raise ValueError(f"No worker handler for role '{role}'")
    return handler


def build_worker_loop(role: str, deps: WorkerDeps) -> WorkerLoop | None:
    if role not in ROLE_TO_SWEEP:
        return None
    return WorkerLoop(role=role, sweep=ROLE_TO_SWEEP[role], run_sweep=build_sweep_handler(role, deps))
