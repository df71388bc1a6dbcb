from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from app.services.settings import env_int
from app.workers.loop import WorkerLoop


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    poll_interval_ms: int = 200
    idle_backoff_ms: int = 1000
    error_backoff_ms: int = 2000


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    work_ticks_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        poll_interval_ms=env_int("WORKER_POLL_INTERVAL_MS", 200),
        idle_backoff_ms=env_int("WORKER_IDLE_BACKOFF_MS", 1000),
        error_backoff_ms=env_int("WORKER_ERROR_BACKOFF_MS", 2000),
    )


async def run_worker_until_stopped(
    *,
    worker_loop: WorkerLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    log_extra = {"role": role, "service": role, "run_id": run_id, "component": worker_loop.sweep}
    if state is not None:
        state.started = True
    logger.info("worker loop started", extra=log_extra)

    while not stop_event.is_set():
        delay_ms = settings.idle_backoff_ms
        try:
            did_work = await worker_loop.run_once()
            if state is not None:
                state.ticks_total += 1
                if did_work:
                    state.work_ticks_total += 1
                else:
                    state.idle_ticks_total += 1
            if did_work:
                logger.info("sweep tick processed work", extra=log_extra)
            delay_ms = settings.poll_interval_ms if did_work else settings.idle_backoff_ms
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception("sweep tick failed", extra=log_extra)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    logger.info("worker loop stopped", extra=log_extra)
    if state is not None:
        state.stopped = True
