from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging

from app.domain.contracts import OrderRepository, SynthesisClient
from app.domain.dto import DispatchAudioResult
from app.domain.error_taxonomy import error_code_for
from app.domain.errors import (
    DomainConflictError,
    DomainInvariantError,
    DomainNotFoundError,
    DomainValidationError,
)
from app.domain.models import IN_FLIGHT_JOB_STATUSES, JobStatus
from app.domain.synthesis import build_synthesis_request, extract_task_id, resolve_voice
from app.lib.resilience import RETRY_POLICIES, TIMEOUTS, call_external

COMPONENT_ID = "domain.audio.dispatch"

# States from which a job may start a synthesis request.
DISPATCHABLE_JOB_STATUSES = (JobStatus.PROCESSING, JobStatus.RETRY_PENDING, JobStatus.FAILED)

logger = logging.getLogger("runtime")


async def dispatch_audio(
    job_id: str,
    *,
    repository: OrderRepository,
    synthesis: SynthesisClient,
    callback_url: str,
    model: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> DispatchAudioResult:
    """Submit one synthesis request for a job and persist its task id.

    Raises DomainConflictError without side effects when the job, or another
    job of the same order, already holds an in-flight request.
    """
    job = await repository.get_job(job_id=job_id)
    if job is None:
        raise DomainNotFoundError(f"job not found: {job_id}")
    log_extra = {"component": COMPONENT_ID, "order_id": job.order_id, "job_id": job_id}
    # A failed job keeps its last task id until it is re-dispatched.
    if job.status in IN_FLIGHT_JOB_STATUSES or (job.task_id and job.status != JobStatus.FAILED):
        raise DomainConflictError(f"job {job_id} already has a synthesis request in flight")
    sibling = await repository.find_in_flight_sibling(order_id=job.order_id, exclude_job_id=job_id)
    if sibling is not None:
        logger.warning(
            "duplicate synthesis submission rejected",
            extra={**log_extra, "task_id": sibling.task_id, "outcome": "conflict"},
        )
        raise DomainConflictError(f"order {job.order_id} already has synthesis task {sibling.task_id} in flight")
    if not job.lyrics:
        raise DomainValidationError(f"job {job_id} has no lyrics to synthesize")

    quiz = await repository.get_quiz(quiz_id=job.quiz_id)
    approval = await repository.find_latest_approval_for_job(job_id=job_id)
    request = build_synthesis_request(
        title=job.lyrics_title or "",
        lyrics=job.lyrics,
        style=quiz.style if quiz is not None else None,
        voice=resolve_voice(
            approval.voice if approval is not None else None,
            quiz.vocal_gender if quiz is not None else None,
        ),
        callback_url=callback_url,
        model=model,
    )

    try:
        await repository.transition_job(
            job_id=job_id,
            from_states=DISPATCHABLE_JOB_STATUSES,
            to_state=JobStatus.GENERATING_AUDIO,
        )
    except DomainInvariantError as exc:
        # Another request moved the job first.
        raise DomainConflictError(str(exc)) from exc
    except DomainConflictError:
        logger.warning("concurrent synthesis submission rejected", extra={**log_extra, "outcome": "conflict"})
        raise

    try:
        response = await call_external(
            lambda: synthesis.submit(request.as_payload()),
            policy=RETRY_POLICIES["api"],
            timeout_ms=TIMEOUTS["audio_generation"],
            operation_name="synthesis.submit",
            sleep=sleep,
        )
        task_id = extract_task_id(response)
    except Exception as exc:
        logger.error(
            "synthesis submission failed",
            extra={**log_extra, "error_code": error_code_for(exc), "error": str(exc)},
        )
        await repository.transition_job(
            job_id=job_id,
            from_states=(JobStatus.GENERATING_AUDIO,),
            to_state=JobStatus.FAILED,
            error_message=str(exc),
        )
        raise

    written = await repository.set_job_task_id(job_id=job_id, task_id=task_id)
    stored = await repository.get_job(job_id=job_id)
    if not written or stored is None or stored.task_id != task_id:
        persisted = stored.task_id if stored is not None else None
        message = f"task id read-after-write mismatch for job {job_id}: wrote {task_id}, read {persisted}"
        logger.error(message, extra={**log_extra, "task_id": task_id, "error_code": "internal_error"})
        if stored is not None and stored.status == JobStatus.GENERATING_AUDIO:
            await repository.transition_job(
                job_id=job_id,
                from_states=(JobStatus.GENERATING_AUDIO,),
                to_state=JobStatus.FAILED,
                error_message=message,
            )
        raise DomainInvariantError(message)

    await repository.record_generation_task(task_id=task_id, job_id=job_id, order_id=job.order_id)
    logger.info("synthesis submitted", extra={**log_extra, "task_id": task_id})
    return DispatchAudioResult(job_id=job_id, order_id=job.order_id, task_id=task_id)
