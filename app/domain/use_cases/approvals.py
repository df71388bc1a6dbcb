from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging

from app.domain.contracts import LLMClient, OrderRepository, SynthesisClient
from app.domain.dto import DispatchAudioResult
from app.domain.errors import DomainInvariantError, DomainNotFoundError, DomainValidationError
from app.domain.lifecycle import LyricsLifecycle
from app.domain.models import ApprovalStatus, LyricsApprovalSnapshot, VoiceOverride
from app.domain.use_cases.audio import dispatch_audio
from app.domain.use_cases.lyrics import run_lyrics_generation

COMPONENT_ID = "domain.lyrics.review"

logger = logging.getLogger("runtime")


async def approve_lyrics(
    approval_id: str,
    *,
    voice: VoiceOverride | None,
    repository: OrderRepository,
    synthesis: SynthesisClient,
    callback_url: str,
    model: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> DispatchAudioResult:
    """Approve lyrics and submit synthesis.

    Approving an already-approved review re-submits through the same guard, so
    an in-flight job answers with a conflict and a failed job is dispatched again.
    """
    approval = await repository.get_approval(approval_id=approval_id)
    if approval is None:
        raise DomainNotFoundError(f"approval not found: {approval_id}")
    if approval.status == ApprovalStatus.APPROVED:
        approved = approval
    else:
        try:
            approved = await repository.decide_approval(
                approval_id=approval_id,
                status=ApprovalStatus.APPROVED,
                voice=voice,
            )
        except DomainInvariantError:
            current = await repository.get_approval(approval_id=approval_id)
            if current is None or current.status != ApprovalStatus.APPROVED:
                raise
            approved = current
    logger.info(
        "lyrics approved",
        extra={"component": COMPONENT_ID, "order_id": approved.order_id, "job_id": approved.job_id},
    )
    return await dispatch_audio(
        approved.job_id,
        repository=repository,
        synthesis=synthesis,
        callback_url=callback_url,
        model=model,
        sleep=sleep,
    )


async def reject_lyrics(
    approval_id: str,
    *,
    repository: OrderRepository,
    llm: LLMClient,
    model: str,
    lifecycle: LyricsLifecycle = LyricsLifecycle(),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> LyricsApprovalSnapshot:
    """Reject the current lyrics and regenerate, which opens a fresh pending approval."""
    approval = await repository.get_approval(approval_id=approval_id)
    if approval is None:
        raise DomainNotFoundError(f"approval not found: {approval_id}")
    rejected = await repository.decide_approval(approval_id=approval_id, status=ApprovalStatus.REJECTED)
    logger.info(
        "lyrics rejected",
        extra={"component": COMPONENT_ID, "order_id": rejected.order_id, "job_id": rejected.job_id},
    )
    return await run_lyrics_generation(
        rejected.order_id,
        repository=repository,
        llm=llm,
        model=model,
        lifecycle=lifecycle,
        sleep=sleep,
    )


async def redispatch_audio(
    job_id: str,
    *,
    repository: OrderRepository,
    synthesis: SynthesisClient,
    callback_url: str,
    model: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> DispatchAudioResult:
    """Submit synthesis again for a job whose lyrics were already approved."""
    job = await repository.get_job(job_id=job_id)
    if job is None:
        raise DomainNotFoundError(f"job not found: {job_id}")
    approval = await repository.find_latest_approval_for_job(job_id=job_id)
    if approval is None or approval.status != ApprovalStatus.APPROVED:
        raise DomainValidationError(f"job {job_id} has no approved lyrics")
    logger.info(
        "synthesis re-dispatch requested",
        extra={"component": COMPONENT_ID, "order_id": job.order_id, "job_id": job_id},
    )
    return await dispatch_audio(
        job_id,
        repository=repository,
        synthesis=synthesis,
        callback_url=callback_url,
        model=model,
        sleep=sleep,
    )
