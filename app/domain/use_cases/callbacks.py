from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import logging

from app.domain.contracts import MediaClient, OrderRepository, StorageClient
from app.domain.dto import CallbackItem, CallbackResult, NotificationRequest, SynthesisCallback
from app.domain.error_taxonomy import error_code_for
from app.domain.models import JobSnapshot, JobStatus, NotificationType, SongSnapshot
from app.domain.synthesis import media_key, validate_media
from app.domain.use_cases.notifications import NotificationScheduler
from app.lib.resilience import RETRY_POLICIES, TIMEOUTS, call_external

COMPONENT_ID = "domain.synthesis.callback"

# Jobs in these states can still be failed by a callback.
OPEN_JOB_STATUSES = (
    JobStatus.PROCESSING,
    JobStatus.GENERATING_AUDIO,
    JobStatus.AUDIO_PROCESSING,
    JobStatus.FINALIZING,
)

logger = logging.getLogger("runtime")


@dataclass
class CallbackDeps:
    repository: OrderRepository
    media: MediaClient
    storage: StorageClient
    notifications: NotificationScheduler
    release_delay_days: int = 7
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


async def _resolve_job(task_id: str, *, repository: OrderRepository) -> JobSnapshot | None:
    task = await repository.resolve_generation_task(task_id=task_id)
    if task is not None:
        return await repository.get_job(job_id=task.job_id)
    # Submissions made before the correlation index existed only carry the id on the job.
    return await repository.find_job_by_task_id(task_id=task_id)


async def _fail_job(job: JobSnapshot, message: str, *, repository: OrderRepository) -> None:
    await repository.transition_job(
        job_id=job.job_id,
        from_states=OPEN_JOB_STATUSES,
        to_state=JobStatus.FAILED,
        error_message=message,
    )


async def _rehost(
    url: str,
    *,
    key: str,
    content_type: str,
    validate: bool,
    deps: CallbackDeps,
) -> str:
    media = await call_external(
        lambda: deps.media.download(url),
        policy=RETRY_POLICIES["media_download"],
        timeout_ms=TIMEOUTS["media_download"],
        operation_name="media.download",
        sleep=deps.sleep,
    )
    if validate:
        validate_media(media)
    return await deps.storage.put_bytes(key=key, payload=media.payload, content_type=content_type)


async def _store_songs(
    callback: SynthesisCallback,
    job: JobSnapshot,
    items: list[CallbackItem],
    *,
    deps: CallbackDeps,
    now: datetime,
) -> tuple[list[SongSnapshot], list[str]]:
    warnings: list[str] = []
    songs: list[SongSnapshot] = []
    release_at = now + timedelta(days=deps.release_delay_days)
    for variant, item in enumerate(items, start=1):
        if not item.audio_url:
            continue
        audio_url = await _rehost(
            item.audio_url,
            key=media_key(callback.task_id, variant, "mp3"),
            content_type="audio/mpeg",
            validate=True,
            deps=deps,
        )
        cover_url = item.cover_url
        if item.cover_url:
            try:
                cover_url = await _rehost(
                    item.cover_url,
                    key=media_key(callback.task_id, variant, "jpg"),
                    content_type="image/jpeg",
                    validate=False,
                    deps=deps,
                )
            except Exception as exc:
                # The provider-hosted cover is still usable.
                warnings.append(f"cover_rehost_failed:{variant}")
                logger.warning(
                    "cover re-hosting failed",
                    extra={"component": COMPONENT_ID, "task_id": callback.task_id, "error": str(exc)},
                )
        song = await deps.repository.create_song(
            order_id=job.order_id,
            job_id=job.job_id,
            title=item.title or job.lyrics_title or "Untitled",
            variant_number=variant,
            audio_url=audio_url,
            cover_url=cover_url,
            lyrics=job.lyrics,
            provider_clip_id=item.clip_id,
            task_id=callback.task_id,
            release_at=release_at,
        )
        songs.append(song)
    return songs, warnings


async def handle_synthesis_callback(
    callback: SynthesisCallback,
    *,
    deps: CallbackDeps,
    now: datetime | None = None,
) -> CallbackResult:
    """Finalize a job from a provider callback.

    Repeated deliveries for a finished job are acknowledged as duplicates
    without touching state. Concurrent deliveries race on the finalization
    claim; only the winner downloads media and writes songs.
    """
    repository = deps.repository
    log_extra: dict[str, object] = {"component": COMPONENT_ID, "task_id": callback.task_id}
    job = await _resolve_job(callback.task_id, repository=repository)
    if job is None:
        logger.warning("callback for unknown task", extra={**log_extra, "outcome": "ignored"})
        return CallbackResult(outcome="ignored", warnings=("unknown_task",))
    log_extra.update({"order_id": job.order_id, "job_id": job.job_id})

    if job.task_id != callback.task_id:
        # The job was re-dispatched; this delivery belongs to an abandoned request.
        logger.warning("callback for superseded task", extra={**log_extra, "outcome": "ignored"})
        return CallbackResult(outcome="ignored", job_id=job.job_id, warnings=("stale_task",))
    if job.status in (JobStatus.COMPLETED, JobStatus.FINALIZING):
        logger.info("duplicate callback for finished job", extra={**log_extra, "outcome": "duplicate"})
        return CallbackResult(outcome="duplicate", job_id=job.job_id)
    if callback.kind == "progress":
        return CallbackResult(outcome="ignored", job_id=job.job_id)
    if job.status == JobStatus.FAILED:
        logger.info("callback for failed job", extra={**log_extra, "outcome": "duplicate"})
        return CallbackResult(outcome="duplicate", job_id=job.job_id)

    if callback.kind == "failed":
        message = callback.error_message or "synthesis provider reported failure"
        await _fail_job(job, message, repository=repository)
        logger.error("synthesis failed", extra={**log_extra, "outcome": "failed", "error": message})
        return CallbackResult(outcome="failed", job_id=job.job_id)

    items = [item for item in callback.items if item.audio_url]
    if not items:
        await _fail_job(job, "callback carried no usable audio", repository=repository)
        logger.error("callback without audio", extra={**log_extra, "outcome": "failed"})
        return CallbackResult(outcome="failed", job_id=job.job_id)

    if not await repository.claim_job_finalization(job_id=job.job_id):
        logger.info("callback lost finalization claim", extra={**log_extra, "outcome": "duplicate"})
        return CallbackResult(outcome="duplicate", job_id=job.job_id)

    current_time = now or datetime.now(tz=UTC)
    existing = [
        song
        for song in await repository.list_songs_for_order(order_id=job.order_id)
        if song.task_id == callback.task_id
    ]
    warnings: list[str] = []
    if existing:
        songs = existing
    else:
        try:
            songs, warnings = await _store_songs(callback, job, items, deps=deps, now=current_time)
        except Exception as exc:
            message = f"media processing failed: {exc}"
            logger.error(
                "callback media processing failed",
                extra={**log_extra, "outcome": "failed", "error_code": error_code_for(exc), "error": str(exc)},
            )
            await _fail_job(job, message, repository=repository)
            return CallbackResult(outcome="failed", job_id=job.job_id)

    completed = await repository.complete_job(
        job_id=job.job_id,
        audio_url=songs[0].audio_url,
        completed_at=current_time,
    )
    if not completed:
        return CallbackResult(outcome="duplicate", job_id=job.job_id)

    scheduled = False
    order = await repository.get_order(order_id=job.order_id)
    if order is not None:
        try:
            deps.notifications.schedule(
                NotificationRequest(
                    order_id=job.order_id,
                    notification_type=NotificationType.SONG_READY,
                    recipient=order.customer_email,
                    variables={"song_count": len(songs)},
                )
            )
            scheduled = True
        except Exception as exc:
            logger.error("song-ready notification scheduling failed", extra={**log_extra, "error": str(exc)})
            warnings.append(f"notification_schedule_failed: {exc}")
    logger.info("synthesis completed", extra={**log_extra, "outcome": "completed"})
    return CallbackResult(
        outcome="completed",
        job_id=job.job_id,
        song_ids=tuple(song.song_id for song in songs),
        warnings=tuple(warnings),
        notification_scheduled=scheduled,
    )
