from __future__ import annotations

from collections.abc import Callable

from app.api.handlers.deps import ApiDeps
from app.api.schemas import DispatchAudioResponse, LyricsApprovalResponse
from app.domain.models import LyricsApprovalSnapshot, VoiceOverride
from app.domain.use_cases.approvals import approve_lyrics, redispatch_audio, reject_lyrics
from app.domain.use_cases.lyrics import run_lyrics_generation

COMPONENT_ID = "api.lyrics"


def _approval_response(approval: LyricsApprovalSnapshot) -> LyricsApprovalResponse:
    return LyricsApprovalResponse(
        approval_id=approval.approval_id,
        order_id=approval.order_id,
        job_id=approval.job_id,
        status=approval.status,
        regeneration_count=approval.regeneration_count,
        lyrics_title=approval.lyrics_title,
        lyrics=approval.lyrics,
        validation=approval.validation,
        expires_at=approval.expires_at,
    )


async def _generate(order_id: str, api_deps: ApiDeps) -> LyricsApprovalSnapshot:
    return await run_lyrics_generation(
        order_id,
        repository=api_deps.repository,
        llm=api_deps.llm,
        model=api_deps.settings.llm_model,
        lifecycle=api_deps.settings.lyrics,
        sleep=api_deps.sleep,
    )


def schedule_lyrics_generation(api_deps: ApiDeps) -> Callable[[str], None]:
    """Kickoff callback handed to post-payment actions; runs off the request path."""

    def _schedule(order_id: str) -> None:
        api_deps.background.spawn(_generate(order_id, api_deps), name=f"{COMPONENT_ID}.generate:{order_id}")

    return _schedule


async def generate_lyrics_handler(*, order_id: str, api_deps: ApiDeps) -> LyricsApprovalResponse:
    approval = await _generate(order_id, api_deps)
    return _approval_response(approval)


async def approve_lyrics_handler(
    *,
    approval_id: str,
    voice: VoiceOverride | None,
    api_deps: ApiDeps,
) -> DispatchAudioResponse:
    result = await approve_lyrics(
        approval_id,
        voice=voice,
        repository=api_deps.repository,
        synthesis=api_deps.synthesis,
        callback_url=api_deps.settings.synthesis_callback_url,
        model=api_deps.settings.synthesis_model,
        sleep=api_deps.sleep,
    )
    return DispatchAudioResponse(job_id=result.job_id, order_id=result.order_id, task_id=result.task_id)


async def dispatch_audio_handler(*, job_id: str, api_deps: ApiDeps) -> DispatchAudioResponse:
    result = await redispatch_audio(
        job_id,
        repository=api_deps.repository,
        synthesis=api_deps.synthesis,
        callback_url=api_deps.settings.synthesis_callback_url,
        model=api_deps.settings.synthesis_model,
        sleep=api_deps.sleep,
    )
    return DispatchAudioResponse(job_id=result.job_id, order_id=result.order_id, task_id=result.task_id)


async def reject_lyrics_handler(*, approval_id: str, api_deps: ApiDeps) -> LyricsApprovalResponse:
    approval = await reject_lyrics(
        approval_id,
        repository=api_deps.repository,
        llm=api_deps.llm,
        model=api_deps.settings.llm_model,
        lifecycle=api_deps.settings.lyrics,
        sleep=api_deps.sleep,
    )
    return _approval_response(approval)
