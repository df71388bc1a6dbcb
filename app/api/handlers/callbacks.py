from __future__ import annotations

from app.api.handlers.deps import ApiDeps
from app.api.schemas import SynthesisCallbackResponse
from app.domain.synthesis import parse_callback
from app.domain.use_cases.callbacks import CallbackDeps, handle_synthesis_callback

COMPONENT_ID = "api.synthesis_callback"


async def synthesis_callback_handler(*, payload: dict[str, object], api_deps: ApiDeps) -> SynthesisCallbackResponse:
    callback = parse_callback(payload)
    result = await handle_synthesis_callback(
        callback,
        deps=CallbackDeps(
            repository=api_deps.repository,
            media=api_deps.media,
            storage=api_deps.storage,
            notifications=api_deps.notifications,
            release_delay_days=api_deps.settings.release_delay_days,
            sleep=api_deps.sleep,
        ),
    )
    return SynthesisCallbackResponse(
        success=True,
        outcome=result.outcome,
        task_id=callback.task_id,
        job_id=result.job_id,
        song_ids=list(result.song_ids),
        warnings=list(result.warnings),
        notification_scheduled=result.notification_scheduled,
    )
