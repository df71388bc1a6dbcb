from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
import json
import logging
import re

from app.domain.contracts import LLMClient, OrderRepository
from app.domain.dto import LLMClientRequest, LyricsAttempt, LyricsGenerationResult
from app.domain.error_taxonomy import error_code_for
from app.domain.errors import DomainConflictError, DomainDependencyError, DomainInvariantError, DomainNotFoundError
from app.domain.lifecycle import LyricsLifecycle
from app.domain.lyrics_prompts import SYSTEM_PROMPT, build_corrective_instruction, build_user_prompt
from app.domain.lyrics_validation import validate_lyrics
from app.domain.models import (
    IN_FLIGHT_JOB_STATUSES,
    JobStatus,
    LyricsApprovalSnapshot,
    OrderStatus,
    QuizSnapshot,
)
from app.domain.text_analysis import analyze_brief
from app.lib.resilience import RETRY_POLICIES, TIMEOUTS, call_external

COMPONENT_ID = "domain.lyrics.generate"

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)

logger = logging.getLogger("runtime")


def parse_generation_output(raw_text: str) -> tuple[str, str] | None:
    """Return ``(title, lyrics)`` from a JSON answer, or None when it does not parse."""
    try:
        loaded = json.loads(_FENCE_RE.sub("", raw_text))
    except json.JSONDecodeError:
        return None
    if not isinstance(loaded, dict):
        return None
    title = loaded.get("title")
    lyrics = loaded.get("lyrics")
    if not isinstance(lyrics, str) or not lyrics.strip():
        return None
    if not isinstance(title, str) or not title.strip():
        title = "Sem título"
    return title.strip(), lyrics.strip()


def _best_attempt(attempts: list[LyricsAttempt]) -> LyricsAttempt | None:
    usable = [attempt for attempt in attempts if attempt.lyrics is not None]
    if not usable:
        return None
    # Fewest violations wins; the earlier attempt wins a tie.
    return min(usable, key=lambda attempt: (len(attempt.errors), attempt.attempt))


async def generate_lyrics(
    quiz: QuizSnapshot,
    *,
    llm: LLMClient,
    model: str,
    lifecycle: LyricsLifecycle = LyricsLifecycle(),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> LyricsGenerationResult:
    """Generate, validate and regenerate lyrics until one attempt passes.

    Attempts run strictly one after another because each corrective prompt is
    built from the previous attempt's violations. Only the prompt text changes
    between attempts; temperature stays fixed.
    """
    analysis = analyze_brief(quiz)
    brief = quiz.brief_text()
    base_prompt = build_user_prompt(quiz, analysis)
    attempts: list[LyricsAttempt] = []

    for number in range(1, lifecycle.max_attempts + 1):
        user_prompt = base_prompt
        if attempts and attempts[-1].errors:
            user_prompt = f"{base_prompt}\n\n{build_corrective_instruction(attempts[-1].errors)}"
        request = LLMClientRequest(
            system_prompt=SYSTEM_PROMPT,
            user_prompt=user_prompt,
            model=model,
            temperature=lifecycle.temperature,
        )
        log_extra = {"component": COMPONENT_ID, "attempt": number}
        try:
            result = await call_external(
                lambda: llm.generate(request),
                policy=RETRY_POLICIES["api"],
                timeout_ms=TIMEOUTS["lyrics_generation"],
                operation_name="lyrics.generate",
                sleep=sleep,
            )
        except DomainDependencyError as exc:
            logger.warning(
                "lyrics generation call failed",
                extra={**log_extra, "error_code": error_code_for(exc), "error": str(exc)},
            )
            attempts.append(LyricsAttempt(attempt=number, title=None, lyrics=None, errors=("upstream_error",)))
        else:
            parsed = parse_generation_output(result.raw_text)
            if parsed is None:
                attempts.append(
                    LyricsAttempt(attempt=number, title=None, lyrics=None, errors=("unparseable_output",))
                )
            else:
                title, lyrics = parsed
                report = validate_lyrics(lyrics, brief=brief, analysis=analysis)
                attempts.append(
                    LyricsAttempt(
                        attempt=number,
                        title=title,
                        lyrics=lyrics,
                        errors=report.errors,
                        warnings=report.warnings,
                    )
                )
        current = attempts[-1]
        if current.valid:
            logger.info("lyrics passed validation", extra=log_extra)
            break
        logger.info("lyrics failed validation", extra={**log_extra, "error": ", ".join(current.errors)})
        if number < lifecycle.max_attempts:
            await sleep(lifecycle.attempt_pause_ms / 1000)

    best = _best_attempt(attempts)
    if best is None or best.title is None or best.lyrics is None:
        raise DomainDependencyError(f"lyrics generation produced no usable output after {len(attempts)} attempts")
    if not best.valid:
        logger.warning(
            "returning best non-validated lyrics attempt",
            extra={"component": COMPONENT_ID, "attempt": best.attempt, "error": ", ".join(best.errors)},
        )
    return LyricsGenerationResult(
        title=best.title,
        lyrics=best.lyrics,
        valid=best.valid,
        attempt=best.attempt,
        errors=best.errors,
        warnings=best.warnings,
        attempts=tuple(attempts),
    )


async def run_lyrics_generation(
    order_id: str,
    *,
    repository: OrderRepository,
    llm: LLMClient,
    model: str,
    lifecycle: LyricsLifecycle = LyricsLifecycle(),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    now: datetime | None = None,
) -> LyricsApprovalSnapshot:
    """Produce lyrics for a paid order and open (or refresh) its pending approval."""
    order = await repository.get_order(order_id=order_id)
    if order is None:
        raise DomainNotFoundError(f"order not found: {order_id}")
    if order.status != OrderStatus.PAID:
        raise DomainInvariantError(f"order {order_id} is {order.status}, lyrics require a paid order")
    quiz = await repository.get_quiz(quiz_id=order.quiz_id)
    if quiz is None:
        raise DomainNotFoundError(f"quiz not found for order: {order_id}")

    job = await repository.get_or_create_job(order_id=order_id, quiz_id=quiz.quiz_id)
    if job.status in IN_FLIGHT_JOB_STATUSES or job.status == JobStatus.COMPLETED:
        raise DomainConflictError(f"job {job.job_id} is {job.status}, lyrics can no longer change")
    job = await repository.transition_job(
        job_id=job.job_id,
        from_states=(JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.RETRY_PENDING),
        to_state=JobStatus.PROCESSING,
    )
    log_extra = {"component": COMPONENT_ID, "order_id": order_id, "job_id": job.job_id}

    try:
        result = await generate_lyrics(quiz, llm=llm, model=model, lifecycle=lifecycle, sleep=sleep)
    except Exception as exc:
        logger.error(
            "lyrics generation failed",
            extra={**log_extra, "error_code": error_code_for(exc), "error": str(exc)},
        )
        await repository.transition_job(
            job_id=job.job_id,
            from_states=(JobStatus.PROCESSING,),
            to_state=JobStatus.FAILED,
            error_message=str(exc),
        )
        raise

    await repository.save_job_lyrics(job_id=job.job_id, title=result.title, lyrics=result.lyrics)
    current_time = now or datetime.now(tz=UTC)
    approval = await repository.upsert_pending_approval(
        order_id=order_id,
        job_id=job.job_id,
        title=result.title,
        lyrics=result.lyrics,
        validation=result.report(),
        expires_at=current_time + timedelta(hours=lifecycle.approval_ttl_hours),
    )
    logger.info(
        "lyrics ready for approval",
        extra={**log_extra, "attempt": result.attempt, "outcome": "valid" if result.valid else "best_effort"},
    )
    return approval
