from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
import json

import pytest

from app.clients.stub import DEFAULT_STUB_LYRICS, StubLLMClient
from app.domain.briefs import quiz_snapshot
from app.domain.dto import LLMClientRequest, LLMClientResult
from app.domain.errors import DomainConflictError, DomainDependencyError, DomainInvariantError
from app.domain.lifecycle import LyricsLifecycle
from app.domain.models import ApprovalStatus, JobStatus, QuizSnapshot
from app.domain.use_cases.lyrics import generate_lyrics, parse_generation_output, run_lyrics_generation
from app.repositories.stub import InMemoryOrderRepository
from tests.unit.domain_seed import SAMPLE_QUIZ, no_sleep, seed_paid_order, seed_pending_order

MODEL = "test-model"
NO_BRIDGE_LYRICS = DEFAULT_STUB_LYRICS.replace("[Ponte]\nSe o tempo passar, eu vou te escolher\n\n", "")


def _answer(lyrics: str, title: str = "Nossa Canção") -> str:
    return json.dumps({"title": title, "lyrics": lyrics}, ensure_ascii=False)


def _quiz() -> QuizSnapshot:
    return quiz_snapshot(quiz_id="quiz-1", session_id="session-1", fields=SAMPLE_QUIZ)


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.mark.unit
def test_parse_generation_output_handles_fences_and_garbage() -> None:
    fenced = "```json\n" + _answer("[Refrão]\nla", title="  ") + "\n```"

    assert parse_generation_output(fenced) == ("Sem título", "[Refrão]\nla")
    assert parse_generation_output("not json") is None
    assert parse_generation_output(json.dumps({"title": "x", "lyrics": ""})) is None
    assert parse_generation_output(json.dumps(["list"])) is None


@pytest.mark.unit
def test_first_valid_attempt_stops_generation() -> None:
    llm = StubLLMClient()

    result = asyncio.run(generate_lyrics(_quiz(), llm=llm, model=MODEL, sleep=no_sleep))

    assert result.valid is True
    assert result.attempt == 1
    assert len(llm.calls) == 1
    assert result.report() == {
        "valid": True,
        "attempt": 1,
        "errors": [],
        "warnings": [],
        "attempts_total": 1,
    }


@pytest.mark.unit
def test_best_attempt_has_fewest_violations() -> None:
    two_errors = NO_BRIDGE_LYRICS.replace("Lembro do primeiro dia", "Lembro pra sempre do dia")
    llm = StubLLMClient(responses=[_answer(two_errors), _answer(NO_BRIDGE_LYRICS, title="Segunda"), "not json"])

    result = asyncio.run(generate_lyrics(_quiz(), llm=llm, model=MODEL, sleep=no_sleep))

    assert result.valid is False
    assert result.attempt == 2
    assert result.title == "Segunda"
    assert result.errors == ("missing_section:bridge",)
    assert [attempt.errors for attempt in result.attempts] == [
        ("missing_section:bridge", "informal_term:pra"),
        ("missing_section:bridge",),
        ("unparseable_output",),
    ]


@pytest.mark.unit
def test_regeneration_keeps_temperature_and_pauses_between_attempts() -> None:
    llm = StubLLMClient(responses=["nope", "still nope"])
    sleep = _RecordingSleep()
    lifecycle = LyricsLifecycle(max_attempts=3, temperature=0.7, attempt_pause_ms=500)

    result = asyncio.run(generate_lyrics(_quiz(), llm=llm, model=MODEL, lifecycle=lifecycle, sleep=sleep))

    assert result.attempt == 3
    assert {call.temperature for call in llm.calls} == {0.7}
    assert "unparseable_output" in llm.calls[1].user_prompt
    assert "unparseable_output" not in llm.calls[0].user_prompt
    assert sleep.delays == [0.5, 0.5]


@pytest.mark.unit
def test_upstream_failure_counts_as_attempt() -> None:
    class _RejectOnceLLM(StubLLMClient):
        async def generate(self, request: LLMClientRequest) -> LLMClientResult:
            if not self.calls:
                self.calls.append(request)
                raise DomainDependencyError("model overloaded", status_code=400)
            return await super().generate(request)

    llm = _RejectOnceLLM()

    result = asyncio.run(generate_lyrics(_quiz(), llm=llm, model=MODEL, sleep=no_sleep))

    assert result.valid is True
    assert result.attempt == 2
    assert result.attempts[0].errors == ("upstream_error",)


@pytest.mark.unit
def test_no_usable_output_raises() -> None:
    llm = StubLLMClient(responses=["a", "b", "c"])

    with pytest.raises(DomainDependencyError, match="no usable output"):
        asyncio.run(generate_lyrics(_quiz(), llm=llm, model=MODEL, sleep=no_sleep))


@pytest.mark.unit
def test_run_lyrics_generation_opens_pending_approval() -> None:
    repository = InMemoryOrderRepository()
    now = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)

    async def _run() -> None:
        order = await seed_paid_order(repository)
        approval = await run_lyrics_generation(
            order.order_id,
            repository=repository,
            llm=StubLLMClient(),
            model=MODEL,
            sleep=no_sleep,
            now=now,
        )
        assert approval.status == ApprovalStatus.PENDING
        assert approval.lyrics == DEFAULT_STUB_LYRICS
        assert approval.validation["valid"] is True
        assert approval.expires_at == now + timedelta(hours=72)
        assert approval.regeneration_count == 0

        job = await repository.get_job(job_id=approval.job_id)
        assert job is not None
        assert job.status == JobStatus.PROCESSING
        assert job.lyrics_title == "Nossa Canção"

        again = await run_lyrics_generation(
            order.order_id,
            repository=repository,
            llm=StubLLMClient(),
            model=MODEL,
            sleep=no_sleep,
        )
        assert again.approval_id == approval.approval_id
        assert again.regeneration_count == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_run_lyrics_generation_requires_paid_order() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        order = await seed_pending_order(repository)
        with pytest.raises(DomainInvariantError, match="paid order"):
            await run_lyrics_generation(order.order_id, repository=repository, llm=StubLLMClient(), model=MODEL)

    asyncio.run(_run())


@pytest.mark.unit
def test_run_lyrics_generation_refuses_job_with_audio_in_flight() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        order = await seed_paid_order(repository)
        job = await repository.get_or_create_job(order_id=order.order_id, quiz_id=order.quiz_id)
        repository.jobs[job.job_id].status = JobStatus.AUDIO_PROCESSING
        with pytest.raises(DomainConflictError):
            await run_lyrics_generation(order.order_id, repository=repository, llm=StubLLMClient(), model=MODEL)

    asyncio.run(_run())


@pytest.mark.unit
def test_failed_generation_marks_job_failed() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        order = await seed_paid_order(repository)
        with pytest.raises(DomainDependencyError):
            await run_lyrics_generation(
                order.order_id,
                repository=repository,
                llm=StubLLMClient(responses=["x", "y", "z"]),
                model=MODEL,
                sleep=no_sleep,
            )
        jobs = await repository.list_jobs_for_order(order_id=order.order_id)
        assert jobs[0].status == JobStatus.FAILED
        assert jobs[0].error_message is not None

    asyncio.run(_run())
