from __future__ import annotations

import asyncio
from dataclasses import replace
import json

import pytest

from app.clients.stub import DEFAULT_STUB_LYRICS, StubEmailClient, StubLLMClient, StubSynthesisClient
from app.domain.errors import DomainConflictError
from app.domain.models import JobStatus, NotificationType, OrderStatus
from app.domain.use_cases.audio import dispatch_audio
from app.domain.use_cases.lyrics import run_lyrics_generation
from app.domain.use_cases.payments import PostPaymentActions, parse_payment_payload, process_payment_webhook
from app.repositories.stub import InMemoryOrderRepository
from app.services.background import BackgroundRunner
from tests.unit.domain_seed import (
    PAID_AT,
    no_sleep,
    notifications_for,
    seed_job_with_lyrics,
    seed_paid_order,
    seed_pending_order,
)

APPROVED_WEBHOOK = {"status": "approved", "email": "cliente@example.com", "transaction": "HP-100"}


@pytest.mark.unit
def test_approved_webhook_pays_pending_order_and_notifies_once() -> None:
    repository = InMemoryOrderRepository()
    email = StubEmailClient()
    runner = BackgroundRunner()
    actions = PostPaymentActions(repository=repository, notifications=notifications_for(repository, runner, email))

    async def _run() -> None:
        order = await seed_pending_order(repository, email="cliente@example.com")
        first = await process_payment_webhook(
            parse_payment_payload(APPROVED_WEBHOOK),
            repository=repository,
            post_payment=actions,
            now=PAID_AT,
        )
        assert first.outcome == "paid"
        stored = await repository.get_order(order_id=order.order_id)
        assert stored is not None
        assert stored.status == OrderStatus.PAID
        assert stored.paid_at == PAID_AT

        # Redelivery of the same webhook.
        second = await process_payment_webhook(
            parse_payment_payload(APPROVED_WEBHOOK),
            repository=repository,
            post_payment=actions,
        )
        assert second.outcome == "already_paid"
        assert second.order_id == order.order_id
        again = await repository.get_order(order_id=order.order_id)
        assert again is not None
        assert again.paid_at == PAID_AT
        await runner.drain()

    asyncio.run(_run())
    assert len(email.sent) == 1
    paid_notifications = [
        entry for entry in repository.notifications if entry.notification_type == NotificationType.ORDER_PAID
    ]
    assert len(paid_notifications) == 1


@pytest.mark.unit
def test_lyrics_missing_bridge_are_regenerated_and_pass_on_second_attempt() -> None:
    repository = InMemoryOrderRepository()
    no_bridge = DEFAULT_STUB_LYRICS.replace("[Ponte]\nSe o tempo passar, eu vou te escolher\n\n", "")
    llm = StubLLMClient(responses=[json.dumps({"title": "Nossa Canção", "lyrics": no_bridge}, ensure_ascii=False)])

    async def _run() -> None:
        order = await seed_paid_order(repository)
        approval = await run_lyrics_generation(
            order.order_id,
            repository=repository,
            llm=llm,
            model="test-model",
            sleep=no_sleep,
        )
        assert approval.validation["attempt"] == 2
        assert approval.validation["valid"] is True
        assert approval.lyrics == DEFAULT_STUB_LYRICS

    asyncio.run(_run())
    assert len(llm.calls) == 2
    assert "missing_section:bridge" in llm.calls[1].user_prompt


@pytest.mark.unit
def test_sibling_job_with_task_in_flight_blocks_new_submission() -> None:
    repository = InMemoryOrderRepository()
    synthesis = StubSynthesisClient()

    async def _run() -> None:
        order = await seed_paid_order(repository)
        job_id = await seed_job_with_lyrics(repository, order)
        first = await dispatch_audio(
            job_id,
            repository=repository,
            synthesis=synthesis,
            callback_url="https://example.invalid/callbacks/synthesis",
            model="V4_5PLUS",
            sleep=no_sleep,
        )
        sibling = replace(
            repository.jobs[job_id],
            job_id="job_sibling",
            status=JobStatus.PROCESSING,
            task_id=None,
        )
        repository.jobs[sibling.job_id] = sibling

        with pytest.raises(DomainConflictError, match=first.task_id):
            await dispatch_audio(
                sibling.job_id,
                repository=repository,
                synthesis=synthesis,
                callback_url="https://example.invalid/callbacks/synthesis",
                model="V4_5PLUS",
                sleep=no_sleep,
            )
        stored = await repository.get_job(job_id=sibling.job_id)
        assert stored is not None
        assert stored.task_id is None
        assert stored.status == JobStatus.PROCESSING

    asyncio.run(_run())
    assert len(synthesis.calls) == 1
