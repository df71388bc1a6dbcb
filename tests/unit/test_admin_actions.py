from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from app.domain.dto import ActionFailure, ActionSuccess, AdminActionCommand, AdminActionResult
from app.domain.models import OrderStatus, SongSnapshot, SongStatus
from app.domain.use_cases.admin_actions import perform_admin_action
from app.domain.use_cases.payments import PostPaymentActions
from app.repositories.stub import InMemoryOrderRepository
from app.services.background import BackgroundRunner
from tests.unit.domain_seed import notifications_for, seed_job_with_lyrics, seed_paid_order, seed_pending_order

NOW = datetime(2026, 5, 10, 15, 0, tzinfo=UTC)


async def _act(
    repository: InMemoryOrderRepository,
    action: str,
    order_id: str | None = None,
    *,
    runner: BackgroundRunner | None = None,
    **data: object,
) -> AdminActionResult:
    notifications = notifications_for(repository, runner if runner is not None else BackgroundRunner())
    return await perform_admin_action(
        AdminActionCommand(action=action, order_id=order_id, data=dict(data), actor="ops@example.com"),
        repository=repository,
        post_payment=PostPaymentActions(repository=repository, notifications=notifications),
        now=NOW,
    )


async def _seed_song(repository: InMemoryOrderRepository, *, audio_url: str | None = "https://m/1.mp3") -> SongSnapshot:
    order = await seed_paid_order(repository)
    job_id = await seed_job_with_lyrics(repository, order)
    song = await repository.create_song(
        order_id=order.order_id,
        job_id=job_id,
        title="Nossa Canção",
        variant_number=1,
        audio_url=audio_url or "",
        cover_url=None,
        lyrics=None,
        provider_clip_id=None,
        task_id="task-1",
        release_at=NOW + timedelta(days=7),
    )
    if audio_url is None:
        repository.songs[song.song_id].audio_url = None
    return song


@pytest.mark.unit
def test_unknown_action_is_a_typed_failure() -> None:
    result = asyncio.run(_act(InMemoryOrderRepository(), "explode", "ord_1"))

    assert result == ActionFailure(error="Unknown action: explode", code="unknown_action")


@pytest.mark.unit
def test_missing_order_is_reported_as_not_found() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        for action in ("mark_as_paid", "unmark_as_paid", "refund", "cancel", "delete_order"):
            result = await _act(repository, action, "ord_missing")
            assert isinstance(result, ActionFailure)
            assert result.code == "not_found"

    asyncio.run(_run())


@pytest.mark.unit
def test_mark_as_paid_runs_post_payment_and_audits() -> None:
    repository = InMemoryOrderRepository()
    runner = BackgroundRunner()

    async def _run() -> None:
        order = await seed_pending_order(repository)
        result = await _act(repository, "mark_as_paid", order.order_id, runner=runner)
        assert isinstance(result, ActionSuccess)
        assert result.data == {"warnings": [], "notification_scheduled": True}
        await runner.drain()
        stored = await repository.get_order(order_id=order.order_id)
        assert stored is not None
        assert stored.status == OrderStatus.PAID
        assert stored.paid_at == NOW
        assert stored.payment_provider == "admin"

        again = await _act(repository, "mark_as_paid", order.order_id)
        assert again == ActionSuccess(message="Order already paid", data={"already_paid": True})

    asyncio.run(_run())
    assert len(repository.admin_logs) == 1
    assert repository.admin_logs[0]["actor"] == "ops@example.com"
    assert repository.notifications[-1].status == "sent"


@pytest.mark.unit
def test_unmark_as_paid_returns_order_to_pending() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        order = await seed_paid_order(repository)
        result = await _act(repository, "unmark_as_paid", order.order_id)
        assert isinstance(result, ActionSuccess)
        stored = await repository.get_order(order_id=order.order_id)
        assert stored is not None
        assert stored.status == OrderStatus.PENDING
        assert stored.paid_at is None

        refused = await _act(repository, "unmark_as_paid", order.order_id)
        assert isinstance(refused, ActionFailure)
        assert refused.code == "business_rule"

    asyncio.run(_run())


@pytest.mark.unit
def test_refund_is_idempotent() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        order = await seed_paid_order(repository)
        assert isinstance(await _act(repository, "refund", order.order_id), ActionSuccess)
        again = await _act(repository, "refund", order.order_id)
        assert again == ActionSuccess(message="Order already refunded", data={"already_refunded": True})

    asyncio.run(_run())
    assert len(repository.admin_logs) == 1


@pytest.mark.unit
def test_cancel_refuses_paid_orders() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        paid = await seed_paid_order(repository)
        refused = await _act(repository, "cancel", paid.order_id)
        assert isinstance(refused, ActionFailure)
        assert "refunded or unmarked" in refused.error

        pending = await seed_pending_order(repository)
        assert isinstance(await _act(repository, "cancel", pending.order_id), ActionSuccess)
        stored = await repository.get_order(order_id=pending.order_id)
        assert stored is not None
        assert stored.status == OrderStatus.CANCELLED

    asyncio.run(_run())


@pytest.mark.unit
def test_invalid_transition_becomes_failure_not_exception() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        order = await seed_paid_order(repository)
        await _act(repository, "refund", order.order_id)
        # refunded -> cancelled is not a legal transition.
        result = await _act(repository, "cancel", order.order_id)
        assert isinstance(result, ActionFailure)
        assert "invalid order transition" in result.error

    asyncio.run(_run())


@pytest.mark.unit
def test_delete_order_removes_dependents() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        song = await _seed_song(repository)
        result = await _act(repository, "delete_order", song.order_id)
        assert isinstance(result, ActionSuccess)
        assert await repository.get_order(order_id=song.order_id) is None

    asyncio.run(_run())
    assert repository.songs == {}
    assert repository.jobs == {}
    assert repository.quizzes == {}


@pytest.mark.unit
def test_release_song_now_requires_song_id_and_media() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        missing = await _act(repository, "release_song_now", "ord_1")
        assert missing == ActionFailure(error="data.song_id is required", code="validation_error")

        song = await _seed_song(repository)
        released = await _act(repository, "release_song_now", song.order_id, song_id=song.song_id)
        assert isinstance(released, ActionSuccess)
        stored = await repository.get_song(song_id=song.song_id)
        assert stored is not None
        assert stored.status == SongStatus.RELEASED
        assert stored.released_at == NOW

        silent = await _seed_song(repository, audio_url=None)
        refused = await _act(repository, "release_song_now", silent.order_id, song_id=silent.song_id)
        assert isinstance(refused, ActionFailure)
        assert "no media" in refused.error

    asyncio.run(_run())


@pytest.mark.unit
def test_approve_song_moves_ready_song_to_approved() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        song = await _seed_song(repository)
        result = await _act(repository, "approve_song", None, song_id=song.song_id)
        assert isinstance(result, ActionSuccess)
        stored = await repository.get_song(song_id=song.song_id)
        assert stored is not None
        assert stored.status == SongStatus.APPROVED

        unknown = await _act(repository, "approve_song", None, song_id="song_missing")
        assert isinstance(unknown, ActionFailure)
        assert unknown.code == "not_found"

    asyncio.run(_run())


@pytest.mark.unit
def test_cleanup_pending_deletes_only_stale_pending_orders() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        stale = await seed_pending_order(repository)
        fresh = await seed_pending_order(repository)
        paid = await seed_paid_order(repository)
        repository.orders[stale.order_id].created_at = NOW - timedelta(days=30)
        repository.orders[paid.order_id].created_at = NOW - timedelta(days=30)
        repository.orders[fresh.order_id].created_at = NOW - timedelta(days=1)

        result = await _act(repository, "cleanup_pending")
        assert result == ActionSuccess(message="Deleted 1 pending orders", data={"deleted": 1})
        assert set(repository.orders) == {fresh.order_id, paid.order_id}

    asyncio.run(_run())
