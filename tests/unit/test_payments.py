from __future__ import annotations

import asyncio
import time

import pytest

from app.clients.stub import StubEmailClient
from app.domain.dto import NotificationRequest
from app.domain.errors import DomainAuthorizationError, DomainNotFoundError, DomainValidationError
from app.domain.models import NotificationType, OrderStatus, PaymentStatus
from app.domain.use_cases.notifications import NotificationScheduler
from app.domain.use_cases.payments import (
    PostPaymentActions,
    normalize_payment_status,
    parse_payment_payload,
    process_payment_webhook,
    verify_webhook_secret,
)
from app.repositories.stub import InMemoryOrderRepository
from app.services.background import BackgroundRunner
from tests.unit.domain_seed import PAID_AT, notifications_for, seed_pending_order


def _actions(repository: InMemoryOrderRepository, runner: BackgroundRunner | None = None) -> PostPaymentActions:
    return PostPaymentActions(
        repository=repository,
        notifications=notifications_for(repository, runner if runner is not None else BackgroundRunner()),
    )


@pytest.mark.unit
@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("APPROVED", PaymentStatus.APPROVED),
        ("completed", PaymentStatus.APPROVED),
        ("chargeback", PaymentStatus.CANCELLED),
        ("refunded", PaymentStatus.REFUNDED),
        ("billet_printed", PaymentStatus.PENDING),
        ("something_new", PaymentStatus.PENDING),
        (None, PaymentStatus.PENDING),
    ],
)
def test_vendor_status_normalization(raw: str | None, expected: PaymentStatus) -> None:
    assert normalize_payment_status(raw) == expected


@pytest.mark.unit
def test_parse_flat_form_payload() -> None:
    notification = parse_payment_payload(
        {"status": "approved", "email": " A@B.com ", "transaction": "HP-1", "xcod": "ord_x", "hottok": "s3"}
    )

    assert notification.status == PaymentStatus.APPROVED
    assert notification.email == "a@b.com"
    assert notification.transaction_id == "HP-1"
    assert notification.order_reference == "ord_x"
    assert notification.secret == "s3"


@pytest.mark.unit
def test_parse_nested_json_payload() -> None:
    notification = parse_payment_payload(
        {
            "event": "PURCHASE_APPROVED",
            "hottok": "s3",
            "data": {
                "buyer": {"email": "buyer@example.com"},
                "purchase": {"status": "APPROVED", "transaction": "HP-2", "origin": {"sck": "ord_y"}},
            },
        }
    )

    assert notification.status == PaymentStatus.APPROVED
    assert notification.event == "PURCHASE_APPROVED"
    assert notification.email == "buyer@example.com"
    assert notification.transaction_id == "HP-2"
    assert notification.order_reference == "ord_y"


@pytest.mark.unit
def test_parse_rejects_non_object_payload() -> None:
    with pytest.raises(DomainValidationError):
        parse_payment_payload(["approved"])


@pytest.mark.unit
def test_webhook_secret_verification() -> None:
    verify_webhook_secret("s3", "s3")
    verify_webhook_secret(None, "s3", internal_authorized=True)
    # Unconfigured secret is logged, not enforced.
    verify_webhook_secret(None, None)
    with pytest.raises(DomainAuthorizationError):
        verify_webhook_secret("wrong", "s3")
    with pytest.raises(DomainAuthorizationError):
        verify_webhook_secret(None, "s3")


@pytest.mark.unit
def test_approved_payment_marks_order_paid_and_notifies_once() -> None:
    repository = InMemoryOrderRepository()
    email = StubEmailClient()
    runner = BackgroundRunner()
    scheduled: list[str] = []

    async def _run() -> None:
        order = await seed_pending_order(repository)
        actions = PostPaymentActions(
            repository=repository,
            notifications=notifications_for(repository, runner, email),
            schedule_lyrics=scheduled.append,
        )
        result = await process_payment_webhook(
            parse_payment_payload({"status": "approved", "email": "a@b.com", "transaction": "HP-9"}),
            repository=repository,
            post_payment=actions,
            now=PAID_AT,
        )
        assert result.outcome == "paid"
        assert result.strategy == "email_fallback"
        assert result.warnings == ()
        assert result.notification_scheduled is True

        stored = await repository.get_order(order_id=order.order_id)
        assert stored is not None
        assert stored.status == OrderStatus.PAID
        assert stored.paid_at == PAID_AT
        assert stored.transaction_id == "HP-9"
        assert repository.orders[order.order_id].funnel_completed is True
        assert scheduled == [order.order_id]
        await runner.drain()

    asyncio.run(_run())
    assert len(email.sent) == 1
    assert email.sent[0]["template"] == "order-paid"
    assert repository.webhook_logs[-1]["outcome"] == "paid"


@pytest.mark.unit
def test_order_reference_wins_over_email() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        first = await seed_pending_order(repository)
        second = await seed_pending_order(repository)
        result = await process_payment_webhook(
            parse_payment_payload({"status": "approved", "email": "a@b.com", "xcod": first.order_id}),
            repository=repository,
            post_payment=_actions(repository),
        )
        assert result.strategy == "order_id"
        assert result.order_id == first.order_id
        untouched = await repository.get_order(order_id=second.order_id)
        assert untouched is not None
        assert untouched.status == OrderStatus.PENDING

    asyncio.run(_run())


@pytest.mark.unit
def test_transaction_lookup_is_used_before_email() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        order = await seed_pending_order(repository)
        repository.orders[order.order_id].transaction_id = "HP-77"
        result = await process_payment_webhook(
            parse_payment_payload({"status": "approved", "transaction": "HP-77"}),
            repository=repository,
            post_payment=_actions(repository),
        )
        assert result.strategy == "transaction_id"
        assert result.order_id == order.order_id

    asyncio.run(_run())


@pytest.mark.unit
def test_non_approved_status_is_ignored() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        order = await seed_pending_order(repository)
        result = await process_payment_webhook(
            parse_payment_payload({"status": "waiting_payment", "email": "a@b.com"}),
            repository=repository,
            post_payment=_actions(repository),
        )
        assert result.outcome == "ignored"
        stored = await repository.get_order(order_id=order.order_id)
        assert stored is not None
        assert stored.status == OrderStatus.PENDING

    asyncio.run(_run())
    assert repository.webhook_logs[-1]["outcome"] == "ignored"


@pytest.mark.unit
def test_unknown_order_raises_not_found_and_is_audited() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        with pytest.raises(DomainNotFoundError):
            await process_payment_webhook(
                parse_payment_payload({"status": "approved", "email": "nobody@example.com"}),
                repository=repository,
                post_payment=_actions(repository),
            )

    asyncio.run(_run())
    assert repository.webhook_logs[-1]["outcome"] == "order_not_found"
    assert repository.webhook_logs[-1]["order_found"] is False


@pytest.mark.unit
def test_cancelled_order_is_not_payable() -> None:
    repository = InMemoryOrderRepository()

    async def _run() -> None:
        order = await seed_pending_order(repository)
        await repository.transition_order(
            order_id=order.order_id,
            from_state=OrderStatus.PENDING,
            to_state=OrderStatus.CANCELLED,
        )
        result = await process_payment_webhook(
            parse_payment_payload({"status": "approved", "xcod": order.order_id}),
            repository=repository,
            post_payment=_actions(repository),
        )
        assert result.outcome == "not_payable"
        assert result.warnings == ("order_not_payable:cancelled",)

    asyncio.run(_run())


@pytest.mark.unit
def test_post_payment_failures_become_warnings() -> None:
    class _FunnelFailingRepository(InMemoryOrderRepository):
        async def complete_checkout_funnel(self, *, order_id: str) -> None:
            del order_id
            raise RuntimeError("funnel table locked")

    class _FailingEmailClient(StubEmailClient):
        async def send(self, *, recipient: str, template: str, variables: dict[str, object]) -> str | None:
            del recipient, template, variables
            raise RuntimeError("smtp rejected")

    def _broken_kickoff(order_id: str) -> None:
        raise RuntimeError(f"no loop for {order_id}")

    repository = _FunnelFailingRepository()
    runner = BackgroundRunner()

    async def _run() -> None:
        order = await seed_pending_order(repository)
        actions = PostPaymentActions(
            repository=repository,
            notifications=notifications_for(repository, runner, _FailingEmailClient()),
            schedule_lyrics=_broken_kickoff,
        )
        result = await process_payment_webhook(
            parse_payment_payload({"status": "approved", "xcod": order.order_id}),
            repository=repository,
            post_payment=actions,
        )
        assert result.outcome == "paid"
        assert len(result.warnings) == 2
        assert result.warnings[0].startswith("funnel_completion_failed")
        assert result.warnings[1].startswith("lyrics_kickoff_failed")
        # Delivery failures surface in the notification log, not in the webhook answer.
        assert result.notification_scheduled is True
        stored = await repository.get_order(order_id=order.order_id)
        assert stored is not None
        assert stored.status == OrderStatus.PAID
        await runner.drain()

    asyncio.run(_run())
    assert repository.notifications[-1].status == "failed"
    assert repository.notifications[-1].notification_type == NotificationType.ORDER_PAID


@pytest.mark.unit
def test_slow_email_provider_does_not_delay_the_webhook() -> None:
    class _SlowEmailClient(StubEmailClient):
        async def send(self, *, recipient: str, template: str, variables: dict[str, object]) -> str | None:
            await asyncio.sleep(1.0)
            return await super().send(recipient=recipient, template=template, variables=variables)

    repository = InMemoryOrderRepository()
    email = _SlowEmailClient()
    runner = BackgroundRunner()

    async def _run() -> None:
        order = await seed_pending_order(repository)
        actions = PostPaymentActions(repository=repository, notifications=notifications_for(repository, runner, email))
        started = time.monotonic()
        result = await process_payment_webhook(
            parse_payment_payload({"status": "approved", "xcod": order.order_id}),
            repository=repository,
            post_payment=actions,
        )
        elapsed = time.monotonic() - started

        assert result.outcome == "paid"
        assert result.notification_scheduled is True
        assert elapsed < 0.5
        assert email.sent == []
        assert runner.pending == 1

        await runner.drain()

    asyncio.run(_run())
    assert [message["template"] for message in email.sent] == ["order-paid"]
    assert repository.notifications[-1].status == "sent"


@pytest.mark.unit
def test_notification_scheduling_failure_becomes_warning() -> None:
    class _BrokenScheduler(NotificationScheduler):
        def schedule(self, request: NotificationRequest) -> None:
            raise RuntimeError(f"runner closed for {request.order_id}")

    repository = InMemoryOrderRepository()

    async def _run() -> None:
        order = await seed_pending_order(repository)
        base = notifications_for(repository, BackgroundRunner())
        actions = PostPaymentActions(
            repository=repository,
            notifications=_BrokenScheduler(dispatcher=base.dispatcher, spawner=base.spawner),
        )
        result = await process_payment_webhook(
            parse_payment_payload({"status": "approved", "xcod": order.order_id}),
            repository=repository,
            post_payment=actions,
        )
        assert result.outcome == "paid"
        assert result.notification_scheduled is False
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("notification_schedule_failed")

    asyncio.run(_run())
    assert repository.notifications == []
